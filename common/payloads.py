"""Trigger payloads accepted by the worker endpoints.

``validate_request`` is the single gate in front of every job mutation: the
worker runs it before touching the record and the submitter runs it before
creating one.
"""

from typing import Any, ClassVar, Dict, Mapping, Union

import pydantic
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from common.errors import ValidationError
from common.job_schema import JobKind


class TranscriptionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    kind: ClassVar[JobKind] = JobKind.TRANSCRIPTION

    job_id: str = Field(min_length=1, validation_alias=AliasChoices("jobId", "job_id"), serialization_alias="jobId")
    input_uri: str = Field(
        min_length=1,
        validation_alias=AliasChoices("inputUri", "gcsUri", "input_uri"),
        serialization_alias="inputUri",
    )

    @property
    def params(self) -> Dict[str, Any]:
        return {}


class ClipRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    kind: ClassVar[JobKind] = JobKind.CLIP

    job_id: str = Field(min_length=1, validation_alias=AliasChoices("jobId", "job_id"), serialization_alias="jobId")
    input_uri: str = Field(
        min_length=1,
        validation_alias=AliasChoices("inputUri", "gcsUri", "input_uri"),
        serialization_alias="inputUri",
    )
    # strict finite JSON numbers only: no "10" strings, booleans, NaN or Infinity
    start_time: float = Field(strict=True, allow_inf_nan=False, validation_alias=AliasChoices("startTime", "start_time"), serialization_alias="startTime")
    end_time: float = Field(strict=True, allow_inf_nan=False, validation_alias=AliasChoices("endTime", "end_time"), serialization_alias="endTime")
    output_format: str = Field(
        default="mp4",
        pattern=r"^[a-z0-9]{2,5}$",
        validation_alias=AliasChoices("outputFormat", "output_format"),
        serialization_alias="outputFormat",
    )

    @model_validator(mode="after")
    def _check_range(self) -> "ClipRequest":
        if self.start_time < 0:
            raise ValueError("Start time must be non-negative.")
        if self.start_time >= self.end_time:
            raise ValueError("Start time must be before end time.")
        return self

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    @property
    def params(self) -> Dict[str, Any]:
        return {
            "startTime": self.start_time,
            "endTime": self.end_time,
            "outputFormat": self.output_format,
        }


WorkerRequest = Union[TranscriptionRequest, ClipRequest]

REQUEST_MODELS = {
    JobKind.TRANSCRIPTION: TranscriptionRequest,
    JobKind.CLIP: ClipRequest,
}


def _reason(exc: pydantic.ValidationError) -> str:
    parts = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err.get("loc", ()) if p != "__root__")
        message = err.get("msg", "invalid value")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        parts.append(f"{location}: {message}" if location else message)
    return "Missing or invalid parameters in request body: " + "; ".join(parts)


def validate_request(kind: JobKind, body: Any) -> WorkerRequest:
    """Parse a trigger body for ``kind`` or raise ValidationError with a plain-text reason."""
    if not isinstance(body, Mapping):
        raise ValidationError("Request body must be a JSON object.")
    try:
        return REQUEST_MODELS[kind].model_validate(dict(body))
    except pydantic.ValidationError as e:
        raise ValidationError(_reason(e)) from e


def build_payload(job_id: str, input_uri: str, params: Mapping[str, Any]) -> Dict[str, Any]:
    """Trigger body for a worker: ``{jobId, inputUri, ...kindParams}``."""
    payload: Dict[str, Any] = {"jobId": job_id, "inputUri": input_uri}
    payload.update(params)
    return payload
