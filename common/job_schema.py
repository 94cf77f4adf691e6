from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobKind(str, Enum):
    TRANSCRIPTION = "TRANSCRIPTION"
    CLIP = "CLIP"

    @property
    def label(self) -> str:
        return "Transcription" if self is JobKind.TRANSCRIPTION else "Clipping"


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)

    def can_advance_to(self, other: "JobStatus") -> bool:
        """Pending -> Processing -> {Completed, Failed}; skipping Processing is allowed."""
        return not self.is_terminal and other.rank > self.rank


_STATUS_RANK = {
    JobStatus.PENDING: 0,
    JobStatus.PROCESSING: 1,
    JobStatus.COMPLETED: 2,
    JobStatus.FAILED: 2,
}


class Word(BaseModel):
    text: str
    start: float
    end: float
    confidence: Optional[float] = None
    speaker: Optional[int] = None
    punctuated_word: Optional[str] = None


class Transcript(BaseModel):
    words: List[Word] = Field(default_factory=list)


class Job(BaseModel):
    """Latest snapshot of one unit of asynchronous work.

    Attribute names are snake_case; the persisted record uses the camelCase
    aliases and flattens ``params`` into the top level.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    kind: JobKind
    status: JobStatus = JobStatus.PENDING
    input_uri: str                        # where the source artifact is stored
    output_uri: Optional[str] = None
    error: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    transcript: Optional[Transcript] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    worker_started_at: Optional[datetime] = None
    worker_completed_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_terminal_fields(self) -> "Job":
        if (self.status == JobStatus.COMPLETED) != bool(self.output_uri):
            raise ValueError("outputUri must be set exactly when status is COMPLETED")
        if (self.status == JobStatus.FAILED) != bool(self.error):
            raise ValueError("error must be set exactly when status is FAILED")
        return self

    def to_record(self) -> Dict[str, Any]:
        """Serialize to the persisted record layout (JSON-safe)."""
        record = self.model_dump(mode="json", by_alias=True, exclude_none=True, exclude={"params"})
        for key, value in self.params.items():
            record.setdefault(key, value)
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any], job_id: Optional[str] = None) -> "Job":
        data = dict(record)
        if job_id is not None:
            data["id"] = job_id
        known = {field.alias or name for name, field in cls.model_fields.items()} | set(cls.model_fields)
        params = {k: data.pop(k) for k in list(data) if k not in known}
        data.setdefault("params", params)
        return cls.model_validate(data)

    def merged(self, fields: Dict[str, Any]) -> "Job":
        """Return a validated copy with ``fields`` merged in (last write per field wins)."""
        data = self.model_dump()
        data.update(fields)
        return Job.model_validate(data)
