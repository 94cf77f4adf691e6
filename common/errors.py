"""Error taxonomy shared by the worker pipeline, the stores and the client.

Every error carries the HTTP status a worker answers with when the error ends
an invocation, and optional diagnostic text (e.g. captured engine stderr).
"""

from typing import Optional


class PipelineError(Exception):
    http_status = 500

    def __init__(self, message: str, diagnostics: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.diagnostics = diagnostics

    def __str__(self) -> str:
        return self.message


class ValidationError(PipelineError):
    """Malformed or out-of-range request. Never mutates job state."""

    http_status = 400


class JobConflictError(ValidationError):
    """The job already reached a terminal status; a new trigger cannot reopen it."""

    http_status = 409


class JobStoreError(PipelineError):
    pass


class AlreadyExistsError(JobStoreError):
    http_status = 409


class JobNotFoundError(JobStoreError):
    http_status = 404


class TransientInfraError(PipelineError):
    """A Job Store or Artifact Store call failed."""


class EngineError(PipelineError):
    """The engine reported a failure or produced an unusable output."""


class EngineTimeoutError(PipelineError, TimeoutError):
    """The engine call exceeded its wall-clock budget."""


class PublishError(PipelineError):
    """The produced artifact could not be persisted."""
