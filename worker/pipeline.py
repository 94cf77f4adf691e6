"""
Processing state machine run once per worker invocation.

    Received -> Processing -> {Completed | Failed}

``Received`` is never persisted. Validation happens before this module is
reached; from ``mark_processing`` onwards every error ends in a best-effort
``mark_failed`` carrying the error text verbatim. One invocation makes exactly
one non-retrying pass, and the scratch directory is removed on every exit path.
"""

import asyncio
import contextlib
import re
import shutil
import tempfile
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Awaitable, Dict, Iterator, Optional, Tuple, TypeVar

from common.errors import (
    EngineError,
    EngineTimeoutError,
    JobConflictError,
    JobNotFoundError,
    PipelineError,
    PublishError,
)
from common.job_schema import Job, JobKind, JobStatus, Transcript, utcnow
from common.job_store import JobStore
from common.logging_config import get_logger
from common.payloads import WorkerRequest
from common.storage import ArtifactStore
from worker.engines import EngineAdapter, EngineResult, InputMode, OutputMode, ResolvedInput

logger = get_logger(__name__)

T = TypeVar("T")

SIGNED_URL_TTL = timedelta(minutes=15)
TRANSCRIPT_FILE_NAME = "transcript.json"


@dataclass
class JobOutcome:
    job_id: str
    status: Optional[JobStatus]
    output_uri: Optional[str] = None
    error: Optional[str] = None
    http_status: int = 200

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.COMPLETED


async def run_with_budget(call: Awaitable[T], budget: float) -> T:
    """Race ``call`` against a deadline and report exactly one outcome.

    Returns the call's result, re-raises its PipelineError (other exceptions are
    wrapped as EngineError), or cancels the call and raises EngineTimeoutError
    when the deadline fires first. The cancelled call is awaited so adapters can
    kill their child process before this returns.
    """
    task = asyncio.ensure_future(call)
    try:
        done, _ = await asyncio.wait({task}, timeout=budget)
    except asyncio.CancelledError:
        task.cancel()
        raise

    if task in done:
        try:
            return task.result()
        except PipelineError:
            raise
        except Exception as e:
            raise EngineError(f"Engine call failed: {e}") from e

    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.warning("Engine call raised while being cancelled", exc_info=True)
    raise EngineTimeoutError(f"Engine call timed out after {budget:g} seconds")


@contextlib.contextmanager
def scratch_directory(job_id: str, kind: JobKind, root: Optional[Path] = None) -> Iterator[Path]:
    """Per-invocation scratch directory, removed unconditionally on exit."""
    if root is not None:
        Path(root).mkdir(parents=True, exist_ok=True)
    safe_id = re.sub(r"[^A-Za-z0-9_.-]", "_", job_id)[:64]
    path = Path(tempfile.mkdtemp(prefix=f"{kind.value.lower()}_{safe_id}_", dir=str(root) if root else None))
    logger.info(f"[{job_id}] Created temp directory: {path}")
    try:
        yield path
    finally:
        try:
            shutil.rmtree(path)
            logger.info(f"[{job_id}] Cleaned up temporary directory: {path}")
        except OSError:
            logger.exception(f"[{job_id}] Error cleaning up temp directory {path}")


def _failure_message(exc: BaseException) -> str:
    message = str(exc) or f"Unexpected {type(exc).__name__} during processing"
    diagnostics = getattr(exc, "diagnostics", None)
    if diagnostics and diagnostics not in message:
        message = f"{message}. Diagnostics: {diagnostics}"
    return message


class JobPipeline:
    def __init__(
        self,
        jobs: JobStore,
        artifacts: ArtifactStore,
        engine: EngineAdapter,
        budget: float,
        scratch_root: Optional[Path] = None,
        signed_url_ttl: timedelta = SIGNED_URL_TTL,
    ):
        self.jobs = jobs
        self.artifacts = artifacts
        self.engine = engine
        self.kind = engine.kind
        self.budget = budget
        self.scratch_root = scratch_root
        self.signed_url_ttl = signed_url_ttl

    async def process(self, request: WorkerRequest) -> JobOutcome:
        """Drive one job to a terminal state. Never raises for job-level failures."""
        job_id = request.job_id
        try:
            await self.check_runnable(job_id)
        except PipelineError as e:
            logger.error(f"[{job_id}] Not processing job: {e}")
            return JobOutcome(job_id, None, error=str(e), http_status=e.http_status)

        with scratch_directory(job_id, self.kind, self.scratch_root) as workdir:
            try:
                output_uri, transcript = await self._run_steps(request, workdir)
            except Exception as e:
                return await self._fail(job_id, e)

            if await self.mark_completed(job_id, output_uri, transcript):
                logger.info(f"[{job_id}] Job completed successfully.")
                return JobOutcome(job_id, JobStatus.COMPLETED, output_uri=output_uri)
            return await self._fail(job_id, PipelineError(f"Could not record COMPLETED state for job {job_id}"))

    async def _run_steps(self, request: WorkerRequest, workdir: Path) -> Tuple[str, Optional[Transcript]]:
        job_id = request.job_id
        await self.mark_processing(job_id)
        resolved = await self.resolve_input(job_id, request.input_uri, workdir)
        result = await self.invoke_engine(job_id, resolved, request, workdir)
        self.validate_output(job_id, result)
        output_uri = await self.publish_output(job_id, result, workdir)
        return output_uri, result.transcript

    async def _fail(self, job_id: str, exc: Exception) -> JobOutcome:
        message = _failure_message(exc)
        if isinstance(exc, PipelineError):
            logger.error(f"[{job_id}] Error processing job: {message}")
        else:
            logger.exception(f"[{job_id}] Unexpected error processing job")
        await self.mark_failed(job_id, message)
        return JobOutcome(job_id, JobStatus.FAILED, error=message, http_status=500)

    # --------------------------------------------------------------------------
    # Steps
    # --------------------------------------------------------------------------

    async def check_runnable(self, job_id: str) -> Job:
        """A trigger may re-run a stuck PENDING/PROCESSING job but never reopen a terminal one."""
        job = await asyncio.to_thread(self.jobs.get, job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        if job.status.is_terminal:
            raise JobConflictError(f"Job {job_id} is already {job.status.value}")
        return job

    async def mark_processing(self, job_id: str) -> None:
        await asyncio.to_thread(
            self.jobs.update,
            job_id,
            {"status": JobStatus.PROCESSING, "worker_started_at": utcnow()},
        )
        logger.info(f"[{job_id}] Status set to PROCESSING.")

    async def resolve_input(self, job_id: str, input_uri: str, workdir: Path) -> ResolvedInput:
        ref = self.artifacts.parse_uri(input_uri)
        if ref.container != self.artifacts.default_container:
            logger.warning(
                f"[{job_id}] Input container '{ref.container}' differs from default container "
                f"'{self.artifacts.default_container}'. Using the URI's container."
            )

        if self.engine.input_mode == InputMode.LOCAL_FILE:
            dest = workdir / ref.name
            logger.info(f"[{job_id}] Downloading {ref.uri} to {dest}...")
            await asyncio.to_thread(self.artifacts.download, input_uri, dest)
            return ResolvedInput(ref=ref, local_path=dest)

        url = await asyncio.to_thread(self.artifacts.get_signed_url, input_uri, self.signed_url_ttl)
        logger.info(f"[{job_id}] Generated signed URL for {ref.uri}.")
        return ResolvedInput(ref=ref, url=url)

    async def invoke_engine(
        self, job_id: str, resolved: ResolvedInput, request: WorkerRequest, workdir: Path
    ) -> EngineResult:
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            result = await run_with_budget(self.engine.invoke(resolved, request, workdir), self.budget)
        except EngineTimeoutError:
            logger.error(f"[{job_id}] Engine timed out after {loop.time() - started:.1f}s (budget {self.budget:g}s)")
            raise
        logger.info(f"[{job_id}] Engine finished in {loop.time() - started:.1f}s")
        if result.diagnostics:
            logger.debug(f"[{job_id}] Engine diagnostics: {result.diagnostics}")
        return result

    def validate_output(self, job_id: str, result: EngineResult) -> None:
        if self.engine.output_mode == OutputMode.ARTIFACT:
            path = result.output_path
            if path is None or not path.is_file():
                raise EngineError("Engine output file validation failed: no output file was produced", diagnostics=result.diagnostics)
            if path.stat().st_size == 0:
                raise EngineError("Engine produced an empty output file", diagnostics=result.diagnostics)
            return

        if result.transcript is None:
            raise EngineError("Engine returned invalid transcript data.", diagnostics=result.diagnostics)
        if not result.transcript.words:
            logger.warning(f"[{job_id}] No words transcribed; completing with an empty transcript.")

    async def publish_output(self, job_id: str, result: EngineResult, workdir: Path) -> str:
        try:
            if self.engine.output_mode == OutputMode.ARTIFACT:
                local_path = result.output_path
            else:
                local_path = workdir / TRANSCRIPT_FILE_NAME
                local_path.write_text(result.transcript.model_dump_json(exclude_none=True))
            destination = f"{self.engine.output_prefix}/{job_id}/{local_path.name}"
            output_uri = await asyncio.to_thread(self.artifacts.upload_file, local_path, destination, result.content_type)
        except Exception as e:
            raise PublishError(f"Failed to publish output for job {job_id}: {e}") from e
        logger.info(f"[{job_id}] Uploaded output to {output_uri}.")
        return output_uri

    async def mark_completed(self, job_id: str, output_uri: str, transcript: Optional[Transcript] = None) -> bool:
        fields: Dict[str, Any] = {
            "status": JobStatus.COMPLETED,
            "output_uri": output_uri,
            "worker_completed_at": utcnow(),
        }
        if transcript is not None:
            fields["transcript"] = transcript
        return await self._terminal_write(job_id, fields)

    async def mark_failed(self, job_id: str, message: str) -> bool:
        return await self._terminal_write(
            job_id,
            {"status": JobStatus.FAILED, "error": message, "worker_completed_at": utcnow()},
        )

    async def _terminal_write(self, job_id: str, fields: Dict[str, Any]) -> bool:
        # Best effort: a failed terminal write is logged, never raised.
        status = fields["status"].value
        try:
            await asyncio.to_thread(self.jobs.update, job_id, fields)
        except Exception:
            logger.exception(f"[{job_id}] CRITICAL: Failed to update job status to {status}")
            return False
        logger.info(f"[{job_id}] Status set to {status}.")
        return True
