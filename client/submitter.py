"""
Client-side half of job submission: upload the source artifact, write the
PENDING record, then fire the worker trigger without waiting on it.

A trigger that fails in transit is logged and nothing else; the record it was
meant to start stays PENDING until someone resubmits.
"""

import asyncio
import re
import time
import uuid
from typing import Any, BinaryIO, Dict, Mapping, Optional, Set

import httpx

from common.job_schema import Job, JobKind, JobStatus
from common.job_store import JobStore
from common.logging_config import get_logger
from common.payloads import build_payload, validate_request
from common.storage import ArtifactStore, ProgressCallback

logger = get_logger(__name__)

UPLOAD_PREFIX = "videos"

# The worker answers only once the job is terminal, so the read timeout has
# to cover the longest engine budget.
TRIGGER_TIMEOUT = httpx.Timeout(600.0, connect=10.0)


def safe_filename(filename: str) -> str:
    name = re.sub(r"[^A-Za-z0-9._-]+", "_", (filename or "").strip()).strip("._")
    return name or "upload"


class JobSubmitter:
    def __init__(
        self,
        kind: JobKind,
        jobs: JobStore,
        artifacts: ArtifactStore,
        worker_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: httpx.Timeout = TRIGGER_TIMEOUT,
    ):
        self.kind = kind
        self.jobs = jobs
        self.artifacts = artifacts
        self.worker_url = worker_url
        self.transport = transport
        self.timeout = timeout
        self._triggers: Set[asyncio.Task] = set()

    @staticmethod
    def generate_job_id() -> str:
        return str(uuid.uuid4())

    def upload_path(self, filename: str) -> str:
        return f"{UPLOAD_PREFIX}/{int(time.time() * 1000)}-{safe_filename(filename)}"

    def upload_artifact(
        self,
        fileobj: BinaryIO,
        path: str,
        content_type: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        size: Optional[int] = None,
    ) -> str:
        """Stream ``fileobj`` into the default container and return its URI."""
        uri = self.artifacts.upload_stream(
            fileobj,
            path,
            content_type or "application/octet-stream",
            size=size,
            on_progress=on_progress,
        )
        logger.info(f"Uploaded source artifact to {uri}")
        return uri

    def create_job(self, job_id: str, input_uri: str, params: Mapping[str, Any]) -> Job:
        # Nothing is written for a request the worker would reject.
        request = validate_request(self.kind, build_payload(job_id, input_uri, params))
        job = Job(id=job_id, kind=self.kind, status=JobStatus.PENDING, input_uri=input_uri, params=request.params)
        created = self.jobs.create(job)
        logger.info(f"[{job_id}] Created {self.kind.label.lower()} job for {input_uri}")
        return created

    def trigger_worker(self, job_id: str, payload: Dict[str, Any]) -> asyncio.Task:
        """Start the worker call in the background and return the task."""
        task = asyncio.get_running_loop().create_task(self._post_trigger(job_id, payload))
        self._triggers.add(task)
        task.add_done_callback(self._triggers.discard)
        return task

    async def _post_trigger(self, job_id: str, payload: Dict[str, Any]) -> None:
        if not self.worker_url:
            logger.error(f"[{job_id}] No {self.kind.label.lower()} worker URL configured; job stays PENDING.")
            return
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                resp = await client.post(self.worker_url, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"[{job_id}] Worker trigger failed: {e!r}")
            return
        except Exception:
            logger.exception(f"[{job_id}] Worker trigger raised unexpectedly")
            return

        if resp.is_error:
            logger.error(f"[{job_id}] Worker responded {resp.status_code}: {resp.text[:500]}")
        else:
            logger.info(f"[{job_id}] Worker responded {resp.status_code}")

    async def submit(self, input_uri: str, params: Optional[Mapping[str, Any]] = None) -> Job:
        """Create and trigger a job for an artifact that is already stored."""
        params = dict(params or {})
        job_id = self.generate_job_id()
        validate_request(self.kind, build_payload(job_id, input_uri, params))
        self.artifacts.parse_uri(input_uri)

        job = await asyncio.to_thread(self.create_job, job_id, input_uri, params)
        self.trigger_worker(job_id, build_payload(job_id, input_uri, job.params))
        return job

    async def submit_file(
        self,
        fileobj: BinaryIO,
        filename: str,
        params: Optional[Mapping[str, Any]] = None,
        content_type: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Job:
        """Validate, upload, create, trigger."""
        params = dict(params or {})
        job_id = self.generate_job_id()
        path = self.upload_path(filename)
        expected_uri = self.artifacts.uri(self.artifacts.default_container, path)
        validate_request(self.kind, build_payload(job_id, expected_uri, params))

        input_uri = await asyncio.to_thread(self.upload_artifact, fileobj, path, content_type, on_progress)
        job = await asyncio.to_thread(self.create_job, job_id, input_uri, params)
        self.trigger_worker(job_id, build_payload(job_id, input_uri, job.params))
        return job

    async def drain(self) -> None:
        """Wait for every outstanding trigger to finish."""
        while self._triggers:
            await asyncio.gather(*list(self._triggers))

    @property
    def pending_triggers(self) -> int:
        return len(self._triggers)
