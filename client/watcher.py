"""
Client-side view of a job's progress.

Store snapshots may arrive on any thread (the Firestore SDK delivers them on
its own), so they are handed to the event loop with ``call_soon_threadsafe``
and every ``on_update`` callback runs on the loop. Per job, callers see a
strictly advancing status sequence; duplicate and regressing snapshots are
dropped, and the underlying subscription is released on the first terminal
status.
"""

import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional

from common.job_schema import Job, JobStatus
from common.job_store import JobStore, Subscription
from common.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class ProgressEvent:
    job_id: str
    status: JobStatus
    message: str
    error: Optional[str] = None
    output_uri: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self):
        return {
            "jobId": self.job_id,
            "status": self.status.value,
            "message": self.message,
            "error": self.error,
            "outputUri": self.output_uri,
        }


def describe(job: Job) -> ProgressEvent:
    """Translate a job snapshot into display-ready progress text."""
    label = job.kind.label
    if job.status == JobStatus.PENDING:
        message = f"{label} job queued. Waiting for a worker..."
    elif job.status == JobStatus.PROCESSING:
        message = f"{label} in progress..."
    elif job.status == JobStatus.COMPLETED:
        message = f"{label} complete."
    else:
        message = f"{label} failed: {job.error}"
    return ProgressEvent(job.id, job.status, message, error=job.error, output_uri=job.output_uri)


class JobWatch:
    """One caller's attachment to one job. ``unsubscribe`` may be called any number of times."""

    def __init__(self, job_id: str, on_update: Callable[[ProgressEvent], None]):
        self.job_id = job_id
        self._on_update = on_update
        self._subscription: Optional[Subscription] = None
        self._last_status: Optional[JobStatus] = None
        self.closed = False

    @property
    def last_status(self) -> Optional[JobStatus]:
        return self._last_status

    def _attach(self, subscription: Subscription) -> None:
        self._subscription = subscription
        if self.closed:
            subscription.unsubscribe()

    def _receive(self, job: Optional[Job]) -> None:
        if self.closed:
            return
        if job is None:
            logger.debug(f"[{self.job_id}] No job record yet")
            return
        if self._last_status is not None and not self._last_status.can_advance_to(job.status):
            return
        self._last_status = job.status

        try:
            self._on_update(describe(job))
        except Exception:
            logger.exception(f"[{self.job_id}] Progress callback raised")

        if job.status.is_terminal:
            self.unsubscribe()

    def unsubscribe(self) -> None:
        self.closed = True
        if self._subscription is not None:
            self._subscription.unsubscribe()

    close = unsubscribe


class JobWatcher:
    def __init__(self, jobs: JobStore):
        self.jobs = jobs

    def subscribe(self, job_id: str, on_update: Callable[[ProgressEvent], None]) -> JobWatch:
        """Attach ``on_update`` to a job. Must be called from a running event loop."""
        loop = asyncio.get_running_loop()
        watch = JobWatch(job_id, on_update)

        def on_snapshot(job: Optional[Job]) -> None:
            try:
                loop.call_soon_threadsafe(watch._receive, job)
            except RuntimeError:
                # Loop already closed; nobody is left to notify.
                logger.debug(f"[{job_id}] Dropped snapshot after event loop shutdown")

        watch._attach(self.jobs.subscribe(job_id, on_snapshot))
        return watch

    async def wait(self, job_id: str, timeout: Optional[float] = None) -> ProgressEvent:
        """Wait for the job's terminal event. Raises asyncio.TimeoutError after ``timeout`` seconds."""
        done: asyncio.Future = asyncio.get_running_loop().create_future()

        def on_update(event: ProgressEvent) -> None:
            if event.terminal and not done.done():
                done.set_result(event)

        watch = self.subscribe(job_id, on_update)
        try:
            return await asyncio.wait_for(done, timeout)
        finally:
            watch.unsubscribe()

    async def events(self, job_id: str) -> AsyncIterator[ProgressEvent]:
        """Yield progress events until (and including) the terminal one."""
        queue: asyncio.Queue = asyncio.Queue()
        watch = self.subscribe(job_id, queue.put_nowait)
        try:
            while True:
                event = await queue.get()
                yield event
                if event.terminal:
                    return
        finally:
            watch.unsubscribe()
