"""Durable job records with push-based subscriptions.

Two backends share one contract:

* ``create`` fails with AlreadyExistsError when the id is taken.
* ``update`` fails with JobNotFoundError when the record is absent, otherwise
  merges the fields, bumps ``updatedAt`` and returns the merged snapshot.
* ``subscribe`` delivers the current snapshot right away, then one snapshot per
  mutation until the returned Subscription is unsubscribed. A missing record
  is delivered as ``None``.
"""

import json
import os
import threading
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import pydantic

from common import config
from common.errors import AlreadyExistsError, JobNotFoundError, JobStoreError, TransientInfraError
from common.job_schema import Job, JobKind, Transcript, utcnow
from common.logging_config import get_logger

try:
    from google.api_core import exceptions as gcloud_exceptions
    from google.cloud import firestore
except ImportError:
    firestore = None

logger = get_logger(__name__)

SnapshotCallback = Callable[[Optional[Job]], None]


class Subscription:
    """Handle returned by ``JobStore.subscribe``. ``unsubscribe`` is idempotent."""

    def __init__(self, cancel: Callable[[], None]):
        self._cancel = cancel
        self._active = True
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        with self._lock:
            if not self._active:
                return
            self._active = False
        self._cancel()


class JobStore:
    def __init__(self, collection: str):
        self.collection = collection

    def create(self, job: Job) -> Job:
        raise NotImplementedError

    def get(self, job_id: str) -> Optional[Job]:
        raise NotImplementedError

    def update(self, job_id: str, fields: Dict[str, Any]) -> Job:
        raise NotImplementedError

    def subscribe(self, job_id: str, callback: SnapshotCallback) -> Subscription:
        raise NotImplementedError


# ------------------------------------------------------------------------------
# LOCAL JSON FILE
# Used when JOB_STORE_BACKEND="local". One file per collection; subscribers are
# served in-process, so the worker and the watcher must share the instance.
# ------------------------------------------------------------------------------

class LocalJobStore(JobStore):
    def __init__(self, root: Path, collection: str):
        super().__init__(collection)
        self.path = Path(root) / f"{collection}.json"
        self._lock = threading.RLock()
        self._subscribers: Dict[str, List[Tuple[object, SnapshotCallback]]] = {}

    def _read_jobs(self) -> List[Job]:
        """Reads the array of job records from the collection file."""
        try:
            content = self.path.read_text() if self.path.exists() else "[]"
        except OSError as e:
            raise TransientInfraError(f"Could not read {self.path}: {e}") from e
        if not content.strip():
            content = "[]"
        try:
            return [Job.from_record(x) for x in json.loads(content)]
        except (ValueError, TypeError, AttributeError) as e:
            # json.JSONDecodeError and pydantic.ValidationError are both ValueErrors.
            raise TransientInfraError(f"Corrupt job collection {self.path}: {e}") from e

    def _write_jobs(self, jobs: List[Job]) -> None:
        """Writes the job records back, replacing the file atomically."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(".json.tmp")
            tmp.write_text(json.dumps([j.to_record() for j in jobs], indent=2))
            os.replace(tmp, self.path)
        except OSError as e:
            raise TransientInfraError(f"Could not write {self.path}: {e}") from e

    def create(self, job: Job) -> Job:
        with self._lock:
            jobs = self._read_jobs()
            if any(j.id == job.id for j in jobs):
                raise AlreadyExistsError(f"Job {job.id} already exists in {self.collection}")
            jobs.append(job)
            self._write_jobs(jobs)
            self._notify(job.id, job)
        return job

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return next((j for j in self._read_jobs() if j.id == job_id), None)

    def update(self, job_id: str, fields: Dict[str, Any]) -> Job:
        with self._lock:
            jobs = self._read_jobs()
            for i, j in enumerate(jobs):
                if j.id == job_id:
                    break
            else:
                raise JobNotFoundError(f"Job {job_id} not found in {self.collection}")
            try:
                merged = j.merged({**fields, "updated_at": utcnow()})
            except pydantic.ValidationError as e:
                raise JobStoreError(f"Update would leave job {job_id} invalid: {e}") from e
            jobs[i] = merged
            self._write_jobs(jobs)
            self._notify(job_id, merged)
        return merged

    def subscribe(self, job_id: str, callback: SnapshotCallback) -> Subscription:
        token = object()
        with self._lock:
            self._subscribers.setdefault(job_id, []).append((token, callback))
            self._deliver(callback, self.get(job_id))
        return Subscription(lambda: self._remove(job_id, token))

    def _remove(self, job_id: str, token: object) -> None:
        with self._lock:
            remaining = [(t, cb) for t, cb in self._subscribers.get(job_id, []) if t is not token]
            if remaining:
                self._subscribers[job_id] = remaining
            else:
                self._subscribers.pop(job_id, None)

    def _notify(self, job_id: str, job: Job) -> None:
        # Called with the lock held so every subscriber sees writes in order.
        for _, callback in list(self._subscribers.get(job_id, [])):
            self._deliver(callback, job)

    @staticmethod
    def _deliver(callback: SnapshotCallback, job: Optional[Job]) -> None:
        try:
            callback(job.model_copy(deep=True) if job is not None else None)
        except Exception:
            logger.exception("Job subscriber callback raised")


# ------------------------------------------------------------------------------
# FIRESTORE
# Used when JOB_STORE_BACKEND="firestore". Snapshot listeners run on the SDK's
# background thread.
# ------------------------------------------------------------------------------

TIMESTAMP_FIELDS = ("created_at", "updated_at", "worker_started_at", "worker_completed_at")


class FirestoreJobStore(JobStore):
    def __init__(self, collection: str, client=None, project: Optional[str] = None):
        super().__init__(collection)
        if client is None:
            if not firestore:
                raise RuntimeError("google-cloud-firestore library is not installed.")
            client = firestore.Client(project=project)
        self.client = client

    def _doc(self, job_id: str):
        return self.client.collection(self.collection).document(job_id)

    @staticmethod
    def _encode(job: Job) -> Dict[str, Any]:
        record = job.to_record()
        record.pop("id", None)
        for name in TIMESTAMP_FIELDS:
            value = getattr(job, name)
            if value is not None:
                record[Job.model_fields[name].alias] = value
        return record

    @staticmethod
    def _encode_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
        record: Dict[str, Any] = {}
        for name, value in fields.items():
            if name == "params":
                record.update(value)
                continue
            if isinstance(value, Transcript):
                value = value.model_dump(exclude_none=True)
            elif isinstance(value, Enum):
                value = value.value
            record[Job.model_fields[name].alias] = value
        return record

    @staticmethod
    def _decode(snapshot) -> Job:
        return Job.from_record(snapshot.to_dict(), job_id=snapshot.id)

    def create(self, job: Job) -> Job:
        try:
            self._doc(job.id).create(self._encode(job))
        except gcloud_exceptions.AlreadyExists as e:
            raise AlreadyExistsError(f"Job {job.id} already exists in {self.collection}") from e
        except Exception as e:
            raise TransientInfraError(f"Firestore create of job {job.id} failed: {e}") from e
        return job

    def get(self, job_id: str) -> Optional[Job]:
        try:
            snapshot = self._doc(job_id).get()
        except Exception as e:
            raise TransientInfraError(f"Firestore read of job {job_id} failed: {e}") from e
        return self._decode(snapshot) if snapshot.exists else None

    def update(self, job_id: str, fields: Dict[str, Any]) -> Job:
        current = self.get(job_id)
        if current is None:
            raise JobNotFoundError(f"Job {job_id} not found in {self.collection}")
        try:
            current.merged(fields)
        except pydantic.ValidationError as e:
            raise JobStoreError(f"Update would leave job {job_id} invalid: {e}") from e

        record = self._encode_fields(fields)
        record["updatedAt"] = firestore.SERVER_TIMESTAMP
        try:
            self._doc(job_id).update(record)
        except gcloud_exceptions.NotFound as e:
            raise JobNotFoundError(f"Job {job_id} not found in {self.collection}") from e
        except Exception as e:
            raise TransientInfraError(f"Firestore update of job {job_id} failed: {e}") from e

        merged = self.get(job_id)
        if merged is None:
            raise JobNotFoundError(f"Job {job_id} disappeared from {self.collection}")
        return merged

    def subscribe(self, job_id: str, callback: SnapshotCallback) -> Subscription:
        def on_snapshot(doc_snapshots, changes, read_time):
            for snapshot in doc_snapshots:
                try:
                    callback(self._decode(snapshot) if snapshot.exists else None)
                except Exception:
                    logger.exception(f"Job subscriber callback raised for {job_id}")

        watch = self._doc(job_id).on_snapshot(on_snapshot)
        return Subscription(watch.unsubscribe)


def build_job_store(kind: JobKind) -> JobStore:
    """Construct the Job Store for ``kind`` selected by JOB_STORE_BACKEND."""
    collection = config.TRANSCRIPTION_COLLECTION if kind == JobKind.TRANSCRIPTION else config.CLIP_COLLECTION
    if config.JOB_STORE_BACKEND == "local":
        return LocalJobStore(config.LOCAL_JOBS_DIR, collection)
    elif config.JOB_STORE_BACKEND == "firestore":
        return FirestoreJobStore(collection, project=config.FIRESTORE_PROJECT)
    else:
        raise RuntimeError(f"Unsupported JOB_STORE_BACKEND: {config.JOB_STORE_BACKEND}")
