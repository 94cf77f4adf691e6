"""Pytest configuration and shared fixtures."""

from pathlib import Path

import pytest

from common.job_schema import Job, JobKind, JobStatus
from common.job_store import LocalJobStore
from common.storage import LocalArtifactStore


@pytest.fixture
def artifacts(tmp_path: Path) -> LocalArtifactStore:
    """Artifact store rooted in tmp_path that serves store://CONTAINER/PATH."""
    return LocalArtifactStore(tmp_path / "artifacts", default_container="defaultBucket", scheme="store")


@pytest.fixture
def clip_jobs(tmp_path: Path) -> LocalJobStore:
    return LocalJobStore(tmp_path / "jobs", "clippingJobs")


@pytest.fixture
def transcription_jobs(tmp_path: Path) -> LocalJobStore:
    return LocalJobStore(tmp_path / "jobs", "transcriptionJobs")


@pytest.fixture
def scratch_root(tmp_path: Path) -> Path:
    root = tmp_path / "scratch"
    root.mkdir()
    return root


def put_artifact(artifacts: LocalArtifactStore, uri: str, data: bytes) -> Path:
    path = artifacts.local_path(artifacts.parse_uri(uri))
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


def pending_job(job_id: str, kind: JobKind, input_uri: str, **params) -> Job:
    return Job(id=job_id, kind=kind, status=JobStatus.PENDING, input_uri=input_uri, params=params)
