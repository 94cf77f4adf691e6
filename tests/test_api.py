import json
import time

import httpx
import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from client.submitter import JobSubmitter
from common.job_schema import JobKind, JobStatus
from common.job_store import LocalJobStore
from worker.app import create_app as create_worker_app
from worker.pipeline import JobPipeline

from conftest import put_artifact
from test_pipeline import StubClipEngine, StubTranscriptionEngine


@pytest.fixture
def api(tmp_path, artifacts, clip_jobs, transcription_jobs, scratch_root):
    engines = {JobKind.CLIP: StubClipEngine(), JobKind.TRANSCRIPTION: StubTranscriptionEngine()}
    stores = {JobKind.CLIP: clip_jobs, JobKind.TRANSCRIPTION: transcription_jobs}
    submitters = {}
    for kind, store in stores.items():
        pipeline = JobPipeline(jobs=store, artifacts=artifacts, engine=engines[kind], budget=5, scratch_root=scratch_root)
        transport = httpx.ASGITransport(app=create_worker_app(pipeline))
        submitters[kind] = JobSubmitter(kind, store, artifacts, "http://worker/", transport=transport)

    # The context manager keeps one event loop alive so background triggers finish.
    with TestClient(create_app(submitters, stores)) as client:
        yield client


def wait_for_terminal(store: LocalJobStore, job_id: str, timeout: float = 5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        job = store.get(job_id)
        if job is not None and job.status.is_terminal:
            return job
        time.sleep(0.05)
    raise AssertionError(f"job {job_id} did not finish")


def test_clip_submission_runs_to_completion(api, artifacts, clip_jobs):
    put_artifact(artifacts, "store://bucket1/video.mp4", b"source-video")

    resp = api.post("/jobs/clips", json={"inputUri": "store://bucket1/video.mp4", "startTime": 10, "endTime": 20})

    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "PENDING"
    job = wait_for_terminal(clip_jobs, data["jobId"])
    assert job.status == JobStatus.COMPLETED

    record = api.get(f"/jobs/clips/{data['jobId']}").json()
    assert record["status"] == "COMPLETED"
    assert record["outputUri"] == f"store://defaultBucket/clips/{data['jobId']}/clip_video.mp4"
    assert record["startTime"] == 10


@pytest.mark.parametrize("start, end", [(10, 5), (-1, 5)])
def test_invalid_clip_is_a_400_and_writes_nothing(api, clip_jobs, start, end):
    resp = api.post("/jobs/clips", json={"inputUri": "store://bucket1/video.mp4", "startTime": start, "endTime": end})
    assert resp.status_code == 400
    assert "Start time" in resp.json()["detail"]
    assert not clip_jobs.path.exists()


def test_clip_without_input_is_a_400(api):
    resp = api.post("/jobs/clips", json={"startTime": 1, "endTime": 2})
    assert resp.status_code == 400


def test_transcription_upload_runs_to_completion(api, transcription_jobs):
    resp = api.post("/jobs/transcriptions", files={"file": ("talk.mp4", b"audio-bytes", "video/mp4")})

    assert resp.status_code == 200
    data = resp.json()
    assert data["inputUri"].startswith("store://defaultBucket/videos/")
    assert data["inputUri"].endswith("-talk.mp4")
    job = wait_for_terminal(transcription_jobs, data["jobId"])
    assert job.status == JobStatus.COMPLETED
    assert job.transcript.words[0].text == "hello"


def test_unknown_job_and_kind_are_404(api):
    assert api.get("/jobs/clips/nope").status_code == 404
    assert api.get("/jobs/renders/nope").status_code == 404
    assert api.get("/jobs/clips/nope/events").status_code == 404


def test_event_stream_ends_after_terminal_event(api, artifacts, clip_jobs):
    put_artifact(artifacts, "store://bucket1/video.mp4", b"source-video")
    job_id = api.post("/jobs/clips", json={"inputUri": "store://bucket1/video.mp4", "startTime": 1, "endTime": 2}).json()["jobId"]
    wait_for_terminal(clip_jobs, job_id)

    resp = api.get(f"/jobs/clips/{job_id}/events")

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    events = [json.loads(line[len("data: "):]) for line in resp.text.splitlines() if line.startswith("data: ")]
    assert events[-1]["status"] == "COMPLETED"
    assert events[-1]["outputUri"] == f"store://defaultBucket/clips/{job_id}/clip_video.mp4"
