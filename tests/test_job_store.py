from datetime import datetime, timezone

import pytest
from google.api_core import exceptions as gcloud_exceptions
from google.cloud import firestore

from common.errors import AlreadyExistsError, JobNotFoundError, JobStoreError, TransientInfraError
from common.job_schema import JobKind, JobStatus
from common.job_store import FirestoreJobStore, LocalJobStore

from conftest import pending_job


def test_create_and_get(clip_jobs):
    clip_jobs.create(pending_job("job-1", JobKind.CLIP, "store://b/v.mp4", startTime=1.0, endTime=2.0))
    job = clip_jobs.get("job-1")
    assert job.status == JobStatus.PENDING
    assert job.params["startTime"] == 1.0
    assert clip_jobs.get("missing") is None


def test_create_refuses_existing_id(clip_jobs):
    clip_jobs.create(pending_job("job-1", JobKind.CLIP, "store://b/v.mp4"))
    with pytest.raises(AlreadyExistsError):
        clip_jobs.create(pending_job("job-1", JobKind.CLIP, "store://b/other.mp4"))


def test_update_merges_fields_and_reads_back(clip_jobs):
    created = clip_jobs.create(pending_job("job-1", JobKind.CLIP, "store://b/v.mp4", startTime=1.0))
    updated = clip_jobs.update("job-1", {"status": JobStatus.PROCESSING})
    assert updated.status == JobStatus.PROCESSING
    assert updated.params == {"startTime": 1.0}
    assert updated.updated_at >= created.updated_at

    stored = clip_jobs.get("job-1")
    assert stored.status == JobStatus.PROCESSING


def test_update_of_missing_job(clip_jobs):
    with pytest.raises(JobNotFoundError):
        clip_jobs.update("nope", {"status": JobStatus.PROCESSING})


def test_update_that_breaks_invariants_is_refused(clip_jobs):
    clip_jobs.create(pending_job("job-1", JobKind.CLIP, "store://b/v.mp4"))
    with pytest.raises(JobStoreError):
        clip_jobs.update("job-1", {"status": JobStatus.COMPLETED})
    assert clip_jobs.get("job-1").status == JobStatus.PENDING


def test_collections_are_separate(tmp_path):
    clips = LocalJobStore(tmp_path, "clippingJobs")
    transcriptions = LocalJobStore(tmp_path, "transcriptionJobs")
    clips.create(pending_job("same-id", JobKind.CLIP, "store://b/v.mp4"))
    assert transcriptions.get("same-id") is None


def test_subscribe_delivers_current_snapshot_then_each_change(clip_jobs):
    clip_jobs.create(pending_job("job-1", JobKind.CLIP, "store://b/v.mp4"))
    seen = []
    subscription = clip_jobs.subscribe("job-1", lambda job: seen.append(job.status))

    clip_jobs.update("job-1", {"status": JobStatus.PROCESSING})
    clip_jobs.update("job-1", {"status": JobStatus.FAILED, "error": "boom"})
    assert seen == [JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.FAILED]

    subscription.unsubscribe()
    subscription.unsubscribe()
    assert not subscription.active


def test_unsubscribed_callbacks_stop_receiving(clip_jobs):
    clip_jobs.create(pending_job("job-1", JobKind.CLIP, "store://b/v.mp4"))
    seen = []
    subscription = clip_jobs.subscribe("job-1", seen.append)
    subscription.unsubscribe()
    clip_jobs.update("job-1", {"status": JobStatus.PROCESSING})
    assert len(seen) == 1


def test_subscribe_to_missing_job_delivers_none(clip_jobs):
    seen = []
    clip_jobs.subscribe("later", seen.append)
    assert seen == [None]
    clip_jobs.create(pending_job("later", JobKind.CLIP, "store://b/v.mp4"))
    assert seen[-1].id == "later"


def test_a_raising_subscriber_does_not_break_writes(clip_jobs):
    clip_jobs.create(pending_job("job-1", JobKind.CLIP, "store://b/v.mp4"))

    def broken(job):
        raise RuntimeError("listener bug")

    clip_jobs.subscribe("job-1", broken)
    assert clip_jobs.update("job-1", {"status": JobStatus.PROCESSING}).status == JobStatus.PROCESSING


def test_firestore_field_encoding_uses_record_names():
    record = FirestoreJobStore._encode_fields(
        {"status": JobStatus.PROCESSING, "worker_started_at": "now", "params": {"startTime": 3.0}}
    )
    assert record == {"status": "PROCESSING", "workerStartedAt": "now", "startTime": 3.0}


@pytest.mark.parametrize("content", ["{not json", '[{"id": "job-1", "status": "SHIPPED"}]', '{"id": "job-1"}'])
def test_corrupt_collection_file_is_a_store_error(clip_jobs, content):
    clip_jobs.path.parent.mkdir(parents=True, exist_ok=True)
    clip_jobs.path.write_text(content)
    with pytest.raises(TransientInfraError):
        clip_jobs.get("job-1")


SERVER_NOW = datetime(2030, 1, 1, tzinfo=timezone.utc)


class FakeSnapshot:
    def __init__(self, doc_id, data):
        self.id = doc_id
        self.exists = data is not None
        self._data = dict(data) if data is not None else None

    def to_dict(self):
        return dict(self._data) if self._data is not None else None


class FakeWatch:
    def __init__(self):
        self.unsubscribed = False

    def unsubscribe(self):
        self.unsubscribed = True


class FakeDocument:
    def __init__(self, client, doc_id):
        self.client = client
        self.docs = client.docs
        self.id = doc_id

    def create(self, data):
        if self.id in self.docs:
            raise gcloud_exceptions.AlreadyExists(f"Document already exists: {self.id}")
        self.docs[self.id] = dict(data)

    def get(self):
        return FakeSnapshot(self.id, self.docs.get(self.id))

    def update(self, data):
        if self.client.fail_updates_with:
            raise self.client.fail_updates_with
        if self.id not in self.docs:
            raise gcloud_exceptions.NotFound(f"No document to update: {self.id}")
        self.docs[self.id].update(
            {k: SERVER_NOW if v is firestore.SERVER_TIMESTAMP else v for k, v in data.items()}
        )
        self.client.server_stamped.extend(k for k, v in data.items() if v is firestore.SERVER_TIMESTAMP)

    def on_snapshot(self, callback):
        self.watch = FakeWatch()
        callback([self.get()], [], None)
        return self.watch


class FakeCollection:
    def __init__(self, client):
        self.client = client

    def document(self, doc_id):
        document = FakeDocument(self.client, doc_id)
        self.client.documents.append(document)
        return document


class FakeFirestoreClient:
    def __init__(self, fail_updates_with=None):
        self.docs = {}
        self.documents = []
        self.server_stamped = []
        self.collections = []
        self.fail_updates_with = fail_updates_with

    def collection(self, name):
        self.collections.append(name)
        return FakeCollection(self)


def test_firestore_create_stores_record_without_id_and_refuses_duplicates():
    client = FakeFirestoreClient()
    jobs = FirestoreJobStore("clippingJobs", client=client)

    jobs.create(pending_job("job-1", JobKind.CLIP, "gs://b/v.mp4", startTime=1.0))

    assert client.collections == ["clippingJobs"]
    record = client.docs["job-1"]
    assert "id" not in record
    assert record["status"] == "PENDING"
    assert record["startTime"] == 1.0
    assert isinstance(record["createdAt"], datetime)
    with pytest.raises(AlreadyExistsError):
        jobs.create(pending_job("job-1", JobKind.CLIP, "gs://b/other.mp4"))


def test_firestore_get_decodes_snapshot_with_document_id():
    client = FakeFirestoreClient()
    client.docs["job-1"] = {
        "kind": "CLIP",
        "status": "COMPLETED",
        "inputUri": "gs://b/v.mp4",
        "outputUri": "gs://b/clips/job-1/clip_v.mp4",
        "startTime": 10.0,
        "createdAt": SERVER_NOW,
        "updatedAt": SERVER_NOW,
    }
    jobs = FirestoreJobStore("clippingJobs", client=client)

    job = jobs.get("job-1")

    assert job.id == "job-1"
    assert job.status == JobStatus.COMPLETED
    assert job.output_uri == "gs://b/clips/job-1/clip_v.mp4"
    assert job.params == {"startTime": 10.0}
    assert jobs.get("missing") is None


def test_firestore_update_stamps_server_time():
    client = FakeFirestoreClient()
    jobs = FirestoreJobStore("clippingJobs", client=client)
    jobs.create(pending_job("job-1", JobKind.CLIP, "gs://b/v.mp4"))

    updated = jobs.update("job-1", {"status": JobStatus.PROCESSING})

    assert client.server_stamped == ["updatedAt"]
    assert updated.status == JobStatus.PROCESSING
    assert updated.updated_at == SERVER_NOW


def test_firestore_update_of_missing_job():
    jobs = FirestoreJobStore("clippingJobs", client=FakeFirestoreClient())
    with pytest.raises(JobNotFoundError):
        jobs.update("nope", {"status": JobStatus.PROCESSING})


def test_firestore_update_racing_a_delete_is_not_found():
    client = FakeFirestoreClient(fail_updates_with=gcloud_exceptions.NotFound("gone"))
    jobs = FirestoreJobStore("clippingJobs", client=client)
    jobs.create(pending_job("job-1", JobKind.CLIP, "gs://b/v.mp4"))
    with pytest.raises(JobNotFoundError):
        jobs.update("job-1", {"status": JobStatus.PROCESSING})


def test_firestore_sdk_failure_is_transient():
    client = FakeFirestoreClient(fail_updates_with=gcloud_exceptions.ServiceUnavailable("try later"))
    jobs = FirestoreJobStore("clippingJobs", client=client)
    jobs.create(pending_job("job-1", JobKind.CLIP, "gs://b/v.mp4"))
    with pytest.raises(TransientInfraError):
        jobs.update("job-1", {"status": JobStatus.PROCESSING})


def test_firestore_update_that_breaks_invariants_is_refused():
    client = FakeFirestoreClient()
    jobs = FirestoreJobStore("clippingJobs", client=client)
    jobs.create(pending_job("job-1", JobKind.CLIP, "gs://b/v.mp4"))
    with pytest.raises(JobStoreError):
        jobs.update("job-1", {"status": JobStatus.COMPLETED})
    assert client.docs["job-1"]["status"] == "PENDING"


def test_firestore_subscribe_decodes_snapshots_and_unsubscribes():
    client = FakeFirestoreClient()
    jobs = FirestoreJobStore("transcriptionJobs", client=client)
    jobs.create(pending_job("t-1", JobKind.TRANSCRIPTION, "gs://b/a.wav"))
    seen = []

    subscription = jobs.subscribe("t-1", seen.append)
    jobs.subscribe("missing", seen.append)

    assert seen[0].id == "t-1"
    assert seen[0].status == JobStatus.PENDING
    assert seen[1] is None
    watch = next(d.watch for d in client.documents if d.id == "t-1" and hasattr(d, "watch"))
    subscription.unsubscribe()
    assert watch.unsubscribed
