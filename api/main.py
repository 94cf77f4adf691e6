"""
Client-facing API: submit transcription and clip jobs and follow their progress.

    uvicorn --factory api.main:build_app

When TRANSCRIPTION_WORKER_URL / CLIP_WORKER_URL are unset, the matching worker
is mounted in-process over an ASGI transport and shares this process's job
store, which is what the local backends need for push updates.
"""

import asyncio
import json
from typing import Any, Dict, Optional

import httpx
from fastapi import Body, FastAPI, File, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from client.submitter import JobSubmitter
from client.watcher import JobWatcher
from common import config
from common.errors import PipelineError
from common.job_schema import Job, JobKind
from common.job_store import JobStore, build_job_store
from common.logging_config import get_logger, setup_logging
from common.storage import ArtifactStore, build_artifact_store
from worker.app import create_app as create_worker_app
from worker.worker import build_pipeline

logger = get_logger(__name__)

KIND_BY_SEGMENT = {
    "transcriptions": JobKind.TRANSCRIPTION,
    "clips": JobKind.CLIP,
}

CLIP_PARAM_KEYS = ("startTime", "endTime", "outputFormat")

IN_PROCESS_WORKER_URL = "http://worker/"


def _summary(job: Job) -> Dict[str, Any]:
    return {"jobId": job.id, "status": job.status.value, "inputUri": job.input_uri}


def create_app(submitters: Dict[JobKind, JobSubmitter], stores: Dict[JobKind, JobStore]) -> FastAPI:
    watchers = {kind: JobWatcher(store) for kind, store in stores.items()}

    app = FastAPI(title="Video Jobs API")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def resolve_kind(segment: str) -> JobKind:
        kind = KIND_BY_SEGMENT.get(segment)
        if kind is None or kind not in stores:
            raise HTTPException(status_code=404, detail=f"Unknown job kind: {segment}")
        return kind

    async def load_job(kind: JobKind, job_id: str) -> Job:
        try:
            job = await asyncio.to_thread(stores[kind].get, job_id)
        except PipelineError as e:
            raise HTTPException(status_code=503, detail=str(e))
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return job

    # ---------- Submission ----------

    @app.post("/jobs/transcriptions")
    async def create_transcription(file: UploadFile = File(...)):
        submitter = submitters[JobKind.TRANSCRIPTION]
        try:
            job = await submitter.submit_file(file.file, file.filename or "upload", content_type=file.content_type)
        except PipelineError as e:
            raise HTTPException(status_code=e.http_status, detail=str(e))
        return _summary(job)

    @app.post("/jobs/clips")
    async def create_clip(body: Dict[str, Any] = Body(...)):
        submitter = submitters[JobKind.CLIP]
        input_uri = body.get("inputUri") or body.get("gcsUri")
        params = {key: body[key] for key in CLIP_PARAM_KEYS if key in body}
        try:
            job = await submitter.submit(input_uri, params)
        except PipelineError as e:
            raise HTTPException(status_code=e.http_status, detail=str(e))
        return _summary(job)

    # ---------- Progress ----------

    @app.get("/jobs/{kind}/{job_id}")
    async def read_job(kind: str, job_id: str):
        job = await load_job(resolve_kind(kind), job_id)
        return job.to_record()

    @app.get("/jobs/{kind}/{job_id}/events")
    async def job_events(kind: str, job_id: str):
        job_kind = resolve_kind(kind)
        await load_job(job_kind, job_id)

        async def event_stream():
            async for event in watchers[job_kind].events(job_id):
                yield f"data: {json.dumps(event.to_dict())}\n\n"

        return StreamingResponse(event_stream(), media_type="text/event-stream")

    return app


def _in_process_worker(kind: JobKind, jobs: JobStore, artifacts: ArtifactStore) -> Optional[httpx.ASGITransport]:
    try:
        pipeline = build_pipeline(kind, jobs=jobs, artifacts=artifacts)
    except ValueError as e:
        logger.warning(f"{kind.label} worker unavailable in-process: {e}")
        return None
    logger.info(f"No {kind.label.lower()} worker URL set; serving the worker in-process")
    return httpx.ASGITransport(app=create_worker_app(pipeline))


def build_app() -> FastAPI:
    """Wire the API from the environment."""
    setup_logging(config.LOG_LEVEL, config.LOG_FILE)
    artifacts = build_artifact_store()
    worker_urls = {
        JobKind.TRANSCRIPTION: config.TRANSCRIPTION_WORKER_URL,
        JobKind.CLIP: config.CLIP_WORKER_URL,
    }

    stores: Dict[JobKind, JobStore] = {}
    submitters: Dict[JobKind, JobSubmitter] = {}
    for kind, worker_url in worker_urls.items():
        stores[kind] = build_job_store(kind)
        transport = None
        if not worker_url:
            transport = _in_process_worker(kind, stores[kind], artifacts)
            worker_url = IN_PROCESS_WORKER_URL if transport is not None else None
        submitters[kind] = JobSubmitter(kind, stores[kind], artifacts, worker_url=worker_url, transport=transport)
    return create_app(submitters, stores)
