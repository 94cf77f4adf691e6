"""
Worker entry point.

Service handles are built here, from the environment, and passed into the
pipeline explicitly, so tests can hand ``create_app`` a pipeline built from
local stores and stub engines instead.

    python -m worker.worker clip --port 8081
    uvicorn --factory worker.worker:create_transcription_app
"""

import argparse
from datetime import timedelta
from typing import Optional

import uvicorn
from fastapi import FastAPI

from common import config
from common.job_schema import JobKind
from common.job_store import JobStore, build_job_store
from common.logging_config import get_logger, setup_logging
from common.storage import ArtifactStore, build_artifact_store
from worker.app import create_app
from worker.engines import DEFAULT_DEEPGRAM_OPTIONS, DeepgramTranscriptionEngine, EngineAdapter, FFmpegClipEngine
from worker.pipeline import JobPipeline

logger = get_logger(__name__)

KIND_BY_COMMAND = {
    "transcribe": JobKind.TRANSCRIPTION,
    "clip": JobKind.CLIP,
}


def build_engine(kind: JobKind) -> EngineAdapter:
    if kind == JobKind.CLIP:
        return FFmpegClipEngine(config.FFMPEG_BINARY)
    options = {**DEFAULT_DEEPGRAM_OPTIONS, "model": config.DEEPGRAM_MODEL}
    return DeepgramTranscriptionEngine(config.DEEPGRAM_API_KEY, options=options)


def build_pipeline(kind: JobKind, jobs: Optional[JobStore] = None, artifacts: Optional[ArtifactStore] = None) -> JobPipeline:
    """Wire a pipeline from config. Pass ``jobs`` or ``artifacts`` to share existing store instances."""
    budget = config.TRANSCRIPTION_BUDGET_SECONDS if kind == JobKind.TRANSCRIPTION else config.CLIP_BUDGET_SECONDS
    return JobPipeline(
        jobs=jobs if jobs is not None else build_job_store(kind),
        artifacts=artifacts if artifacts is not None else build_artifact_store(),
        engine=build_engine(kind),
        budget=budget,
        scratch_root=config.SCRATCH_ROOT,
        signed_url_ttl=timedelta(seconds=config.SIGNED_URL_TTL_SECONDS),
    )


def create_transcription_app() -> FastAPI:
    setup_logging(config.LOG_LEVEL, config.LOG_FILE)
    return create_app(build_pipeline(JobKind.TRANSCRIPTION))


def create_clip_app() -> FastAPI:
    setup_logging(config.LOG_LEVEL, config.LOG_FILE)
    return create_app(build_pipeline(JobKind.CLIP))


def main(argv=None):
    parser = argparse.ArgumentParser(description="Run a transcription or clipping worker.")
    parser.add_argument("kind", choices=sorted(KIND_BY_COMMAND), help="Which worker to serve")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8080)
    args = parser.parse_args(argv)

    setup_logging(config.LOG_LEVEL, config.LOG_FILE)
    kind = KIND_BY_COMMAND[args.kind]
    logger.info(f"{kind.label} worker starting on {args.host}:{args.port}")
    uvicorn.run(create_app(build_pipeline(kind)), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
