import json

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from common import config
from common.errors import ValidationError
from common.logging_config import get_logger
from common.payloads import validate_request
from worker.pipeline import JobPipeline

logger = get_logger(__name__)


def create_app(pipeline: JobPipeline) -> FastAPI:
    """HTTP trigger for one worker kind. Only ``POST /`` is routed; other methods get 405."""
    app = FastAPI(title=f"{pipeline.kind.label} Worker")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_methods=["POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.post("/")
    async def trigger(request: Request):
        raw = await request.body()
        try:
            body = json.loads(raw or b"null")
        except ValueError:
            return PlainTextResponse("Request body is not valid JSON.", status_code=400)

        try:
            job_request = validate_request(pipeline.kind, body)
        except ValidationError as e:
            logger.warning(f"Rejected {pipeline.kind.label.lower()} trigger: {e}")
            return PlainTextResponse(str(e), status_code=400)

        job_id = job_request.job_id
        logger.info(f"[{job_id}] Received {pipeline.kind.label.lower()} request for {job_request.input_uri}")
        outcome = await pipeline.process(job_request)
        if outcome.succeeded:
            return {"success": True, "message": f"Job {job_id} processed."}
        return JSONResponse(
            status_code=outcome.http_status,
            content={"success": False, "error": f"Failed to process job {job_id}: {outcome.error}"},
        )

    return app
