import os
import tempfile
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

# Storage mode: local / gcp / azure
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "local")

# Job record mode: local / firestore
JOB_STORE_BACKEND = os.getenv("JOB_STORE_BACKEND", "local")

GCS_BUCKET = os.getenv("GCS_BUCKET")
AZURE_CONN_STR = os.getenv("AZURE_STORAGE_CONNECTION_STRING")
AZURE_CONTAINER = os.getenv("AZURE_CONTAINER")

# Container that receives uploads and published outputs. Inputs may live elsewhere.
DEFAULT_CONTAINER = os.getenv("DEFAULT_CONTAINER") or GCS_BUCKET or AZURE_CONTAINER or "default"

LOCAL_STORAGE_ROOT = Path(os.getenv("LOCAL_STORAGE_ROOT", str(BASE_DIR / "data" / "artifacts")))
LOCAL_ARTIFACT_SCHEME = os.getenv("LOCAL_ARTIFACT_SCHEME", "local")
LOCAL_JOBS_DIR = Path(os.getenv("LOCAL_JOBS_DIR", str(BASE_DIR / "data" / "jobs")))

FIRESTORE_PROJECT = os.getenv("FIRESTORE_PROJECT")
TRANSCRIPTION_COLLECTION = os.getenv("TRANSCRIPTION_COLLECTION", "transcriptionJobs")
CLIP_COLLECTION = os.getenv("CLIP_COLLECTION", "clippingJobs")

DEEPGRAM_API_KEY = os.getenv("DEEPGRAM_API_KEY")
DEEPGRAM_MODEL = os.getenv("DEEPGRAM_MODEL", "nova-2")
FFMPEG_BINARY = os.getenv("FFMPEG_BINARY", "ffmpeg")

# Engine budgets in seconds. Both stay under the hosting platform's request limit.
TRANSCRIPTION_BUDGET_SECONDS = float(os.getenv("TRANSCRIPTION_BUDGET_SECONDS", "540"))
CLIP_BUDGET_SECONDS = float(os.getenv("CLIP_BUDGET_SECONDS", "450"))

SIGNED_URL_TTL_SECONDS = int(os.getenv("SIGNED_URL_TTL_SECONDS", "900"))
SCRATCH_ROOT = Path(os.getenv("SCRATCH_ROOT", tempfile.gettempdir()))

TRANSCRIPTION_WORKER_URL = os.getenv("TRANSCRIPTION_WORKER_URL")
CLIP_WORKER_URL = os.getenv("CLIP_WORKER_URL")

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE")
