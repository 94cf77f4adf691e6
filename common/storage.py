import re
import shutil
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Callable, Optional

from common import config
from common.errors import TransientInfraError, ValidationError
from common.logging_config import get_logger

# ------------------------------------------------------------------------------
# CONDITIONAL IMPORTS
# Each cloud SDK is only needed by its own backend. A missing SDK is reported
# when that backend is constructed, not at import time.
# ------------------------------------------------------------------------------

try:
    from google.cloud import storage as gcs
except ImportError:
    gcs = None

try:
    from azure.storage.blob import BlobSasPermissions, BlobServiceClient, ContentSettings, generate_blob_sas
except ImportError:
    BlobServiceClient = None

logger = get_logger(__name__)

# scheme://container/path
URI_PATTERN = re.compile(r"^([a-z][a-z0-9+.-]*)://([^/]+)/(.+)$")

CHUNK_SIZE = 1024 * 1024

ProgressCallback = Callable[[int, Optional[int]], None]


@dataclass(frozen=True)
class ArtifactRef:
    scheme: str
    container: str
    path: str

    @property
    def uri(self) -> str:
        return f"{self.scheme}://{self.container}/{self.path}"

    @property
    def name(self) -> str:
        return PurePosixPath(self.path).name


class _ProgressReader:
    """File wrapper reporting (bytes_read, total) to a callback on every read."""

    def __init__(self, fileobj: BinaryIO, total: Optional[int], on_progress: ProgressCallback):
        self._fileobj = fileobj
        self._total = total
        self._sent = 0
        self._on_progress = on_progress

    def read(self, size: int = -1) -> bytes:
        chunk = self._fileobj.read(size)
        if chunk:
            self._sent += len(chunk)
            try:
                self._on_progress(self._sent, self._total)
            except Exception:
                # Progress is UI feedback only; it must never break an upload.
                logger.debug("Upload progress callback raised", exc_info=True)
        return chunk

    def __getattr__(self, name):
        return getattr(self._fileobj, name)


def _stream_size(fileobj: BinaryIO) -> Optional[int]:
    try:
        position = fileobj.tell()
        fileobj.seek(0, 2)
        size = fileobj.tell()
        fileobj.seek(position)
        return size - position
    except (AttributeError, OSError, ValueError):
        return None


# ------------------------------------------------------------------------------
# BASE CLASS
# The worker and the submitter only talk to this interface.
# ------------------------------------------------------------------------------

class ArtifactStore:
    """Object storage addressed by ``scheme://container/path`` URIs."""

    scheme = ""

    def __init__(self, default_container: str):
        self.default_container = default_container

    def uri(self, container: str, path: str) -> str:
        return f"{self.scheme}://{container}/{path}"

    def parse_uri(self, uri: str) -> ArtifactRef:
        """Split a URI into container and path. The container may differ from the default one."""
        match = URI_PATTERN.match(uri or "")
        if not match:
            raise ValidationError(f"Invalid artifact URI format: {uri}. Expected {self.scheme}://CONTAINER/PATH")
        scheme, container, path = match.groups()
        if scheme != self.scheme:
            raise ValidationError(f"Unsupported artifact URI scheme '{scheme}' in {uri}; this store serves {self.scheme}://")
        return ArtifactRef(scheme=scheme, container=container, path=path)

    def download(self, uri: str, dest: Path) -> Path:
        raise NotImplementedError

    def upload_file(self, local_path: Path, path: str, content_type: str, container: Optional[str] = None) -> str:
        with open(local_path, "rb") as data:
            return self.upload_stream(data, path, content_type, container=container)

    def upload_stream(
        self,
        fileobj: BinaryIO,
        path: str,
        content_type: str,
        size: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
        container: Optional[str] = None,
    ) -> str:
        """Stream ``fileobj`` to ``container/path`` and return its canonical URI."""
        container = container or self.default_container
        if on_progress is not None:
            fileobj = _ProgressReader(fileobj, size if size is not None else _stream_size(fileobj), on_progress)
        try:
            self._put(fileobj, container, path, content_type)
        except (TransientInfraError, ValidationError):
            raise
        except Exception as e:
            raise TransientInfraError(f"Upload to {self.uri(container, path)} failed: {e}") from e
        return self.uri(container, path)

    def get_signed_url(self, uri: str, ttl: timedelta) -> str:
        """Time-limited read URL for an artifact."""
        raise NotImplementedError

    def _put(self, fileobj: BinaryIO, container: str, path: str, content_type: str) -> None:
        raise NotImplementedError


# ------------------------------------------------------------------------------
# LOCAL FILESYSTEM
# Used when STORAGE_BACKEND="local". Containers are directories under root.
# ------------------------------------------------------------------------------

class LocalArtifactStore(ArtifactStore):
    def __init__(self, root: Path, default_container: str, scheme: str = "local"):
        super().__init__(default_container)
        self.root = Path(root)
        self.scheme = scheme

    def local_path(self, ref: ArtifactRef) -> Path:
        target = (self.root / ref.container / ref.path).resolve()
        if self.root.resolve() not in target.parents:
            raise ValidationError(f"Artifact path escapes the storage root: {ref.uri}")
        return target

    def download(self, uri: str, dest: Path) -> Path:
        source = self.local_path(self.parse_uri(uri))
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, dest)
        except OSError as e:
            raise TransientInfraError(f"Local download of {uri} failed: {e}") from e
        return dest

    def get_signed_url(self, uri: str, ttl: timedelta) -> str:
        source = self.local_path(self.parse_uri(uri))
        if not source.exists():
            raise TransientInfraError(f"Artifact not found: {uri}")
        expires = int((datetime.now(timezone.utc) + ttl).timestamp())
        return f"{source.as_uri()}?expires={expires}"

    def _put(self, fileobj: BinaryIO, container: str, path: str, content_type: str) -> None:
        dest = self.local_path(ArtifactRef(self.scheme, container, path))
        dest.parent.mkdir(parents=True, exist_ok=True)
        with open(dest, "wb") as out:
            shutil.copyfileobj(fileobj, out, CHUNK_SIZE)


# ------------------------------------------------------------------------------
# GOOGLE CLOUD STORAGE (GCS)
# Used when STORAGE_BACKEND="gcp". URIs look like gs://bucket/path.
# ------------------------------------------------------------------------------

class GCSArtifactStore(ArtifactStore):
    scheme = "gs"

    def __init__(self, default_container: str, client=None):
        super().__init__(default_container)
        if client is None:
            if not gcs:
                raise RuntimeError("google-cloud-storage library is not installed.")
            client = gcs.Client()
        self.client = client

    def _blob(self, ref: ArtifactRef):
        return self.client.bucket(ref.container).blob(ref.path)

    def download(self, uri: str, dest: Path) -> Path:
        ref = self.parse_uri(uri)
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            self._blob(ref).download_to_filename(str(dest))
        except Exception as e:
            raise TransientInfraError(f"GCS download of {uri} failed: {e}") from e
        return dest

    def get_signed_url(self, uri: str, ttl: timedelta) -> str:
        ref = self.parse_uri(uri)
        try:
            return self._blob(ref).generate_signed_url(version="v4", expiration=ttl, method="GET")
        except Exception as e:
            raise TransientInfraError(f"Could not sign URL for {uri}: {e}") from e

    def _put(self, fileobj: BinaryIO, container: str, path: str, content_type: str) -> None:
        blob = self.client.bucket(container).blob(path)
        blob.upload_from_file(fileobj, content_type=content_type)


# ------------------------------------------------------------------------------
# AZURE BLOB STORAGE
# Used when STORAGE_BACKEND="azure". URIs look like az://container/path.
# ------------------------------------------------------------------------------

class AzureArtifactStore(ArtifactStore):
    scheme = "az"

    def __init__(self, default_container: str, connection_string: Optional[str] = None, client=None):
        super().__init__(default_container)
        if client is None:
            if not BlobServiceClient:
                raise RuntimeError("azure-storage-blob library is not installed.")
            if not connection_string:
                raise ValueError("AZURE_STORAGE_CONNECTION_STRING env var is missing.")
            client = BlobServiceClient.from_connection_string(connection_string)
        self.client = client

    def _blob_client(self, ref: ArtifactRef):
        return self.client.get_container_client(ref.container).get_blob_client(ref.path)

    def download(self, uri: str, dest: Path) -> Path:
        ref = self.parse_uri(uri)
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            with open(dest, "wb") as f:
                self._blob_client(ref).download_blob().readinto(f)
        except Exception as e:
            raise TransientInfraError(f"Azure download of {uri} failed: {e}") from e
        return dest

    def get_signed_url(self, uri: str, ttl: timedelta) -> str:
        ref = self.parse_uri(uri)
        try:
            token = generate_blob_sas(
                account_name=self.client.account_name,
                container_name=ref.container,
                blob_name=ref.path,
                account_key=self.client.credential.account_key,
                permission=BlobSasPermissions(read=True),
                expiry=datetime.now(timezone.utc) + ttl,
            )
        except Exception as e:
            raise TransientInfraError(f"Could not sign URL for {uri}: {e}") from e
        return f"{self._blob_client(ref).url}?{token}"

    def _put(self, fileobj: BinaryIO, container: str, path: str, content_type: str) -> None:
        blob_client = self.client.get_container_client(container).get_blob_client(path)
        blob_client.upload_blob(fileobj, overwrite=True, content_settings=ContentSettings(content_type=content_type))


def build_artifact_store() -> ArtifactStore:
    """Construct the Artifact Store selected by STORAGE_BACKEND."""
    if config.STORAGE_BACKEND == "local":
        return LocalArtifactStore(config.LOCAL_STORAGE_ROOT, config.DEFAULT_CONTAINER, scheme=config.LOCAL_ARTIFACT_SCHEME)
    elif config.STORAGE_BACKEND == "gcp":
        if not config.GCS_BUCKET and config.DEFAULT_CONTAINER == "default":
            raise ValueError("GCS_BUCKET is required for GCP backend")
        return GCSArtifactStore(config.DEFAULT_CONTAINER)
    elif config.STORAGE_BACKEND == "azure":
        if not config.AZURE_CONTAINER and config.DEFAULT_CONTAINER == "default":
            raise ValueError("AZURE_CONTAINER env var is required for Azure backend")
        return AzureArtifactStore(config.DEFAULT_CONTAINER, connection_string=config.AZURE_CONN_STR)
    else:
        raise RuntimeError(f"Unsupported STORAGE_BACKEND: {config.STORAGE_BACKEND}")
