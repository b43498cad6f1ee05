"""Blob storage adapters and factory.

``local`` keeps media on the filesystem (development, tests); ``minio``
talks to any S3-compatible service through the MinIO client.
"""

import mimetypes
from pathlib import Path, PurePosixPath
from typing import cast

from src.config.logging_config import get_logger
from src.config.settings import Settings
from src.domain.exceptions import BlobStoreError, NotFoundError, ValidationError
from src.domain.models import BlobObject
from src.domain.protocols import BlobStoreProtocol

logger = get_logger(__name__)


def _safe_relative_path(key: str) -> PurePosixPath:
    path = PurePosixPath(key)
    if not key or path.is_absolute() or ".." in path.parts:
        raise ValidationError(f"Invalid blob key: {key!r}")
    return path


class LocalBlobStore:
    """Filesystem-backed blob store; keys map to paths under ``root``."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        return self.root.joinpath(*_safe_relative_path(key).parts)

    def put(self, key: str, data: bytes, content_type: str) -> None:
        path = self._path_for(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            raise BlobStoreError(f"Upload of {key} failed: {exc}") from exc
        logger.debug("blob_stored", key=key, size=len(data), content_type=content_type)

    def get(self, key: str) -> BlobObject:
        path = self._path_for(key)
        if not path.is_file():
            raise NotFoundError(f"Blob {key} not found")
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise BlobStoreError(f"Download of {key} failed: {exc}") from exc
        content_type, _ = mimetypes.guess_type(path.name)
        return BlobObject(
            key=key,
            data=data,
            content_type=content_type or "application/octet-stream",
        )

    def delete(self, key: str) -> None:
        path = self._path_for(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise BlobStoreError(f"Delete of {key} failed: {exc}") from exc


def create_blob_store(settings: Settings) -> BlobStoreProtocol:
    """Create the blob store selected by ``settings.blob_backend``.

    Raises:
        ValueError: If the backend is not supported
    """
    if settings.blob_backend == "local":
        logger.info("blob_store_local_selected", root=settings.blob_local_dir)
        return cast(BlobStoreProtocol, LocalBlobStore(settings.blob_local_dir))

    if settings.blob_backend == "minio":
        # Imported here so deployments on the local backend never load minio.
        from src.adapters.minio_blob_store import MinioBlobStore

        logger.info(
            "blob_store_minio_selected",
            endpoint=settings.blob_endpoint,
            bucket=settings.blob_bucket,
        )
        return cast(
            BlobStoreProtocol,
            MinioBlobStore(
                endpoint=settings.blob_endpoint,
                access_key=settings.blob_access_key,
                secret_key=(
                    settings.blob_secret_key.get_secret_value()
                    if settings.blob_secret_key
                    else None
                ),
                bucket=settings.blob_bucket,
                secure=settings.blob_secure,
            ),
        )

    raise ValueError(f"Unsupported blob backend: {settings.blob_backend}")
