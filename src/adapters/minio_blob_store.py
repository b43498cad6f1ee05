"""MinIO (S3-compatible) blob store."""

from io import BytesIO

from minio import Minio
from minio.error import S3Error
from urllib3.exceptions import HTTPError

from src.config.logging_config import get_logger
from src.domain.exceptions import BlobStoreError, NotFoundError
from src.domain.models import BlobObject

logger = get_logger(__name__)

_MISSING_OBJECT_CODES = frozenset({"NoSuchKey", "NoSuchObject", "NoSuchBucket"})


class MinioBlobStore:
    """Stores media objects in a MinIO bucket."""

    def __init__(
        self,
        endpoint: str,
        access_key: str | None,
        secret_key: str | None,
        bucket: str,
        *,
        secure: bool = False,
        client: Minio | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            endpoint: Host and port, with or without a scheme
            access_key: Access key id
            secret_key: Secret key
            bucket: Bucket holding the media
            secure: Use TLS
            client: Pre-built client (tests)
        """
        host = endpoint.replace("http://", "").replace("https://", "")
        self.client = client or Minio(
            host,
            access_key=access_key,
            secret_key=secret_key,
            secure=secure,
        )
        self.bucket = bucket
        self._bucket_checked = False

    def ensure_bucket(self) -> None:
        """Create the bucket on first use."""
        if self._bucket_checked:
            return
        try:
            if not self.client.bucket_exists(self.bucket):
                self.client.make_bucket(self.bucket)
                logger.info("blob_bucket_created", bucket=self.bucket)
        except (S3Error, HTTPError) as exc:
            raise BlobStoreError(f"Cannot prepare bucket {self.bucket}: {exc}") from exc
        self._bucket_checked = True

    def put(self, key: str, data: bytes, content_type: str) -> None:
        self.ensure_bucket()
        try:
            self.client.put_object(
                self.bucket,
                key,
                BytesIO(data),
                len(data),
                content_type=content_type,
            )
        except (S3Error, HTTPError) as exc:
            raise BlobStoreError(f"Upload of {key} failed: {exc}") from exc
        logger.debug("blob_stored", key=key, size=len(data))

    def get(self, key: str) -> BlobObject:
        response = None
        try:
            response = self.client.get_object(self.bucket, key)
            data = response.read()
            content_type = response.headers.get(
                "Content-Type", "application/octet-stream"
            )
        except S3Error as exc:
            if exc.code in _MISSING_OBJECT_CODES:
                raise NotFoundError(f"Blob {key} not found") from exc
            raise BlobStoreError(f"Download of {key} failed: {exc}") from exc
        except HTTPError as exc:
            raise BlobStoreError(f"Download of {key} failed: {exc}") from exc
        finally:
            if response is not None:
                response.close()
                response.release_conn()
        return BlobObject(key=key, data=data, content_type=content_type)

    def delete(self, key: str) -> None:
        try:
            self.client.remove_object(self.bucket, key)
        except (S3Error, HTTPError) as exc:
            raise BlobStoreError(f"Delete of {key} failed: {exc}") from exc
