"""
MinIO Storage Service.

Provides the object storage operations archive builds rely on, using the
MinIO S3-compatible API, plus thin adapters that expose them through the
ObjectSource / DurableStorage contracts:

- MinIOObjectSource reads source objects from the assets bucket
- MinIOArchiveStore writes finished archives to the archives bucket
"""

import logging
from functools import lru_cache
from io import BytesIO
from typing import BinaryIO, Dict, List, Optional, Tuple

from minio import Minio
from minio.commonconfig import ENABLED, Filter
from minio.error import S3Error
from minio.lifecycleconfig import Expiration, LifecycleConfig, Rule
from urllib3.exceptions import HTTPError

from archivist.config import settings

from .object_source import (
    ObjectNotFoundError,
    ObjectPermissionError,
    ObjectReadError,
    ObjectSourceError,
)

logger = logging.getLogger("archivist.minio")

# S3 error codes that mean the caller lacks rights on the key or bucket
PERMISSION_ERROR_CODES = {
    "AccessDenied",
    "AllAccessDisabled",
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
}
NOT_FOUND_ERROR_CODES = {"NoSuchKey", "NoSuchBucket"}


def translate_s3_error(error: S3Error, key: str) -> ObjectSourceError:
    """Map a MinIO S3Error onto the ObjectSourceError hierarchy."""
    if error.code in PERMISSION_ERROR_CODES:
        return ObjectPermissionError(f"Permission denied reading {key}: {error.code}", key=key)
    if error.code in NOT_FOUND_ERROR_CODES:
        return ObjectNotFoundError(f"Failed to read {key}: {error.code}", key=key)
    return ObjectReadError(f"GetObject failed for {key}: {error.code} {error.message}", key=key)


def translate_transport_error(error: HTTPError, key: str) -> ObjectReadError:
    """Map a urllib3 transport failure (MaxRetryError, ProtocolError, ...) onto a read error."""
    return ObjectReadError(f"Failed to read {key}: {type(error).__name__}: {error}", key=key)


class MinIOService:
    """
    MinIO storage service implementation.

    Provides S3-compatible object storage operations including:
    - Object read/write/delete
    - Bucket management
    - Lifecycle policy configuration

    Configuration comes from environment variables via ``settings``.
    """

    def __init__(self):
        self._client: Optional[Minio] = None
        self.endpoint = settings.minio_endpoint
        self.access_key = settings.minio_access_key
        self.secret_key = settings.minio_secret_key
        self.secure = settings.minio_secure
        self.bucket_assets = settings.minio_bucket_assets
        self.bucket_archives = settings.minio_bucket_archives

    @property
    def client(self) -> Minio:
        """Get or create MinIO client (lazy initialization)."""
        if self._client is None:
            self._client = Minio(
                endpoint=self.endpoint,
                access_key=self.access_key,
                secret_key=self.secret_key,
                secure=self.secure,
            )
            logger.info(
                f"MinIO client initialized (endpoint={self.endpoint}, "
                f"secure={self.secure})"
            )
        return self._client

    # =========================================================================
    # HEALTH CHECK
    # =========================================================================

    def check_health(self) -> Tuple[bool, Optional[List[str]], Optional[str]]:
        """
        Check MinIO connection health.

        Returns:
            Tuple of (connected, buckets list, error message)
        """
        try:
            buckets = self.client.list_buckets()
            return True, [b.name for b in buckets], None
        except Exception as e:
            logger.error(f"MinIO health check failed: {e}")
            return False, None, str(e)

    # =========================================================================
    # BUCKET OPERATIONS
    # =========================================================================

    def ensure_bucket(self, bucket: str) -> bool:
        """
        Create bucket if it doesn't exist.

        Returns:
            True if bucket was created, False if it already existed
        """
        try:
            if not self.client.bucket_exists(bucket):
                self.client.make_bucket(bucket)
                logger.info(f"Created bucket: {bucket}")
                return True
            logger.debug(f"Bucket already exists: {bucket}")
            return False
        except S3Error as e:
            logger.error(f"Failed to create bucket {bucket}: {e}")
            raise

    def set_lifecycle_policy(self, bucket: str, expiration_days: int, prefix: str = "") -> bool:
        """
        Set a simple expiration policy on a bucket.

        Args:
            bucket: Bucket name
            expiration_days: Number of days before objects expire
            prefix: Optional prefix to apply the policy to (default: all objects)
        """
        try:
            rule = Rule(
                ENABLED,
                rule_filter=Filter(prefix=prefix),
                rule_id=f"expire-after-{expiration_days}-days",
                expiration=Expiration(days=expiration_days),
            )
            self.client.set_bucket_lifecycle(bucket, LifecycleConfig([rule]))
            logger.info(f"Set lifecycle policy for {bucket}: expire after {expiration_days} days")
            return True
        except S3Error as e:
            logger.error(f"Failed to set lifecycle for {bucket}: {e}")
            raise

    # =========================================================================
    # OBJECT OPERATIONS
    # =========================================================================

    def object_exists(self, bucket: str, key: str) -> bool:
        try:
            self.client.stat_object(bucket, key)
            return True
        except S3Error as e:
            if e.code == "NoSuchKey":
                return False
            raise

    def get_object(self, bucket: str, key: str) -> BytesIO:
        """
        Download an object.

        Returns:
            BytesIO with object content
        """
        response = None
        try:
            response = self.client.get_object(bucket, key)
            return BytesIO(response.read())
        finally:
            if response:
                response.close()
                response.release_conn()

    def put_object(
        self,
        bucket: str,
        key: str,
        data: BinaryIO,
        length: int,
        content_type: str = "application/octet-stream",
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        """
        Upload an object.

        Returns:
            Object ETag
        """
        result = self.client.put_object(
            bucket_name=bucket,
            object_name=key,
            data=data,
            length=length,
            content_type=content_type,
            metadata=metadata,
        )
        logger.info(f"Uploaded object {bucket}/{key} ({length} bytes)")
        return result.etag

    def delete_object(self, bucket: str, key: str) -> bool:
        try:
            self.client.remove_object(bucket, key)
            logger.info(f"Deleted object {bucket}/{key}")
            return True
        except S3Error as e:
            if e.code == "NoSuchKey":
                return True  # Already gone
            raise


class MinIOObjectSource:
    """ObjectSource backed by the assets bucket."""

    def __init__(self, minio: MinIOService, bucket: Optional[str] = None):
        self.minio = minio
        self.bucket = bucket or minio.bucket_assets

    def exists(self, key: str) -> bool:
        try:
            return self.minio.object_exists(self.bucket, key)
        except S3Error as e:
            raise translate_s3_error(e, key) from e
        except HTTPError as e:
            raise translate_transport_error(e, key) from e

    def get_bytes(self, key: str) -> bytes:
        try:
            return self.minio.get_object(self.bucket, key).getvalue()
        except S3Error as e:
            raise translate_s3_error(e, key) from e
        except HTTPError as e:
            raise translate_transport_error(e, key) from e


class MinIOArchiveStore:
    """DurableStorage for finished archives."""

    def __init__(self, minio: MinIOService, bucket: Optional[str] = None):
        self.minio = minio
        self.bucket = bucket or minio.bucket_archives

    def put(self, path: str, stream: BinaryIO, length: int) -> str:
        return self.minio.put_object(
            self.bucket,
            path,
            stream,
            length,
            content_type="application/zip",
        )

    def delete(self, path: str) -> bool:
        return self.minio.delete_object(self.bucket, path)


# =============================================================================
# SINGLETON SERVICE
# =============================================================================


@lru_cache()
def get_minio_service() -> Optional[MinIOService]:
    """
    Get singleton MinIO service instance if object storage is enabled.

    Returns:
        MinIOService if object storage is enabled, else None
    """
    if not settings.use_object_storage:
        return None
    return MinIOService()
