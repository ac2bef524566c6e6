# src/storage/s3_storage.py — v1
"""S3-compatible object storage (STORAGE_BACKEND=s3).

Supports AWS S3, MinIO, and other S3-compatible services.
Requires the 'boto3' package.
"""

from __future__ import annotations

import logging

from stagegate.storage.base_object_storage import BaseObjectStorage

logger = logging.getLogger(__name__)

_MISSING_CODES = frozenset({"NoSuchKey", "404", "NotFound"})


class S3ObjectStorage(BaseObjectStorage):
    """Store objects in an S3 bucket under a key prefix."""

    def __init__(
        self,
        bucket: str,
        prefix: str = "stagegate/",
        region: str | None = None,
        endpoint_url: str | None = None,
    ) -> None:
        """Initialize the S3 client.

        Args:
            bucket: S3 bucket name.
            prefix: Key prefix for all objects.
            region: AWS region (boto3 default when unset).
            endpoint_url: Custom endpoint for MinIO/compatible storage.
        """
        try:
            import boto3
        except ImportError as e:
            raise ImportError(
                "boto3 package required for S3 storage: pip install boto3"
            ) from e

        kwargs: dict = {}
        if region:
            kwargs["region_name"] = region
        if endpoint_url:
            kwargs["endpoint_url"] = endpoint_url

        self._s3 = boto3.client("s3", **kwargs)
        self._bucket = bucket
        self._prefix = prefix.rstrip("/") + "/" if prefix else ""

    def _full_key(self, path: str) -> str:
        return f"{self._prefix}{path.lstrip('/')}"

    async def write(
        self, path: str, content: bytes, mime_type: str = "application/octet-stream"
    ) -> None:
        key = self._full_key(path)
        self._s3.put_object(
            Bucket=self._bucket, Key=key, Body=content, ContentType=mime_type
        )
        logger.debug("S3 write: s3://%s/%s (%d bytes)", self._bucket, key, len(content))

    async def read(self, path: str) -> bytes:
        key = self._full_key(path)
        try:
            response = self._s3.get_object(Bucket=self._bucket, Key=key)
        except self._s3.exceptions.ClientError as e:
            code = getattr(e, "response", {}).get("Error", {}).get("Code", "")
            if code in _MISSING_CODES:
                raise FileNotFoundError(f"s3://{self._bucket}/{key} not found") from e
            raise OSError(f"S3 read failed for s3://{self._bucket}/{key}: {e}") from e
        return response["Body"].read()

    async def exists(self, path: str) -> bool:
        try:
            self._s3.head_object(Bucket=self._bucket, Key=self._full_key(path))
            return True
        except self._s3.exceptions.ClientError:
            return False

    async def signed_url(self, path: str, ttl_s: int = 3600) -> str:
        return self._s3.generate_presigned_url(
            "get_object",
            Params={"Bucket": self._bucket, "Key": self._full_key(path)},
            ExpiresIn=ttl_s,
        )

    async def delete(self, path: str) -> None:
        key = self._full_key(path)
        self._s3.delete_object(Bucket=self._bucket, Key=key)
        logger.debug("S3 delete: s3://%s/%s", self._bucket, key)
