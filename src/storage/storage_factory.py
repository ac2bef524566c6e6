# src/storage/storage_factory.py — v1
"""Factory: instantiate object storage from configuration."""

from __future__ import annotations

from stagegate.config.settings import Settings
from stagegate.storage.base_object_storage import BaseObjectStorage
from stagegate.storage.local_storage import LocalObjectStorage


def create_object_storage(settings: Settings) -> BaseObjectStorage:
    """Create the object storage backend selected by STORAGE_BACKEND.

    Raises:
        ValueError: If the backend is not supported.
    """
    if settings.storage_backend == "local":
        return LocalObjectStorage(settings.storage_root)

    if settings.storage_backend == "s3":
        from stagegate.storage.s3_storage import S3ObjectStorage

        return S3ObjectStorage(
            bucket=settings.storage_s3_bucket,
            prefix=settings.storage_s3_prefix,
            region=settings.storage_s3_region or None,
            endpoint_url=settings.storage_s3_endpoint_url or None,
        )

    raise ValueError(f"Unsupported storage backend: {settings.storage_backend!r}")
