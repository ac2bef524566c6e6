# src/store/store_factory.py — v1
"""Factory: instantiate the pipeline store from configuration."""

from __future__ import annotations

from stagegate.config.settings import Settings
from stagegate.store.base_store import BasePipelineStore


def create_store(settings: Settings) -> BasePipelineStore:
    """Create the pipeline store selected by STORE_BACKEND.

    Raises:
        ValueError: If the backend is not supported.
    """
    if settings.store_backend == "sqlite":
        from stagegate.store.sqlite_store import SqlitePipelineStore

        return SqlitePipelineStore(settings.resolved_store_path)

    raise ValueError(f"Unsupported store backend: {settings.store_backend!r}")
