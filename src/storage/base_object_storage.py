# src/storage/base_object_storage.py — v1
"""Abstract object storage interface.

Content is keyed by an opaque relative path, never by content hash.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class BaseObjectStorage(ABC):
    """Unified interface for binary object storage backends."""

    @abstractmethod
    async def write(
        self, path: str, content: bytes, mime_type: str = "application/octet-stream"
    ) -> None:
        """Write content to the given path, replacing any existing object."""

    @abstractmethod
    async def read(self, path: str) -> bytes:
        """Read content from the given path.

        Raises:
            FileNotFoundError: If no object exists at path.
            OSError: If the backend could not be read.
        """

    @abstractmethod
    async def exists(self, path: str) -> bool:
        """Check if an object exists at path."""

    @abstractmethod
    async def signed_url(self, path: str, ttl_s: int = 3600) -> str:
        """Return a time-limited URL for reading the object."""

    @abstractmethod
    async def delete(self, path: str) -> None:
        """Delete the object at path. Missing objects are not an error."""
