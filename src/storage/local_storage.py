# src/storage/local_storage.py — v1
"""Local filesystem object storage (default backend)."""

from __future__ import annotations

import logging
from pathlib import Path

from stagegate.storage.base_object_storage import BaseObjectStorage

logger = logging.getLogger(__name__)


class LocalObjectStorage(BaseObjectStorage):
    """Store objects as files below a root directory."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).expanduser()

    @property
    def root(self) -> Path:
        return self._root

    def _resolve(self, path: str) -> Path:
        """Resolve a relative object path, refusing to escape the root."""
        resolved = (self._root / path).resolve()
        if not resolved.is_relative_to(self._root.resolve()):
            raise ValueError(f"Object path escapes storage root: {path!r}")
        return resolved

    async def write(
        self, path: str, content: bytes, mime_type: str = "application/octet-stream"
    ) -> None:
        p = self._resolve(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(content)
        logger.debug("Local write: %s (%d bytes)", p, len(content))

    async def read(self, path: str) -> bytes:
        return self._resolve(path).read_bytes()

    async def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    async def signed_url(self, path: str, ttl_s: int = 3600) -> str:
        """Local files need no signing; return a file:// URI."""
        return self._resolve(path).as_uri()

    async def delete(self, path: str) -> None:
        self._resolve(path).unlink(missing_ok=True)
