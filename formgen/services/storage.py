"""
Blob storage for template uploads and generated documents.

``LocalStorage`` keeps objects under ``STORAGE_ROOT`` and issues HMAC-signed,
time-limited upload URLs that ``PUT /api/storage/{path}`` verifies.  Object
paths are always relative and slash-separated, e.g. ``templates/<id>/lease.pdf``.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol
from urllib.parse import quote

import aiofiles
import aiofiles.os

from formgen.config import settings
from formgen.exceptions import StorageError, ValidationError

logger = logging.getLogger(__name__)


class StorageBackend(Protocol):
    """What the pipeline needs from a blob store."""

    async def save(self, path: str, data: bytes) -> None: ...

    async def load(self, path: str) -> bytes: ...

    async def exists(self, path: str) -> bool: ...

    def create_upload_url(self, path: str, expires_at: datetime) -> str: ...


class LocalStorage:
    """Filesystem-backed storage with signed upload URLs."""

    def __init__(
        self,
        root: Optional[str] = None,
        signing_secret: Optional[str] = None,
        public_base_url: Optional[str] = None,
    ) -> None:
        self.root = Path(root or settings.STORAGE_ROOT).resolve()
        self._secret = (signing_secret or settings.STORAGE_SIGNING_SECRET).encode("utf-8")
        self.public_base_url = (public_base_url or settings.PUBLIC_BASE_URL).rstrip("/")

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def _resolve(self, path: str) -> Path:
        """Map an object path onto the filesystem, refusing anything outside the root."""
        cleaned = (path or "").strip().lstrip("/")
        if not cleaned or "\\" in cleaned or any(part in ("", ".", "..") for part in cleaned.split("/")):
            raise ValidationError(f"Invalid object path: {path!r}")
        full = (self.root / cleaned).resolve()
        if self.root not in full.parents:
            raise ValidationError(f"Invalid object path: {path!r}")
        return full

    # ------------------------------------------------------------------
    # Blob I/O
    # ------------------------------------------------------------------

    async def save(self, path: str, data: bytes) -> None:
        """Write *data* to *path*, creating parent directories."""
        full = self._resolve(path)
        try:
            await aiofiles.os.makedirs(full.parent, exist_ok=True)
            async with aiofiles.open(full, "wb") as out:
                await out.write(data)
        except OSError as exc:
            raise StorageError(f"Cannot write object {path!r}: {exc}", original_error=exc) from exc
        logger.info("Stored %s (%d bytes)", path, len(data))

    async def load(self, path: str) -> bytes:
        """Read the object at *path*."""
        full = self._resolve(path)
        try:
            async with aiofiles.open(full, "rb") as src:
                return await src.read()
        except FileNotFoundError as exc:
            raise StorageError(f"Object not found: {path!r}", original_error=exc) from exc
        except OSError as exc:
            raise StorageError(f"Cannot read object {path!r}: {exc}", original_error=exc) from exc

    async def exists(self, path: str) -> bool:
        return await aiofiles.os.path.isfile(self._resolve(path))

    # ------------------------------------------------------------------
    # Signed upload URLs
    # ------------------------------------------------------------------

    def _signature(self, path: str, expires: int) -> str:
        message = f"{path}:{expires}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def create_upload_url(self, path: str, expires_at: datetime) -> str:
        """Return a URL that accepts a single ``PUT`` of the object until *expires_at*."""
        self._resolve(path)
        expires = int(expires_at.timestamp())
        signature = self._signature(path, expires)
        return (
            f"{self.public_base_url}/api/storage/{quote(path)}"
            f"?expires={expires}&signature={signature}"
        )

    def verify_upload(self, path: str, expires: int, signature: str, now: Optional[datetime] = None) -> bool:
        """Check an upload URL's signature and expiry."""
        now = now or datetime.now(timezone.utc)
        if expires < int(now.timestamp()):
            return False
        return hmac.compare_digest(self._signature(path, expires), signature or "")


def ensure_storage_root(root: Optional[str] = None) -> str:
    """Create the storage root if needed and return its absolute path."""
    path = os.path.abspath(root or settings.STORAGE_ROOT)
    os.makedirs(path, exist_ok=True)
    return path
