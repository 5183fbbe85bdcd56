"""Filesystem-backed blob storage.

Blobs live under ``root`` at their logical path. Metadata and the public
flag are kept in a JSON sidecar next to each blob (``<name>.meta.json``).
Public URLs are ``<public_base_url>/<path>``; signed URLs append an
``expires`` timestamp and an HMAC-SHA256 ``signature`` over path and expiry.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path, PurePosixPath
from typing import Any
from urllib.parse import quote, urlencode

import structlog

from mail_sync.exceptions import StorageError

logger = structlog.get_logger()

_META_SUFFIX = ".meta.json"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LocalBlobStorage:
    """``BlobStorage`` implementation writing to a local directory."""

    def __init__(
        self,
        root: Path,
        public_base_url: str,
        signing_secret: str,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._root = Path(root)
        self._public_base_url = public_base_url.rstrip("/")
        self._secret = signing_secret.encode("utf-8")
        self._clock = clock

    async def save(
        self,
        path: str,
        data: bytes,
        content_type: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        target = self._resolve(path)
        sidecar = {
            "contentType": content_type,
            "size": len(data),
            "public": False,
            "metadata": dict(metadata or {}),
        }
        try:
            await asyncio.to_thread(self._write, target, data, sidecar)
        except OSError as exc:
            raise StorageError(f"Failed to save blob {path}: {exc}") from exc
        logger.debug("blob_saved", path=path, size=len(data), content_type=content_type)

    async def make_public(self, path: str) -> str:
        target = self._resolve(path)
        meta = await self._read_meta(target, path)
        meta["public"] = True
        try:
            await asyncio.to_thread(self._meta_path(target).write_text, json.dumps(meta), "utf-8")
        except OSError as exc:
            raise StorageError(f"Failed to publish blob {path}: {exc}") from exc
        return self._url(path)

    async def get_signed_url(self, path: str, ttl_seconds: int) -> str:
        target = self._resolve(path)
        if not await asyncio.to_thread(target.exists):
            raise StorageError(f"Blob not found: {path}")
        expires = int((self._clock() + timedelta(seconds=ttl_seconds)).timestamp())
        query = urlencode({"expires": expires, "signature": self._sign(path, expires)})
        return f"{self._url(path)}?{query}"

    def verify_signature(self, path: str, expires: int, signature: str) -> bool:
        """Check a signed URL's parameters against the secret and the clock."""

        if int(self._clock().timestamp()) > expires:
            return False
        return hmac.compare_digest(self._sign(path, expires), signature)

    async def exists(self, path: str) -> bool:
        return await asyncio.to_thread(self._resolve(path).exists)

    async def download(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except FileNotFoundError as exc:
            raise StorageError(f"Blob not found: {path}") from exc
        except OSError as exc:
            raise StorageError(f"Failed to read blob {path}: {exc}") from exc

    async def metadata(self, path: str) -> dict[str, Any]:
        """Return the sidecar (``contentType``, ``size``, ``public``, ``metadata``)."""

        return await self._read_meta(self._resolve(path), path)

    def _resolve(self, path: str) -> Path:
        logical = PurePosixPath(path.lstrip("/"))
        if not logical.parts or ".." in logical.parts:
            raise StorageError(f"Invalid blob path: {path!r}")
        return self._root.joinpath(*logical.parts)

    def _meta_path(self, target: Path) -> Path:
        return target.with_name(target.name + _META_SUFFIX)

    def _write(self, target: Path, data: bytes, sidecar: dict[str, Any]) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        self._meta_path(target).write_text(json.dumps(sidecar), encoding="utf-8")

    async def _read_meta(self, target: Path, path: str) -> dict[str, Any]:
        try:
            raw = await asyncio.to_thread(self._meta_path(target).read_text, "utf-8")
        except FileNotFoundError as exc:
            raise StorageError(f"Blob not found: {path}") from exc
        return json.loads(raw)

    def _url(self, path: str) -> str:
        return f"{self._public_base_url}/{quote(path.lstrip('/'))}"

    def _sign(self, path: str, expires: int) -> str:
        message = f"{path.lstrip('/')}\n{expires}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()
