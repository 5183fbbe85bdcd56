"""Retrieval of outgoing attachment bytes.

Callers reference attachments by URL. The URL decides where the bytes come
from:

- ``/api/emails/<message_id>/attachments/<attachment_id>``: the provider,
- any other ``/api/...`` path: HTTP against ``Settings.api_base_url``,
- any other absolute path, or a URL under the public blob base URL: blob
  storage,
- anything else: a plain HTTP GET.
"""

from __future__ import annotations

import re
from urllib.parse import unquote

import httpx
import structlog

from mail_sync.config import Settings
from mail_sync.exceptions import AttachmentProcessingError, AuthExpiredError
from mail_sync.gmail.mime import EncodedAttachment
from mail_sync.interfaces import BlobStorage, MailProvider
from mail_sync.models import OutgoingAttachment

logger = structlog.get_logger()

_PROVIDER_ATTACHMENT_RE = re.compile(r"^/api/emails/(?P<message_id>[^/]+)/attachments/(?P<attachment_id>[^/?#]+)")


class AttachmentFetcher:
    """Resolves ``OutgoingAttachment`` URLs to bytes."""

    def __init__(
        self,
        provider: MailProvider,
        blobs: BlobStorage,
        settings: Settings,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._provider = provider
        self._blobs = blobs
        self._settings = settings
        self._http_client = http_client
        self._blob_prefix = settings.blob_public_base_url.rstrip("/") + "/"

    async def fetch(self, attachment: OutgoingAttachment) -> EncodedAttachment:
        """Download one complete attachment.

        Raises:
            AttachmentProcessingError: If the bytes cannot be retrieved.
        """

        filename = attachment.display_name
        if not attachment.is_complete:
            raise AttachmentProcessingError(filename, "url, filename and mime_type are required")

        url = attachment.url or ""
        try:
            data = await self._fetch_bytes(url)
        except AuthExpiredError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("attachment_download_failed", filename=filename, url=url, error=str(exc))
            raise AttachmentProcessingError(filename, str(exc)) from exc

        logger.debug("attachment_downloaded", filename=filename, size=len(data))
        return EncodedAttachment(filename=attachment.filename or filename, mime_type=attachment.mime_type or "", data=data)

    async def _fetch_bytes(self, url: str) -> bytes:
        match = _PROVIDER_ATTACHMENT_RE.match(url)
        if match:
            return await self._provider.get_attachment_bytes(match["message_id"], match["attachment_id"])
        if url.startswith("/api/"):
            return await self._http_get(self._settings.api_base_url.rstrip("/") + url)
        if url.startswith("/"):
            return await self._blobs.download(url.lstrip("/"))
        if url.startswith(self._blob_prefix):
            return await self._blobs.download(unquote(url[len(self._blob_prefix) :]))
        return await self._http_get(url)

    async def _http_get(self, url: str) -> bytes:
        if self._http_client is not None:
            response = await self._http_client.get(url)
            response.raise_for_status()
            return response.content

        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self._settings.http_timeout_seconds),
            follow_redirects=True,
        ) as client:
            response = await client.get(url)
            response.raise_for_status()
            return response.content
