"""Ports for the collaborators the engine talks to.

The sync engine, composer and push manager only depend on these protocols.
``GmailClient`` and ``LocalBlobStorage`` are the shipped implementations;
tests substitute in-memory fakes.
"""

from __future__ import annotations

from typing import Any, Protocol

from mail_sync.models import ParsedDocument


class MailProvider(Protocol):
    """Asynchronous view of the Gmail API surface the engine needs."""

    async def list_messages(
        self,
        query: str | None = None,
        page_token: str | None = None,
        max_results: int = 25,
    ) -> dict[str, Any]:
        """Return one page: ``{"messages": [{"id", "threadId"}], "nextPageToken"}``."""
        ...

    async def get_message(self, message_id: str, *, format: str = "full") -> dict[str, Any]: ...

    async def get_thread(self, thread_id: str, *, format: str = "full") -> dict[str, Any]: ...

    async def send_message(self, raw: bytes, thread_id: str | None = None) -> dict[str, Any]:
        """Send RFC 822 bytes; returns ``{"id", "threadId", "labelIds"}``."""
        ...

    async def modify_message(
        self,
        message_id: str,
        *,
        add_label_ids: list[str] | None = None,
        remove_label_ids: list[str] | None = None,
    ) -> dict[str, Any]: ...

    async def get_attachment_bytes(self, message_id: str, attachment_id: str) -> bytes: ...

    async def watch(self, label_ids: list[str], topic: str) -> dict[str, Any]:
        """Register push delivery; returns ``{"historyId", "expiration"}``."""
        ...

    async def stop_watch(self) -> None: ...

    async def get_profile(self) -> dict[str, Any]: ...


class BlobStorage(Protocol):
    """Object storage used for attachment bytes."""

    async def save(
        self,
        path: str,
        data: bytes,
        content_type: str,
        metadata: dict[str, Any] | None = None,
    ) -> None: ...

    async def make_public(self, path: str) -> str:
        """Make the blob publicly readable and return its public URL."""
        ...

    async def get_signed_url(self, path: str, ttl_seconds: int) -> str: ...

    async def exists(self, path: str) -> bool: ...

    async def download(self, path: str) -> bytes: ...


class ContentEnricher(Protocol):
    """Optional analysis service for indexed attachments."""

    async def analyze_image(self, url: str) -> str: ...

    async def parse_pdf(self, path: str) -> ParsedDocument: ...


class QuoteStripper(Protocol):
    """Removes quoted replies and signatures from decoded bodies."""

    def strip_text(self, text: str) -> str: ...

    def strip_html(self, html: str) -> str: ...
