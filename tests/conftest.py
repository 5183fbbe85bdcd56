"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio
import base64
from datetime import datetime, timezone
from typing import Any

import pytest

from mail_sync.exceptions import StorageError, TransientProviderError
from mail_sync.gmail.parsing import raw_to_payload


def b64url(text: str | bytes) -> str:
    data = text.encode("utf-8") if isinstance(text, str) else text
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def make_gmail_message(
    message_id: str,
    *,
    thread_id: str | None = None,
    subject: str | None = "Hello",
    sender: str = "Alice Example <alice@example.com>",
    to: str = "me@example.com",
    text: str | None = "Hi there",
    html: str | None = None,
    labels: list[str] | None = None,
    internal_date_ms: int | None = 1_700_000_000_000,
    attachments: list[tuple[str, str, str, int]] | None = None,
    extra_headers: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Build a ``format=full`` Gmail message.

    ``attachments`` entries are ``(filename, mime_type, attachment_id, size)``.
    """

    headers = [
        {"name": "From", "value": sender},
        {"name": "To", "value": to},
        {"name": "Message-ID", "value": f"<{message_id}@mail.example.com>"},
    ]
    if subject is not None:
        headers.append({"name": "Subject", "value": subject})
    for name, value in (extra_headers or {}).items():
        headers.append({"name": name, "value": value})

    body_parts: list[dict[str, Any]] = []
    if text is not None:
        body_parts.append(
            {
                "mimeType": "text/plain",
                "filename": "",
                "headers": [{"name": "Content-Type", "value": "text/plain; charset=UTF-8"}],
                "body": {"data": b64url(text), "size": len(text)},
            }
        )
    if html is not None:
        body_parts.append(
            {
                "mimeType": "text/html",
                "filename": "",
                "headers": [{"name": "Content-Type", "value": "text/html; charset=UTF-8"}],
                "body": {"data": b64url(html), "size": len(html)},
            }
        )

    parts: list[dict[str, Any]] = [
        {"mimeType": "multipart/alternative", "filename": "", "headers": [], "body": {"size": 0}, "parts": body_parts}
    ]
    for filename, mime_type, attachment_id, size in attachments or []:
        parts.append(
            {
                "mimeType": mime_type,
                "filename": filename,
                "headers": [{"name": "Content-Disposition", "value": f'attachment; filename="{filename}"'}],
                "body": {"attachmentId": attachment_id, "size": size},
            }
        )

    message: dict[str, Any] = {
        "id": message_id,
        "threadId": thread_id or f"thread-{message_id}",
        "labelIds": list(labels if labels is not None else ["INBOX", "UNREAD"]),
        "payload": {
            "mimeType": "multipart/mixed",
            "filename": "",
            "headers": headers,
            "body": {"size": 0},
            "parts": parts,
        },
    }
    if internal_date_ms is not None:
        message["internalDate"] = str(internal_date_ms)
    return message


class FakeMailProvider:
    """In-memory ``MailProvider`` with call recording."""

    def __init__(self) -> None:
        self.messages: dict[str, dict[str, Any]] = {}
        self.order: list[str] = []
        self.attachments: dict[tuple[str, str], bytes] = {}
        self.get_message_errors: dict[str, Exception] = {}
        self.attachment_errors: dict[tuple[str, str], Exception] = {}
        self.list_error: Exception | None = None
        self.rejected_page_tokens: set[str] = set()
        self.stop_watch_error: Exception | None = None
        self.refetch_sent_fails = False

        self.list_calls: list[dict[str, Any]] = []
        self.get_message_calls: list[str] = []
        self.sent: list[dict[str, Any]] = []
        self.modified: list[dict[str, Any]] = []
        self.watch_calls: list[dict[str, Any]] = []
        self.stop_watch_calls = 0
        self.watch_expiration_ms = 1_900_000_000_000

    def add(self, message: dict[str, Any]) -> None:
        self.messages[message["id"]] = message
        self.order.append(message["id"])

    async def list_messages(
        self,
        query: str | None = None,
        page_token: str | None = None,
        max_results: int = 25,
    ) -> dict[str, Any]:
        self.list_calls.append({"query": query, "page_token": page_token, "max_results": max_results})
        await asyncio.sleep(0)
        if self.list_error is not None:
            raise self.list_error
        if page_token in self.rejected_page_tokens:
            raise TransientProviderError(f"Invalid pageToken {page_token}", status=400)
        start = int(page_token) if page_token else 0
        ids = self.order[start : start + max_results]
        page: dict[str, Any] = {
            "messages": [{"id": i, "threadId": self.messages[i]["threadId"]} for i in ids],
        }
        if start + max_results < len(self.order):
            page["nextPageToken"] = str(start + max_results)
        return page

    async def get_message(self, message_id: str, *, format: str = "full") -> dict[str, Any]:
        self.get_message_calls.append(message_id)
        if message_id in self.get_message_errors:
            raise self.get_message_errors[message_id]
        if self.refetch_sent_fails and message_id.startswith("sent-"):
            raise RuntimeError("refetch failed")
        return self.messages[message_id]

    async def get_thread(self, thread_id: str, *, format: str = "full") -> dict[str, Any]:
        messages = [m for m in self.messages.values() if m["threadId"] == thread_id]
        return {"id": thread_id, "historyId": "99", "messages": messages}

    async def send_message(self, raw: bytes, thread_id: str | None = None) -> dict[str, Any]:
        n = len(self.sent) + 1
        message_id = f"sent-{n}"
        resolved_thread = thread_id or f"thread-new-{n}"
        self.sent.append({"raw": raw, "thread_id": thread_id, "id": message_id})
        self.messages[message_id] = {
            "id": message_id,
            "threadId": resolved_thread,
            "labelIds": ["SENT"],
            "internalDate": "1800000000000",
            "payload": raw_to_payload(raw),
        }
        return {"id": message_id, "threadId": resolved_thread, "labelIds": ["SENT"]}

    async def modify_message(
        self,
        message_id: str,
        *,
        add_label_ids: list[str] | None = None,
        remove_label_ids: list[str] | None = None,
    ) -> dict[str, Any]:
        self.modified.append(
            {"id": message_id, "add": list(add_label_ids or []), "remove": list(remove_label_ids or [])}
        )
        return {"id": message_id}

    async def get_attachment_bytes(self, message_id: str, attachment_id: str) -> bytes:
        if (message_id, attachment_id) in self.attachment_errors:
            raise self.attachment_errors[(message_id, attachment_id)]
        try:
            return self.attachments[(message_id, attachment_id)]
        except KeyError:
            raise RuntimeError(f"no attachment {attachment_id}") from None

    async def watch(self, label_ids: list[str], topic: str) -> dict[str, Any]:
        self.watch_calls.append({"label_ids": list(label_ids), "topic": topic})
        return {"historyId": "4242", "expiration": str(self.watch_expiration_ms)}

    async def stop_watch(self) -> None:
        self.stop_watch_calls += 1
        if self.stop_watch_error is not None:
            raise self.stop_watch_error

    async def get_profile(self) -> dict[str, Any]:
        return {"emailAddress": "Me@Example.com", "historyId": "1"}


class InMemoryBlobStorage:
    """``BlobStorage`` keeping blobs in a dict. Saves of paths containing a
    string from ``fail_on`` raise ``StorageError``."""

    def __init__(self) -> None:
        self.blobs: dict[str, dict[str, Any]] = {}
        self.fail_on: set[str] = set()

    async def save(
        self,
        path: str,
        data: bytes,
        content_type: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await asyncio.sleep(0)
        if any(marker in path for marker in self.fail_on):
            raise StorageError(f"upload rejected: {path}")
        self.blobs[path] = {"data": data, "content_type": content_type, "metadata": metadata or {}, "public": False}

    async def make_public(self, path: str) -> str:
        self.blobs[path]["public"] = True
        return f"https://blobs.example.com/{path}"

    async def get_signed_url(self, path: str, ttl_seconds: int) -> str:
        return f"https://blobs.example.com/{path}?ttl={ttl_seconds}"

    async def exists(self, path: str) -> bool:
        return path in self.blobs

    async def download(self, path: str) -> bytes:
        try:
            return self.blobs[path]["data"]
        except KeyError:
            raise StorageError(f"Blob not found: {path}") from None


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        from datetime import timedelta

        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def settings(tmp_path):
    """Settings pointing at a temporary store."""
    from mail_sync.config import Settings

    return Settings(
        store_db_path=tmp_path / "store.sqlite3",
        blob_root=tmp_path / "blobs",
        blob_public_base_url="https://blobs.example.com",
        api_base_url="https://app.example.com",
        push_project_id="test-project",
        log_level="DEBUG",
    )


@pytest.fixture
def store(settings):
    from mail_sync.store import MailStore

    repo = MailStore(settings.store_db_path)
    repo.initialize()
    return repo


@pytest.fixture
def provider() -> FakeMailProvider:
    return FakeMailProvider()


@pytest.fixture
def blobs() -> InMemoryBlobStorage:
    return InMemoryBlobStorage()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sample_email_data() -> dict:
    """Provide sample email data structure."""
    return make_gmail_message(
        "msg123456",
        thread_id="thread789",
        subject="Weekly Newsletter - Python Tips",
        sender="Python Weekly <newsletter@python.org>",
        to="user@example.com, Other Person <other@example.com>",
        text="Welcome to this week's Python tips!\n\nOn Mon, Jan 1, 2024 Bob wrote:\n> old stuff",
        html="<p>Welcome</p><blockquote>old stuff</blockquote>",
        attachments=[("report.pdf", "application/pdf", "att-1", 2048)],
    )


@pytest.fixture
def gmail_message():
    """Factory for ``format=full`` Gmail messages (see ``make_gmail_message``)."""
    return make_gmail_message
