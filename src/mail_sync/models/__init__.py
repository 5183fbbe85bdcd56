"""Data models for mail-sync.

This module contains Pydantic models for data validation and serialization.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from mail_sync.models.email import LOCAL_USER_SENDER, AttachmentRef, NormalizedEmail


class DedupStrategy(str, Enum):
    """Identity used to detect an already-indexed attachment."""

    CONTENT_HASH = "content_hash"
    FILENAME_SIZE = "filename_size"


class SyncState(str, Enum):
    """States a single sync invocation moves through."""

    IDLE = "idle"
    LOCK_ACQUISITION_ATTEMPTED = "lock_acquisition_attempted"
    SKIPPED = "skipped"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class MessageOutcome(str, Enum):
    """Result of ingesting one message reference."""

    INGESTED = "ingested"
    SKIPPED = "skipped"
    FAILED = "failed"


class IndexedDocument(BaseModel):
    """A deduplicated, persisted attachment used for content enrichment."""

    document_id: str = Field(description="Store-assigned document ID")
    user_id: str = Field(description="Owning user")
    filename: str = Field(description="Original attachment file name")
    mime_type: str = Field(description="Attachment MIME type")
    size: int = Field(ge=0, description="Size in bytes")
    content_sha256: str = Field(description="Hex SHA-256 of the attachment bytes")
    storage_path: str = Field(description="Path inside blob storage")
    url: str | None = Field(default=None, description="Public URL of the stored blob")
    sender: str = Field(default="", description="Who sent the attachment")

    text: str | None = Field(default=None, description="Extracted or generated text")
    summary: str | None = Field(default=None, description="Short summary")
    embedding: list[float] | None = Field(default=None, description="Embedding vector")
    has_analysis: bool = Field(default=False, description="Whether enrichment succeeded")

    created_at: datetime
    updated_at: datetime


class ParsedDocument(BaseModel):
    """What the enrichment service returns for a parsed PDF."""

    text: str = ""
    summary: str | None = None
    embedding: list[float] | None = None


class SyncLock(BaseModel):
    """Mutual-exclusion record for one user and lock name."""

    user_id: str
    name: str = "email_sync"
    acquired_at: datetime
    expires_at: datetime

    def is_live(self, now: datetime) -> bool:
        return self.expires_at > now


class SyncCheckpoint(BaseModel):
    """Per-user cursor bounding the next incremental query window."""

    user_id: str
    last_synced_at: datetime | None = None
    # Set while a capped window still has pages left.
    resume_page_token: str | None = None
    window_started_at: datetime | None = None
    updated_at: datetime | None = None


class WatchRegistration(BaseModel):
    """Stored state of the provider push registration."""

    user_id: str
    email_address: str | None = None
    history_id: str | None = None
    expiration: datetime
    topic: str
    label_ids: list[str] = Field(default_factory=list)
    registered_at: datetime


class OutgoingAttachment(BaseModel):
    """Attachment supplied by the caller of a send operation.

    Fields are optional at this boundary so incomplete entries can be reported
    back as dropped instead of failing validation for the whole request.
    """

    url: str | None = None
    filename: str | None = None
    mime_type: str | None = None

    @property
    def is_complete(self) -> bool:
        return bool(self.url and self.filename and self.mime_type)

    @property
    def display_name(self) -> str:
        return self.filename or self.url or "(unnamed attachment)"


class SendResult(BaseModel):
    """Outcome of a reply or new-thread send."""

    message_id: str
    thread_id: str
    successful_attachments: list[str] = Field(default_factory=list)
    failed_attachments: list[str] = Field(default_factory=list)
    dropped_attachments: list[str] = Field(default_factory=list)

    @property
    def partial_success(self) -> bool:
        return bool(self.failed_attachments or self.dropped_attachments)


class SyncReport(BaseModel):
    """Aggregate result of one sync invocation."""

    user_id: str
    state: SyncState = SyncState.IDLE
    examined: int = 0
    ingested: int = 0
    skipped: int = 0
    failed: int = 0
    attachments_indexed: int = 0
    attachments_failed: int = 0
    capped: bool = False
    started_at: datetime | None = None
    finished_at: datetime | None = None


class AttachmentContent(BaseModel):
    """Bytes of one provider attachment plus what is needed to serve them."""

    data: bytes
    content_type: str = "application/octet-stream"
    filename: str = "attachment"


class ThreadView(BaseModel):
    """A decoded thread, messages ordered oldest first."""

    thread_id: str
    messages: list[NormalizedEmail]
    history_id: str | None = None


__all__ = [
    "LOCAL_USER_SENDER",
    "AttachmentContent",
    "AttachmentRef",
    "DedupStrategy",
    "IndexedDocument",
    "MessageOutcome",
    "NormalizedEmail",
    "OutgoingAttachment",
    "ParsedDocument",
    "SendResult",
    "SyncCheckpoint",
    "SyncLock",
    "SyncReport",
    "SyncState",
    "ThreadView",
    "WatchRegistration",
]
