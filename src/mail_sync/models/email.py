"""Normalized email model.

A ``NormalizedEmail`` is the record both the sync engine and the outbound
composer persist. Bodies are stored with quoted replies and signatures
already stripped, and attachments are references only: the bytes stay with
the provider until something needs them.
"""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, Field

LOCAL_USER_SENDER = "You"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class AttachmentRef(BaseModel):
    """A single attachment inside a message, referenced but not downloaded."""

    filename: str = Field(description="Attachment file name")
    mime_type: str = Field(default="application/octet-stream", description="Declared MIME type")
    provider_attachment_id: str = Field(description="Opaque provider handle used to fetch bytes")
    access_url: str = Field(description="URL through which the bytes can be downloaded")
    size: int | None = Field(default=None, description="Size in bytes as reported by the provider")


class NormalizedEmail(BaseModel):
    """One ingested or sent message."""

    message_id: str = Field(description="Provider message ID")
    thread_id: str = Field(description="Provider thread ID")

    # "You" when the authenticated user sent the message.
    sender: str = Field(default="", serialization_alias="from", description="Resolved sender")
    to: list[str] = Field(default_factory=list, description="Parsed To addresses")
    subject: str | None = Field(default=None, description="Subject header")

    text_body: str | None = Field(default=None, description="Plain-text body, quotes stripped")
    html_body: str | None = Field(default=None, description="HTML body, quotes stripped")

    attachments: list[AttachmentRef] = Field(default_factory=list)

    received_at: datetime = Field(default=_EPOCH, description="Provider receive timestamp (UTC)")
    labels: list[str] = Field(default_factory=list, description="Provider label IDs")
    is_read: bool = Field(default=False, description="Whether the message has been read")

    @property
    def is_sent(self) -> bool:
        return "SENT" in self.labels or self.sender == LOCAL_USER_SENDER

    @property
    def content(self) -> str:
        """Body used for display: plain text when present, else HTML."""
        return self.text_body or self.html_body or ""
