"""Sending replies and new threads.

Both operations follow the same shape:

1. validate caller input (no I/O yet),
2. drop incomplete attachments and download the rest,
3. encode the MIME message and hand it to the provider,
4. persist the sent message locally with sender ``"You"``,
5. index every attached file through the attachment pipeline.

Attachment problems never fail the send; they are reported per file on the
returned ``SendResult``.
"""

from __future__ import annotations

from collections.abc import Sequence
from email.utils import parseaddr
from typing import Any

import structlog

from mail_sync.attachments import AttachmentPipeline
from mail_sync.compose.fetcher import AttachmentFetcher
from mail_sync.config import Settings
from mail_sync.exceptions import AttachmentProcessingError, ThreadNotFoundError, ValidationError
from mail_sync.gmail.mime import EncodedAttachment, encode_message, encode_reply
from mail_sync.gmail.parsing import decode_raw_message, message_to_normalized_email
from mail_sync.interfaces import MailProvider, QuoteStripper
from mail_sync.models import LOCAL_USER_SENDER, NormalizedEmail, OutgoingAttachment, SendResult
from mail_sync.store import MailStore

logger = structlog.get_logger()

DEFAULT_SUBJECT = "No Subject"


def _validate_recipients(recipients: Sequence[str]) -> list[str]:
    cleaned = [r.strip() for r in recipients if isinstance(r, str) and r.strip()]
    if not cleaned:
        raise ValidationError("At least one recipient is required")
    for recipient in cleaned:
        _, address = parseaddr(recipient)
        if "@" not in address:
            raise ValidationError(f"Invalid recipient address: {recipient!r}")
    return cleaned


def _validate_content(html_content: str) -> None:
    if not html_content or not html_content.strip():
        raise ValidationError("Message content is required")


class OutboundComposer:
    """Builds, sends and records outgoing messages."""

    def __init__(
        self,
        provider: MailProvider,
        store: MailStore,
        pipeline: AttachmentPipeline,
        fetcher: AttachmentFetcher,
        settings: Settings,
        *,
        quote_stripper: QuoteStripper | None = None,
    ) -> None:
        self._provider = provider
        self._store = store
        self._pipeline = pipeline
        self._fetcher = fetcher
        self._settings = settings
        self._quote_stripper = quote_stripper

    async def send_reply(
        self,
        user_id: str,
        thread_id: str,
        recipients: Sequence[str],
        html_content: str,
        attachments: Sequence[OutgoingAttachment] | None = None,
    ) -> SendResult:
        """Reply inside an existing thread.

        Raises:
            ValidationError: If the thread id, recipients or content are missing.
            ThreadNotFoundError: If the thread has no messages.
            AuthExpiredError: If the provider rejected the credentials.
        """

        if not thread_id or not thread_id.strip():
            raise ValidationError("Thread ID is required")
        to = _validate_recipients(recipients)
        _validate_content(html_content)

        fetched, failed, dropped = await self._prefetch(attachments or [])

        thread = await self._provider.get_thread(thread_id, format="full")
        messages = thread.get("messages") or []
        if not messages:
            raise ThreadNotFoundError(f"Thread {thread_id} has no messages")

        raw = encode_reply(
            original=messages[0],
            recipients=to,
            html_content=html_content,
            attachments=fetched,
            sender=self._settings.sender_address,
        )
        sent = await self._provider.send_message(raw, thread_id=thread_id)
        logger.info(
            "reply_sent",
            user_id=user_id,
            thread_id=thread_id,
            message_id=sent.get("id"),
            attachments=len(fetched),
        )

        return await self._record(user_id, sent, raw, thread_id, fetched, failed, dropped)

    async def send_new(
        self,
        user_id: str,
        recipients: Sequence[str],
        subject: str | None,
        html_content: str,
        attachments: Sequence[OutgoingAttachment] | None = None,
    ) -> SendResult:
        """Start a new thread. The provider assigns the thread id."""

        to = _validate_recipients(recipients)
        _validate_content(html_content)

        fetched, failed, dropped = await self._prefetch(attachments or [])

        raw = encode_message(
            recipients=to,
            subject=(subject or "").strip() or DEFAULT_SUBJECT,
            html_content=html_content,
            attachments=fetched,
            sender=self._settings.sender_address,
        )
        sent = await self._provider.send_message(raw)
        logger.info(
            "message_sent",
            user_id=user_id,
            thread_id=sent.get("threadId"),
            message_id=sent.get("id"),
            attachments=len(fetched),
        )

        return await self._record(user_id, sent, raw, None, fetched, failed, dropped)

    async def _prefetch(
        self,
        attachments: Sequence[OutgoingAttachment],
    ) -> tuple[list[EncodedAttachment], list[str], list[str]]:
        fetched: list[EncodedAttachment] = []
        failed: list[str] = []
        dropped: list[str] = []

        for attachment in attachments:
            if not attachment.is_complete:
                logger.warning(
                    "attachment_dropped_incomplete",
                    filename=attachment.filename,
                    url=attachment.url,
                    mime_type=attachment.mime_type,
                )
                dropped.append(attachment.display_name)
                continue
            try:
                fetched.append(await self._fetcher.fetch(attachment))
            except AttachmentProcessingError as exc:
                failed.append(exc.filename)

        if attachments and not fetched:
            logger.warning("all_attachments_unavailable", requested=len(attachments))
        return fetched, failed, dropped

    async def _record(
        self,
        user_id: str,
        sent: dict[str, Any],
        raw: bytes,
        thread_id: str | None,
        fetched: list[EncodedAttachment],
        failed: list[str],
        dropped: list[str],
    ) -> SendResult:
        message_id = str(sent.get("id") or "")
        resolved_thread_id = str(sent.get("threadId") or thread_id or message_id)

        email = await self._sent_email(message_id, resolved_thread_id, sent, raw)
        try:
            self._store.upsert_email(user_id, email)
        except Exception as exc:  # noqa: BLE001
            # The send is already committed; report it rather than invite a resend.
            logger.error("sent_message_persist_failed", user_id=user_id, message_id=message_id, error=str(exc))

        successful: list[str] = []
        for attachment in fetched:
            try:
                await self._pipeline.index_bytes(
                    user_id,
                    attachment.filename,
                    attachment.mime_type,
                    attachment.data,
                    LOCAL_USER_SENDER,
                )
            except AttachmentProcessingError as exc:
                logger.warning(
                    "sent_attachment_index_failed",
                    user_id=user_id,
                    message_id=message_id,
                    filename=attachment.filename,
                    error=exc.reason,
                )
                failed.append(attachment.filename)
            else:
                successful.append(attachment.filename)

        return SendResult(
            message_id=message_id,
            thread_id=resolved_thread_id,
            successful_attachments=successful,
            failed_attachments=failed,
            dropped_attachments=dropped,
        )

    async def _sent_email(
        self,
        message_id: str,
        thread_id: str,
        sent: dict[str, Any],
        raw: bytes,
    ) -> NormalizedEmail:
        labels = list(sent.get("labelIds") or ["SENT"])
        try:
            message = await self._provider.get_message(message_id, format="full")
            email = message_to_normalized_email(
                message,
                quote_stripper=self._quote_stripper,
                url_template=self._settings.attachment_url_template,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("sent_message_refetch_failed", message_id=message_id, error=str(exc))
            email = decode_raw_message(
                raw,
                message_id=message_id,
                thread_id=thread_id,
                label_ids=labels,
                quote_stripper=self._quote_stripper,
                url_template=self._settings.attachment_url_template,
            )
            # Synthetic part ids cannot be fetched from the provider.
            email = email.model_copy(update={"attachments": []})

        if "SENT" not in email.labels:
            email.labels.append("SENT")
        return email.model_copy(update={"sender": LOCAL_USER_SENDER, "is_read": True, "thread_id": thread_id})
