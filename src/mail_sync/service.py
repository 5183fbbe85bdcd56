"""Public entry point of mail-sync.

``MailService`` wires the provider, the store and blob storage into the sync
engine, the outbound composer and the push manager, and exposes the
operations the session layer calls. All errors raised from here are
``MailSyncError`` subclasses; ``AuthExpiredError`` (code
``AUTH_REFRESH_NEEDED``) means the caller should re-authenticate.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any

import httpx
import structlog

from mail_sync.attachments import AttachmentPipeline
from mail_sync.compose import AttachmentFetcher, OutboundComposer
from mail_sync.config import Settings, get_settings
from mail_sync.exceptions import DecodeError, MailSyncError, TransientProviderError, ValidationError
from mail_sync.gmail.parsing import find_attachment_part, message_to_normalized_email
from mail_sync.interfaces import BlobStorage, ContentEnricher, MailProvider, QuoteStripper
from mail_sync.locking import utc_now
from mail_sync.models import (
    AttachmentContent,
    DedupStrategy,
    OutgoingAttachment,
    SendResult,
    SyncReport,
    ThreadView,
    WatchRegistration,
)
from mail_sync.push import PushSubscriptionManager, decode_push_notification
from mail_sync.ratelimit import RateLimiter
from mail_sync.store import LocalBlobStorage, MailStore
from mail_sync.sync import SyncEngine

logger = structlog.get_logger()


class MailService:
    """Mailbox operations for one authenticated provider connection."""

    def __init__(
        self,
        provider: MailProvider,
        store: MailStore,
        blobs: BlobStorage,
        settings: Settings | None = None,
        *,
        enricher: ContentEnricher | None = None,
        quote_stripper: QuoteStripper | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings or get_settings()
        self.provider = provider
        self.store = store
        self._quote_stripper = quote_stripper

        rate_limiter = RateLimiter(
            store,
            capacity=self.settings.enrichment_rate_capacity,
            refill_per_second=self.settings.enrichment_rate_refill_per_minute / 60.0,
            clock=clock,
        )
        self.pipeline = AttachmentPipeline(
            provider,
            blobs,
            store,
            dedup_strategy=DedupStrategy(self.settings.dedup_strategy),
            enricher=enricher,
            rate_limiter=rate_limiter,
            clock=clock,
        )
        self.engine = SyncEngine(
            provider,
            store,
            self.pipeline,
            self.settings,
            quote_stripper=quote_stripper,
            clock=clock,
        )
        self.composer = OutboundComposer(
            provider,
            store,
            self.pipeline,
            AttachmentFetcher(provider, blobs, self.settings, http_client=http_client),
            self.settings,
            quote_stripper=quote_stripper,
        )
        self.push = PushSubscriptionManager(provider, store, self.settings, clock=clock)

    @classmethod
    def from_settings(
        cls,
        provider: MailProvider,
        settings: Settings | None = None,
        *,
        enricher: ContentEnricher | None = None,
    ) -> MailService:
        """Build a service backed by the SQLite store and local blob storage from settings."""

        settings = settings or get_settings()
        store = MailStore(settings.store_db_path)
        store.initialize()
        blobs = LocalBlobStorage(
            settings.blob_root,
            settings.blob_public_base_url,
            settings.blob_signing_secret,
        )
        return cls(provider, store, blobs, settings, enricher=enricher)

    async def sync_emails(self, user_id: str) -> SyncReport:
        """Ingest new mail for ``user_id``.

        Raises:
            AuthExpiredError: The provider rejected the credentials.
            TransientProviderError: Any other run-level failure; retry later.
        """

        try:
            return await self.engine.sync(user_id)
        except MailSyncError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise TransientProviderError(f"Sync failed for {user_id}: {exc}") from exc

    async def send_reply(
        self,
        user_id: str,
        thread_id: str,
        recipients: Sequence[str],
        html_content: str,
        attachments: Sequence[OutgoingAttachment] | None = None,
    ) -> SendResult:
        return await self.composer.send_reply(user_id, thread_id, recipients, html_content, attachments)

    async def send_new(
        self,
        user_id: str,
        recipients: Sequence[str],
        subject: str | None,
        html_content: str,
        attachments: Sequence[OutgoingAttachment] | None = None,
    ) -> SendResult:
        return await self.composer.send_new(user_id, recipients, subject, html_content, attachments)

    async def mark_as_read(self, user_id: str, message_id: str) -> None:
        """Remove ``UNREAD`` at the provider and flag the stored copy as read."""

        if not message_id:
            raise ValidationError("Message ID is required")

        await self.provider.modify_message(message_id, remove_label_ids=["UNREAD"])
        updated = self.store.mark_email_read(user_id, message_id)
        logger.info("message_marked_read", user_id=user_id, message_id=message_id, stored=updated)

    async def watch_mailbox(self, user_id: str) -> WatchRegistration:
        return await self.push.register(user_id)

    async def get_thread(self, user_id: str, thread_id: str) -> ThreadView | None:
        """Fetch and decode a whole thread, oldest message first.

        Messages that cannot be decoded are left out. Returns None when the
        thread has no messages.
        """

        thread = await self.provider.get_thread(thread_id, format="full")
        raw_messages = thread.get("messages") or []
        if not raw_messages:
            return None

        messages = []
        for raw in raw_messages:
            try:
                messages.append(
                    message_to_normalized_email(
                        raw,
                        quote_stripper=self._quote_stripper,
                        url_template=self.settings.attachment_url_template,
                    )
                )
            except DecodeError as exc:
                logger.warning("thread_message_undecodable", user_id=user_id, thread_id=thread_id, error=exc.reason)

        messages.sort(key=lambda m: m.received_at)
        return ThreadView(thread_id=thread_id, messages=messages, history_id=thread.get("historyId"))

    async def get_attachment(self, message_id: str, attachment_id: str) -> AttachmentContent:
        """Download one attachment along with its content type and filename."""

        data = await self.provider.get_attachment_bytes(message_id, attachment_id)

        content_type = "application/octet-stream"
        filename = "attachment"
        message = await self.provider.get_message(message_id, format="full")
        part = find_attachment_part(message, attachment_id)
        if part is not None:
            content_type = part.get("mimeType") or content_type
            filename = part.get("filename") or filename

        return AttachmentContent(data=data, content_type=content_type, filename=filename)

    async def handle_push_notification(self, envelope: dict[str, Any]) -> SyncReport | None:
        """Trigger a sync for the mailbox named in a Pub/Sub push envelope.

        Malformed envelopes and unknown mailboxes are logged and ignored.
        """

        try:
            notification = decode_push_notification(envelope)
        except ValidationError as exc:
            logger.warning("push_notification_invalid", error=str(exc))
            return None

        user_id = self.store.find_user_by_email_address(notification.email_address)
        if user_id is None:
            logger.warning("push_notification_unknown_mailbox", email_address=notification.email_address)
            return None

        logger.info(
            "push_notification_received",
            user_id=user_id,
            history_id=notification.history_id,
        )
        return await self.sync_emails(user_id)
