"""Incremental, lock-protected ingestion of new mail.

One ``SyncEngine.sync`` call:

- takes the per-user sync lock (a live lock means another run is active and
  this one is reported as ``SKIPPED``),
- lists inbox and sent messages newer than the checkpoint, page by page,
- fetches, decodes and persists unseen messages in small concurrent batches,
- indexes their attachments,
- moves the checkpoint forward and releases the lock.

A run examines at most ``sync_max_messages_per_run`` references. When it
stops early the checkpoint keeps the page token so the next run continues
the same window instead of skipping the remainder.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog

from mail_sync.attachments import AttachmentPipeline
from mail_sync.config import Settings
from mail_sync.exceptions import AuthExpiredError, DecodeError
from mail_sync.gmail.parsing import message_to_normalized_email
from mail_sync.interfaces import MailProvider, QuoteStripper
from mail_sync.locking import Lock, utc_now
from mail_sync.models import MessageOutcome, NormalizedEmail, SyncCheckpoint, SyncReport, SyncState
from mail_sync.store import MailStore
from mail_sync.utils import batched

logger = structlog.get_logger()


def build_sync_query(since: datetime | None) -> str:
    """Provider search query for messages received after ``since``."""

    after = int(since.timestamp()) if since is not None else 0
    return f"in:inbox OR in:sent after:{after}"


class SyncEngine:
    """Pulls new messages for a user into the store."""

    def __init__(
        self,
        provider: MailProvider,
        store: MailStore,
        pipeline: AttachmentPipeline,
        settings: Settings,
        *,
        quote_stripper: QuoteStripper | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._provider = provider
        self._store = store
        self._pipeline = pipeline
        self._settings = settings
        self._quote_stripper = quote_stripper
        self._clock = clock

    async def sync(self, user_id: str) -> SyncReport:
        """Run one sync for ``user_id``.

        Returns:
            SyncReport: ``SKIPPED`` when another run holds the lock, otherwise
            ``COMPLETED`` with counters.

        Raises:
            AuthExpiredError: If the provider rejected the credentials.
            MailSyncError: For other run-level failures, after releasing the lock.
        """

        report = SyncReport(user_id=user_id, state=SyncState.LOCK_ACQUISITION_ATTEMPTED)
        lock = Lock(self._store, user_id, clock=self._clock)

        if not lock.try_acquire(self._settings.sync_lock_ttl_seconds):
            report.state = SyncState.SKIPPED
            logger.info("sync_skipped_locked", user_id=user_id)
            return report

        report.state = SyncState.RUNNING
        report.started_at = self._clock()
        logger.info("sync_started", user_id=user_id)

        try:
            await self._run(user_id, report)
        except Exception as exc:
            report.state = SyncState.FAILED
            logger.error(
                "sync_failed",
                user_id=user_id,
                error=str(exc),
                error_type=type(exc).__name__,
                examined=report.examined,
            )
            raise
        finally:
            try:
                lock.release()
            except Exception as exc:  # noqa: BLE001
                logger.warning("sync_lock_release_failed", user_id=user_id, error=str(exc))

        report.state = SyncState.COMPLETED
        report.finished_at = self._clock()
        logger.info(
            "sync_completed",
            user_id=user_id,
            examined=report.examined,
            ingested=report.ingested,
            skipped=report.skipped,
            failed=report.failed,
            attachments_indexed=report.attachments_indexed,
            attachments_failed=report.attachments_failed,
            capped=report.capped,
        )
        return report

    async def _run(self, user_id: str, report: SyncReport) -> None:
        started_at = report.started_at or self._clock()
        checkpoint = self._store.get_checkpoint(user_id)

        since = checkpoint.last_synced_at if checkpoint else None
        page_token = checkpoint.resume_page_token if checkpoint else None
        window_started_at = started_at
        if checkpoint and checkpoint.resume_page_token and checkpoint.window_started_at:
            window_started_at = checkpoint.window_started_at
            logger.info("sync_resuming_window", user_id=user_id, window_started_at=window_started_at)

        query = build_sync_query(since)
        cap = self._settings.sync_max_messages_per_run
        resumed_token = page_token

        while True:
            remaining = cap - report.examined
            try:
                page = await self._provider.list_messages(
                    query=query,
                    page_token=page_token,
                    max_results=min(self._settings.sync_page_size, remaining),
                )
            except AuthExpiredError:
                raise
            except Exception as exc:
                if resumed_token is None:
                    raise
                # Rejected resume token: rescan the window from last_synced_at.
                logger.warning(
                    "sync_resume_token_rejected",
                    user_id=user_id,
                    page_token=resumed_token,
                    error=str(exc),
                )
                page_token = resumed_token = None
                continue
            resumed_token = None
            refs = page.get("messages") or []
            report.examined += len(refs)
            logger.debug("sync_page_listed", user_id=user_id, count=len(refs), examined=report.examined)

            for batch in batched(refs, self._settings.sync_batch_size):
                await self._process_batch(user_id, batch, report)

            page_token = page.get("nextPageToken")
            if not page_token:
                break
            if report.examined >= cap:
                report.capped = True
                break

        if report.capped:
            logger.info("sync_run_capped", user_id=user_id, examined=report.examined, cap=cap)
            self._store.set_checkpoint(
                SyncCheckpoint(
                    user_id=user_id,
                    last_synced_at=since,
                    resume_page_token=page_token,
                    window_started_at=window_started_at,
                    updated_at=self._clock(),
                )
            )
        else:
            self._store.set_checkpoint(
                SyncCheckpoint(
                    user_id=user_id,
                    last_synced_at=window_started_at,
                    updated_at=self._clock(),
                )
            )

    async def _process_batch(
        self,
        user_id: str,
        batch: list[dict[str, Any]],
        report: SyncReport,
    ) -> None:
        outcomes = await asyncio.gather(
            *(self._ingest(user_id, ref, report) for ref in batch),
            return_exceptions=True,
        )

        auth_error: AuthExpiredError | None = None
        for ref, outcome in zip(batch, outcomes):
            if outcome is MessageOutcome.INGESTED:
                report.ingested += 1
            elif outcome is MessageOutcome.SKIPPED:
                report.skipped += 1
            elif outcome is MessageOutcome.FAILED:
                report.failed += 1
            elif isinstance(outcome, AuthExpiredError):
                report.failed += 1
                auth_error = auth_error or outcome
            elif isinstance(outcome, BaseException):
                report.failed += 1
                logger.error(
                    "sync_message_failed",
                    user_id=user_id,
                    message_id=ref.get("id"),
                    error=str(outcome),
                )

        if auth_error is not None:
            raise auth_error

    async def _ingest(self, user_id: str, ref: dict[str, Any], report: SyncReport) -> MessageOutcome:
        message_id = ref.get("id")
        if not message_id:
            return MessageOutcome.SKIPPED
        if self._store.email_exists(user_id, message_id):
            return MessageOutcome.SKIPPED

        try:
            message = await self._provider.get_message(message_id, format="full")
            email = message_to_normalized_email(
                message,
                quote_stripper=self._quote_stripper,
                url_template=self._settings.attachment_url_template,
            )
        except AuthExpiredError:
            raise
        except DecodeError as exc:
            logger.warning("sync_message_undecodable", user_id=user_id, message_id=message_id, error=exc.reason)
            return MessageOutcome.FAILED
        except Exception as exc:  # noqa: BLE001
            logger.error("sync_message_failed", user_id=user_id, message_id=message_id, error=str(exc))
            return MessageOutcome.FAILED

        # The email row is written after its attachments; an aborted run leaves it unstored.
        await self._index_attachments(user_id, email, report)
        try:
            self._store.upsert_email(user_id, email)
        except Exception as exc:  # noqa: BLE001
            logger.error("sync_message_failed", user_id=user_id, message_id=message_id, error=str(exc))
            return MessageOutcome.FAILED
        return MessageOutcome.INGESTED

    async def _index_attachments(self, user_id: str, email: NormalizedEmail, report: SyncReport) -> None:
        for ref in email.attachments:
            try:
                await self._pipeline.process_ref(user_id, email.message_id, ref, email.sender)
            except AuthExpiredError:
                raise
            except Exception as exc:  # noqa: BLE001
                report.attachments_failed += 1
                logger.warning(
                    "sync_attachment_failed",
                    user_id=user_id,
                    message_id=email.message_id,
                    filename=ref.filename,
                    error=str(exc),
                )
            else:
                report.attachments_indexed += 1
