"""Attachment indexing pipeline.

For one attachment the pipeline:

1. obtains the bytes (from the provider for an ``AttachmentRef``),
2. looks for an already indexed copy (dedup strategy from settings),
3. stores the bytes at ``users/<user_id>/emails/<timestamp>-<filename>``
   and makes them public,
4. records an ``IndexedDocument``,
5. runs optional enrichment (image analysis, PDF parsing) behind the
   per-user rate limiter.

Any failure surfaces as ``AttachmentProcessingError`` so callers can count it
against the single attachment.
"""

from __future__ import annotations

import asyncio
import hashlib
from collections.abc import Callable
from datetime import datetime

import structlog

from mail_sync.exceptions import AttachmentProcessingError, AuthExpiredError
from mail_sync.interfaces import BlobStorage, ContentEnricher, MailProvider
from mail_sync.locking import utc_now
from mail_sync.models import LOCAL_USER_SENDER, AttachmentRef, DedupStrategy, IndexedDocument
from mail_sync.ratelimit import RateLimiter
from mail_sync.store import MailStore

logger = structlog.get_logger()

IMAGE_FALLBACK_TEXT = "Image attachment (analysis not available)"
SUMMARY_LENGTH = 200


def summarize(text: str, limit: int = SUMMARY_LENGTH) -> str:
    """First ``limit`` characters of ``text``, with ``...`` when truncated."""

    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def _safe_filename(filename: str) -> str:
    return filename.replace("/", "_").replace("\\", "_").strip() or "attachment"


def _resolve_sender(sender: str) -> str:
    if sender in ("me", LOCAL_USER_SENDER):
        return LOCAL_USER_SENDER
    return sender


class AttachmentPipeline:
    """Stores, deduplicates and enriches attachments for one mailbox."""

    def __init__(
        self,
        provider: MailProvider,
        blobs: BlobStorage,
        store: MailStore,
        *,
        dedup_strategy: DedupStrategy = DedupStrategy.CONTENT_HASH,
        enricher: ContentEnricher | None = None,
        rate_limiter: RateLimiter | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._provider = provider
        self._blobs = blobs
        self._store = store
        self._dedup_strategy = DedupStrategy(dedup_strategy)
        self._enricher = enricher
        self._rate_limiter = rate_limiter
        self._clock = clock
        self._user_locks: dict[str, asyncio.Lock] = {}

    async def process_ref(
        self,
        user_id: str,
        message_id: str,
        ref: AttachmentRef,
        sender: str,
    ) -> IndexedDocument:
        """Fetch an attachment from the provider and index it."""

        try:
            data = await self._provider.get_attachment_bytes(message_id, ref.provider_attachment_id)
        except AuthExpiredError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "attachment_fetch_failed",
                user_id=user_id,
                message_id=message_id,
                filename=ref.filename,
                error=str(exc),
            )
            raise AttachmentProcessingError(ref.filename, f"fetch failed: {exc}") from exc

        return await self.index_bytes(user_id, ref.filename, ref.mime_type, data, sender)

    async def index_bytes(
        self,
        user_id: str,
        filename: str,
        mime_type: str,
        data: bytes,
        sender: str,
    ) -> IndexedDocument:
        """Index attachment bytes that are already in hand.

        Returns:
            The new document, or the existing one when the attachment is a
            duplicate.

        Raises:
            AttachmentProcessingError: If storage or the store fails.
        """

        try:
            return await self._index(user_id, filename, mime_type, data, _resolve_sender(sender))
        except (AttachmentProcessingError, AuthExpiredError):
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "attachment_processing_failed",
                user_id=user_id,
                filename=filename,
                error=str(exc),
            )
            raise AttachmentProcessingError(filename, str(exc)) from exc

    async def _index(
        self,
        user_id: str,
        filename: str,
        mime_type: str,
        data: bytes,
        sender: str,
    ) -> IndexedDocument:
        digest = hashlib.sha256(data).hexdigest()

        # Dedup check, upload and insert are serialized per user.
        async with self._user_locks.setdefault(user_id, asyncio.Lock()):
            document, created = await self._store_once(user_id, filename, mime_type, data, sender, digest)
        if not created:
            return document
        return await self._enrich(document)

    async def _store_once(
        self,
        user_id: str,
        filename: str,
        mime_type: str,
        data: bytes,
        sender: str,
        digest: str,
    ) -> tuple[IndexedDocument, bool]:
        existing = self._find_duplicate(user_id, filename, len(data), digest)
        if existing is not None:
            logger.info(
                "attachment_duplicate_skipped",
                user_id=user_id,
                filename=filename,
                document_id=existing.document_id,
                strategy=self._dedup_strategy.value,
            )
            return existing, False

        now = self._clock()
        stamp = int(now.timestamp() * 1000)
        storage_path = f"users/{user_id}/emails/{stamp}-{_safe_filename(filename)}"
        while await self._blobs.exists(storage_path):
            stamp += 1
            storage_path = f"users/{user_id}/emails/{stamp}-{_safe_filename(filename)}"
        await self._blobs.save(
            storage_path,
            data,
            mime_type,
            metadata={
                "originalName": filename,
                "size": len(data),
                "uploadedBy": user_id,
                "uploadedAt": now.isoformat(),
            },
        )
        url = await self._blobs.make_public(storage_path)

        document = self._store.insert_document(
            IndexedDocument(
                document_id="",
                user_id=user_id,
                filename=filename,
                mime_type=mime_type,
                size=len(data),
                content_sha256=digest,
                storage_path=storage_path,
                url=url,
                sender=sender,
                created_at=now,
                updated_at=now,
            ),
            dedup_key=self._dedup_key(filename, len(data), digest),
        )
        if document.storage_path != storage_path:
            logger.warning(
                "attachment_duplicate_uploaded",
                user_id=user_id,
                filename=filename,
                document_id=document.document_id,
                orphan_path=storage_path,
            )
            return document, False
        logger.info(
            "attachment_indexed",
            user_id=user_id,
            filename=filename,
            document_id=document.document_id,
            size=len(data),
        )
        return document, True

    def _dedup_key(self, filename: str, size: int, digest: str) -> str:
        if self._dedup_strategy is DedupStrategy.FILENAME_SIZE:
            return f"name:{filename}:{size}"
        return f"sha256:{digest}"

    def _find_duplicate(
        self,
        user_id: str,
        filename: str,
        size: int,
        digest: str,
    ) -> IndexedDocument | None:
        if self._dedup_strategy is DedupStrategy.FILENAME_SIZE:
            matches = self._store.find_documents(user_id, filename=filename, size=size)
        else:
            matches = self._store.find_documents(user_id, content_sha256=digest)
        return matches[0] if matches else None

    async def _enrich(self, document: IndexedDocument) -> IndexedDocument:
        is_image = document.mime_type.lower().startswith("image/")
        is_pdf = document.mime_type.lower() == "application/pdf"
        if not (is_image or is_pdf):
            return document

        if self._enricher is None or not self._allow_enrichment(document.user_id):
            if not is_image:
                return document
            return self._apply(document, text=IMAGE_FALLBACK_TEXT, summary=None, embedding=None, ok=False)

        if is_image:
            try:
                text = await self._enricher.analyze_image(document.url or document.storage_path)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "image_analysis_failed",
                    document_id=document.document_id,
                    filename=document.filename,
                    error=str(exc),
                )
                return self._apply(document, text=IMAGE_FALLBACK_TEXT, summary=None, embedding=None, ok=False)
            return self._apply(document, text=text, summary=summarize(text), embedding=None, ok=True)

        try:
            parsed = await self._enricher.parse_pdf(document.storage_path)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "pdf_parse_failed",
                document_id=document.document_id,
                filename=document.filename,
                error=str(exc),
            )
            return document
        return self._apply(
            document,
            text=parsed.text,
            summary=parsed.summary or summarize(parsed.text),
            embedding=parsed.embedding,
            ok=True,
        )

    def _allow_enrichment(self, user_id: str) -> bool:
        if self._rate_limiter is None:
            return True
        return self._rate_limiter.try_acquire(f"enrichment:{user_id}")

    def _apply(
        self,
        document: IndexedDocument,
        *,
        text: str | None,
        summary: str | None,
        embedding: list[float] | None,
        ok: bool,
    ) -> IndexedDocument:
        self._store.update_document_enrichment(
            document.document_id,
            text=text,
            summary=summary,
            embedding=embedding,
            has_analysis=ok,
        )
        return document.model_copy(
            update={"text": text, "summary": summary, "embedding": embedding, "has_analysis": ok}
        )
