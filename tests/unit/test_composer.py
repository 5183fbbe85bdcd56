"""Unit tests for the outbound composer."""

from __future__ import annotations

import email
import email.policy

import pytest

from mail_sync.attachments import AttachmentPipeline
from mail_sync.compose import AttachmentFetcher, OutboundComposer
from mail_sync.exceptions import ThreadNotFoundError, ValidationError
from mail_sync.models import OutgoingAttachment


@pytest.fixture
def composer(provider, blobs, store, settings, clock) -> OutboundComposer:
    pipeline = AttachmentPipeline(provider, blobs, store, clock=clock)
    fetcher = AttachmentFetcher(provider, blobs, settings)
    return OutboundComposer(provider, store, pipeline, fetcher, settings)


@pytest.fixture
def thread(provider, gmail_message) -> str:
    provider.add(gmail_message("orig", thread_id="t1", subject="Project plan"))
    return "t1"


async def _stored_uploads(blobs, names: list[str]) -> list[OutgoingAttachment]:
    attachments = []
    for name in names:
        path = f"users/u1/uploads/{name}"
        await blobs.save(path, f"content of {name}".encode(), "application/pdf")
        attachments.append(OutgoingAttachment(url=f"/{path}", filename=name, mime_type="application/pdf"))
    return attachments


def _sent_message(provider, index: int = 0):
    return email.message_from_bytes(provider.sent[index]["raw"], policy=email.policy.default)


class TestSendReply:
    """Replies inside an existing thread."""

    @pytest.mark.asyncio
    async def test_threading_headers_and_thread_id(self, composer, provider, thread) -> None:
        result = await composer.send_reply("u1", thread, ["bob@example.com"], "<p>Sounds good</p>")

        sent = _sent_message(provider)
        assert provider.sent[0]["thread_id"] == "t1"
        assert sent["In-Reply-To"] == "<orig@mail.example.com>"
        assert sent["References"] == "<orig@mail.example.com>"
        assert sent["Subject"] == "Re: Project plan"
        assert result.thread_id == "t1"
        assert result.message_id == "sent-1"

    @pytest.mark.asyncio
    async def test_sent_message_is_persisted_as_you(self, composer, provider, store, thread, blobs) -> None:
        attachments = await _stored_uploads(blobs, ["a.pdf"])

        await composer.send_reply("u1", thread, ["bob@example.com"], "<p>See attached</p>", attachments)

        stored = store.get_email("u1", "sent-1")
        assert stored is not None
        assert stored.sender == "You"
        assert stored.is_read is True
        assert "SENT" in stored.labels
        assert stored.thread_id == "t1"
        assert [a.filename for a in stored.attachments] == ["a.pdf"]
        assert stored.attachments[0].access_url == "/api/emails/sent-1/attachments/part-1"

    @pytest.mark.asyncio
    async def test_partial_attachment_failure(self, composer, provider, store, thread, blobs) -> None:
        attachments = await _stored_uploads(blobs, ["a.pdf", "b.pdf", "c.pdf"])
        # Indexing uploads to users/<uid>/emails/<ts>-<name>; reject only c.pdf.
        blobs.fail_on.add("-c.pdf")

        result = await composer.send_reply("u1", thread, ["bob@example.com"], "<p>Files</p>", attachments)

        assert result.successful_attachments == ["a.pdf", "b.pdf"]
        assert result.failed_attachments == ["c.pdf"]
        assert result.partial_success is True
        assert len(provider.sent) == 1
        assert len(list(_sent_message(provider).iter_attachments())) == 3
        assert {d.filename for d in store.find_documents("u1")} == {"a.pdf", "b.pdf"}

    @pytest.mark.asyncio
    async def test_download_failure_and_dropped_entries(self, composer, provider, thread, blobs) -> None:
        attachments = await _stored_uploads(blobs, ["ok.pdf"])
        attachments.append(
            OutgoingAttachment(
                url="/users/u1/uploads/missing.pdf", filename="missing.pdf", mime_type="application/pdf"
            )
        )
        attachments.append(OutgoingAttachment(url="/users/u1/uploads/x.pdf", filename="x.pdf"))

        result = await composer.send_reply("u1", thread, ["bob@example.com"], "<p>Files</p>", attachments)

        assert result.successful_attachments == ["ok.pdf"]
        assert result.failed_attachments == ["missing.pdf"]
        assert result.dropped_attachments == ["x.pdf"]
        assert [p.get_filename() for p in _sent_message(provider).iter_attachments()] == ["ok.pdf"]

    @pytest.mark.asyncio
    async def test_all_attachments_failing_still_sends(self, composer, provider, thread) -> None:
        attachments = [
            OutgoingAttachment(url="/nowhere/a.pdf", filename="a.pdf", mime_type="application/pdf"),
            OutgoingAttachment(url="/nowhere/b.pdf", filename="b.pdf", mime_type="application/pdf"),
        ]

        result = await composer.send_reply("u1", thread, ["bob@example.com"], "<p>Hi</p>", attachments)

        assert len(provider.sent) == 1
        assert result.successful_attachments == []
        assert result.failed_attachments == ["a.pdf", "b.pdf"]

    @pytest.mark.asyncio
    async def test_refetch_failure_persists_without_attachments(
        self, composer, provider, store, thread, blobs
    ) -> None:
        provider.refetch_sent_fails = True
        attachments = await _stored_uploads(blobs, ["a.pdf"])

        result = await composer.send_reply("u1", thread, ["bob@example.com"], "<p>Hi</p>", attachments)

        stored = store.get_email("u1", result.message_id)
        assert stored is not None
        assert stored.attachments == []
        assert stored.text_body == "Hi"
        assert result.successful_attachments == ["a.pdf"]

    @pytest.mark.asyncio
    async def test_validation_happens_before_io(self, composer, provider, thread) -> None:
        with pytest.raises(ValidationError):
            await composer.send_reply("u1", thread, [], "<p>Hi</p>")
        with pytest.raises(ValidationError):
            await composer.send_reply("u1", thread, ["bob@example.com"], "   ")
        with pytest.raises(ValidationError):
            await composer.send_reply("u1", "", ["bob@example.com"], "<p>Hi</p>")
        with pytest.raises(ValidationError):
            await composer.send_reply("u1", thread, ["not-an-address"], "<p>Hi</p>")

        assert provider.sent == []

    @pytest.mark.asyncio
    async def test_unknown_thread(self, composer, provider) -> None:
        with pytest.raises(ThreadNotFoundError):
            await composer.send_reply("u1", "missing", ["bob@example.com"], "<p>Hi</p>")

        assert provider.sent == []


class TestSendNew:
    """New threads."""

    @pytest.mark.asyncio
    async def test_new_thread_has_no_threading_headers(self, composer, provider, store) -> None:
        result = await composer.send_new("u1", ["Bob <bob@example.com>"], "Kickoff", "<p>Welcome</p>")

        sent = _sent_message(provider)
        assert provider.sent[0]["thread_id"] is None
        assert sent["In-Reply-To"] is None
        assert sent["Subject"] == "Kickoff"
        assert result.thread_id == "thread-new-1"
        assert store.get_email("u1", result.message_id).sender == "You"

    @pytest.mark.asyncio
    async def test_missing_subject_defaults(self, composer, provider) -> None:
        await composer.send_new("u1", ["bob@example.com"], None, "<p>Hi</p>")

        assert _sent_message(provider)["Subject"] == "No Subject"

    @pytest.mark.asyncio
    async def test_from_header_when_configured(self, provider, blobs, store, settings, clock) -> None:
        settings = settings.model_copy(update={"sender_address": "Me <me@example.com>"})
        composer = OutboundComposer(
            provider,
            store,
            AttachmentPipeline(provider, blobs, store, clock=clock),
            AttachmentFetcher(provider, blobs, settings),
            settings,
        )

        await composer.send_new("u1", ["bob@example.com"], "Hi", "<p>Hi</p>")

        assert _sent_message(provider)["From"] == "Me <me@example.com>"
