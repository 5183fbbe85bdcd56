"""Unit tests for outgoing attachment retrieval."""

from __future__ import annotations

import httpx
import pytest
import respx

from mail_sync.compose import AttachmentFetcher
from mail_sync.exceptions import AttachmentProcessingError, AuthExpiredError
from mail_sync.models import OutgoingAttachment


@pytest.fixture
def fetcher(provider, blobs, settings) -> AttachmentFetcher:
    return AttachmentFetcher(provider, blobs, settings)


def _attachment(url: str, filename: str = "file.bin", mime_type: str = "application/octet-stream"):
    return OutgoingAttachment(url=url, filename=filename, mime_type=mime_type)


class TestAttachmentFetcher:
    """URL routing and error reporting."""

    @pytest.mark.asyncio
    async def test_provider_attachment_path(self, fetcher, provider) -> None:
        provider.attachments[("m1", "att-9")] = b"from gmail"

        result = await fetcher.fetch(_attachment("/api/emails/m1/attachments/att-9", "a.pdf", "application/pdf"))

        assert result.data == b"from gmail"
        assert result.filename == "a.pdf"
        assert result.mime_type == "application/pdf"

    @pytest.mark.asyncio
    async def test_other_api_path_uses_api_base_url(self, fetcher) -> None:
        with respx.mock:
            route = respx.get("https://app.example.com/api/context/document/7/view").mock(
                return_value=httpx.Response(200, content=b"doc")
            )

            result = await fetcher.fetch(_attachment("/api/context/document/7/view"))

        assert route.called
        assert result.data == b"doc"

    @pytest.mark.asyncio
    async def test_storage_path_downloads_blob(self, fetcher, blobs) -> None:
        await blobs.save("users/u1/uploads/x.txt", b"stored", "text/plain")

        result = await fetcher.fetch(_attachment("/users/u1/uploads/x.txt"))

        assert result.data == b"stored"

    @pytest.mark.asyncio
    async def test_public_blob_url_downloads_blob(self, fetcher, blobs) -> None:
        await blobs.save("users/u1/emails/1-a b.txt", b"public", "text/plain")

        result = await fetcher.fetch(_attachment("https://blobs.example.com/users/u1/emails/1-a%20b.txt"))

        assert result.data == b"public"

    @pytest.mark.asyncio
    async def test_remote_url(self, fetcher) -> None:
        with respx.mock:
            respx.get("https://cdn.example.com/logo.png").mock(return_value=httpx.Response(200, content=b"png"))

            result = await fetcher.fetch(_attachment("https://cdn.example.com/logo.png", "logo.png", "image/png"))

        assert result.data == b"png"

    @pytest.mark.asyncio
    async def test_http_error_is_attachment_error(self, fetcher) -> None:
        with respx.mock:
            respx.get("https://cdn.example.com/missing.png").mock(return_value=httpx.Response(404))

            with pytest.raises(AttachmentProcessingError) as exc_info:
                await fetcher.fetch(_attachment("https://cdn.example.com/missing.png", "missing.png", "image/png"))

        assert exc_info.value.filename == "missing.png"

    @pytest.mark.asyncio
    async def test_injected_client_is_used(self, provider, blobs, settings) -> None:
        with respx.mock:
            respx.get("https://cdn.example.com/a.txt").mock(return_value=httpx.Response(200, content=b"a"))
            async with httpx.AsyncClient() as client:
                fetcher = AttachmentFetcher(provider, blobs, settings, http_client=client)
                result = await fetcher.fetch(_attachment("https://cdn.example.com/a.txt"))

        assert result.data == b"a"

    @pytest.mark.asyncio
    async def test_incomplete_attachment_rejected(self, fetcher) -> None:
        with pytest.raises(AttachmentProcessingError):
            await fetcher.fetch(OutgoingAttachment(url="/x"))

    @pytest.mark.asyncio
    async def test_auth_expiry_propagates(self, fetcher, provider) -> None:
        provider.attachment_errors[("m1", "att-9")] = AuthExpiredError("token revoked")

        with pytest.raises(AuthExpiredError):
            await fetcher.fetch(_attachment("/api/emails/m1/attachments/att-9", "a.pdf", "application/pdf"))
