"""Integration tests against a real Gmail mailbox.

These run only when ``MAIL_SYNC_INTEGRATION=1`` is set and valid OAuth files
exist at the configured credentials/token paths. Use a dedicated test account:
the send test mails the account itself.
"""

from __future__ import annotations

import os

import pytest
import pytest_asyncio

from mail_sync.config import Settings
from mail_sync.gmail.client import GmailClient
from mail_sync.models import SyncState
from mail_sync.service import MailService

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(
        os.environ.get("MAIL_SYNC_INTEGRATION") != "1",
        reason="set MAIL_SYNC_INTEGRATION=1 to run against Gmail",
    ),
]


@pytest_asyncio.fixture
async def service(tmp_path):
    settings = Settings(store_db_path=tmp_path / "store.sqlite3", blob_root=tmp_path / "blobs")
    gmail = GmailClient(settings)
    await gmail.authenticate()
    return MailService.from_settings(gmail, settings)


@pytest.mark.integration
class TestGmailIntegration:
    """Integration tests for Gmail API."""

    @pytest.mark.asyncio
    async def test_sync_small_window(self, service) -> None:
        """Test one bounded sync run and that a second run adds nothing."""
        first = await service.sync_emails("integration")
        count = service.store.count_emails("integration")
        second = await service.sync_emails("integration")

        assert first.state is SyncState.COMPLETED
        assert second.state is SyncState.COMPLETED
        if not first.capped:
            assert second.ingested <= service.store.count_emails("integration") - count

    @pytest.mark.asyncio
    async def test_send_new_to_self(self, service) -> None:
        """Test sending a message to the authenticated mailbox."""
        profile = await service.provider.get_profile()

        result = await service.send_new(
            "integration",
            [profile["emailAddress"]],
            "mail-sync integration test",
            "<p>Sent by the mail-sync integration suite.</p>",
        )

        assert result.message_id
        assert service.store.get_email("integration", result.message_id).sender == "You"
