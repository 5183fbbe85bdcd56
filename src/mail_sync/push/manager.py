"""Lifecycle of the Gmail watch registration.

Gmail delivers mailbox change notifications to a Pub/Sub topic for as long as
a watch is registered; registrations expire after about a week and must be
renewed. Each notification only says *that* something changed
(``emailAddress``, ``historyId``); the receiver triggers an incremental sync.
"""

from __future__ import annotations

import base64
import binascii
import json
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from pydantic import BaseModel, Field

from mail_sync.config import Settings
from mail_sync.exceptions import TransientProviderError, ValidationError
from mail_sync.interfaces import MailProvider
from mail_sync.locking import utc_now
from mail_sync.models import WatchRegistration
from mail_sync.store import MailStore

logger = structlog.get_logger()


class PushNotification(BaseModel):
    """Payload of one Gmail Pub/Sub notification."""

    email_address: str = Field(alias="emailAddress")
    history_id: str = Field(alias="historyId")


def decode_push_notification(envelope: dict[str, Any]) -> PushNotification:
    """Decode a Pub/Sub push envelope.

    Args:
        envelope: Request body as delivered by Pub/Sub push
            (``{"message": {"data": "<base64 json>", ...}, "subscription": ...}``).

    Raises:
        ValidationError: If the envelope or its payload is malformed.
    """

    message = envelope.get("message") if isinstance(envelope, dict) else None
    data = message.get("data") if isinstance(message, dict) else None
    if not isinstance(data, str) or not data:
        raise ValidationError("Push envelope has no message data")

    try:
        decoded = base64.b64decode(data + "=" * (-len(data) % 4), altchars=b"-_")
        payload = json.loads(decoded)
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationError(f"Push payload is not base64 JSON: {exc}") from exc

    if not isinstance(payload, dict) or not payload.get("emailAddress") or payload.get("historyId") is None:
        raise ValidationError("Push payload lacks emailAddress or historyId")

    return PushNotification(emailAddress=str(payload["emailAddress"]), historyId=str(payload["historyId"]))


def _expiration_from_ms(raw: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(raw) / 1000.0, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError) as exc:
        raise TransientProviderError(f"watch: unexpected expiration {raw!r}") from exc


class PushSubscriptionManager:
    """Registers, renews and records the mailbox watch for a user."""

    def __init__(
        self,
        provider: MailProvider,
        store: MailStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._provider = provider
        self._store = store
        self._settings = settings
        self._clock = clock

    async def register(self, user_id: str) -> WatchRegistration:
        """(Re-)register push notifications for ``user_id``.

        Any previous watch is stopped first; failing to stop it is logged and
        does not prevent the new registration.
        """

        try:
            await self._provider.stop_watch()
        except Exception as exc:  # noqa: BLE001
            logger.warning("watch_stop_failed", user_id=user_id, error=str(exc))

        topic = self._settings.resolved_push_topic
        label_ids = list(self._settings.push_label_ids)
        response = await self._provider.watch(label_ids, topic)

        email_address: str | None = None
        try:
            profile = await self._provider.get_profile()
            email_address = profile.get("emailAddress")
        except Exception as exc:  # noqa: BLE001
            logger.warning("watch_profile_lookup_failed", user_id=user_id, error=str(exc))

        history_id = response.get("historyId")
        registration = WatchRegistration(
            user_id=user_id,
            email_address=email_address,
            history_id=str(history_id) if history_id is not None else None,
            expiration=_expiration_from_ms(response.get("expiration")),
            topic=topic,
            label_ids=label_ids,
            registered_at=self._clock(),
        )
        self._store.save_watch_registration(registration)

        logger.info(
            "watch_registered",
            user_id=user_id,
            topic=topic,
            expiration=registration.expiration.isoformat(),
            history_id=registration.history_id,
        )
        return registration

    def needs_renewal(self, user_id: str, margin: timedelta = timedelta(days=1)) -> bool:
        """True when no registration is stored or it expires within ``margin``."""

        registration = self._store.get_watch_registration(user_id)
        if registration is None:
            return True
        return registration.expiration - margin <= self._clock()
