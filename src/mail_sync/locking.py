"""Per-user mutual exclusion for long-running operations.

A ``Lock`` is a row in the store's ``sync_locks`` table with an expiry. It
is acquired by a conditional write and never renewed; a holder that outlives
its TTL simply loses the lock to the next caller.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import structlog

from mail_sync.models import SyncLock
from mail_sync.store import MailStore

logger = structlog.get_logger()

SYNC_LOCK_NAME = "email_sync"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Lock:
    """Expiring lock scoped to ``(user_id, name)``."""

    def __init__(
        self,
        store: MailStore,
        user_id: str,
        name: str = SYNC_LOCK_NAME,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self.user_id = user_id
        self.name = name
        self._clock = clock
        self._held: SyncLock | None = None

    @property
    def held(self) -> bool:
        return self._held is not None

    def try_acquire(self, ttl_seconds: int) -> bool:
        """Take the lock unless a live one exists.

        Returns:
            True when this instance now holds the lock.
        """

        now = self._clock()
        acquired = self._store.try_acquire_lock(
            self.user_id,
            self.name,
            now=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )
        if acquired is None:
            logger.info("lock_contended", user_id=self.user_id, name=self.name)
            return False

        self._held = acquired
        logger.debug("lock_acquired", user_id=self.user_id, name=self.name, expires_at=acquired.expires_at)
        return True

    def release(self) -> None:
        """Delete the lock if this instance still owns it."""

        if self._held is None:
            return
        self._store.release_lock(self.user_id, self.name, acquired_at=self._held.acquired_at)
        self._held = None
        logger.debug("lock_released", user_id=self.user_id, name=self.name)
