"""Token-bucket rate limiting with state kept in the store.

Bucket state is a small JSON document in the ``kv`` table under
``ratelimit:<key>``, so limits are shared by every process using the same
database. The clock is injected for tests.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime

import structlog

from mail_sync.locking import utc_now
from mail_sync.store import MailStore

logger = structlog.get_logger()


class RateLimiter:
    """Per-key token bucket.

    Args:
        store: Store holding bucket state.
        capacity: Maximum burst size.
        refill_per_second: Tokens added per second.
        clock: Source of the current time.
    """

    def __init__(
        self,
        store: MailStore,
        *,
        capacity: int,
        refill_per_second: float,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if refill_per_second < 0:
            raise ValueError("refill_per_second must be >= 0")
        self._store = store
        self._capacity = float(capacity)
        self._refill = refill_per_second
        self._clock = clock

    def try_acquire(self, key: str, tokens: float = 1.0) -> bool:
        """Consume ``tokens`` from the bucket for ``key`` if available."""

        state_key = f"ratelimit:{key}"
        now = self._clock().timestamp()

        raw = self._store.get_kv(state_key)
        if raw is None:
            available, updated = self._capacity, now
        else:
            state = json.loads(raw)
            available, updated = float(state["tokens"]), float(state["updated"])

        elapsed = max(0.0, now - updated)
        available = min(self._capacity, available + elapsed * self._refill)

        allowed = available >= tokens
        if allowed:
            available -= tokens
        else:
            logger.info("rate_limited", key=key, available=round(available, 3))

        self._store.set_kv(state_key, json.dumps({"tokens": available, "updated": now}))
        return allowed
