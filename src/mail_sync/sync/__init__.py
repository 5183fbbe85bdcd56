"""Incremental mailbox synchronization."""

from .engine import SyncEngine, build_sync_query

__all__ = ["SyncEngine", "build_sync_query"]
