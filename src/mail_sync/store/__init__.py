"""Persistence for mail-sync.

``MailStore`` keeps emails, indexed documents and sync state in SQLite;
``LocalBlobStorage`` keeps attachment bytes on the filesystem.
"""

from .blob import LocalBlobStorage
from .repository import MailStore

__all__ = ["LocalBlobStorage", "MailStore"]
