"""mail-sync - Gmail synchronization and MIME engine.

This package ingests Gmail messages into normalized records, encodes
outgoing replies as multipart MIME, indexes attachments and manages the
Gmail push-notification watch.
"""

__version__ = "0.1.0"
__author__ = "Trickl"

from mail_sync.config import Settings, get_settings

__all__ = ["Settings", "get_settings", "__version__", "__author__"]
