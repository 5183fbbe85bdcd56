"""Outbound messages: replies, new threads and their attachments."""

from .composer import OutboundComposer
from .fetcher import AttachmentFetcher

__all__ = ["AttachmentFetcher", "OutboundComposer"]
