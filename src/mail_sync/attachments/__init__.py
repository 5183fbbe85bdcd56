"""Attachment storage, deduplication and enrichment."""

from .pipeline import AttachmentPipeline

__all__ = ["AttachmentPipeline"]
