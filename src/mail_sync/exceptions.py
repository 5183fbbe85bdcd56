"""Custom exceptions for mail-sync.

Every error carries a stable ``code`` so the session layer can map it to a
response without inspecting messages. ``AuthExpiredError`` is the one callers
must special-case: it means the OAuth token needs refreshing.
"""

from __future__ import annotations


class MailSyncError(Exception):
    """Base exception for all mail-sync errors."""

    code = "MAIL_SYNC_ERROR"


class AuthExpiredError(MailSyncError):
    """Raised when the provider rejects the credentials (HTTP 401)."""

    code = "AUTH_REFRESH_NEEDED"


class TransientProviderError(MailSyncError):
    """Exception raised for network and 5xx errors from the mail provider."""

    code = "PROVIDER_ERROR"

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class DecodeError(MailSyncError):
    """Exception raised when a single message payload cannot be decoded."""

    code = "DECODE_ERROR"

    def __init__(self, message_id: str | None, reason: str) -> None:
        super().__init__(f"Failed to decode message {message_id}: {reason}")
        self.message_id = message_id
        self.reason = reason


class AttachmentProcessingError(MailSyncError):
    """Exception raised when fetching, storing or enriching one attachment fails."""

    code = "ATTACHMENT_ERROR"

    def __init__(self, filename: str, reason: str) -> None:
        super().__init__(f"Attachment {filename!r} failed: {reason}")
        self.filename = filename
        self.reason = reason


class ValidationError(MailSyncError):
    """Exception raised for malformed caller input."""

    code = "VALIDATION_ERROR"


class ThreadNotFoundError(MailSyncError):
    """Exception raised when a reply targets a thread without messages."""

    code = "THREAD_NOT_FOUND"


class ConfigurationError(MailSyncError):
    """Exception raised for configuration related errors."""

    code = "CONFIGURATION_ERROR"


class StorageError(MailSyncError):
    """Exception raised for blob or document store failures."""

    code = "STORAGE_ERROR"
