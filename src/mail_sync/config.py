"""Configuration management for mail-sync.

This module handles application configuration using Pydantic settings.
Configuration can be loaded from environment variables or .env files.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with
    the MAIL_SYNC_ prefix (e.g., MAIL_SYNC_SYNC_BATCH_SIZE).
    """

    model_config = SettingsConfigDict(
        env_prefix="MAIL_SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Gmail Configuration
    gmail_credentials_path: Path = Field(
        default=Path("credentials.json"),
        description="Path to Gmail API OAuth client credentials file",
    )
    gmail_token_path: Path = Field(
        default=Path("token.json"),
        description="Path to Gmail API token file",
    )
    gmail_scopes: list[str] = Field(
        default_factory=lambda: ["https://www.googleapis.com/auth/gmail.modify"],
        description=(
            "OAuth scopes used for Gmail access. Sync, send and mark-as-read need "
            "gmail.modify."
        ),
    )
    gmail_user_id: str = Field(
        default="me",
        description="Gmail API userId used for every request",
    )

    # Storage Configuration
    store_db_path: Path = Field(
        default=Path("mail_sync.sqlite3"),
        description="Path to the SQLite database holding emails, documents and sync state",
    )
    blob_root: Path = Field(
        default=Path("blobs"),
        description="Root directory of the local blob storage",
    )
    blob_public_base_url: str = Field(
        default="http://localhost:3000/blobs",
        description="Base URL under which public blobs are served",
    )
    blob_signing_secret: str = Field(
        default="change-me",
        description="Secret used to sign temporary blob URLs",
    )

    # Outbound Configuration
    api_base_url: str = Field(
        default="http://localhost:3000",
        description="Base URL used to resolve relative /api/ attachment URLs",
    )
    attachment_url_template: str = Field(
        default="/api/emails/{message_id}/attachments/{attachment_id}",
        description="Template for the access URL of a provider attachment",
    )
    sender_address: str | None = Field(
        default=None,
        description="Explicit From header for outgoing mail. Gmail fills it in when unset.",
    )
    http_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout for HTTP attachment downloads in seconds",
    )

    # Sync Configuration
    sync_page_size: int = Field(
        default=25,
        description="Number of message references requested per list page",
    )
    sync_batch_size: int = Field(
        default=5,
        description="Number of messages fetched and decoded concurrently",
    )
    sync_max_messages_per_run: int = Field(
        default=100,
        description="Hard cap on messages examined by a single sync run",
    )
    sync_lock_ttl_seconds: int = Field(
        default=300,
        description="Lifetime of the per-user sync lock in seconds",
    )

    # Attachment indexing
    dedup_strategy: Literal["content_hash", "filename_size"] = Field(
        default="content_hash",
        description=(
            "Identity used to detect duplicate attachments: SHA-256 of the bytes, "
            "or the legacy (filename, size) pair"
        ),
    )
    enrichment_rate_capacity: int = Field(
        default=10,
        description="Burst size of the per-user enrichment rate limiter",
    )
    enrichment_rate_refill_per_minute: float = Field(
        default=10.0,
        description="Tokens added per minute to the per-user enrichment rate limiter",
    )

    # Push notifications
    push_project_id: str = Field(
        default="mail-sync",
        description="Cloud project hosting the Pub/Sub notification topic",
    )
    push_topic: str | None = Field(
        default=None,
        description="Full Pub/Sub topic name. Defaults to projects/<id>/topics/gmail-notifications",
    )
    push_label_ids: list[str] = Field(
        default_factory=lambda: ["INBOX"],
        description="Labels watched for push notifications",
    )

    # Application Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    log_json: bool = Field(
        default=False,
        description="Render logs as JSON lines instead of the console format",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )

    @property
    def resolved_push_topic(self) -> str:
        """Return the configured topic or the default one for the project."""
        if self.push_topic:
            return self.push_topic
        return f"projects/{self.push_project_id}/topics/gmail-notifications"


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings: Application settings instance.
    """
    return Settings()
