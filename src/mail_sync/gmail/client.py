"""Gmail API client implementation.

This module provides the ``MailProvider`` used by the sync engine, the
outbound composer and the push subscription manager.

Notes:
    The Google API client is synchronous. This project wraps those calls using
    `asyncio.to_thread` so the rest of the codebase can remain async-friendly.
    Every failure is classified in `_classify`: HTTP 401 becomes
    `AuthExpiredError`, everything else `TransientProviderError`.
"""

from __future__ import annotations

import asyncio
import base64
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

import structlog

from mail_sync.config import Settings
from mail_sync.exceptions import (
    AuthExpiredError,
    ConfigurationError,
    MailSyncError,
    TransientProviderError,
)

logger = structlog.get_logger()

T = TypeVar("T")


def _http_status(exc: Exception) -> int | None:
    resp = getattr(exc, "resp", None)
    status = getattr(resp, "status", None)
    if status is None:
        status = getattr(exc, "status_code", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def _classify(exc: Exception, operation: str) -> MailSyncError:
    from google.auth.exceptions import RefreshError

    if isinstance(exc, MailSyncError):
        return exc
    if isinstance(exc, RefreshError):
        return AuthExpiredError(f"{operation}: {exc}")
    status = _http_status(exc)
    if status == 401:
        return AuthExpiredError(f"{operation}: {exc}")
    return TransientProviderError(f"{operation}: {exc}", status=status)


class GmailClient:
    """Gmail API client for sync, send and watch operations.

    The client can be built from local OAuth files (``authenticate``) or from
    an access token handed over by the session layer (``from_access_token``).
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        service: Any | None = None,
        credentials: Any | None = None,
    ) -> None:
        """Initialize Gmail client.

        Args:
            settings: Application settings. If None, uses default settings.
            service: Prebuilt ``googleapiclient`` resource, mainly for tests.
            credentials: OAuth credentials behind ``service``. When set, every
                request executes on its own authorized ``httplib2.Http``.
        """
        from mail_sync.config import get_settings

        self.settings = settings or get_settings()
        self._service: Any | None = service
        self._credentials: Any | None = credentials
        self._user_id = self.settings.gmail_user_id
        logger.info("gmail_client_initialized")

    @classmethod
    def from_access_token(cls, access_token: str, settings: Settings | None = None) -> GmailClient:
        """Build a client around an OAuth access token obtained elsewhere."""

        from google.oauth2.credentials import Credentials
        from googleapiclient.discovery import build

        creds = Credentials(token=access_token)
        service = build("gmail", "v1", credentials=creds, cache_discovery=False)
        return cls(settings, service=service, credentials=creds)

    async def authenticate(self) -> None:
        """Authenticate with Gmail API using the OAuth files from settings.

        Raises:
            ConfigurationError: If the credentials file is missing.
            AuthExpiredError: If the stored token cannot be refreshed.
        """

        if self._service is not None:
            return

        credentials_path = Path(self.settings.gmail_credentials_path)
        token_path = Path(self.settings.gmail_token_path)
        scopes = list(self.settings.gmail_scopes)

        if not credentials_path.exists():
            raise ConfigurationError(
                f"Gmail credentials file not found: {credentials_path}. "
                "Download an OAuth client file from the Google Cloud console."
            )

        logger.info(
            "gmail_authentication_started",
            credentials_path=str(credentials_path),
            token_path=str(token_path),
            scopes=scopes,
        )

        try:
            self._service, self._credentials = await asyncio.to_thread(
                self._build_service,
                credentials_path,
                token_path,
                scopes,
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("gmail_authentication_failed", error=str(exc))
            raise AuthExpiredError(str(exc)) from exc

        logger.info("gmail_authentication_completed")

    async def list_messages(
        self,
        query: str | None = None,
        page_token: str | None = None,
        max_results: int = 25,
    ) -> dict[str, Any]:
        """List one page of message references.

        Returns:
            ``{"messages": [...], "nextPageToken": ...}`` as returned by Gmail.
        """

        logger.info("listing_messages", max_results=max_results, query=query, has_page_token=bool(page_token))
        return await self._call(
            "list_messages",
            lambda s: s.users()
            .messages()
            .list(userId=self._user_id, q=query, pageToken=page_token, maxResults=max_results),
        )

    async def get_message(self, message_id: str, *, format: str = "full") -> dict[str, Any]:
        """Get a specific message by ID."""

        logger.debug("getting_message", message_id=message_id, format=format)
        return await self._call(
            "get_message",
            lambda s: s.users().messages().get(userId=self._user_id, id=message_id, format=format),
        )

    async def get_thread(self, thread_id: str, *, format: str = "full") -> dict[str, Any]:
        """Get a thread with all of its messages."""

        logger.debug("getting_thread", thread_id=thread_id, format=format)
        return await self._call(
            "get_thread",
            lambda s: s.users().threads().get(userId=self._user_id, id=thread_id, format=format),
        )

    async def send_message(self, raw: bytes, thread_id: str | None = None) -> dict[str, Any]:
        """Send an RFC 822 message, optionally inside an existing thread."""

        body: dict[str, Any] = {"raw": base64.urlsafe_b64encode(raw).decode("ascii")}
        if thread_id:
            body["threadId"] = thread_id

        logger.info("sending_message", thread_id=thread_id, size=len(raw))
        return await self._call(
            "send_message",
            lambda s: s.users().messages().send(userId=self._user_id, body=body),
        )

    async def modify_message(
        self,
        message_id: str,
        *,
        add_label_ids: list[str] | None = None,
        remove_label_ids: list[str] | None = None,
    ) -> dict[str, Any]:
        """Add or remove labels on a message."""

        body = {
            "addLabelIds": list(add_label_ids or []),
            "removeLabelIds": list(remove_label_ids or []),
        }
        logger.info("modifying_message", message_id=message_id, **body)
        return await self._call(
            "modify_message",
            lambda s: s.users().messages().modify(userId=self._user_id, id=message_id, body=body),
        )

    async def get_attachment_bytes(self, message_id: str, attachment_id: str) -> bytes:
        """Download and decode the bytes of one attachment."""

        logger.debug("getting_attachment", message_id=message_id, attachment_id=attachment_id)
        response = await self._call(
            "get_attachment",
            lambda s: s.users()
            .messages()
            .attachments()
            .get(userId=self._user_id, messageId=message_id, id=attachment_id),
        )
        data = response.get("data")
        if not data:
            raise TransientProviderError(f"get_attachment: no data for attachment {attachment_id}")
        return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))

    async def watch(self, label_ids: list[str], topic: str) -> dict[str, Any]:
        """Register Pub/Sub push notifications for the given labels."""

        body = {"labelIds": list(label_ids), "topicName": topic}
        logger.info("starting_watch", label_ids=label_ids, topic=topic)
        return await self._call(
            "watch",
            lambda s: s.users().watch(userId=self._user_id, body=body),
        )

    async def stop_watch(self) -> None:
        """Stop push notifications for the mailbox."""

        logger.info("stopping_watch")
        await self._call("stop_watch", lambda s: s.users().stop(userId=self._user_id))

    async def get_profile(self) -> dict[str, Any]:
        """Return the mailbox profile (``emailAddress``, ``historyId``)."""

        return await self._call(
            "get_profile",
            lambda s: s.users().getProfile(userId=self._user_id),
        )

    async def _call(self, operation: str, build_request: Callable[[Any], Any]) -> Any:
        service = self._ensure_authenticated()
        try:
            return await asyncio.to_thread(self._execute, build_request(service))
        except Exception as exc:  # noqa: BLE001
            error = _classify(exc, operation)
            logger.warning(
                "gmail_call_failed",
                operation=operation,
                error=str(exc),
                error_code=error.code,
                status=_http_status(exc),
            )
            raise error from exc

    def _execute(self, request: Any) -> Any:
        # httplib2.Http is not thread-safe, so concurrent calls each get their own.
        if self._credentials is None:
            return request.execute()
        return request.execute(http=self._new_http())

    def _new_http(self) -> Any:
        import google_auth_httplib2
        import httplib2

        return google_auth_httplib2.AuthorizedHttp(self._credentials, http=httplib2.Http())

    def _ensure_authenticated(self) -> Any:
        if self._service is None:
            raise AuthExpiredError(
                "Gmail client is not authenticated. Call await GmailClient.authenticate() first."
            )
        return self._service

    def _build_service(self, credentials_path: Path, token_path: Path, scopes: list[str]) -> tuple[Any, Any]:
        # Imported lazily to keep import-time cost low and tests fast.
        from google.auth.transport.requests import Request
        from google.oauth2.credentials import Credentials
        from google_auth_oauthlib.flow import InstalledAppFlow
        from googleapiclient.discovery import build

        creds: Credentials | None = None
        if token_path.exists():
            creds = Credentials.from_authorized_user_file(str(token_path), scopes=scopes)

        if creds is not None and creds.expired and creds.refresh_token:
            creds.refresh(Request())

        if creds is None or not creds.valid:
            flow = InstalledAppFlow.from_client_secrets_file(str(credentials_path), scopes=scopes)
            creds = flow.run_local_server(port=0)
            token_path.parent.mkdir(parents=True, exist_ok=True)
            token_path.write_text(creds.to_json(), encoding="utf-8")

        # cache_discovery=False prevents writing discovery docs to disk.
        return build("gmail", "v1", credentials=creds, cache_discovery=False), creds
