"""SQLite-backed document store.

Holds the per-user collections the engine works with: normalized emails,
indexed attachment documents, sync locks, sync checkpoints, push watch
registrations and a small key/value table (rate limiter state).

Every row is scoped by ``user_id``; ``(user_id, message_id)`` is the unique
key that makes email ingestion idempotent.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

import structlog

from mail_sync.exceptions import StorageError
from mail_sync.models import (
    AttachmentRef,
    IndexedDocument,
    NormalizedEmail,
    SyncCheckpoint,
    SyncLock,
    WatchRegistration,
)

logger = structlog.get_logger()


_SCHEMA_VERSION = 1


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _from_iso(raw: str | None) -> datetime | None:
    if not raw:
        return None
    # ISO-8601 parsing: allow trailing Z.
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    return datetime.fromisoformat(raw)


class MailStore:
    """Repository for emails, documents and sync state."""

    def __init__(self, db_path: Path) -> None:
        """Create a repository.

        Args:
            db_path: Path to the SQLite database file.
        """

        self._db_path = db_path

    def initialize(self) -> None:
        """Create or upgrade the store schema."""

        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL;")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS _schema_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );
                """
            )

            current_version = self._get_schema_version(conn)
            if current_version is None:
                self._create_schema_v1(conn)
                self._set_schema_version(conn, _SCHEMA_VERSION)
                conn.commit()
                logger.info("mail_store_schema_created", version=_SCHEMA_VERSION)
                return

            if current_version != _SCHEMA_VERSION:
                raise StorageError(
                    f"Unsupported schema version {current_version}; expected {_SCHEMA_VERSION}"
                )

    # Emails

    def email_exists(self, user_id: str, message_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM emails WHERE user_id = ? AND message_id = ?",
                (user_id, message_id),
            ).fetchone()
        return row is not None

    def get_email(self, user_id: str, message_id: str) -> NormalizedEmail | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM emails WHERE user_id = ? AND message_id = ?",
                (user_id, message_id),
            ).fetchone()
        return None if row is None else self._row_to_email(row)

    def upsert_email(self, user_id: str, email: NormalizedEmail) -> None:
        """Insert or replace one email keyed on ``(user_id, message_id)``."""

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO emails (
                    user_id,
                    message_id,
                    thread_id,
                    sender,
                    to_json,
                    subject,
                    text_body,
                    html_body,
                    attachments_json,
                    received_at_iso,
                    labels_json,
                    is_read,
                    updated_at_iso
                )
                VALUES (
                    :user_id,
                    :message_id,
                    :thread_id,
                    :sender,
                    :to_json,
                    :subject,
                    :text_body,
                    :html_body,
                    :attachments_json,
                    :received_at_iso,
                    :labels_json,
                    :is_read,
                    :updated_at_iso
                )
                ON CONFLICT(user_id, message_id) DO UPDATE SET
                    thread_id=excluded.thread_id,
                    sender=excluded.sender,
                    to_json=excluded.to_json,
                    subject=excluded.subject,
                    text_body=excluded.text_body,
                    html_body=excluded.html_body,
                    attachments_json=excluded.attachments_json,
                    received_at_iso=excluded.received_at_iso,
                    labels_json=excluded.labels_json,
                    is_read=excluded.is_read,
                    updated_at_iso=excluded.updated_at_iso
                """,
                {
                    "user_id": user_id,
                    "message_id": email.message_id,
                    "thread_id": email.thread_id,
                    "sender": email.sender,
                    "to_json": json.dumps(email.to),
                    "subject": email.subject,
                    "text_body": email.text_body,
                    "html_body": email.html_body,
                    "attachments_json": json.dumps([a.model_dump() for a in email.attachments]),
                    "received_at_iso": _iso(email.received_at),
                    "labels_json": json.dumps(email.labels),
                    "is_read": 1 if email.is_read else 0,
                    "updated_at_iso": _iso(_now_utc()),
                },
            )
            conn.commit()

    def mark_email_read(self, user_id: str, message_id: str) -> bool:
        """Flag a stored email as read. Returns False when it is not stored."""

        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE emails SET is_read = 1, updated_at_iso = ? WHERE user_id = ? AND message_id = ?",
                (_iso(_now_utc()), user_id, message_id),
            )
            conn.commit()
        return cur.rowcount > 0

    def list_thread(self, user_id: str, thread_id: str) -> list[NormalizedEmail]:
        """Stored messages of a thread, oldest first."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM emails
                WHERE user_id = ? AND thread_id = ?
                ORDER BY received_at_iso ASC
                """,
                (user_id, thread_id),
            ).fetchall()
        return [self._row_to_email(row) for row in rows]

    def count_emails(self, user_id: str) -> int:
        with self._connect() as conn:
            (count,) = conn.execute(
                "SELECT COUNT(*) FROM emails WHERE user_id = ?", (user_id,)
            ).fetchone()
        return int(count or 0)

    # Documents

    def find_documents(
        self,
        user_id: str,
        *,
        filename: str | None = None,
        size: int | None = None,
        content_sha256: str | None = None,
    ) -> list[IndexedDocument]:
        """Equality query over indexed documents; None filters are ignored."""

        clauses = ["user_id = ?"]
        params: list[object] = [user_id]
        for column, value in (
            ("filename", filename),
            ("size", size),
            ("content_sha256", content_sha256),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)

        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM documents WHERE {' AND '.join(clauses)} ORDER BY created_at_iso",
                params,
            ).fetchall()
        return [self._row_to_document(row) for row in rows]

    def get_document(self, document_id: str) -> IndexedDocument | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM documents WHERE document_id = ?", (document_id,)
            ).fetchone()
        return None if row is None else self._row_to_document(row)

    def insert_document(self, document: IndexedDocument, *, dedup_key: str | None = None) -> IndexedDocument:
        """Persist a new document; an empty ``document_id`` gets a generated one.

        ``dedup_key`` is unique per user. When a document with the same key
        already exists nothing is written and that document is returned.
        """

        if not document.document_id:
            document = document.model_copy(update={"document_id": uuid.uuid4().hex})

        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO documents (
                    document_id, user_id, filename, mime_type, size, content_sha256,
                    storage_path, url, sender, text, summary, embedding_json,
                    has_analysis, created_at_iso, updated_at_iso, dedup_key
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, dedup_key) DO NOTHING
                """,
                (
                    document.document_id,
                    document.user_id,
                    document.filename,
                    document.mime_type,
                    document.size,
                    document.content_sha256,
                    document.storage_path,
                    document.url,
                    document.sender,
                    document.text,
                    document.summary,
                    json.dumps(document.embedding) if document.embedding is not None else None,
                    1 if document.has_analysis else 0,
                    _iso(document.created_at),
                    _iso(document.updated_at),
                    dedup_key,
                ),
            )
            if cursor.rowcount == 0:
                row = conn.execute(
                    "SELECT * FROM documents WHERE user_id = ? AND dedup_key = ?",
                    (document.user_id, dedup_key),
                ).fetchone()
                logger.info("document_dedup_conflict", user_id=document.user_id, dedup_key=dedup_key)
                return self._row_to_document(row)
            conn.commit()
        return document

    def update_document_enrichment(
        self,
        document_id: str,
        *,
        text: str | None,
        summary: str | None,
        embedding: list[float] | None,
        has_analysis: bool,
    ) -> None:
        """Set the enrichment fields; the only mutation documents allow."""

        with self._connect() as conn:
            conn.execute(
                """
                UPDATE documents
                SET text = ?, summary = ?, embedding_json = ?, has_analysis = ?, updated_at_iso = ?
                WHERE document_id = ?
                """,
                (
                    text,
                    summary,
                    json.dumps(embedding) if embedding is not None else None,
                    1 if has_analysis else 0,
                    _iso(_now_utc()),
                    document_id,
                ),
            )
            conn.commit()

    # Sync locks

    def try_acquire_lock(
        self,
        user_id: str,
        name: str,
        *,
        now: datetime,
        expires_at: datetime,
    ) -> SyncLock | None:
        """Conditionally write a lock row.

        Returns the new lock, or None when a live (unexpired) lock exists.
        The read and the write run inside one ``BEGIN IMMEDIATE`` transaction
        so two processes sharing the database cannot both succeed.
        """

        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT expires_at_iso FROM sync_locks WHERE user_id = ? AND name = ?",
                (user_id, name),
            ).fetchone()
            current_expiry = _from_iso(row["expires_at_iso"]) if row else None
            if current_expiry is not None and current_expiry > now:
                conn.rollback()
                return None

            conn.execute(
                """
                INSERT INTO sync_locks (user_id, name, acquired_at_iso, expires_at_iso)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, name) DO UPDATE SET
                    acquired_at_iso=excluded.acquired_at_iso,
                    expires_at_iso=excluded.expires_at_iso
                """,
                (user_id, name, _iso(now), _iso(expires_at)),
            )
            conn.commit()

        return SyncLock(user_id=user_id, name=name, acquired_at=now, expires_at=expires_at)

    def get_lock(self, user_id: str, name: str) -> SyncLock | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sync_locks WHERE user_id = ? AND name = ?",
                (user_id, name),
            ).fetchone()
        if row is None:
            return None
        return SyncLock(
            user_id=row["user_id"],
            name=row["name"],
            acquired_at=_from_iso(row["acquired_at_iso"]),
            expires_at=_from_iso(row["expires_at_iso"]),
        )

    def release_lock(self, user_id: str, name: str, *, acquired_at: datetime | None = None) -> bool:
        """Delete a lock row.

        With ``acquired_at`` only the lock taken at that instant is removed,
        so a run that outlived its TTL cannot delete a successor's lock.
        """

        query = "DELETE FROM sync_locks WHERE user_id = ? AND name = ?"
        params: list[object] = [user_id, name]
        if acquired_at is not None:
            query += " AND acquired_at_iso = ?"
            params.append(_iso(acquired_at))

        with self._connect() as conn:
            cur = conn.execute(query, params)
            conn.commit()
        return cur.rowcount > 0

    # Checkpoints

    def get_checkpoint(self, user_id: str) -> SyncCheckpoint | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sync_checkpoints WHERE user_id = ?", (user_id,)
            ).fetchone()
        if row is None:
            return None
        return SyncCheckpoint(
            user_id=row["user_id"],
            last_synced_at=_from_iso(row["last_synced_at_iso"]),
            resume_page_token=row["resume_page_token"],
            window_started_at=_from_iso(row["window_started_at_iso"]),
            updated_at=_from_iso(row["updated_at_iso"]),
        )

    def set_checkpoint(self, checkpoint: SyncCheckpoint) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO sync_checkpoints (
                    user_id, last_synced_at_iso, resume_page_token, window_started_at_iso, updated_at_iso
                )
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    last_synced_at_iso=excluded.last_synced_at_iso,
                    resume_page_token=excluded.resume_page_token,
                    window_started_at_iso=excluded.window_started_at_iso,
                    updated_at_iso=excluded.updated_at_iso
                """,
                (
                    checkpoint.user_id,
                    _iso(checkpoint.last_synced_at),
                    checkpoint.resume_page_token,
                    _iso(checkpoint.window_started_at),
                    _iso(checkpoint.updated_at or _now_utc()),
                ),
            )
            conn.commit()

    # Watch registrations

    def save_watch_registration(self, registration: WatchRegistration) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO watch_registrations (
                    user_id, email_address, history_id, expiration_iso, topic,
                    label_ids_json, registered_at_iso
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    registration.user_id,
                    registration.email_address.lower() if registration.email_address else None,
                    registration.history_id,
                    _iso(registration.expiration),
                    registration.topic,
                    json.dumps(registration.label_ids),
                    _iso(registration.registered_at),
                ),
            )
            conn.commit()

    def get_watch_registration(self, user_id: str) -> WatchRegistration | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM watch_registrations WHERE user_id = ?", (user_id,)
            ).fetchone()
        return None if row is None else self._row_to_registration(row)

    def find_user_by_email_address(self, email_address: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT user_id FROM watch_registrations WHERE email_address = ? LIMIT 1",
                (email_address.lower(),),
            ).fetchone()
        return None if row is None else str(row["user_id"])

    # Key/value state

    def get_kv(self, key: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return None if row is None else str(row[0])

    def set_kv(self, key: str, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO kv (key, value, updated_at_iso)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value, updated_at_iso = excluded.updated_at_iso
                """,
                (key, value, _iso(_now_utc())),
            )
            conn.commit()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self._db_path, timeout=30.0)
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot open store {self._db_path}: {exc}") from exc
        try:
            conn.row_factory = sqlite3.Row
            yield conn
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc
        finally:
            conn.close()

    def _get_schema_version(self, conn: sqlite3.Connection) -> int | None:
        row = conn.execute(
            "SELECT value FROM _schema_meta WHERE key = 'schema_version'"
        ).fetchone()
        if row is None:
            return None
        return int(row[0])

    def _set_schema_version(self, conn: sqlite3.Connection, version: int) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO _schema_meta(key, value) VALUES('schema_version', ?) ",
            (str(version),),
        )

    def _create_schema_v1(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS emails (
                rowid INTEGER PRIMARY KEY,
                user_id TEXT NOT NULL,
                message_id TEXT NOT NULL,
                thread_id TEXT NOT NULL,
                sender TEXT NOT NULL,
                to_json TEXT NOT NULL,
                subject TEXT,
                text_body TEXT,
                html_body TEXT,
                attachments_json TEXT NOT NULL,
                received_at_iso TEXT NOT NULL,
                labels_json TEXT NOT NULL,
                is_read INTEGER NOT NULL,
                updated_at_iso TEXT NOT NULL,
                UNIQUE (user_id, message_id)
            );

            CREATE INDEX IF NOT EXISTS idx_emails_thread
                ON emails(user_id, thread_id);

            CREATE TABLE IF NOT EXISTS documents (
                document_id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                filename TEXT NOT NULL,
                mime_type TEXT NOT NULL,
                size INTEGER NOT NULL,
                content_sha256 TEXT NOT NULL,
                storage_path TEXT NOT NULL,
                url TEXT,
                sender TEXT NOT NULL,
                text TEXT,
                summary TEXT,
                embedding_json TEXT,
                has_analysis INTEGER NOT NULL,
                created_at_iso TEXT NOT NULL,
                updated_at_iso TEXT NOT NULL,
                dedup_key TEXT,
                UNIQUE (user_id, dedup_key)
            );

            CREATE INDEX IF NOT EXISTS idx_documents_name_size
                ON documents(user_id, filename, size);

            CREATE INDEX IF NOT EXISTS idx_documents_sha256
                ON documents(user_id, content_sha256);

            CREATE TABLE IF NOT EXISTS sync_locks (
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                acquired_at_iso TEXT NOT NULL,
                expires_at_iso TEXT NOT NULL,
                PRIMARY KEY (user_id, name)
            );

            CREATE TABLE IF NOT EXISTS sync_checkpoints (
                user_id TEXT PRIMARY KEY,
                last_synced_at_iso TEXT,
                resume_page_token TEXT,
                window_started_at_iso TEXT,
                updated_at_iso TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS watch_registrations (
                user_id TEXT PRIMARY KEY,
                email_address TEXT,
                history_id TEXT,
                expiration_iso TEXT NOT NULL,
                topic TEXT NOT NULL,
                label_ids_json TEXT NOT NULL,
                registered_at_iso TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_watch_email_address
                ON watch_registrations(email_address);

            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at_iso TEXT NOT NULL
            );
            """
        )

    def _row_to_email(self, row: sqlite3.Row) -> NormalizedEmail:
        return NormalizedEmail(
            message_id=row["message_id"],
            thread_id=row["thread_id"],
            sender=row["sender"],
            to=json.loads(row["to_json"]),
            subject=row["subject"],
            text_body=row["text_body"],
            html_body=row["html_body"],
            attachments=[AttachmentRef(**a) for a in json.loads(row["attachments_json"])],
            received_at=_from_iso(row["received_at_iso"]),
            labels=json.loads(row["labels_json"]),
            is_read=bool(row["is_read"]),
        )

    def _row_to_document(self, row: sqlite3.Row) -> IndexedDocument:
        return IndexedDocument(
            document_id=row["document_id"],
            user_id=row["user_id"],
            filename=row["filename"],
            mime_type=row["mime_type"],
            size=row["size"],
            content_sha256=row["content_sha256"],
            storage_path=row["storage_path"],
            url=row["url"],
            sender=row["sender"],
            text=row["text"],
            summary=row["summary"],
            embedding=json.loads(row["embedding_json"]) if row["embedding_json"] else None,
            has_analysis=bool(row["has_analysis"]),
            created_at=_from_iso(row["created_at_iso"]),
            updated_at=_from_iso(row["updated_at_iso"]),
        )

    def _row_to_registration(self, row: sqlite3.Row) -> WatchRegistration:
        return WatchRegistration(
            user_id=row["user_id"],
            email_address=row["email_address"],
            history_id=row["history_id"],
            expiration=_from_iso(row["expiration_iso"]),
            topic=row["topic"],
            label_ids=json.loads(row["label_ids_json"]),
            registered_at=_from_iso(row["registered_at_iso"]),
        )
