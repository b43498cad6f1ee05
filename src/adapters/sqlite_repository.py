"""SQLite repository adapter for local storage.

Implements RepositoryProtocol with SQLite backend. External message ids are
stored as canonical decimal TEXT; ordering by ``(LENGTH(id), id)`` is
numeric for such strings, so no id is ever squeezed into a 64-bit column.
"""

import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Final

import pytz

from src.config.logging_config import get_logger
from src.domain.exceptions import InvalidTransitionError, RepositoryError
from src.domain.external_ids import format_external_id
from src.domain.media_status import (
    SELECTABLE_STATUSES,
    SKIP_STATUSES,
    requires_media_key,
    sources_for,
)
from src.domain.models import (
    ArchivedMessage,
    Cursor,
    MediaObject,
    MediaStatus,
    MessagePage,
    RemoteMessage,
)

logger = get_logger(__name__)

SQLITE_BUSY_TIMEOUT_SECONDS: Final[float] = 30.0

_NUMERIC_ID_ASC: Final[str] = "LENGTH(external_message_id) ASC, external_message_id ASC"
_NUMERIC_ID_DESC: Final[str] = (
    "LENGTH(external_message_id) DESC, external_message_id DESC"
)

_MESSAGE_COLUMNS: Final[str] = """
    m.id, m.external_message_id, m.channel_id, m.text, m.date, m.group_id,
    m.media_status, m.media_type, m.media_key, m.error_message,
    m.media_attempts, m.created_at
"""


def _to_db_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=pytz.UTC)
    return value.astimezone(UTC).isoformat()


def _from_db_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=pytz.UTC)
    return parsed


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class SQLiteRepository:
    """SQLite-based message and media store."""

    def __init__(self, db_path: str) -> None:
        """Initialize repository and ensure schema.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._create_schema()

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection.

        Returns:
            SQLite connection with row access by column name
        """
        conn = sqlite3.connect(self.db_path, timeout=SQLITE_BUSY_TIMEOUT_SECONDS)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _connection(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Open a connection, commit on success, wrap sqlite errors."""
        try:
            conn = self._get_connection()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to open database for {operation}: {e}") from e
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise RepositoryError(f"Failed to {operation}: {e}") from e
        finally:
            conn.close()

    def _create_schema(self) -> None:
        """Create database schema if not exists."""
        logger.info("sqlite_schema_creation_started", db_path=str(self.db_path))
        with self._connection("create schema") as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    external_message_id TEXT NOT NULL,
                    channel_id TEXT NOT NULL,
                    text TEXT,
                    date TEXT NOT NULL,
                    group_id TEXT,
                    media_status TEXT NOT NULL DEFAULT 'none',
                    media_type TEXT,
                    media_key TEXT,
                    created_at TEXT NOT NULL,
                    UNIQUE(external_message_id, channel_id)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS media (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    message_id INTEGER NOT NULL UNIQUE
                        REFERENCES messages(id) ON DELETE CASCADE,
                    blob_key TEXT NOT NULL,
                    file_type TEXT NOT NULL,
                    file_size INTEGER NOT NULL,
                    mime_type TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )

            # Columns added after the first schema version.
            for column_sql in (
                "ALTER TABLE messages ADD COLUMN error_message TEXT",
                "ALTER TABLE messages ADD COLUMN media_attempts INTEGER NOT NULL DEFAULT 0",
                "ALTER TABLE messages ADD COLUMN media_updated_at TEXT",
            ):
                try:
                    cursor.execute(column_sql)
                except sqlite3.OperationalError as exc:
                    if "duplicate column name" not in str(exc).lower():
                        raise

            for index_sql in (
                "CREATE INDEX IF NOT EXISTS idx_messages_channel_date "
                "ON messages(channel_id, date)",
                "CREATE INDEX IF NOT EXISTS idx_messages_media_status "
                "ON messages(media_status, id)",
                "CREATE INDEX IF NOT EXISTS idx_messages_media_key "
                "ON messages(media_key)",
            ):
                cursor.execute(index_sql)
        logger.info("sqlite_schema_ready", db_path=str(self.db_path))

    # === Messages ===

    def upsert_message(self, message: RemoteMessage, media_status: MediaStatus) -> int:
        """Insert or update a message row (idempotent).

        On conflict text, date and group id follow the latest payload. The
        media status only moves ``none -> pending``; every other state,
        together with ``media_key``, is left as it is.

        Args:
            message: Message from the external source
            media_status: Initial status for a new row

        Returns:
            Internal row id

        Raises:
            RepositoryError: On storage errors
        """
        external_id = format_external_id(message.external_id)
        now = _to_db_datetime(_utc_now())
        media_type = message.media.kind.value if message.media else None

        with self._connection("upsert message") as conn:
            conn.execute(
                """
                INSERT INTO messages (
                    external_message_id, channel_id, text, date, group_id,
                    media_status, media_type, created_at, media_updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(external_message_id, channel_id) DO UPDATE SET
                    text = excluded.text,
                    date = excluded.date,
                    group_id = excluded.group_id,
                    media_type = COALESCE(excluded.media_type, messages.media_type),
                    media_status = CASE
                        WHEN messages.media_status = 'none'
                             AND excluded.media_status = 'pending'
                        THEN 'pending'
                        ELSE messages.media_status
                    END
                """,
                (
                    external_id,
                    message.channel_id,
                    message.text,
                    _to_db_datetime(message.date),
                    message.group_id,
                    media_status.value,
                    media_type,
                    now,
                    now,
                ),
            )
            row = conn.execute(
                "SELECT id FROM messages WHERE external_message_id = ? AND channel_id = ?",
                (external_id, message.channel_id),
            ).fetchone()

        if row is None:
            raise RepositoryError(
                f"Upserted message {external_id} in {message.channel_id} not found"
            )
        return int(row["id"])

    def get_cursor(self, channel_id: str) -> Cursor:
        """Compute the stored id range of a channel.

        Raises:
            RepositoryError: On storage errors
        """
        with self._connection("compute cursor") as conn:
            count_row = conn.execute(
                "SELECT COUNT(*) AS total FROM messages WHERE channel_id = ?",
                (channel_id,),
            ).fetchone()
            count = int(count_row["total"]) if count_row else 0
            if count == 0:
                return Cursor()

            earliest_row = conn.execute(
                f"SELECT external_message_id FROM messages WHERE channel_id = ? "
                f"ORDER BY {_NUMERIC_ID_ASC} LIMIT 1",
                (channel_id,),
            ).fetchone()
            latest_row = conn.execute(
                f"SELECT external_message_id FROM messages WHERE channel_id = ? "
                f"ORDER BY {_NUMERIC_ID_DESC} LIMIT 1",
                (channel_id,),
            ).fetchone()

        return Cursor(
            earliest=int(earliest_row["external_message_id"]),
            latest=int(latest_row["external_message_id"]),
            count=count,
        )

    def get_message(self, message_id: int) -> ArchivedMessage | None:
        messages = self.get_messages_by_ids([message_id])
        return messages[0] if messages else None

    def get_messages_by_ids(self, message_ids: list[int]) -> list[ArchivedMessage]:
        """Fetch rows by internal id, in the order requested."""
        if not message_ids:
            return []
        placeholders = ", ".join("?" for _ in message_ids)
        with self._connection("load messages") as conn:
            rows = conn.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS},
                       md.blob_key AS md_blob_key, md.file_type AS md_file_type,
                       md.file_size AS md_file_size, md.mime_type AS md_mime_type,
                       md.created_at AS md_created_at
                FROM messages m
                LEFT JOIN media md ON md.message_id = m.id
                WHERE m.id IN ({placeholders})
                """,
                tuple(message_ids),
            ).fetchall()
        by_id = {int(row["id"]): self._row_to_message(row) for row in rows}
        return [by_id[mid] for mid in message_ids if mid in by_id]

    def list_messages(self, channel_id: str, limit: int, offset: int) -> MessagePage:
        """Newest-first page of a channel's messages with media metadata.

        Raises:
            RepositoryError: On storage errors
        """
        with self._connection("list messages") as conn:
            total_row = conn.execute(
                "SELECT COUNT(*) AS total FROM messages WHERE channel_id = ?",
                (channel_id,),
            ).fetchone()
            rows = conn.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS},
                       md.blob_key AS md_blob_key, md.file_type AS md_file_type,
                       md.file_size AS md_file_size, md.mime_type AS md_mime_type,
                       md.created_at AS md_created_at
                FROM messages m
                LEFT JOIN media md ON md.message_id = m.id
                WHERE m.channel_id = ?
                ORDER BY m.date DESC, LENGTH(m.external_message_id) DESC,
                         m.external_message_id DESC
                LIMIT ? OFFSET ?
                """,
                (channel_id, limit, offset),
            ).fetchall()

        return MessagePage(
            messages=[self._row_to_message(row) for row in rows],
            total=int(total_row["total"]) if total_row else 0,
            limit=limit,
            offset=offset,
        )

    def count_by_status(self, channel_id: str | None = None) -> dict[str, int]:
        query = "SELECT media_status, COUNT(*) AS total FROM messages"
        params: tuple[Any, ...] = ()
        if channel_id is not None:
            query += " WHERE channel_id = ?"
            params = (channel_id,)
        query += " GROUP BY media_status"
        with self._connection("count statuses") as conn:
            rows = conn.execute(query, params).fetchall()
        counts = {status.value: 0 for status in MediaStatus}
        for row in rows:
            counts[str(row["media_status"])] = int(row["total"])
        return counts

    # === Media work queue ===

    @staticmethod
    def _selectable_clause(
        channel_id: str | None, max_attempts: int
    ) -> tuple[str, tuple[Any, ...]]:
        """WHERE clause for rows the worker may pick; exhausted failures excluded."""
        placeholders = ", ".join("?" for _ in SELECTABLE_STATUSES)
        clause = (
            f"media_status IN ({placeholders}) "
            "AND (media_status != ? OR media_attempts < ?)"
        )
        params: tuple[Any, ...] = (
            *(status.value for status in SELECTABLE_STATUSES),
            MediaStatus.FAILED.value,
            max_attempts,
        )
        if channel_id is not None:
            return f"{clause} AND channel_id = ?", (*params, channel_id)
        return clause, params

    def select_next_media(
        self, channel_id: str | None, max_attempts: int
    ) -> ArchivedMessage | None:
        """Pick the next media row in ``SELECTABLE_STATUSES`` order, newest id first.

        Args:
            channel_id: Restrict to one channel, or None for all
            max_attempts: Failed rows with this many attempts are left alone

        Returns:
            Selected row or None when no work is left
        """
        clause, params = self._selectable_clause(channel_id, max_attempts)
        with self._connection("select media work") as conn:
            row = conn.execute(
                f"""
                SELECT id FROM messages
                WHERE {clause}
                ORDER BY CASE media_status WHEN ? THEN 0 ELSE 1 END, id DESC
                LIMIT 1
                """,
                (*params, SELECTABLE_STATUSES[0].value),
            ).fetchone()
        if row is None:
            return None
        return self.get_message(int(row["id"]))

    def count_remaining_media(self, channel_id: str | None, max_attempts: int) -> int:
        clause, params = self._selectable_clause(channel_id, max_attempts)
        with self._connection("count media work") as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS total FROM messages WHERE {clause}",
                params,
            ).fetchone()
        return int(row["total"]) if row else 0

    def _transition(
        self,
        conn: sqlite3.Connection,
        message_id: int,
        target: MediaStatus,
        *,
        sources: Sequence[MediaStatus] | None = None,
        media_key: str | None = None,
        error_message: str | None = None,
        keep_error: bool = False,
        count_attempt: bool = False,
    ) -> bool:
        """Guarded status update; True when the row was in a legal source state."""
        if requires_media_key(target) != (media_key is not None):
            raise ValueError(f"media_key must be set iff status is completed ({target})")

        allowed = tuple(sources or sources_for(target))
        placeholders = ", ".join("?" for _ in allowed)
        error_sql = "error_message" if keep_error else "?"
        params: list[Any] = [target.value, media_key]
        if not keep_error:
            params.append(error_message)
        params.extend(
            [
                1 if count_attempt else 0,
                _to_db_datetime(_utc_now()),
                message_id,
                *(status.value for status in allowed),
            ]
        )
        cursor = conn.execute(
            f"""
            UPDATE messages
            SET media_status = ?,
                media_key = ?,
                error_message = {error_sql},
                media_attempts = media_attempts + ?,
                media_updated_at = ?
            WHERE id = ? AND media_status IN ({placeholders})
            """,
            tuple(params),
        )
        return cursor.rowcount == 1

    def claim_media(self, message_id: int) -> bool:
        """Move a pending/failed row to processing and count the attempt."""
        with self._connection("claim media") as conn:
            return self._transition(
                conn,
                message_id,
                MediaStatus.PROCESSING,
                keep_error=True,
                count_attempt=True,
            )

    def release_media_claim(self, message_id: int, status: MediaStatus) -> bool:
        """Return a processing row to pending/failed; the attempt is not counted."""
        if status not in SELECTABLE_STATUSES:
            raise InvalidTransitionError(MediaStatus.PROCESSING.value, status.value)
        with self._connection("release media claim") as conn:
            conn.execute(
                "UPDATE messages SET media_attempts = MAX(media_attempts - 1, 0) "
                "WHERE id = ? AND media_status = 'processing'",
                (message_id,),
            )
            return self._transition(
                conn,
                message_id,
                status,
                sources=(MediaStatus.PROCESSING,),
                keep_error=True,
            )

    def complete_media(self, message_id: int, media: MediaObject) -> bool:
        """Mark completed and store the media object in one transaction.

        A row that is already completed is left untouched and False is
        returned, so a racing second worker cannot overwrite the winner.

        Raises:
            RepositoryError: On storage errors
        """
        with self._connection("complete media") as conn:
            updated = self._transition(
                conn, message_id, MediaStatus.COMPLETED, media_key=media.blob_key
            )
            if not updated:
                return False
            conn.execute(
                """
                INSERT INTO media (
                    message_id, blob_key, file_type, file_size, mime_type, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(message_id) DO UPDATE SET
                    blob_key = excluded.blob_key,
                    file_type = excluded.file_type,
                    file_size = excluded.file_size,
                    mime_type = excluded.mime_type,
                    created_at = excluded.created_at
                """,
                (
                    message_id,
                    media.blob_key,
                    media.file_type,
                    media.file_size,
                    media.mime_type,
                    _to_db_datetime(media.created_at),
                ),
            )
        return True

    def fail_media(self, message_id: int, reason: str) -> bool:
        with self._connection("fail media") as conn:
            return self._transition(
                conn, message_id, MediaStatus.FAILED, error_message=reason
            )

    def skip_media(self, message_id: int, status: MediaStatus, reason: str) -> bool:
        if status not in SKIP_STATUSES:
            raise ValueError(f"{status.value} is not a skip status")
        with self._connection("skip media") as conn:
            return self._transition(conn, message_id, status, error_message=reason)

    def get_media_object(self, message_id: int) -> MediaObject | None:
        with self._connection("load media object") as conn:
            row = conn.execute(
                "SELECT * FROM media WHERE message_id = ?", (message_id,)
            ).fetchone()
        if row is None:
            return None
        return MediaObject(
            message_id=int(row["message_id"]),
            blob_key=row["blob_key"],
            file_type=row["file_type"],
            file_size=int(row["file_size"]),
            mime_type=row["mime_type"],
            created_at=_from_db_datetime(row["created_at"]) or _utc_now(),
        )

    def reset_stuck_media(self, stale_after: timedelta) -> int:
        """Repair media rows left inconsistent by interrupted workers.

        - processing claims older than ``stale_after`` go back to pending
        - a stored key with a non-completed status becomes completed
        - completed without a key goes back to pending

        Returns:
            Number of rows changed
        """
        cutoff = _to_db_datetime(_utc_now() - stale_after)
        with self._connection("reset stuck media") as conn:
            stale = conn.execute(
                """
                UPDATE messages SET media_status = 'pending', media_key = NULL
                WHERE media_status = 'processing'
                  AND (media_updated_at IS NULL OR media_updated_at < ?)
                """,
                (cutoff,),
            ).rowcount
            keyed = conn.execute(
                """
                UPDATE messages SET media_status = 'completed', error_message = NULL
                WHERE media_key IS NOT NULL AND media_status != 'completed'
                """
            ).rowcount
            keyless = conn.execute(
                """
                UPDATE messages SET media_status = 'pending'
                WHERE media_key IS NULL AND media_status = 'completed'
                """
            ).rowcount

        repaired = stale + keyed + keyless
        logger.info(
            "media_rows_repaired",
            stale_claims=stale,
            keyed_not_completed=keyed,
            completed_without_key=keyless,
        )
        return repaired

    # === Helpers ===

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> ArchivedMessage:
        keys = row.keys()
        media = None
        if "md_blob_key" in keys and row["md_blob_key"] is not None:
            media = MediaObject(
                message_id=int(row["id"]),
                blob_key=row["md_blob_key"],
                file_type=row["md_file_type"],
                file_size=int(row["md_file_size"]),
                mime_type=row["md_mime_type"],
                created_at=_from_db_datetime(row["md_created_at"]) or _utc_now(),
            )
        return ArchivedMessage(
            id=int(row["id"]),
            external_message_id=row["external_message_id"],
            channel_id=row["channel_id"],
            text=row["text"],
            date=_from_db_datetime(row["date"]) or _utc_now(),
            group_id=row["group_id"],
            media_status=MediaStatus(row["media_status"]),
            media_type=row["media_type"],
            media_key=row["media_key"],
            error_message=row["error_message"],
            media_attempts=int(row["media_attempts"] or 0),
            created_at=_from_db_datetime(row["created_at"]),
            media=media,
        )
