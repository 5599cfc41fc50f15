from __future__ import annotations

import sqlite3

from .history import Message, MessageStatus
from .sqlite_backend import SQLiteBackend

_COLUMNS = "msg_id, conv_id, sender, recipient, payload, has_attachment, created_at_ms, status"


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        msg_id=row[0],
        conv_id=row[1],
        sender=row[2],
        recipient=row[3],
        payload=row[4],
        has_attachment=bool(row[5]),
        created_at_ms=row[6],
        status=MessageStatus(row[7]),
    )


class SQLiteHistoryStore:
    """Durable per-conversation message history backed by SQLite."""

    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def append(self, conv_id: str, message: Message) -> None:
        conn = self._backend.connection
        with self._backend.lock:
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                seq_row = cursor.execute(
                    "SELECT COALESCE(MAX(seq), 0) + 1 FROM messages WHERE conv_id=?", (conv_id,)
                ).fetchone()
                cursor.execute(
                    """
                    INSERT INTO messages (
                        conv_id, seq, msg_id, sender, recipient, payload, has_attachment, created_at_ms, status
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        conv_id,
                        int(seq_row[0]),
                        message.msg_id,
                        message.sender,
                        message.recipient,
                        message.payload,
                        int(message.has_attachment),
                        message.created_at_ms,
                        message.status.value,
                    ),
                )
                conn.commit()
            except sqlite3.IntegrityError as exc:
                conn.rollback()
                raise ValueError(f"duplicate msg_id {message.msg_id} in {conv_id}") from exc
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def list_messages(self, conv_id: str) -> list[Message]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"SELECT {_COLUMNS} FROM messages WHERE conv_id=? ORDER BY seq ASC", (conv_id,)
            ).fetchall()
        return [_row_to_message(row) for row in rows]

    def update_status(self, conv_id: str, msg_id: str, status: MessageStatus) -> Message | None:
        """Advance a message's status; returns ``None`` if unknown or not a forward move."""

        conn = self._backend.connection
        with self._backend.lock:
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                row = cursor.execute(
                    f"SELECT {_COLUMNS} FROM messages WHERE conv_id=? AND msg_id=?", (conv_id, msg_id)
                ).fetchone()
                if row is None:
                    conn.commit()
                    return None
                current = _row_to_message(row)
                if not current.status.advances_to(status):
                    conn.commit()
                    return None
                cursor.execute(
                    "UPDATE messages SET status=? WHERE conv_id=? AND msg_id=?",
                    (status.value, conv_id, msg_id),
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()
        return current.with_status(status)
