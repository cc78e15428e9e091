"""
SQLite storage for sessions and their messages.
Append-only per session: messages are inserted once and never updated.
Deleting a session cascades to its messages.
"""

import sqlite3
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from parley.errors import StorageError
from parley.storage.models import Message, Role, Session

logger = logging.getLogger(__name__)

CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    role TEXT NOT NULL CHECK (role IN ('system', 'user', 'assistant')),
    content TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    FOREIGN KEY (session_id) REFERENCES sessions(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_messages_session
    ON messages(session_id, timestamp, id);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class SQLiteStore:
    """SQLite session/message store. One connection per operation."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create storage directory for {self.db_path}: {e}") from e
        self._last_timestamp = ""
        self._init_db()

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(CREATE_TABLES)
            row = conn.execute("SELECT MAX(timestamp) FROM messages").fetchone()
        self._last_timestamp = row[0] or ""
        logger.info("SQLite store initialized at %s", self.db_path)

    @contextmanager
    def _connect(self):
        try:
            conn = sqlite3.connect(str(self.db_path))
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _next_timestamp(self) -> str:
        """Wall-clock time, never earlier than the last message timestamp issued."""
        ts = max(_now(), self._last_timestamp)
        self._last_timestamp = ts
        return ts

    def ensure_session(self, session_id: str) -> None:
        """Create the session record if it doesn't exist."""
        with self._connect() as conn:
            cur = conn.execute(
                "INSERT OR IGNORE INTO sessions (id, created_at) VALUES (?, ?)",
                (session_id, _now()),
            )
            if cur.rowcount:
                logger.debug("Created session %s", session_id)

    def get_session(self, session_id: str) -> Session | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, created_at FROM sessions WHERE id = ?",
                (session_id,),
            ).fetchone()
        return Session.from_row(dict(row)) if row else None

    def append_message(self, session_id: str, role: Role | str, content: str) -> Message:
        """
        Append one message with a store-assigned id and timestamp.
        Raises StorageError if the session doesn't exist.
        """
        role = Role(role)
        timestamp = self._next_timestamp()
        with self._connect() as conn:
            try:
                cur = conn.execute(
                    """INSERT INTO messages (session_id, role, content, timestamp)
                       VALUES (?, ?, ?, ?)""",
                    (session_id, role.value, content, timestamp),
                )
            except sqlite3.IntegrityError as e:
                raise StorageError(
                    f"Unknown session {session_id!r}", session_id=session_id
                ) from e
            message_id = cur.lastrowid
        logger.debug("Stored message %s (role=%s, session=%s)", message_id, role.value, session_id)
        return Message(
            id=message_id,
            session_id=session_id,
            role=role,
            content=content,
            timestamp=timestamp,
        )

    def list_messages(self, session_id: str) -> list[Message]:
        """All messages for a session, oldest first. Ties keep insertion order."""
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT id, session_id, role, content, timestamp
                   FROM messages WHERE session_id = ?
                   ORDER BY timestamp, id""",
                (session_id,),
            ).fetchall()
        return [Message.from_row(dict(r)) for r in rows]

    def delete_session(self, session_id: str) -> bool:
        """Delete a session and, by cascade, its messages."""
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
            deleted = cur.rowcount > 0
        if deleted:
            logger.info("Deleted session %s", session_id)
        return deleted

    def get_stats(self) -> dict:
        with self._connect() as conn:
            sessions = conn.execute("SELECT COUNT(*) FROM sessions").fetchone()[0]
            rows = conn.execute(
                "SELECT role, COUNT(*) AS n FROM messages GROUP BY role"
            ).fetchall()
        by_role = {r["role"]: r["n"] for r in rows}
        return {
            "sessions": sessions,
            "messages": sum(by_role.values()),
            "user_messages": by_role.get("user", 0),
            "assistant_messages": by_role.get("assistant", 0),
        }

    def export_all_json(self) -> list[dict]:
        """Export every session with its messages, oldest session first."""
        with self._connect() as conn:
            sessions = conn.execute(
                "SELECT id, created_at FROM sessions ORDER BY created_at, id"
            ).fetchall()
        return [
            {
                "session_id": s["id"],
                "created_at": s["created_at"],
                "messages": [
                    {"role": m.role.value, "content": m.content, "timestamp": m.timestamp}
                    for m in self.list_messages(s["id"])
                ],
            }
            for s in sessions
        ]
