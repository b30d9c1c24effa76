"""SQLite persistence backend.

Two tables:
    messages     one row per message, many per conversation
    checkpoints  one row per conversation, overwritten on every save
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from loguru import logger

from tether.core.errors import PersistenceError
from tether.memory.models import Checkpoint, Message
from tether.memory.persistence import Persistence


class SQLiteStore(Persistence):
    """SQLite storage for one conversation. Several stores may share a file."""

    def __init__(self, db_path: str = "data/tether.db", conversation_id: str = "default"):
        self.db_path = db_path
        self.conversation_id = conversation_id
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        logger.info(f"SQLiteStore initialized: {db_path} (conversation={conversation_id})")

    @contextmanager
    def _get_conn(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            yield conn
        except sqlite3.Error as e:
            raise PersistenceError(f"SQLite error: {e}") from e
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._get_conn() as conn:
            conn.executescript(_SCHEMA)
            self._migrate(conn)
            conn.commit()

    def _migrate(self, conn: sqlite3.Connection) -> None:
        """Add columns missing in databases created by older versions."""
        cols = {row[1] for row in conn.execute("PRAGMA table_info(messages)").fetchall()}
        if "kept_before" not in cols:
            conn.execute("ALTER TABLE messages ADD COLUMN kept_before INTEGER NOT NULL DEFAULT 0")

    # ════════════════════════════════════════════════════════════
    # MESSAGES
    # ════════════════════════════════════════════════════════════

    async def save_message(self, message: Message) -> None:
        rec = message.to_record()
        with self._get_conn() as conn:
            conn.execute(
                """INSERT INTO messages
                   (conversation_id, role, content, is_summary, kept_before, tool_calls,
                    tool_call_id, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    self.conversation_id,
                    rec["role"],
                    rec["content"],
                    int(rec["is_summary"]),
                    rec["kept_before"],
                    rec["tool_calls"],
                    rec["tool_call_id"],
                    rec["created_at"],
                ),
            )
            conn.commit()

    async def load_messages(self) -> list[Message]:
        return [Message.from_record(r) for r in self.get_records()]

    def get_records(self) -> list[dict[str, Any]]:
        with self._get_conn() as conn:
            rows = conn.execute(
                """SELECT role, content, is_summary, kept_before, tool_calls, tool_call_id, created_at
                   FROM messages WHERE conversation_id = ?
                   ORDER BY id ASC""",
                (self.conversation_id,),
            ).fetchall()
        return [dict(r) for r in rows]

    async def clear_messages(self) -> None:
        with self._get_conn() as conn:
            conn.execute(
                "DELETE FROM messages WHERE conversation_id = ?", (self.conversation_id,)
            )
            conn.commit()

    async def delete_old_messages(self, limit: int) -> None:
        with self._get_conn() as conn:
            cursor = conn.execute(
                """DELETE FROM messages
                   WHERE conversation_id = ? AND is_summary = 0 AND id NOT IN (
                       SELECT id FROM messages
                       WHERE conversation_id = ? AND is_summary = 0
                       ORDER BY id DESC LIMIT ?
                   )""",
                (self.conversation_id, self.conversation_id, max(0, limit)),
            )
            conn.commit()
        if cursor.rowcount:
            logger.debug(f"Pruned {cursor.rowcount} old messages ({self.conversation_id})")

    # ════════════════════════════════════════════════════════════
    # CHECKPOINTS
    # ════════════════════════════════════════════════════════════

    async def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        with self._get_conn() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO checkpoints
                   (conversation_id, snapshot, iteration_count, pending_tool_call_ids,
                    is_running, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    self.conversation_id,
                    checkpoint.to_json(),
                    checkpoint.iteration_count,
                    json.dumps(checkpoint.pending_tool_call_ids),
                    int(checkpoint.is_running),
                    checkpoint.created_at.isoformat(),
                ),
            )
            conn.commit()

    async def load_checkpoint(self) -> Checkpoint | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT snapshot FROM checkpoints WHERE conversation_id = ?",
                (self.conversation_id,),
            ).fetchone()
        if not row:
            return None
        try:
            return Checkpoint.from_json(row["snapshot"])
        except ValueError as e:
            raise PersistenceError(f"Corrupt checkpoint for {self.conversation_id}: {e}") from e

    async def clear_checkpoint(self) -> None:
        with self._get_conn() as conn:
            conn.execute(
                "DELETE FROM checkpoints WHERE conversation_id = ?", (self.conversation_id,)
            )
            conn.commit()

    # ════════════════════════════════════════════════════════════
    # INTROSPECTION
    # ════════════════════════════════════════════════════════════

    def stats(self) -> dict[str, Any]:
        """Counts for ``tether status``."""
        with self._get_conn() as conn:
            messages = conn.execute(
                "SELECT COUNT(*) FROM messages WHERE conversation_id = ?",
                (self.conversation_id,),
            ).fetchone()[0]
            summaries = conn.execute(
                "SELECT COUNT(*) FROM messages WHERE conversation_id = ? AND is_summary = 1",
                (self.conversation_id,),
            ).fetchone()[0]
            row = conn.execute(
                """SELECT iteration_count, pending_tool_call_ids, is_running, created_at
                   FROM checkpoints WHERE conversation_id = ?""",
                (self.conversation_id,),
            ).fetchone()
        return {
            "messages": messages,
            "summaries": summaries,
            "checkpoint": dict(row) if row else None,
        }

    def list_conversations(self) -> list[str]:
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT DISTINCT conversation_id FROM messages ORDER BY conversation_id"
            ).fetchall()
        return [r[0] for r in rows]


_SCHEMA = """
CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT,
    is_summary INTEGER NOT NULL DEFAULT 0,
    kept_before INTEGER NOT NULL DEFAULT 0,
    tool_calls TEXT,
    tool_call_id TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, id);

CREATE TABLE IF NOT EXISTS checkpoints (
    conversation_id TEXT PRIMARY KEY,
    snapshot TEXT NOT NULL,
    iteration_count INTEGER NOT NULL DEFAULT 0,
    pending_tool_call_ids TEXT,
    is_running INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""
