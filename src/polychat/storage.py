"""SQLite-backed session store."""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path

from .attachments import Attachment
from .errors import NotFound, StorageError
from .models import Conversation, Message

logger = logging.getLogger(__name__)

ACTIVE_CONVERSATION_KEY = "active_conversation_id"


class SessionStore:
    """Durable collection of conversations plus an "active conversation" pointer.

    Every write runs in its own transaction, so a crash in the middle of
    ``update`` leaves the previously committed state readable.
    """

    def __init__(self, db_path: Path):
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(str(db_path))
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA foreign_keys=ON")
            self._migrate()
        except (OSError, sqlite3.Error) as e:
            raise StorageError(f"Cannot open session store at {db_path}: {e}") from e

    def _migrate(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                message_count INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id TEXT NOT NULL,
                message_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                created_at TEXT NOT NULL,
                edited INTEGER NOT NULL DEFAULT 0,
                attachments TEXT NOT NULL DEFAULT '[]',
                message_index INTEGER NOT NULL,
                FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_messages_conv
                ON messages(conversation_id);

            CREATE TABLE IF NOT EXISTS meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );
        """)
        self.conn.commit()

    # -- conversations -------------------------------------------------------

    def list(self) -> list[Conversation]:
        """All conversations, most recently updated first."""
        try:
            rows = self.conn.execute("SELECT * FROM conversations").fetchall()
            conversations = [self._load(row) for row in rows]
        except sqlite3.Error as e:
            raise StorageError(f"Failed to list conversations: {e}") from e
        conversations.sort(key=lambda c: c.updated_at, reverse=True)
        return conversations

    def get(self, conversation_id: str) -> Conversation | None:
        try:
            row = self.conn.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
            return self._load(row) if row else None
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read conversation {conversation_id}: {e}") from e

    def exists(self, conversation_id: str) -> bool:
        try:
            row = self.conn.execute(
                "SELECT 1 FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read conversation {conversation_id}: {e}") from e
        return row is not None

    def create(self, initial_title: str | None = None) -> Conversation:
        """Create an empty conversation and make it the active one."""
        conv = Conversation.new(title=initial_title)
        try:
            with self.conn:
                self._write(conv)
                self._set_meta(ACTIVE_CONVERSATION_KEY, conv.id)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to create conversation: {e}") from e
        logger.debug("Created conversation %s", conv.id)
        return conv

    def update(self, conv: Conversation):
        """Insert or replace a conversation and its messages."""
        try:
            with self.conn:
                self._write(conv)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to save conversation {conv.id}: {e}") from e

    def delete(self, conversation_id: str):
        try:
            with self.conn:
                self.conn.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))
                self.conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
                if self._get_meta(ACTIVE_CONVERSATION_KEY) == conversation_id:
                    self._delete_meta(ACTIVE_CONVERSATION_KEY)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to delete conversation {conversation_id}: {e}") from e

    def delete_all(self):
        try:
            with self.conn:
                self.conn.execute("DELETE FROM messages")
                self.conn.execute("DELETE FROM conversations")
                self._delete_meta(ACTIVE_CONVERSATION_KEY)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to delete conversations: {e}") from e

    def set_active(self, conversation_id: str):
        if not self.exists(conversation_id):
            raise NotFound(f"Conversation not found: {conversation_id}")
        self.set_value(ACTIVE_CONVERSATION_KEY, conversation_id)

    def get_active(self) -> Conversation | None:
        active_id = self.active_id
        return self.get(active_id) if active_id else None

    @property
    def active_id(self) -> str | None:
        return self.get_value(ACTIVE_CONVERSATION_KEY)

    # -- key-value settings --------------------------------------------------

    def get_value(self, key: str) -> str | None:
        try:
            return self._get_meta(key)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read {key}: {e}") from e

    def set_value(self, key: str, value: str):
        try:
            with self.conn:
                self._set_meta(key, value)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to write {key}: {e}") from e

    def delete_value(self, key: str):
        try:
            with self.conn:
                self._delete_meta(key)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to delete {key}: {e}") from e

    def close(self):
        self.conn.close()

    # -- internals -----------------------------------------------------------

    def _write(self, conv: Conversation):
        # Delete existing messages before re-inserting the full list
        self.conn.execute("DELETE FROM messages WHERE conversation_id = ?", (conv.id,))
        self.conn.execute(
            """INSERT INTO conversations (id, title, created_at, updated_at, message_count)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   title = excluded.title,
                   created_at = excluded.created_at,
                   updated_at = excluded.updated_at,
                   message_count = excluded.message_count""",
            (conv.id, conv.title, conv.created_at.isoformat(), conv.updated_at.isoformat(),
             conv.message_count),
        )

        for idx, msg in enumerate(conv.messages):
            attachments = json.dumps([a.model_dump(mode="json") for a in msg.attachments])
            self.conn.execute(
                """INSERT INTO messages (conversation_id, message_id, role, content, created_at,
                   edited, attachments, message_index)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (conv.id, msg.id, msg.role.value, msg.text, msg.created_at.isoformat(),
                 int(msg.edited), attachments, idx),
            )

    def _load(self, row: sqlite3.Row) -> Conversation:
        rows = self.conn.execute(
            """SELECT message_id, role, content, created_at, edited, attachments
               FROM messages WHERE conversation_id = ? ORDER BY message_index""",
            (row["id"],),
        ).fetchall()

        messages = tuple(
            Message(
                id=m["message_id"],
                role=m["role"],
                text=m["content"],
                created_at=m["created_at"],
                edited=bool(m["edited"]),
                attachments=tuple(
                    Attachment.model_validate(a) for a in json.loads(m["attachments"] or "[]")
                ),
            )
            for m in rows
        )
        return Conversation(
            id=row["id"],
            title=row["title"],
            messages=messages,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _get_meta(self, key: str) -> str | None:
        row = self.conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def _set_meta(self, key: str, value: str):
        self.conn.execute(
            "INSERT INTO meta (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, value),
        )

    def _delete_meta(self, key: str):
        self.conn.execute("DELETE FROM meta WHERE key = ?", (key,))
