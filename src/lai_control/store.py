"""Conversation storage consumed by the control plane.

Only the narrow slice the loopback protocol needs lives here: creating a
conversation, inserting a message, and finding the newest assistant reply.
One SQLite connection is shared by every connection-handler thread and is
guarded by a single lock held only for the duration of each statement group.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
import logging
from pathlib import Path
import sqlite3
import threading
import time
from typing import Any
from uuid import uuid4

from .exceptions import StoreError

LOGGER = logging.getLogger(__name__)

VALID_ROLES = frozenset({"user", "assistant", "system"})

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        model TEXT NOT NULL,
        provider TEXT NOT NULL,
        system_prompt TEXT,
        revision INTEGER NOT NULL DEFAULT 0,
        deleted INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        conversation_id TEXT NOT NULL,
        role TEXT NOT NULL CHECK(role IN ('user', 'assistant', 'system')),
        content TEXT NOT NULL,
        timestamp INTEGER NOT NULL,
        tokens_used INTEGER,
        deleted INTEGER NOT NULL DEFAULT 0,
        FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_messages_conversation
        ON messages(conversation_id, timestamp)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_conversations_revision
        ON conversations(revision DESC)
    """,
)

# updated_at has one-second resolution; revision orders touches that land
# within the same second.
_NEXT_REVISION = "(SELECT COALESCE(MAX(revision), 0) + 1 FROM conversations)"

_MESSAGE_COLUMNS = "id, conversation_id, role, content, timestamp, tokens_used"
_CONVERSATION_COLUMNS = (
    "id, title, created_at, updated_at, model, provider, system_prompt"
)


@dataclass(frozen=True)
class Conversation:
    id: str
    title: str
    created_at: int
    updated_at: int
    model: str
    provider: str
    system_prompt: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Message:
    id: str
    conversation_id: str
    role: str
    content: str
    timestamp: int
    tokens_used: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _now() -> int:
    return int(time.time())


class ConversationStore:
    """SQLite-backed conversation store behind one serialized handle."""

    def __init__(self, path: str | Path = ":memory:") -> None:
        target = str(path)
        if target != ":memory:":
            resolved = Path(target).expanduser()
            resolved.parent.mkdir(parents=True, exist_ok=True)
            target = str(resolved)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(target, check_same_thread=False)
        with self._lock:
            self._conn.execute("PRAGMA foreign_keys = ON")
            for statement in _SCHEMA:
                self._conn.execute(statement)
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def create_conversation(
        self,
        title: str,
        model: str,
        provider: str,
        system_prompt: str | None = None,
    ) -> Conversation:
        now = _now()
        conversation = Conversation(
            id=str(uuid4()),
            title=title,
            created_at=now,
            updated_at=now,
            model=model,
            provider=provider,
            system_prompt=system_prompt,
        )
        with self._lock:
            try:
                self._conn.execute(
                    "INSERT INTO conversations "
                    "(id, title, created_at, updated_at, model, provider, system_prompt, "
                    f"revision) VALUES (?, ?, ?, ?, ?, ?, ?, {_NEXT_REVISION})",
                    (
                        conversation.id,
                        conversation.title,
                        conversation.created_at,
                        conversation.updated_at,
                        conversation.model,
                        conversation.provider,
                        conversation.system_prompt,
                    ),
                )
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StoreError(f"Failed to create conversation: {exc}") from exc
        return conversation

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_CONVERSATION_COLUMNS} FROM conversations "
                "WHERE id = ? AND deleted = 0",
                (conversation_id,),
            ).fetchone()
        return Conversation(*row) if row else None

    def create_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        tokens_used: int | None = None,
    ) -> Message:
        """Insert a message and mark its conversation as most recently updated."""
        if role not in VALID_ROLES:
            raise StoreError(f"Invalid message role: {role!r}")
        message = Message(
            id=str(uuid4()),
            conversation_id=conversation_id,
            role=role,
            content=content,
            timestamp=_now(),
            tokens_used=tokens_used,
        )
        with self._lock:
            exists = self._conn.execute(
                "SELECT 1 FROM conversations WHERE id = ? AND deleted = 0",
                (conversation_id,),
            ).fetchone()
            if exists is None:
                raise StoreError(f"Conversation not found: {conversation_id}")
            try:
                self._conn.execute(
                    f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        message.id,
                        message.conversation_id,
                        message.role,
                        message.content,
                        message.timestamp,
                        message.tokens_used,
                    ),
                )
                self._conn.execute(
                    "UPDATE conversations SET updated_at = ?, "
                    f"revision = {_NEXT_REVISION} WHERE id = ?",
                    (message.timestamp, conversation_id),
                )
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StoreError(f"Failed to create message: {exc}") from exc
        return message

    def list_messages(self, conversation_id: str) -> list[Message]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages "
                "WHERE conversation_id = ? AND deleted = 0 "
                "ORDER BY timestamp ASC, rowid ASC",
                (conversation_id,),
            ).fetchall()
        return [Message(*row) for row in rows]

    def get_last_assistant_message(self) -> Message | None:
        """Newest assistant message in the most recently updated conversation."""
        with self._lock:
            try:
                conversation = self._conn.execute(
                    "SELECT id FROM conversations WHERE deleted = 0 "
                    "ORDER BY revision DESC LIMIT 1"
                ).fetchone()
                if conversation is None:
                    return None
                row = self._conn.execute(
                    f"SELECT {_MESSAGE_COLUMNS} FROM messages "
                    "WHERE conversation_id = ? AND role = 'assistant' AND deleted = 0 "
                    "ORDER BY timestamp DESC, rowid DESC LIMIT 1",
                    (conversation[0],),
                ).fetchone()
            except sqlite3.Error as exc:
                raise StoreError(str(exc)) from exc
        return Message(*row) if row else None
