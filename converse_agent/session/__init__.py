"""Session management with SQLite storage."""

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

import aiosqlite

from converse_agent.config import get_config
from converse_agent.context_window import strip_cache_points
from converse_agent.exceptions import PersistenceError
from converse_agent.logging import get_logger
from converse_agent.messages import (
    Message,
    block_to_wire,
    message_from_wire,
    message_to_wire,
    metadata_to_wire,
)

log = get_logger(__name__)


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


class MessagePersistence(Protocol):
    """Where the orchestrator writes conversation history."""

    async def append(self, session_id: str, message: Message) -> None: ...

    async def update(self, session_id: str, message_id: str, patch: dict[str, Any]) -> None: ...

    async def delete(self, session_id: str, message_id: str) -> bool: ...

    async def load_messages(self, session_id: str) -> list[Message]: ...


@dataclass
class Session:
    """A conversation session."""

    id: str
    name: str
    model_id: str = ""
    messages: list[Message] = field(default_factory=list)
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "model_id": self.model_id,
            "messages": [message_to_wire(m, include_meta=True) for m in self.messages],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "metadata": self.metadata,
        }


def _row_to_message(row: tuple[Any, ...]) -> Message:
    message_id, role, content, metadata = row
    return message_from_wire({
        "id": message_id,
        "role": role,
        "content": json.loads(content),
        "metadata": json.loads(metadata),
    })


class SessionManager:
    """Manages conversation sessions and their messages with SQLite storage.

    Messages are stored one row each, ordered by ``position``, so appends and
    usage patches never rewrite the whole history. Cache point markers are
    stripped before writing; they only exist in request windows.
    """

    def __init__(self, db_path: Path | str | None = None):
        """Initialize session manager.

        Args:
            db_path: Optional database path override
        """
        if db_path is None:
            config = get_config()
            self.db_path = Path(config.session.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        if self._db is None:
            try:
                db = await aiosqlite.connect(str(self.db_path))
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS sessions (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        model_id TEXT NOT NULL DEFAULT '',
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        metadata TEXT NOT NULL DEFAULT '{}'
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS messages (
                        session_id TEXT NOT NULL,
                        position INTEGER NOT NULL,
                        id TEXT NOT NULL,
                        role TEXT NOT NULL,
                        content TEXT NOT NULL,
                        metadata TEXT NOT NULL DEFAULT '{}',
                        created_at TEXT NOT NULL,
                        PRIMARY KEY (session_id, id)
                    )
                """)
                await db.execute(
                    "CREATE INDEX IF NOT EXISTS idx_sessions_updated_at ON sessions(updated_at)"
                )
                await db.execute(
                    "CREATE INDEX IF NOT EXISTS idx_messages_position ON messages(session_id, position)"
                )
                await db.commit()
            except aiosqlite.Error as e:
                raise PersistenceError(f"Failed to open session database: {e}") from e
            self._db = db
        return self._db

    async def _touch(self, db: aiosqlite.Connection, session_id: str) -> None:
        await db.execute(
            "UPDATE sessions SET updated_at = ? WHERE id = ?",
            (_utcnow_iso(), session_id),
        )

    async def create_session(
        self,
        name: str = "default",
        model_id: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> Session:
        """Create and persist a new, empty session."""
        db = await self._ensure_db()
        session = Session(
            id=str(uuid.uuid4()),
            name=name,
            model_id=model_id,
            metadata=metadata or {},
        )
        try:
            await db.execute(
                """
                INSERT INTO sessions (id, name, model_id, created_at, updated_at, metadata)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    session.id,
                    session.name,
                    session.model_id,
                    session.created_at,
                    session.updated_at,
                    json.dumps(session.metadata),
                ),
            )
            await db.commit()
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to create session: {e}") from e
        log.info("Created new session", session_id=session.id, name=name)
        return session

    async def load_session(self, session_id: str) -> Session | None:
        """Get a session by ID, including its messages.

        Returns:
            Session or None if not found
        """
        db = await self._ensure_db()
        try:
            async with db.execute(
                "SELECT id, name, model_id, created_at, updated_at, metadata FROM sessions WHERE id = ?",
                (session_id,),
            ) as cursor:
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to load session: {e}") from e

        if not row:
            return None

        return Session(
            id=row[0],
            name=row[1],
            model_id=row[2],
            messages=await self.load_messages(session_id),
            created_at=row[3],
            updated_at=row[4],
            metadata=json.loads(row[5]),
        )

    async def list_sessions(self, limit: int = 10) -> list[Session]:
        """List recent sessions without their messages."""
        db = await self._ensure_db()
        try:
            async with db.execute("""
                SELECT id, name, model_id, created_at, updated_at, metadata
                FROM sessions
                ORDER BY updated_at DESC
                LIMIT ?
            """, (limit,)) as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to list sessions: {e}") from e

        return [
            Session(
                id=row[0],
                name=row[1],
                model_id=row[2],
                created_at=row[3],
                updated_at=row[4],
                metadata=json.loads(row[5]),
            )
            for row in rows
        ]

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session and its messages.

        Returns:
            True if deleted, False if not found
        """
        db = await self._ensure_db()
        try:
            await db.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
            cursor = await db.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
            await db.commit()
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to delete session: {e}") from e
        return cursor.rowcount > 0

    async def append(self, session_id: str, message: Message) -> None:
        """Append one message at the end of a session's history."""
        db = await self._ensure_db()
        stored = strip_cache_points([message])[0]
        wire = message_to_wire(stored, include_meta=True)
        now = _utcnow_iso()
        try:
            await db.execute(
                """
                INSERT OR IGNORE INTO sessions (id, name, model_id, created_at, updated_at, metadata)
                VALUES (?, ?, '', ?, ?, '{}')
                """,
                (session_id, session_id, now, now),
            )
            async with db.execute(
                "SELECT COALESCE(MAX(position), -1) + 1 FROM messages WHERE session_id = ?",
                (session_id,),
            ) as cursor:
                (position,) = await cursor.fetchone()
            await db.execute(
                """
                INSERT OR REPLACE INTO messages (session_id, position, id, role, content, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session_id,
                    position,
                    stored.id,
                    stored.role,
                    json.dumps(wire["content"]),
                    json.dumps(wire["metadata"]),
                    now,
                ),
            )
            await self._touch(db, session_id)
            await db.commit()
        except (aiosqlite.Error, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to append message {stored.id}: {e}") from e

    async def update(self, session_id: str, message_id: str, patch: dict[str, Any]) -> None:
        """Patch a stored message.

        ``patch["metadata"]`` is merged into the stored metadata and
        ``patch["content"]`` (a tuple of content blocks) replaces the content.
        """
        db = await self._ensure_db()
        try:
            async with db.execute(
                "SELECT metadata FROM messages WHERE session_id = ? AND id = ?",
                (session_id, message_id),
            ) as cursor:
                row = await cursor.fetchone()
            if row is None:
                raise PersistenceError(f"Message not found: {message_id}")

            metadata = json.loads(row[0])
            metadata.update(metadata_to_wire(patch.get("metadata") or {}))
            await db.execute(
                "UPDATE messages SET metadata = ? WHERE session_id = ? AND id = ?",
                (json.dumps(metadata), session_id, message_id),
            )
            if "content" in patch:
                message = Message(role="assistant", content=tuple(patch["content"]))
                content = [block_to_wire(b) for b in strip_cache_points([message])[0].content]
                await db.execute(
                    "UPDATE messages SET content = ? WHERE session_id = ? AND id = ?",
                    (json.dumps(content), session_id, message_id),
                )
            await self._touch(db, session_id)
            await db.commit()
        except (aiosqlite.Error, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to update message {message_id}: {e}") from e

    async def delete(self, session_id: str, message_id: str) -> bool:
        """Delete one message; returns False when it was not stored."""
        db = await self._ensure_db()
        try:
            cursor = await db.execute(
                "DELETE FROM messages WHERE session_id = ? AND id = ?",
                (session_id, message_id),
            )
            await self._touch(db, session_id)
            await db.commit()
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to delete message {message_id}: {e}") from e
        return cursor.rowcount > 0

    async def load_messages(self, session_id: str) -> list[Message]:
        db = await self._ensure_db()
        try:
            async with db.execute(
                """
                SELECT id, role, content, metadata
                FROM messages
                WHERE session_id = ?
                ORDER BY position
                """,
                (session_id,),
            ) as cursor:
                rows = await cursor.fetchall()
            return [_row_to_message(row) for row in rows]
        except (aiosqlite.Error, ValueError) as e:
            raise PersistenceError(f"Failed to load messages: {e}") from e

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None


# Global session manager
_manager: SessionManager | None = None


def get_session_manager() -> SessionManager:
    """Get the global session manager."""
    global _manager
    if _manager is None:
        _manager = SessionManager()
    return _manager


def set_session_manager(manager: SessionManager) -> None:
    """Set the global session manager."""
    global _manager
    _manager = manager
