"""
SQLite-backed conversation and turn store.

Uses ``aiosqlite`` for async database access with a write lock to serialise
mutations (SQLite only supports one writer at a time in WAL mode).

Schema is version-tracked via a ``schema_version`` table.  Migrations are
applied automatically on ``init()``.

Turns are append-only: ``read_history`` replays them in insertion order and
their content is stored verbatim.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from chatrelay.errors import ConversationBusyError, ConversationNotFoundError
from chatrelay.llm.types import Turn

# ---------------------------------------------------------------------------
# Schema management
# ---------------------------------------------------------------------------

SCHEMA_VERSION = 1

MIGRATIONS: dict[int, list[str]] = {
    1: [
        """CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER NOT NULL
        )""",
        """CREATE TABLE IF NOT EXISTS conversations (
            conversation_id TEXT PRIMARY KEY,
            user_id TEXT,
            title TEXT NOT NULL DEFAULT '',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )""",
        """CREATE TABLE IF NOT EXISTS turns (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            turn_id TEXT NOT NULL UNIQUE,
            conversation_id TEXT NOT NULL,
            role TEXT NOT NULL,
            content TEXT NOT NULL,
            attachments TEXT,
            tool_call_id TEXT,
            tool_calls TEXT,
            extracted_text TEXT,
            is_streaming INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'complete',
            created_at TEXT NOT NULL,
            FOREIGN KEY (conversation_id) REFERENCES conversations(conversation_id) ON DELETE CASCADE
        )""",
        """CREATE INDEX IF NOT EXISTS idx_turns_conversation ON turns(conversation_id)""",
    ],
}

TITLE_MAX_CHARS = 30

_TURN_COLUMNS = (
    "turn_id, role, content, attachments, tool_call_id, tool_calls, "
    "extracted_text, is_streaming, status, created_at"
)


def make_title(message: str) -> str:
    """Derive a conversation title from its first user message."""
    if len(message) > TITLE_MAX_CHARS:
        return message[:TITLE_MAX_CHARS] + "..."
    return message


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class ConversationStore:
    """
    Async SQLite store for conversations and their turns.

    Usage::

        store = ConversationStore("~/.chatrelay/history.db")
        await store.init()
        cid = await store.create_conversation()
        turn = await store.append_turn(cid, Turn(role="user", content="hi"))
        history = await store.read_history(cid)
        await store.close()
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._write_lock = asyncio.Lock()
        self._active: set[str] = set()
        self._db: aiosqlite.Connection | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        """Open the database and ensure the schema is up to date."""
        self._db = await aiosqlite.connect(str(self.db_path))
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._run_migrations()

    async def close(self) -> None:
        """Close the database connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    # ------------------------------------------------------------------
    # Migration runner
    # ------------------------------------------------------------------

    async def _get_schema_version(self) -> int:
        """Return the current schema version, or 0 if not initialised."""
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
        )
        if await cursor.fetchone() is None:
            return 0
        cursor = await self._db.execute("SELECT version FROM schema_version LIMIT 1")
        row = await cursor.fetchone()
        return int(row[0]) if row is not None else 0

    async def _run_migrations(self) -> None:
        assert self._db is not None
        current = await self._get_schema_version()
        if current >= SCHEMA_VERSION:
            return

        for version in range(current + 1, SCHEMA_VERSION + 1):
            stmts = MIGRATIONS.get(version)
            if stmts is None:
                raise RuntimeError(f"Missing migration for schema version {version}")
            for stmt in stmts:
                await self._db.execute(stmt)
            await self._db.execute("DELETE FROM schema_version")
            await self._db.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )

        await self._db.commit()

    async def get_schema_version(self) -> int:
        return await self._get_schema_version()

    # ------------------------------------------------------------------
    # Conversation CRUD
    # ------------------------------------------------------------------

    async def create_conversation(
        self, title: str = "", user_id: str | None = None
    ) -> str:
        """Create a new conversation and return its id."""
        assert self._db is not None
        conversation_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc).isoformat()

        async with self._write_lock:
            await self._db.execute(
                """INSERT INTO conversations
                   (conversation_id, user_id, title, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (conversation_id, user_id, title, now, now),
            )
            await self._db.commit()
        return conversation_id

    async def get_conversation(self, conversation_id: str) -> dict | None:
        """Return conversation metadata, or ``None`` if not found."""
        assert self._db is not None
        cursor = await self._db.execute(
            """SELECT conversation_id, user_id, title, created_at, updated_at
               FROM conversations WHERE conversation_id = ?""",
            (conversation_id,),
        )
        row = await cursor.fetchone()
        return dict(row) if row is not None else None

    async def list_conversations(self, user_id: str | None = None) -> list[dict]:
        """Return conversations, most recently updated first."""
        assert self._db is not None
        if user_id is not None:
            cursor = await self._db.execute(
                """SELECT conversation_id, user_id, title, created_at, updated_at
                   FROM conversations WHERE user_id = ?
                   ORDER BY updated_at DESC""",
                (user_id,),
            )
        else:
            cursor = await self._db.execute(
                """SELECT conversation_id, user_id, title, created_at, updated_at
                   FROM conversations ORDER BY updated_at DESC"""
            )
        return [dict(row) for row in await cursor.fetchall()]

    async def delete_conversation(self, conversation_id: str) -> None:
        """Delete a conversation and all its turns."""
        assert self._db is not None
        async with self._write_lock:
            await self._db.execute(
                "DELETE FROM turns WHERE conversation_id = ?", (conversation_id,)
            )
            await self._db.execute(
                "DELETE FROM conversations WHERE conversation_id = ?",
                (conversation_id,),
            )
            await self._db.commit()

    # ------------------------------------------------------------------
    # Turn operations
    # ------------------------------------------------------------------

    async def read_history(self, conversation_id: str) -> list[Turn]:
        """Return the conversation's turns in append order."""
        assert self._db is not None
        cursor = await self._db.execute(
            f"""SELECT {_TURN_COLUMNS} FROM turns
                WHERE conversation_id = ? ORDER BY id ASC""",
            (conversation_id,),
        )
        return [_row_to_turn(row) for row in await cursor.fetchall()]

    async def append_turn(self, conversation_id: str, turn: Turn) -> Turn:
        """
        Persist *turn* and return it with a generated id.

        Appending the first user turn of an untitled conversation also sets
        the conversation title.
        """
        assert self._db is not None
        turn_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)

        async with self._write_lock:
            cursor = await self._db.execute(
                "SELECT title FROM conversations WHERE conversation_id = ?",
                (conversation_id,),
            )
            row = await cursor.fetchone()
            if row is None:
                raise ConversationNotFoundError(conversation_id)

            await self._db.execute(
                f"""INSERT INTO turns ({_TURN_COLUMNS}, conversation_id)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    turn_id,
                    turn.role,
                    turn.content,
                    json.dumps(turn.attachments) if turn.attachments else None,
                    turn.tool_call_id,
                    json.dumps(turn.tool_calls) if turn.tool_calls else None,
                    turn.extracted_text,
                    int(turn.is_streaming),
                    turn.status,
                    turn.created_at.isoformat(),
                    conversation_id,
                ),
            )
            if turn.role == "user" and not row[0] and turn.content:
                await self._db.execute(
                    "UPDATE conversations SET title = ?, updated_at = ? WHERE conversation_id = ?",
                    (make_title(turn.content), now.isoformat(), conversation_id),
                )
            else:
                await self._db.execute(
                    "UPDATE conversations SET updated_at = ? WHERE conversation_id = ?",
                    (now.isoformat(), conversation_id),
                )
            await self._db.commit()

        turn.id = turn_id
        return turn

    async def mark_streaming(self, turn_id: str, streaming: bool) -> None:
        """Set or clear the is-streaming marker on a turn."""
        assert self._db is not None
        async with self._write_lock:
            await self._db.execute(
                "UPDATE turns SET is_streaming = ? WHERE turn_id = ?",
                (int(streaming), turn_id),
            )
            await self._db.commit()

    async def update_turn(self, turn_id: str, content: str, status: str) -> None:
        """Replace a turn's content and status (e.g. an edited or retried reply)."""
        assert self._db is not None
        async with self._write_lock:
            cursor = await self._db.execute(
                "UPDATE turns SET content = ?, status = ? WHERE turn_id = ?",
                (content, status, turn_id),
            )
            if cursor.rowcount == 0:
                raise KeyError(f"Turn not found: {turn_id}")
            await self._db.commit()

    async def get_turn(self, turn_id: str) -> Turn | None:
        assert self._db is not None
        cursor = await self._db.execute(
            f"SELECT {_TURN_COLUMNS} FROM turns WHERE turn_id = ?", (turn_id,)
        )
        row = await cursor.fetchone()
        return _row_to_turn(row) if row is not None else None

    # ------------------------------------------------------------------
    # Per-conversation exclusivity
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def conversation_lock(self, conversation_id: str) -> AsyncIterator[None]:
        """
        Claim *conversation_id* for the duration of one request.

        A second overlapping claim is rejected with ``ConversationBusyError``.
        """
        if conversation_id in self._active:
            raise ConversationBusyError(conversation_id)
        self._active.add(conversation_id)
        try:
            yield
        finally:
            self._active.discard(conversation_id)


def _row_to_turn(row) -> Turn:
    return Turn(
        id=row[0],
        role=row[1],
        content=row[2],
        attachments=json.loads(row[3]) if row[3] else None,
        tool_call_id=row[4],
        tool_calls=json.loads(row[5]) if row[5] else None,
        extracted_text=row[6],
        is_streaming=bool(row[7]),
        status=row[8],
        created_at=datetime.fromisoformat(row[9]),
    )
