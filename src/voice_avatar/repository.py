"""SQLite-backed, append-only conversation log."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

TurnRecord = dict[str, Any]

ALLOWED_ROLES = ("user", "assistant")


def _normalize_db_timestamp(value: str | None) -> str | None:
    """Convert SQLite timestamp strings to ISO8601 in UTC."""

    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return value
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    else:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.isoformat()


class ConversationRepository:
    """Persist ordered ``{role, content}`` turns per conversation id."""

    def __init__(self, database_path: Path):
        self._path = database_path
        self._connection: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open the SQLite connection and ensure tables exist."""

        if self._connection is not None:
            return

        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self._path)
        self._connection.row_factory = aiosqlite.Row
        await self._connection.execute("PRAGMA journal_mode=WAL;")
        await self._connection.execute("PRAGMA foreign_keys=ON;")
        await self._create_schema()

    async def _create_schema(self) -> None:
        assert self._connection is not None
        await self._connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS conversations (
                conversation_id TEXT PRIMARY KEY,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS turns (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id TEXT NOT NULL
                    REFERENCES conversations(conversation_id) ON DELETE CASCADE,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_turns_conversation
                ON turns(conversation_id, id);
            """
        )
        await self._connection.commit()

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    async def append(self, conversation_id: str, role: str, content: str) -> TurnRecord:
        """Append a turn; turns are never edited afterwards."""

        if role not in ALLOWED_ROLES:
            raise ValueError(f"Unsupported role: {role}")

        assert self._connection is not None
        await self._connection.execute(
            "INSERT OR IGNORE INTO conversations(conversation_id) VALUES (?)",
            (conversation_id,),
        )
        cursor = await self._connection.execute(
            "INSERT INTO turns(conversation_id, role, content) VALUES (?, ?, ?)",
            (conversation_id, role, content),
        )
        inserted_id = cursor.lastrowid
        await cursor.close()
        await self._connection.commit()
        return {"id": inserted_id, "role": role, "content": content}

    async def list(self, conversation_id: str) -> list[TurnRecord]:
        """Return the turns of ``conversation_id`` in insertion order."""

        assert self._connection is not None
        cursor = await self._connection.execute(
            """
            SELECT id, role, content, created_at
            FROM turns
            WHERE conversation_id = ?
            ORDER BY id ASC
            """,
            (conversation_id,),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [
            {
                "id": row["id"],
                "role": row["role"],
                "content": row["content"],
                "created_at": _normalize_db_timestamp(row["created_at"]),
            }
            for row in rows
        ]

    async def clear(self, conversation_id: str) -> None:
        assert self._connection is not None
        await self._connection.execute(
            "DELETE FROM conversations WHERE conversation_id = ?",
            (conversation_id,),
        )
        await self._connection.execute(
            "DELETE FROM turns WHERE conversation_id = ?",
            (conversation_id,),
        )
        await self._connection.commit()


__all__ = ["ConversationRepository", "TurnRecord"]
