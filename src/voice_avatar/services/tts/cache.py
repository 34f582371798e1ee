"""Content-addressed, two-tier cache for synthesized audio."""

from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path

import aiosqlite

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "audio/mpeg"
FLAT_MAX_ENTRY_BYTES = 2 * 1024 * 1024


@dataclass(frozen=True)
class AudioBlob:
    data: bytes
    content_type: str = DEFAULT_CONTENT_TYPE

    def __len__(self) -> int:
        return len(self.data)


def hash_key(value: str) -> str:
    """SHA-256 digest as base64url without padding."""

    digest = hashlib.sha256(value.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def tts_cache_key(voice_id: str, say: str) -> str:
    return hash_key(f"{voice_id}:{say}")


class SqliteAudioStore:
    """Structured tier: one row per key in an SQLite table."""

    def __init__(self, database_path: Path):
        self._path = database_path
        self._connection: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        if self._connection is not None:
            return

        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self._path)
        await self._connection.execute("PRAGMA journal_mode=WAL;")
        await self._connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS audio (
                key TEXT PRIMARY KEY,
                data BLOB NOT NULL,
                content_type TEXT NOT NULL,
                created_at REAL NOT NULL
            );
            """
        )
        await self._connection.commit()

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    async def get(self, key: str) -> AudioBlob | None:
        assert self._connection is not None
        cursor = await self._connection.execute(
            "SELECT data, content_type FROM audio WHERE key = ? LIMIT 1", (key,)
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return None
        return AudioBlob(data=bytes(row[0]), content_type=row[1])

    async def set(self, key: str, blob: AudioBlob) -> None:
        assert self._connection is not None
        # entries are immutable once written
        await self._connection.execute(
            """
            INSERT OR IGNORE INTO audio(key, data, content_type, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (key, blob.data, blob.content_type, time.time()),
        )
        await self._connection.commit()


class FlatAudioStore:
    """Fallback tier: one JSON record per key, base64 payload, size-capped."""

    def __init__(self, directory: Path, max_entry_bytes: int = FLAT_MAX_ENTRY_BYTES):
        self._directory = directory
        self._max_entry_bytes = max_entry_bytes

    def _path_for(self, key: str) -> Path:
        return self._directory / f"{key}.json"

    def get(self, key: str) -> AudioBlob | None:
        path = self._path_for(key)
        if not path.exists():
            return None
        record = json.loads(path.read_text(encoding="utf-8"))
        return AudioBlob(
            data=base64.b64decode(record["audio"]),
            content_type=record.get("content_type") or DEFAULT_CONTENT_TYPE,
        )

    def set(self, key: str, blob: AudioBlob) -> bool:
        if len(blob.data) > self._max_entry_bytes:
            return False
        path = self._path_for(key)
        if path.exists():
            return True
        self._directory.mkdir(parents=True, exist_ok=True)
        record = {
            "content_type": blob.content_type,
            "audio": base64.b64encode(blob.data).decode("ascii"),
            "created_at": time.time(),
        }
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(record), encoding="utf-8")
        tmp_path.replace(path)
        return True


class AudioCache:
    """Read-through audio cache.

    ``get`` tries the SQLite tier, then the flat tier. ``set`` writes both.
    Neither raises: any storage failure is logged and treated as a miss.
    Entries are never evicted.
    """

    def __init__(
        self,
        primary: SqliteAudioStore | None,
        fallback: FlatAudioStore | None,
    ) -> None:
        self._primary = primary
        self._fallback = fallback
        self._primary_ready = False

    @classmethod
    def from_paths(
        cls,
        database_path: Path,
        directory: Path,
        max_entry_bytes: int = FLAT_MAX_ENTRY_BYTES,
    ) -> "AudioCache":
        return cls(
            SqliteAudioStore(database_path),
            FlatAudioStore(directory, max_entry_bytes),
        )

    async def initialize(self) -> None:
        if self._primary is None or self._primary_ready:
            return
        try:
            await self._primary.initialize()
            self._primary_ready = True
        except Exception as exc:  # pragma: no cover - depends on filesystem
            logger.warning("Audio cache database unavailable, using flat store: %s", exc)

    async def close(self) -> None:
        if self._primary is not None and self._primary_ready:
            await self._primary.close()
            self._primary_ready = False

    async def get(self, key: str) -> AudioBlob | None:
        if self._primary is not None and self._primary_ready:
            try:
                blob = await self._primary.get(key)
                if blob is not None:
                    return blob
            except Exception as exc:
                logger.debug("Audio cache tier 1 read failed for %s: %s", key, exc)

        if self._fallback is not None:
            try:
                return await asyncio.to_thread(self._fallback.get, key)
            except Exception as exc:
                logger.debug("Audio cache tier 2 read failed for %s: %s", key, exc)
        return None

    async def set(self, key: str, blob: AudioBlob) -> None:
        if self._primary is not None and self._primary_ready:
            try:
                await self._primary.set(key, blob)
            except Exception as exc:
                logger.debug("Audio cache tier 1 write failed for %s: %s", key, exc)

        if self._fallback is not None:
            try:
                stored = await asyncio.to_thread(self._fallback.set, key, blob)
                if not stored:
                    logger.debug(
                        "Audio for %s exceeds flat cache ceiling (%d bytes)",
                        key,
                        len(blob),
                    )
            except Exception as exc:
                logger.debug("Audio cache tier 2 write failed for %s: %s", key, exc)


__all__ = [
    "AudioBlob",
    "AudioCache",
    "FlatAudioStore",
    "SqliteAudioStore",
    "hash_key",
    "tts_cache_key",
]
