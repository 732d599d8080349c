"""Durable shared cache tier backed by SQLite."""

import asyncio
import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

from content_engine.errors import CacheBackendUnavailable
from content_engine.models import CacheEntry, CacheTier, ContentType, Priority

logger = structlog.get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS content_cache (
    cache_key TEXT PRIMARY KEY,
    cache_data TEXT NOT NULL,
    cache_type TEXT,
    source TEXT NOT NULL,
    ttl REAL NOT NULL,
    quality_score INTEGER NOT NULL DEFAULT 0,
    metadata TEXT,
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_content_cache_type ON content_cache (cache_type);
"""


class SQLiteSharedTier:
    """Key-value table shared by every engine instance.

    Writes are idempotent upserts keyed by cache key; the last writer wins.
    Each operation runs in a worker thread so the event loop is never
    blocked, and every sqlite failure surfaces as ``CacheBackendUnavailable``.
    """

    def __init__(self, db_path: str = ":memory:"):
        """Initialize the shared tier.

        Args:
            db_path: SQLite database file, or ":memory:"
        """
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        with self._lock:
            self._conn.executescript(SCHEMA)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    async def _run(self, operation: str, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except (sqlite3.Error, TypeError, ValueError) as e:
            # Payloads that cannot round-trip through JSON fail like the backend itself.
            raise CacheBackendUnavailable(
                f"Shared tier {operation} failed: {e}", {"operation": operation}
            ) from e

    def _get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM content_cache WHERE cache_key = ?", (key,)
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def _upsert(self, entry: CacheEntry) -> None:
        metadata = dict(entry.metadata)
        if entry.priority is not None:
            metadata["priority"] = entry.priority.value
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO content_cache (
                    cache_key, cache_data, cache_type, source, ttl,
                    quality_score, metadata, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(cache_key) DO UPDATE SET
                    cache_data = excluded.cache_data,
                    cache_type = excluded.cache_type,
                    source = excluded.source,
                    ttl = excluded.ttl,
                    quality_score = excluded.quality_score,
                    metadata = excluded.metadata,
                    created_at = excluded.created_at
                """,
                (
                    entry.key,
                    json.dumps(entry.payload),
                    entry.content_type.value if entry.content_type else None,
                    entry.source_provider,
                    entry.ttl,
                    entry.quality_score,
                    json.dumps(metadata),
                    entry.created_at,
                ),
            )

    def _delete_pattern(self, pattern: str, content_type: Optional[str]) -> int:
        query = "DELETE FROM content_cache WHERE instr(cache_key, ?) > 0"
        params: list = [pattern]
        if content_type:
            query += " AND cache_type = ?"
            params.append(content_type)
        with self._lock:
            return self._conn.execute(query, params).rowcount

    def _delete_expired(self, now: float, grace_multiplier: float) -> int:
        with self._lock:
            return self._conn.execute(
                "DELETE FROM content_cache WHERE ? - created_at > ttl * ?",
                (now, grace_multiplier),
            ).rowcount

    def _count(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM content_cache").fetchone()[0]

    async def get(self, key: str) -> Optional[CacheEntry]:
        return await self._run("read", self._get, key)

    async def upsert(self, entry: CacheEntry) -> None:
        await self._run("write", self._upsert, entry)

    async def delete_pattern(self, pattern: str, content_type: Optional[str] = None) -> int:
        return await self._run("delete", self._delete_pattern, pattern, content_type)

    async def delete_expired(self, now: float, grace_multiplier: float) -> int:
        return await self._run("sweep", self._delete_expired, now, grace_multiplier)

    async def count(self) -> int:
        return await self._run("count", self._count)

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> CacheEntry:
        metadata: Dict[str, Any] = json.loads(row["metadata"]) if row["metadata"] else {}
        priority = metadata.get("priority")
        cache_type = row["cache_type"]
        return CacheEntry(
            key=row["cache_key"],
            payload=json.loads(row["cache_data"]),
            created_at=row["created_at"],
            ttl=row["ttl"],
            source_provider=row["source"],
            quality_score=row["quality_score"],
            tier=CacheTier.SHARED,
            content_type=ContentType(cache_type) if cache_type in ContentType._value2member_map_ else None,
            priority=Priority(priority) if priority in Priority._value2member_map_ else None,
            metadata=metadata,
        )
