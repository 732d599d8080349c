"""SQLite quota table shared by engine instances."""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

import structlog

from content_engine.errors import CacheBackendUnavailable
from content_engine.models import QuotaRecord

logger = structlog.get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS quota_management (
    api_type TEXT PRIMARY KEY,
    daily_limit INTEGER NOT NULL,
    daily_used INTEGER NOT NULL DEFAULT 0,
    hourly_limit INTEGER NOT NULL,
    hourly_used INTEGER NOT NULL DEFAULT 0,
    reset_time REAL NOT NULL,
    hourly_reset_time REAL NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    last_call_at REAL
);
"""


class SQLiteQuotaTable:
    """Quota rows with atomic server-side increments.

    Usage counters are only ever changed with ``UPDATE ... SET x = x + ?`` so
    concurrent instances never lose an increment. Every sqlite failure
    surfaces as ``CacheBackendUnavailable``.
    """

    def __init__(self, db_path: str = ":memory:"):
        """Initialize the quota table.

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

    @contextmanager
    def _locked(self, operation: str) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
            except sqlite3.Error as e:
                raise CacheBackendUnavailable(
                    f"Quota table {operation} failed: {e}", {"operation": operation}
                ) from e

    def ensure(self, record: QuotaRecord) -> None:
        """Insert a provider row, or refresh its limits while keeping usage."""
        with self._locked("ensure") as conn:
            conn.execute(
                """
                INSERT INTO quota_management (
                    api_type, daily_limit, daily_used, hourly_limit, hourly_used,
                    reset_time, hourly_reset_time, is_active, last_call_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(api_type) DO UPDATE SET
                    daily_limit = excluded.daily_limit,
                    hourly_limit = excluded.hourly_limit,
                    is_active = excluded.is_active
                """,
                (
                    record.provider,
                    record.daily_limit,
                    record.daily_used,
                    record.hourly_limit,
                    record.hourly_used,
                    record.daily_reset_at,
                    record.hourly_reset_at,
                    int(record.is_active),
                    record.last_call_at,
                ),
            )

    def get(self, provider: str) -> Optional[Dict[str, Any]]:
        with self._locked("read") as conn:
            row = conn.execute(
                "SELECT * FROM quota_management WHERE api_type = ?", (provider,)
            ).fetchone()
        return dict(row) if row else None

    def load_all(self) -> Dict[str, Dict[str, Any]]:
        with self._locked("read") as conn:
            rows = conn.execute("SELECT * FROM quota_management").fetchall()
        return {row["api_type"]: dict(row) for row in rows}

    def increment(self, provider: str, count: int, now: float) -> None:
        with self._locked("increment") as conn:
            conn.execute(
                """
                UPDATE quota_management
                SET daily_used = daily_used + ?,
                    hourly_used = hourly_used + ?,
                    last_call_at = ?
                WHERE api_type = ?
                """,
                (count, count, now, provider),
            )

    def reset_daily(self, provider: str, reset_at: float) -> None:
        with self._locked("reset") as conn:
            conn.execute(
                "UPDATE quota_management SET daily_used = 0, reset_time = ? WHERE api_type = ?",
                (reset_at, provider),
            )

    def reset_hourly(self, provider: str, reset_at: float) -> None:
        with self._locked("reset") as conn:
            conn.execute(
                "UPDATE quota_management SET hourly_used = 0, hourly_reset_time = ? "
                "WHERE api_type = ?",
                (reset_at, provider),
            )
