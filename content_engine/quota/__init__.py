"""Provider quota tracking.

This package provides admission control with:
- Independent daily and hourly windows
- Atomic per-provider reservations
- An optional SQLite quota table shared across instances
"""

from content_engine.quota.store import SQLiteQuotaTable
from content_engine.quota.tracker import QuotaReservation, QuotaTracker

__all__ = ["QuotaReservation", "QuotaTracker", "SQLiteQuotaTable"]
