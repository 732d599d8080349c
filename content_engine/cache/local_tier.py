"""In-process cache tier.

This module provides the volatile local tier with:
- LRU eviction once ``max_size`` entries are held
- Optional payload compression using zlib
- Thread-safe access through a reentrant lock

The local tier never decides validity; it returns whatever it holds and the
layered store applies TTL rules.
"""

import json
import threading
import zlib
from dataclasses import replace
from typing import Dict, List, Optional

import structlog

from content_engine.metrics import EngineMetrics
from content_engine.models import CacheEntry, CacheTier

logger = structlog.get_logger(__name__)


class LocalTier:
    """Thread-safe local cache with LRU eviction and compression support."""

    def __init__(
        self,
        max_size: int = 1000,
        enable_compression: bool = True,
        metrics: Optional[EngineMetrics] = None,
    ) -> None:
        """Initialize the local tier.

        Args:
            max_size: Maximum number of entries to hold
            enable_compression: Whether to compress payloads
            metrics: Metrics sink
        """
        self.max_size = max_size
        self.enable_compression = enable_compression
        self.metrics = metrics or EngineMetrics()
        self._entries: Dict[str, CacheEntry] = {}
        self._compressed: Dict[str, bool] = {}
        self._access_order: Dict[str, int] = {}
        self._tick = 0
        self._lock = threading.RLock()

    def _touch(self, key: str) -> None:
        self._tick += 1
        self._access_order[key] = self._tick

    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the entry stored under ``key`` whatever its age."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None

            payload = entry.payload
            if self._compressed.get(key):
                try:
                    payload = json.loads(zlib.decompress(payload).decode())
                except (zlib.error, json.JSONDecodeError):
                    logger.warning("local_tier_corrupt_entry", key=key)
                    self._remove(key)
                    return None

            self._touch(key)
            return replace(entry, payload=payload, tier=CacheTier.LOCAL)

    def put(self, entry: CacheEntry) -> None:
        """Add or replace an entry."""
        with self._lock:
            payload = entry.payload
            compressed = False
            if self.enable_compression:
                try:
                    payload = zlib.compress(json.dumps(payload).encode())
                    compressed = True
                except (TypeError, ValueError, zlib.error):
                    payload = entry.payload

            if entry.key not in self._entries:
                while len(self._entries) >= self.max_size:
                    self._evict_lru()

            self._entries[entry.key] = replace(entry, payload=payload, tier=CacheTier.LOCAL)
            self._compressed[entry.key] = compressed
            self._touch(entry.key)
            self.metrics.local_entries.set(len(self._entries))

    def delete(self, key: str) -> bool:
        with self._lock:
            if key not in self._entries:
                return False
            self._remove(key)
            return True

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def delete_matching(self, pattern: str, content_type: Optional[str] = None) -> int:
        """Remove entries whose key contains ``pattern``."""
        with self._lock:
            doomed = [
                key
                for key, entry in self._entries.items()
                if pattern in key
                and (content_type is None or (entry.content_type and entry.content_type.value == content_type))
            ]
            for key in doomed:
                self._remove(key)
            return len(doomed)

    def delete_expired(self, now: float, grace_multiplier: float) -> int:
        """Remove entries past ``ttl * grace_multiplier``."""
        with self._lock:
            doomed = [
                key
                for key, entry in self._entries.items()
                if entry.is_evictable(now, grace_multiplier)
            ]
            for key in doomed:
                self._remove(key)
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._compressed.clear()
            self._access_order.clear()
            self.metrics.local_entries.set(0)

    def _remove(self, key: str) -> None:
        self._entries.pop(key, None)
        self._compressed.pop(key, None)
        self._access_order.pop(key, None)
        self.metrics.local_entries.set(len(self._entries))

    def _evict_lru(self) -> None:
        """Evict the least recently used entry."""
        if not self._access_order:
            return
        lru_key = min(self._access_order.items(), key=lambda x: x[1])[0]
        self._remove(lru_key)
        self.metrics.evictions.labels(tier="local").inc()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries
