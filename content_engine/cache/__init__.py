"""Layered content caching.

This package provides:
- A volatile local tier with LRU eviction and compression
- A durable SQLite shared tier
- A layered store with read-through, write-through and TTL policy
- Payload quality scoring for fallback ranking
"""

from content_engine.cache.local_tier import LocalTier
from content_engine.cache.quality import quality_score
from content_engine.cache.shared_tier import SQLiteSharedTier
from content_engine.cache.store import LayeredCacheStore, pick_fallback

__all__ = ["LayeredCacheStore", "LocalTier", "SQLiteSharedTier", "pick_fallback", "quality_score"]
