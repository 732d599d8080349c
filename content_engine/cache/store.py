"""Two-tier cache store.

Reads go local first, then shared with back-fill into the local tier.
Writes go to both tiers before returning. The shared tier is the durable
source of truth, but its failures never block the local tier.
"""

from typing import Any, Dict, List, Optional

import structlog

from content_engine.cache.local_tier import LocalTier
from content_engine.cache.quality import quality_score
from content_engine.cache.shared_tier import SQLiteSharedTier
from content_engine.clock import SystemClock
from content_engine.config import EngineConfig
from content_engine.errors import CacheBackendUnavailable
from content_engine.metrics import EngineMetrics
from content_engine.models import CacheEntry, CacheTier, ContentType, Priority
from content_engine.schema import validate_payload

logger = structlog.get_logger(__name__)


def pick_fallback(candidates: List[Optional[CacheEntry]]) -> Optional[CacheEntry]:
    """Choose the least stale entry, breaking ties on quality score."""
    present = [c for c in candidates if c is not None]
    if not present:
        return None
    return max(present, key=lambda e: (e.created_at, e.quality_score))


class LayeredCacheStore:
    """Local tier in front of a shared tier, with TTL and refresh policy."""

    def __init__(
        self,
        local: LocalTier,
        shared: Optional[SQLiteSharedTier],
        config: Optional[EngineConfig] = None,
        clock: Optional[SystemClock] = None,
        metrics: Optional[EngineMetrics] = None,
    ):
        """Initialize the layered store.

        Args:
            local: Volatile in-process tier
            shared: Durable shared tier, or None for local-only caching
            config: Engine configuration
            clock: Time source
            metrics: Metrics sink
        """
        self.local = local
        self.shared = shared
        self.config = config or EngineConfig()
        self.clock = clock or SystemClock()
        self.metrics = metrics or EngineMetrics()
        self._last_cleanup: Optional[float] = None

    def _local_is_current(self, entry: CacheEntry, now: float) -> bool:
        # Past local_ttl the local copy may lag what other instances wrote.
        return entry.is_valid(now) and entry.age(now) < self.config.local_ttl_seconds

    async def _shared_get(self, key: str) -> Optional[CacheEntry]:
        if self.shared is None:
            return None
        try:
            return await self.shared.get(key)
        except CacheBackendUnavailable as e:
            self.metrics.shared_tier_errors.labels(operation="read").inc()
            logger.error("shared_tier_read_failed", key=key, error=str(e))
            return None

    async def get(self, key: str) -> Optional[CacheEntry]:
        """Look up ``key`` in the local tier, then the shared tier.

        A valid shared entry is copied into the local tier before it is
        returned. When neither tier holds a valid entry the freshest expired
        one is returned, so callers can still use it as a fallback.
        """
        now = self.clock.now()
        local_entry = self.local.get(key)
        if local_entry is not None and self._local_is_current(local_entry, now):
            return local_entry

        shared_entry = await self._shared_get(key)
        if shared_entry is not None and shared_entry.is_valid(now):
            if local_entry is None or shared_entry.created_at >= local_entry.created_at:
                self.local.put(shared_entry)
                logger.debug("cache_backfilled", key=key)
                return shared_entry
        if local_entry is not None and local_entry.is_valid(now):
            return local_entry
        return pick_fallback([local_entry, shared_entry])

    async def best_available(self, key: str) -> Optional[CacheEntry]:
        """Best entry for ``key`` across both tiers, however stale."""
        return pick_fallback([self.local.get(key), await self._shared_get(key)])

    async def put(
        self,
        key: str,
        payload: Any,
        ttl: Optional[float] = None,
        provider: str = "unknown",
        priority: Optional[Priority] = None,
        content_type: Optional[ContentType] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CacheEntry:
        """Write a payload to both tiers.

        Args:
            key: Cache key
            payload: Content to cache, validated against its content type schema
            ttl: Hard TTL in seconds; defaults to the priority's TTL
            provider: Provider that produced the payload
            priority: Priority of the bucket
            content_type: Content type used for schema validation
            metadata: Extra metadata stored with the entry

        Returns:
            The stored entry

        Raises:
            SchemaValidationError: If the payload does not match its schema
        """
        if content_type is not None:
            validate_payload(content_type, payload)
        now = self.clock.now()
        entry = CacheEntry(
            key=key,
            payload=payload,
            created_at=now,
            ttl=float(ttl if ttl is not None else self.config.ttl_for(priority)),
            source_provider=provider,
            quality_score=quality_score(payload, now),
            tier=CacheTier.LOCAL,
            content_type=ContentType(content_type) if content_type else None,
            priority=Priority(priority) if priority else None,
            metadata=dict(metadata or {}),
        )
        self.local.put(entry)

        if self.shared is not None:
            try:
                await self.shared.upsert(entry.copy_to(CacheTier.SHARED))
            except CacheBackendUnavailable as e:
                self.metrics.shared_tier_errors.labels(operation="write").inc()
                logger.error("shared_tier_write_failed", key=key, error=str(e))

        logger.info(
            "cache_stored",
            key=key,
            provider=provider,
            priority=entry.priority.value if entry.priority else None,
            quality=entry.quality_score,
        )
        return entry

    def refresh_due(self, entry: Optional[CacheEntry], priority: Priority) -> bool:
        """Soft refresh rule applied to an entry already in hand."""
        if entry is None:
            return True
        now = self.clock.now()
        if not entry.is_valid(now):
            return True
        return entry.age(now) > self.config.refresh_interval(priority)

    async def should_refresh(self, key: str, priority: Priority) -> bool:
        """Whether ``key`` is missing, expired, or older than its refresh interval."""
        return self.refresh_due(await self.get(key), priority)

    async def invalidate(self, pattern: str, content_type: Optional[str] = None) -> int:
        """Remove entries whose key contains ``pattern`` from both tiers."""
        if isinstance(content_type, ContentType):
            content_type = content_type.value
        removed = self.local.delete_matching(pattern, content_type)
        if self.shared is not None:
            try:
                removed = max(removed, await self.shared.delete_pattern(pattern, content_type))
            except CacheBackendUnavailable as e:
                self.metrics.shared_tier_errors.labels(operation="delete").inc()
                logger.error("shared_tier_invalidate_failed", pattern=pattern, error=str(e))
        logger.info("cache_invalidated", pattern=pattern, content_type=content_type, removed=removed)
        return removed

    async def sweep(self) -> Dict[str, int]:
        """Evict entries older than ``ttl * eviction_grace_multiplier``."""
        now = self.clock.now()
        grace = self.config.eviction_grace_multiplier
        result = {"local": self.local.delete_expired(now, grace), "shared": 0}
        if self.shared is not None:
            try:
                result["shared"] = await self.shared.delete_expired(now, grace)
            except CacheBackendUnavailable as e:
                self.metrics.shared_tier_errors.labels(operation="sweep").inc()
                logger.error("shared_tier_sweep_failed", error=str(e))
        for tier, count in result.items():
            if count:
                self.metrics.evictions.labels(tier=tier).inc(count)
        self._last_cleanup = now
        logger.info("cache_swept", **result)
        return result

    async def maybe_sweep(self) -> Optional[Dict[str, int]]:
        """Sweep only if ``cleanup_interval_seconds`` has passed since the last one."""
        now = self.clock.now()
        if (
            self._last_cleanup is not None
            and now - self._last_cleanup < self.config.cleanup_interval_seconds
        ):
            return None
        return await self.sweep()
