"""Single entry point deciding between cache, live fetch and degraded data.

The order of checks is fixed: a TTL-valid entry that is not due for a soft
refresh is served outright; otherwise quota is checked before any network
attempt; only admitted requests reach the coalescer. Denied and cached paths
never open a pending batch.
"""

import asyncio
import time
from typing import Any, Dict, List, Optional, Set

import structlog

from content_engine.cache.store import LayeredCacheStore
from content_engine.clock import SystemClock
from content_engine.coalescer.batcher import KeywordBatcher, group_overlapping, merged_bucket, split_payload
from content_engine.coalescer.coalescer import RequestCoalescer
from content_engine.config import EngineConfig
from content_engine.errors import (
    ProviderFetchFailed,
    ProviderTimeout,
    QuotaExceeded,
    SchemaValidationError,
)
from content_engine.metrics import EngineMetrics
from content_engine.models import (
    CacheEntry,
    ContentBucket,
    DegradeReason,
    Provenance,
    ResolveResult,
)
from content_engine.providers.registry import ProviderRegistry
from content_engine.quota.tracker import QuotaReservation, QuotaTracker

logger = structlog.get_logger(__name__)

BATCH_KEY_PREFIX = "batch:"


class Orchestrator:
    """Resolves content buckets into results tagged with their provenance."""

    def __init__(
        self,
        quota: QuotaTracker,
        cache: LayeredCacheStore,
        coalescer: RequestCoalescer,
        providers: ProviderRegistry,
        config: Optional[EngineConfig] = None,
        clock: Optional[SystemClock] = None,
        metrics: Optional[EngineMetrics] = None,
    ):
        self.quota = quota
        self.cache = cache
        self.coalescer = coalescer
        self.providers = providers
        self.config = config or EngineConfig()
        self.clock = clock or SystemClock()
        self.metrics = metrics or EngineMetrics()
        self.batcher = KeywordBatcher(self.batch_fetch, self.config.batch_window_seconds)
        self._background: Set[asyncio.Task] = set()

    # Resolution

    async def resolve(
        self,
        bucket: ContentBucket,
        force_refresh: bool = False,
        background_refresh: Optional[bool] = None,
    ) -> ResolveResult:
        """Resolve a bucket from cache or a live fetch.

        Args:
            bucket: Bucket to resolve
            force_refresh: Skip the cache check and go straight to admission
            background_refresh: When a valid entry is due for a soft refresh,
                serve it and refresh in the background (defaults to
                ``serve_stale_while_refresh``); otherwise refresh inline

        Returns:
            Result with provenance fresh, cached, stale-degraded or error
        """
        key = bucket.cache_key
        entry = await self.cache.get(key)
        now = self.clock.now()

        if entry is not None and entry.is_valid(now) and not force_refresh:
            if not self.cache.refresh_due(entry, bucket.priority):
                return self._cached(bucket, entry)
            if background_refresh is None:
                background_refresh = self.config.serve_stale_while_refresh
            if background_refresh:
                scheduled = self._schedule_refresh(bucket)
                return self._cached(bucket, entry, refresh_scheduled=scheduled)
            logger.debug("soft_refresh_inline", key=key, age=entry.age(now))
        elif entry is None or not entry.is_valid(now):
            self.metrics.cache_misses.inc()

        return await self._fetch_or_degrade(bucket, entry)

    async def refresh(self, bucket: ContentBucket) -> ResolveResult:
        """Resolve with soft refresh applied inline, as scheduled jobs do."""
        return await self.resolve(bucket, background_refresh=False)

    async def _fetch_or_degrade(
        self, bucket: ContentBucket, entry: Optional[CacheEntry]
    ) -> ResolveResult:
        key = bucket.cache_key
        # Joining an in-flight fetch costs nothing, so only a new fetch needs admission.
        if not self.coalescer.is_pending(key) and not self.quota.can_admit(bucket.provider):
            return await self._degrade(bucket, entry, DegradeReason.QUOTA_EXCEEDED)

        try:
            fresh = await self.coalescer.enroll(key, lambda: self._fetch_and_store(bucket))
        except Exception as e:
            return await self._degrade_for(bucket, entry, e)
        return self._fresh(bucket, fresh)

    async def _degrade_for(
        self, bucket: ContentBucket, entry: Optional[CacheEntry], error: Exception
    ) -> ResolveResult:
        """Map a failed fetch onto its degrade reason."""
        if isinstance(error, QuotaExceeded):
            reason = DegradeReason.QUOTA_EXCEEDED
        elif isinstance(error, ProviderTimeout):
            reason = DegradeReason.TIMEOUT
        else:
            reason = DegradeReason.FETCH_FAILED
            if not isinstance(error, (ProviderFetchFailed, SchemaValidationError)):
                logger.error(
                    "resolve_unexpected_error",
                    key=bucket.cache_key,
                    provider=bucket.provider,
                    error=str(error),
                    error_type=type(error).__name__,
                )
        return await self._degrade(bucket, entry, reason, str(error))

    def _fresh(self, bucket: ContentBucket, entry: CacheEntry) -> ResolveResult:
        self.metrics.fresh_results.inc()
        return ResolveResult(
            payload=entry.payload,
            provenance=Provenance.FRESH,
            cache_key=bucket.cache_key,
            provider=bucket.provider,
            created_at=entry.created_at,
            quality_score=entry.quality_score,
        )

    async def _fetch_and_store(self, bucket: ContentBucket) -> CacheEntry:
        """Leader side of a pending batch: one provider call, then write-through."""
        payload = await self._call_provider(bucket)
        return await self.cache.put(
            bucket.cache_key,
            payload,
            provider=bucket.provider,
            priority=bucket.priority,
            content_type=bucket.content_type,
            metadata={"keywords": sorted(bucket.keywords), "count": bucket.count},
        )

    async def _call_provider(self, bucket: ContentBucket) -> Any:
        """Reserve quota, call the provider under the fetch timeout, settle the charge.

        Raises:
            QuotaExceeded: If the reservation is refused
            ProviderTimeout: If the fetch exceeds ``fetch_timeout_seconds``
            ProviderFetchFailed: If the fetch function fails
        """
        provider = bucket.provider
        reservation = self.quota.reserve(provider)
        if reservation is None:
            raise QuotaExceeded(provider)

        timeout = self.config.fetch_timeout_seconds
        started = time.monotonic()
        try:
            payload = await asyncio.wait_for(
                self.providers.fetch(provider, bucket.keywords, bucket.count), timeout
            )
        except asyncio.TimeoutError as e:
            self._settle(reservation, executed=None)
            self.metrics.provider_calls.labels(provider=provider, outcome="timeout").inc()
            logger.warning("provider_timeout", provider=provider, timeout=timeout)
            raise ProviderTimeout(provider, timeout) from e
        except ProviderFetchFailed as e:
            self._settle(reservation, executed=e.executed)
            self.metrics.provider_calls.labels(provider=provider, outcome="failure").inc()
            logger.warning("provider_fetch_failed", provider=provider, error=str(e), executed=e.executed)
            raise
        except asyncio.CancelledError:
            self._settle(reservation, executed=None)
            raise
        finally:
            self.metrics.fetch_latency.labels(provider=provider).observe(time.monotonic() - started)

        reservation.commit()
        self.metrics.provider_calls.labels(provider=provider, outcome="success").inc()
        logger.info("provider_fetched", provider=provider, keywords=sorted(bucket.keywords))
        return payload

    def _settle(self, reservation: QuotaReservation, executed: Optional[bool]) -> None:
        if executed is False:
            reservation.release()
        elif executed is None and not self.config.charge_ambiguous_timeouts:
            reservation.release()
        else:
            reservation.commit()

    def _cached(
        self, bucket: ContentBucket, entry: CacheEntry, refresh_scheduled: bool = False
    ) -> ResolveResult:
        self.metrics.cache_hits.labels(tier=entry.tier.value).inc()
        return ResolveResult(
            payload=entry.payload,
            provenance=Provenance.CACHED,
            cache_key=bucket.cache_key,
            provider=bucket.provider,
            created_at=entry.created_at,
            quality_score=entry.quality_score,
            refresh_scheduled=refresh_scheduled,
        )

    async def _degrade(
        self,
        bucket: ContentBucket,
        entry: Optional[CacheEntry],
        reason: DegradeReason,
        error: Optional[str] = None,
    ) -> ResolveResult:
        """Serve the best entry available regardless of staleness.

        A quota denial always reports stale-degraded, with a None payload when
        nothing is cached. A failed fetch with nothing cached reports error.
        """
        key = bucket.cache_key
        fallback = await self.cache.best_available(key) or entry
        if fallback is None and reason is not DegradeReason.QUOTA_EXCEEDED:
            self.metrics.errors.inc()
            logger.warning("resolve_failed", key=key, provider=bucket.provider, reason=reason.value)
            return ResolveResult(
                payload=None,
                provenance=Provenance.ERROR,
                cache_key=key,
                provider=bucket.provider,
                degrade_reason=reason,
                error=error,
            )

        self.metrics.degradations.labels(reason=reason.value).inc()
        logger.info(
            "resolve_degraded",
            key=key,
            provider=bucket.provider,
            reason=reason.value,
            has_data=fallback is not None,
        )
        return ResolveResult(
            payload=fallback.payload if fallback else None,
            provenance=Provenance.STALE_DEGRADED,
            cache_key=key,
            provider=bucket.provider,
            created_at=fallback.created_at if fallback else None,
            quality_score=fallback.quality_score if fallback else None,
            degrade_reason=reason,
            error=error,
        )

    # Background soft refresh

    def _schedule_refresh(self, bucket: ContentBucket) -> bool:
        key = bucket.cache_key
        if self.coalescer.is_pending(key):
            return True
        if not self.quota.can_admit(bucket.provider):
            return False
        task = asyncio.create_task(self._background_refresh(bucket))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return True

    async def _background_refresh(self, bucket: ContentBucket) -> None:
        try:
            await self.coalescer.enroll(bucket.cache_key, lambda: self._fetch_and_store(bucket))
        except Exception as e:
            logger.warning(
                "background_refresh_failed",
                key=bucket.cache_key,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def drain(self) -> None:
        """Wait for background refreshes started so far."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # Batched fetching

    async def submit_batched(self, bucket: ContentBucket) -> ResolveResult:
        """Resolve through the grouping window, merging with overlapping buckets."""
        return await self.batcher.submit(bucket)

    async def batch_fetch(self, buckets: List[ContentBucket]) -> Dict[str, ResolveResult]:
        """Resolve several buckets, merging overlapping ones into single calls.

        Returns:
            Result per bucket cache key
        """
        groups = group_overlapping(buckets)
        outcomes = await asyncio.gather(*(self._resolve_group(group) for group in groups))
        results: Dict[str, ResolveResult] = {}
        for outcome in outcomes:
            results.update(outcome)
        return results

    async def _resolve_group(self, group: List[ContentBucket]) -> Dict[str, ResolveResult]:
        results: Dict[str, ResolveResult] = {}
        entries: Dict[str, Optional[CacheEntry]] = {}
        needs_fetch: List[ContentBucket] = []
        now = self.clock.now()

        for bucket in group:
            entry = await self.cache.get(bucket.cache_key)
            entries[bucket.cache_key] = entry
            if entry is not None and entry.is_valid(now) and not self.cache.refresh_due(entry, bucket.priority):
                results[bucket.cache_key] = self._cached(bucket, entry)
            else:
                if entry is None or not entry.is_valid(now):
                    self.metrics.cache_misses.inc()
                needs_fetch.append(bucket)

        if not needs_fetch:
            return results

        # Keys already in flight join that fetch; only the rest are merged.
        joining = [b for b in needs_fetch if self.coalescer.is_pending(b.cache_key)]
        remaining = [b for b in needs_fetch if not self.coalescer.is_pending(b.cache_key)]
        single = joining if len(remaining) > 1 else joining + remaining
        jobs = [self._fetch_or_degrade(b, entries[b.cache_key]) for b in single]
        if len(remaining) > 1:
            jobs.append(self._fetch_batch(remaining, entries))

        for outcome in await asyncio.gather(*jobs):
            if isinstance(outcome, ResolveResult):
                results[outcome.cache_key] = outcome
            else:
                results.update(outcome)
        return results

    async def _fetch_batch(
        self, buckets: List[ContentBucket], entries: Dict[str, Optional[CacheEntry]]
    ) -> Dict[str, ResolveResult]:
        """Fetch several buckets with one merged call.

        Each bucket's key is enrolled with the coalescer, so a resolve of
        one member arriving mid-batch waits for the merged call instead of
        starting its own.
        """
        merged = merged_bucket(buckets)
        batch_key = BATCH_KEY_PREFIX + merged.cache_key
        if not self.coalescer.is_pending(batch_key) and not self.quota.can_admit(merged.provider):
            return {
                b.cache_key: await self._degrade(b, entries[b.cache_key], DegradeReason.QUOTA_EXCEEDED)
                for b in buckets
            }

        def member_fetch(bucket: ContentBucket):
            async def fetch() -> CacheEntry:
                stored = await self.coalescer.enroll(
                    batch_key, lambda: self._fetch_merged(merged, buckets)
                )
                entry = stored.get(bucket.cache_key)
                if entry is None:
                    raise SchemaValidationError(bucket.content_type.value, "batch slice was rejected")
                return entry

            return fetch

        outcomes = await asyncio.gather(
            *(self.coalescer.enroll(b.cache_key, member_fetch(b)) for b in buckets),
            return_exceptions=True,
        )
        results: Dict[str, ResolveResult] = {}
        for bucket, outcome in zip(buckets, outcomes):
            key = bucket.cache_key
            if isinstance(outcome, CacheEntry):
                results[key] = self._fresh(bucket, outcome)
            elif isinstance(outcome, Exception):
                results[key] = await self._degrade_for(bucket, entries[key], outcome)
            else:
                raise outcome
        return results

    async def _fetch_merged(
        self, merged: ContentBucket, buckets: List[ContentBucket]
    ) -> Dict[str, CacheEntry]:
        logger.info(
            "batch_merged",
            provider=merged.provider,
            buckets=len(buckets),
            keywords=sorted(merged.keywords),
        )
        payload = await self._call_provider(merged)
        stored: Dict[str, CacheEntry] = {}
        for bucket in buckets:
            try:
                stored[bucket.cache_key] = await self.cache.put(
                    bucket.cache_key,
                    split_payload(payload, bucket),
                    provider=bucket.provider,
                    priority=bucket.priority,
                    content_type=bucket.content_type,
                    metadata={
                        "keywords": sorted(bucket.keywords),
                        "count": bucket.count,
                        "batched_with": sorted(merged.keywords),
                    },
                )
            except SchemaValidationError as e:
                logger.warning("batch_slice_rejected", key=bucket.cache_key, error=str(e))
        return stored

    async def close(self) -> None:
        await self.batcher.close()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
