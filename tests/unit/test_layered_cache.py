"""Tests for the shared tier and the layered cache store."""

from unittest.mock import AsyncMock

import pytest

from content_engine.cache import LayeredCacheStore, LocalTier, SQLiteSharedTier, pick_fallback
from content_engine.config import EngineConfig
from content_engine.config.quota_profiles import HOUR
from content_engine.errors import CacheBackendUnavailable, SchemaValidationError
from content_engine.models import CacheEntry, CacheTier, ContentType, Priority

ARTICLES = [{"title": "Startup news", "description": "Something happened"}]


@pytest.fixture
def shared(tmp_path):
    tier = SQLiteSharedTier(str(tmp_path / "cache.db"))
    yield tier
    tier.close()


@pytest.fixture
def store(shared, clock, metrics):
    return LayeredCacheStore(
        LocalTier(max_size=100, metrics=metrics),
        shared,
        config=EngineConfig(),
        clock=clock,
        metrics=metrics,
    )


@pytest.mark.asyncio
async def test_shared_tier_round_trip(shared):
    entry = CacheEntry(
        key="news:abc",
        payload=ARTICLES,
        created_at=1000.0,
        ttl=60.0,
        source_provider="gnews",
        quality_score=50,
        content_type=ContentType.NEWS,
        priority=Priority.HIGH,
        metadata={"keywords": ["startup"]},
    )
    await shared.upsert(entry)

    stored = await shared.get("news:abc")
    assert stored.payload == ARTICLES
    assert stored.tier is CacheTier.SHARED
    assert stored.priority is Priority.HIGH
    assert stored.content_type is ContentType.NEWS
    assert stored.metadata["keywords"] == ["startup"]
    assert await shared.count() == 1


@pytest.mark.asyncio
async def test_shared_tier_failure_raises_backend_error(tmp_path):
    tier = SQLiteSharedTier(str(tmp_path / "closed.db"))
    tier.close()

    with pytest.raises(CacheBackendUnavailable):
        await tier.get("news:abc")


@pytest.mark.asyncio
async def test_entry_valid_until_ttl(store, clock):
    """An entry is valid while now - created_at < ttl."""
    await store.put("news:k", ARTICLES, ttl=100)

    clock.advance(99)
    assert (await store.get("news:k")).is_valid(clock.now())

    clock.advance(1)
    entry = await store.get("news:k")
    assert entry is not None
    assert not entry.is_valid(clock.now())


@pytest.mark.asyncio
async def test_put_writes_both_tiers(store, shared):
    entry = await store.put(
        "news:k", ARTICLES, provider="gnews", priority=Priority.LOW, content_type=ContentType.NEWS
    )

    assert entry.ttl == 12 * HOUR
    assert entry.quality_score == 50
    assert "news:k" in store.local
    assert (await shared.get("news:k")).payload == ARTICLES


@pytest.mark.asyncio
async def test_put_rejects_invalid_payload(store):
    with pytest.raises(SchemaValidationError):
        await store.put("news:k", [{"url": "no title"}], content_type=ContentType.NEWS)
    assert "news:k" not in store.local


@pytest.mark.asyncio
async def test_shared_hit_backfills_local(store, shared, clock):
    await store.put("news:k", ARTICLES, ttl=HOUR)
    store.local.clear()

    entry = await store.get("news:k")

    assert entry.tier is CacheTier.SHARED
    assert "news:k" in store.local


@pytest.mark.asyncio
async def test_local_copy_older_than_local_ttl_rechecks_shared(store, shared, clock):
    await store.put("news:k", [{"title": "old"}], ttl=4 * HOUR)
    clock.advance(store.config.local_ttl_seconds + 1)
    newer = CacheEntry(
        key="news:k",
        payload=[{"title": "new"}],
        created_at=clock.now(),
        ttl=4 * HOUR,
        source_provider="gnews",
        tier=CacheTier.SHARED,
    )
    await shared.upsert(newer)

    entry = await store.get("news:k")
    assert entry.payload == [{"title": "new"}]


@pytest.mark.asyncio
async def test_shared_write_failure_keeps_local_and_counts(store, metrics):
    store.shared.upsert = AsyncMock(side_effect=CacheBackendUnavailable("disk full"))

    entry = await store.put("news:k", ARTICLES)

    assert entry.payload == ARTICLES
    assert "news:k" in store.local
    assert (
        metrics.registry.get_sample_value(
            "content_engine_shared_tier_errors_total", {"operation": "write"}
        )
        == 1.0
    )


@pytest.mark.asyncio
async def test_shared_read_failure_falls_back_to_local(store):
    await store.put("news:k", ARTICLES, ttl=HOUR)
    store.config.local_ttl_seconds = 0
    store.shared.get = AsyncMock(side_effect=CacheBackendUnavailable("locked"))

    entry = await store.get("news:k")
    assert entry.payload == ARTICLES


@pytest.mark.asyncio
async def test_missing_key_returns_none(store):
    assert await store.get("news:missing") is None
    assert await store.should_refresh("news:missing", Priority.HIGH) is True


@pytest.mark.asyncio
async def test_valid_entry_past_refresh_interval_should_refresh(store, clock):
    """A high priority entry 3h old with a 4h TTL is valid but due for refresh."""
    await store.put("news:k", ARTICLES, ttl=4 * HOUR)
    clock.advance(3 * HOUR)

    entry = await store.get("news:k")
    assert entry.is_valid(clock.now())
    assert await store.should_refresh("news:k", Priority.HIGH) is True
    assert await store.should_refresh("news:k", Priority.MEDIUM) is False


def test_pick_fallback_prefers_newest_then_quality():
    def entry(created_at, quality):
        return CacheEntry("k", [], created_at, 1.0, "gnews", quality_score=quality)

    assert pick_fallback([None, None]) is None
    assert pick_fallback([entry(1, 90), entry(2, 10)]).created_at == 2
    assert pick_fallback([entry(2, 10), entry(2, 60)]).quality_score == 60


@pytest.mark.asyncio
async def test_best_available_returns_expired_entry(store, clock):
    await store.put("news:k", ARTICLES, ttl=60)
    clock.advance(10 * HOUR)

    entry = await store.best_available("news:k")
    assert entry.payload == ARTICLES


@pytest.mark.asyncio
async def test_invalidate_by_pattern_and_type(store, shared):
    await store.put("news:1", ARTICLES, content_type=ContentType.NEWS)
    await store.put("funding:1", ARTICLES, content_type=ContentType.FUNDING)

    removed = await store.invalidate("news", content_type=ContentType.NEWS)

    assert removed == 1
    assert await store.get("news:1") is None
    assert await store.get("funding:1") is not None


@pytest.mark.asyncio
async def test_sweep_keeps_entries_inside_grace(store, shared, clock, metrics):
    await store.put("news:short", ARTICLES, ttl=60)
    await store.put("news:long", ARTICLES, ttl=HOUR)
    clock.advance(121)

    swept = await store.sweep()

    assert swept == {"local": 1, "shared": 1}
    assert await shared.get("news:short") is None
    assert await shared.get("news:long") is not None
    assert (
        metrics.registry.get_sample_value("content_engine_cache_evictions_total", {"tier": "shared"})
        == 1.0
    )


@pytest.mark.asyncio
async def test_maybe_sweep_respects_interval(store, clock):
    assert await store.maybe_sweep() is not None
    clock.advance(60)
    assert await store.maybe_sweep() is None
    clock.advance(store.config.cleanup_interval_seconds)
    assert await store.maybe_sweep() is not None


@pytest.mark.asyncio
async def test_default_ttl_outlives_refresh_interval(store, clock):
    await store.put("news:k", ARTICLES, priority=Priority.HIGH)
    clock.advance(3 * HOUR)

    entry = await store.get("news:k")
    assert entry.is_valid(clock.now())
    assert store.refresh_due(entry, Priority.HIGH) is True


@pytest.mark.asyncio
async def test_unserializable_payload_is_a_backend_failure(shared):
    entry = CacheEntry(
        key="news:odd",
        payload=[{"title": "Odd", "when": object()}],
        created_at=1000.0,
        ttl=60.0,
        source_provider="gnews",
    )

    with pytest.raises(CacheBackendUnavailable):
        await shared.upsert(entry)
