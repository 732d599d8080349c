"""Tests for the orchestrator's resolve algorithm."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from content_engine.config.quota_profiles import HOUR
from content_engine.errors import ProviderFetchFailed
from content_engine.models import ContentBucket, ContentType, DegradeReason, Priority, Provenance


@pytest.fixture
def orchestrator(engine):
    return engine.orchestrator


def exhaust(engine, provider="gnews"):
    record = engine.quota.snapshot(provider)
    engine.quota.record(provider, record.hourly_limit - record.hourly_used)


@pytest.mark.asyncio
async def test_miss_fetches_and_caches(orchestrator, engine, news_bucket, fetch_fn, sample_articles):
    result = await orchestrator.resolve(news_bucket)

    assert result.provenance is Provenance.FRESH
    assert result.payload == sample_articles
    fetch_fn.assert_awaited_once_with("gnews", ["funding", "startup"], 10)
    assert engine.quota.snapshot("gnews").hourly_used == 1
    assert (await engine.cache.get(news_bucket.cache_key)).payload == sample_articles


@pytest.mark.asyncio
async def test_valid_entry_served_without_fetch(orchestrator, engine, news_bucket, fetch_fn):
    await orchestrator.resolve(news_bucket)
    fetch_fn.reset_mock()

    result = await orchestrator.resolve(news_bucket)

    assert result.provenance is Provenance.CACHED
    assert result.refresh_scheduled is False
    fetch_fn.assert_not_awaited()
    assert engine.quota.snapshot("gnews").hourly_used == 1


@pytest.mark.asyncio
async def test_valid_entry_due_for_refresh_served_and_refreshed(
    orchestrator, engine, news_bucket, clock, fetch_fn, sample_articles
):
    """A valid entry past its refresh interval is served while a refresh runs."""
    await engine.cache.put(news_bucket.cache_key, sample_articles, ttl=4 * HOUR)
    clock.advance(3 * HOUR)

    result = await orchestrator.resolve(news_bucket)

    assert result.provenance is Provenance.CACHED
    assert result.refresh_scheduled is True
    await orchestrator.drain()
    fetch_fn.assert_awaited_once()
    entry = await engine.cache.get(news_bucket.cache_key)
    assert entry.created_at == clock.now()


@pytest.mark.asyncio
async def test_refresh_due_entry_refreshed_inline_when_configured(
    orchestrator, engine, news_bucket, clock, fetch_fn, sample_articles
):
    engine.config.serve_stale_while_refresh = False
    await engine.cache.put(news_bucket.cache_key, sample_articles, ttl=4 * HOUR)
    clock.advance(3 * HOUR)

    result = await orchestrator.resolve(news_bucket)

    assert result.provenance is Provenance.FRESH
    fetch_fn.assert_awaited_once()


@pytest.mark.asyncio
async def test_quota_denied_serves_expired_entry(orchestrator, engine, news_bucket, clock, fetch_fn):
    stale = [{"title": "Old news", "description": "Still useful"}]
    await engine.cache.put(news_bucket.cache_key, stale, ttl=60)
    clock.advance(2 * HOUR)
    exhaust(engine)

    result = await orchestrator.resolve(news_bucket)

    assert result.provenance is Provenance.STALE_DEGRADED
    assert result.degrade_reason is DegradeReason.QUOTA_EXCEEDED
    assert result.payload == stale
    fetch_fn.assert_not_awaited()
    assert not engine.coalescer.pending_keys()


@pytest.mark.asyncio
async def test_quota_denied_without_data_has_no_payload(orchestrator, engine, news_bucket):
    exhaust(engine)

    result = await orchestrator.resolve(news_bucket)

    assert result.provenance is Provenance.STALE_DEGRADED
    assert result.payload is None
    assert result.has_data is False


@pytest.mark.asyncio
async def test_concurrent_resolves_share_one_fetch(orchestrator, engine, news_bucket, fetch_fn, metrics):
    release = asyncio.Event()
    payload = [{"title": "Shared", "description": "One fetch"}]

    async def slow_fetch(provider, keywords, count):
        await release.wait()
        return payload

    fetch_fn.side_effect = slow_fetch
    tasks = [asyncio.create_task(orchestrator.resolve(news_bucket)) for _ in range(10)]
    for _ in range(200):
        if engine.coalescer.enrolled_count(news_bucket.cache_key) == 10:
            break
        await asyncio.sleep(0.005)
    release.set()
    results = await asyncio.gather(*tasks)

    assert fetch_fn.await_count == 1
    assert all(r.provenance is Provenance.FRESH for r in results)
    assert all(r.payload is results[0].payload for r in results)
    assert engine.quota.snapshot("gnews").hourly_used == 1
    assert metrics.registry.get_sample_value("content_engine_coalesced_callers_total") == 9.0


@pytest.mark.asyncio
async def test_timeout_without_fallback_is_error_and_charged_once(
    orchestrator, engine, news_bucket, fetch_fn
):
    async def hang(provider, keywords, count):
        await asyncio.sleep(5)

    fetch_fn.side_effect = hang

    result = await orchestrator.resolve(news_bucket)

    assert result.provenance is Provenance.ERROR
    assert result.degrade_reason is DegradeReason.TIMEOUT
    record = engine.quota.snapshot("gnews")
    assert record.hourly_used == 1
    assert record.reserved == 0


@pytest.mark.asyncio
async def test_timeout_not_charged_when_disabled(orchestrator, engine, news_bucket, fetch_fn):
    engine.config.charge_ambiguous_timeouts = False

    async def hang(provider, keywords, count):
        await asyncio.sleep(5)

    fetch_fn.side_effect = hang

    await orchestrator.resolve(news_bucket)

    assert engine.quota.snapshot("gnews").hourly_used == 0


@pytest.mark.asyncio
async def test_confirmed_non_execution_releases_quota(orchestrator, engine, news_bucket, fetch_fn):
    fetch_fn.side_effect = ProviderFetchFailed("gnews", "rate limited", executed=False, status_code=429)

    result = await orchestrator.resolve(news_bucket)

    assert result.provenance is Provenance.ERROR
    assert result.degrade_reason is DegradeReason.FETCH_FAILED
    assert engine.quota.snapshot("gnews").hourly_used == 0


@pytest.mark.asyncio
async def test_fetch_failure_serves_stale_entry(orchestrator, engine, news_bucket, clock, fetch_fn):
    stale = [{"title": "Yesterday", "description": "Old"}]
    await engine.cache.put(news_bucket.cache_key, stale, ttl=60)
    clock.advance(HOUR)
    fetch_fn.side_effect = RuntimeError("socket closed")

    result = await orchestrator.resolve(news_bucket)

    assert result.provenance is Provenance.STALE_DEGRADED
    assert result.degrade_reason is DegradeReason.FETCH_FAILED
    assert result.payload == stale
    assert engine.quota.snapshot("gnews").hourly_used == 1


@pytest.mark.asyncio
async def test_invalid_payload_degrades(orchestrator, engine, news_bucket, fetch_fn):
    fetch_fn.return_value = [{"url": "missing title"}]

    result = await orchestrator.resolve(news_bucket)

    assert result.provenance is Provenance.ERROR
    assert result.degrade_reason is DegradeReason.FETCH_FAILED
    assert await engine.cache.get(news_bucket.cache_key) is None


@pytest.mark.asyncio
async def test_unknown_provider_fails_open(orchestrator, engine, fetch_fn, sample_articles):
    engine.providers.register("newsapi", fetch_fn)
    bucket = ContentBucket(provider="newsapi", content_type=ContentType.NEWS, keywords=["ai"])

    result = await orchestrator.resolve(bucket)

    assert result.provenance is Provenance.FRESH
    assert result.payload == sample_articles


@pytest.mark.asyncio
async def test_batch_fetch_merges_overlapping_buckets(orchestrator, engine, fetch_fn):
    fetch_fn.return_value = [
        {"title": "AI lab raises", "description": "ai"},
        {"title": "Funding report", "description": "funding"},
        {"title": "Startup weekend", "description": "startup"},
    ]
    a = ContentBucket(provider="gnews", content_type=ContentType.FUNDING, keywords=["ai", "funding"])
    b = ContentBucket(provider="gnews", content_type=ContentType.FUNDING, keywords=["funding", "startup"])

    results = await orchestrator.batch_fetch([a, b])

    fetch_fn.assert_awaited_once()
    assert fetch_fn.await_args.args[1] == ["ai", "funding", "startup"]
    assert engine.quota.snapshot("gnews").hourly_used == 1
    assert [i["title"] for i in results[a.cache_key].payload] == ["AI lab raises", "Funding report"]
    assert [i["title"] for i in results[b.cache_key].payload] == ["Funding report", "Startup weekend"]
    assert all(r.provenance is Provenance.FRESH for r in results.values())
    assert (await engine.cache.get(a.cache_key)).metadata["batched_with"] == ["ai", "funding", "startup"]


@pytest.mark.asyncio
async def test_batch_fetch_serves_cached_members(orchestrator, engine, fetch_fn, sample_articles):
    a = ContentBucket(provider="gnews", content_type=ContentType.NEWS, keywords=["ai", "funding"])
    b = ContentBucket(provider="gnews", content_type=ContentType.NEWS, keywords=["funding", "startup"])
    await engine.cache.put(a.cache_key, sample_articles, priority=Priority.MEDIUM)

    results = await orchestrator.batch_fetch([a, b])

    assert results[a.cache_key].provenance is Provenance.CACHED
    assert results[b.cache_key].provenance is Provenance.FRESH
    assert fetch_fn.await_args.args[1] == ["funding", "startup"]


@pytest.mark.asyncio
async def test_batch_fetch_denied_degrades_every_member(orchestrator, engine):
    exhaust(engine)
    a = ContentBucket(provider="gnews", content_type=ContentType.NEWS, keywords=["ai", "funding"])
    b = ContentBucket(provider="gnews", content_type=ContentType.NEWS, keywords=["funding", "startup"])

    results = await orchestrator.batch_fetch([a, b])

    assert {r.degrade_reason for r in results.values()} == {DegradeReason.QUOTA_EXCEEDED}


@pytest.mark.asyncio
async def test_submit_batched_merges_within_window(orchestrator, fetch_fn):
    a = ContentBucket(provider="gnews", content_type=ContentType.NEWS, keywords=["ai", "funding"])
    b = ContentBucket(provider="gnews", content_type=ContentType.NEWS, keywords=["funding", "startup"])

    first, second = await asyncio.gather(orchestrator.submit_batched(a), orchestrator.submit_batched(b))

    assert fetch_fn.await_count == 1
    assert first.provenance is Provenance.FRESH
    assert second.provenance is Provenance.FRESH


@pytest.mark.asyncio
async def test_resolve_updates_stats(orchestrator, engine, news_bucket):
    await orchestrator.resolve(news_bucket)
    await orchestrator.resolve(news_bucket)

    stats = engine.metrics.snapshot()
    assert stats["fresh"] == 1
    assert stats["hits"] == 1
    assert stats["misses"] == 1


@pytest.mark.asyncio
async def test_payload_shared_tier_cannot_store_is_still_served(
    orchestrator, engine, news_bucket, fetch_fn, metrics
):
    fetch_fn.return_value = [
        {"title": "AI startup raises", "retrieved": datetime(2024, 1, 1, tzinfo=timezone.utc)}
    ]

    result = await orchestrator.resolve(news_bucket)

    assert result.provenance is Provenance.FRESH
    assert engine.cache.local.get(news_bucket.cache_key) is not None
    assert metrics.registry.get_sample_value(
        "content_engine_shared_tier_errors_total", {"operation": "write"}
    ) == 1.0


@pytest.mark.asyncio
async def test_unexpected_fetch_error_degrades(orchestrator, news_bucket, mocker):
    mocker.patch.object(orchestrator, "_fetch_and_store", side_effect=KeyError("items"))

    result = await orchestrator.resolve(news_bucket)

    assert result.provenance is Provenance.ERROR
    assert result.degrade_reason is DegradeReason.FETCH_FAILED


@pytest.mark.asyncio
async def test_resolve_during_batch_joins_merged_fetch(orchestrator, engine, fetch_fn):
    release = asyncio.Event()
    payload = [
        {"title": "AI lab raises", "description": "ai"},
        {"title": "Startup weekend", "description": "startup"},
    ]

    async def slow_fetch(provider, keywords, count):
        await release.wait()
        return payload

    fetch_fn.side_effect = slow_fetch
    a = ContentBucket(provider="gnews", content_type=ContentType.NEWS, keywords=["ai", "funding"])
    b = ContentBucket(provider="gnews", content_type=ContentType.NEWS, keywords=["funding", "startup"])

    batch = asyncio.create_task(orchestrator.batch_fetch([a, b]))
    for _ in range(200):
        if engine.coalescer.is_pending(a.cache_key):
            break
        await asyncio.sleep(0.005)
    single = asyncio.create_task(orchestrator.resolve(a))
    await asyncio.sleep(0.01)
    release.set()
    results, alone = await asyncio.gather(batch, single)

    assert fetch_fn.await_count == 1
    assert engine.quota.snapshot("gnews").hourly_used == 1
    assert alone.provenance is Provenance.FRESH
    assert alone.payload == results[a.cache_key].payload


@pytest.mark.asyncio
async def test_batch_leaves_in_flight_member_to_its_fetch(orchestrator, engine, fetch_fn):
    release = asyncio.Event()
    payload = [{"title": "Funding news", "description": "funding"}]

    async def slow_fetch(provider, keywords, count):
        await release.wait()
        return payload

    fetch_fn.side_effect = slow_fetch
    a = ContentBucket(provider="gnews", content_type=ContentType.NEWS, keywords=["ai", "funding"])
    b = ContentBucket(provider="gnews", content_type=ContentType.NEWS, keywords=["funding", "startup"])

    single = asyncio.create_task(orchestrator.resolve(a))
    for _ in range(200):
        if engine.coalescer.is_pending(a.cache_key):
            break
        await asyncio.sleep(0.005)
    batch = asyncio.create_task(orchestrator.batch_fetch([a, b]))
    await asyncio.sleep(0.01)
    release.set()
    alone, results = await asyncio.gather(single, batch)

    keyword_sets = sorted(call.args[1] for call in fetch_fn.await_args_list)
    assert keyword_sets == [["ai", "funding"], ["funding", "startup"]]
    assert results[a.cache_key].payload == alone.payload
    assert all(r.provenance is Provenance.FRESH for r in results.values())


@pytest.mark.asyncio
async def test_quota_table_failure_does_not_break_resolve(orchestrator, engine, news_bucket, clock):
    engine.quota_table.close()
    clock.advance(HOUR)

    result = await orchestrator.resolve(news_bucket)

    assert result.provenance is Provenance.FRESH
    assert engine.quota.snapshot("gnews").hourly_used == 1
