import os
from unittest.mock import AsyncMock

import pytest

from content_engine.clock import ManualClock
from content_engine.config import EngineConfig, ProviderLimits
from content_engine.engine import Engine
from content_engine.metrics import EngineMetrics
from content_engine.models import ContentBucket, ContentType, Priority


@pytest.fixture(autouse=True)
def clear_engine_env(monkeypatch):
    """Keep CONTENT_ENGINE_* variables from the host out of tests."""
    for name in list(os.environ):
        if name.startswith("CONTENT_ENGINE_") or name == "GNEWS_API_KEY":
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def clock():
    """Virtual clock starting at a fixed epoch."""
    return ManualClock()


@pytest.fixture
def metrics():
    """Metrics bound to a fresh registry."""
    return EngineMetrics()


@pytest.fixture
def limits():
    """Small, predictable provider budgets."""
    return {
        "gnews": ProviderLimits(daily_limit=1000, hourly_limit=100),
        "hn": ProviderLimits(daily_limit=100, hourly_limit=3),
        "meetup": ProviderLimits(daily_limit=100, hourly_limit=20),
        "gemini": ProviderLimits(daily_limit=100, hourly_limit=20),
        "reddit": ProviderLimits(daily_limit=100, hourly_limit=20),
    }


@pytest.fixture
def config(limits):
    """Engine config with short timeouts for tests."""
    return EngineConfig(
        fetch_timeout_seconds=0.2,
        batch_window_seconds=0.05,
        quota_overrides=limits,
    )


@pytest.fixture
def sample_articles(clock):
    """Articles published at the test clock time."""
    published = clock.utcnow().replace(microsecond=0).isoformat().replace("+00:00", "Z")
    return [
        {
            "title": "AI startup raises seed round",
            "description": "An AI company closed its funding round.",
            "url": "https://example.com/ai-seed",
            "publishedAt": published,
        },
        {
            "title": "Startup weekend returns",
            "description": "Founders gather for the startup weekend.",
            "url": "https://example.com/weekend",
            "publishedAt": published,
        },
        {
            "title": "Funding climate report",
            "description": "Venture funding is up this quarter.",
            "url": "https://example.com/funding",
            "publishedAt": published,
        },
    ]


@pytest.fixture
def fetch_fn(sample_articles):
    """Provider fetch function returning the sample articles."""
    return AsyncMock(return_value=sample_articles)


@pytest.fixture
def news_bucket():
    return ContentBucket(
        provider="gnews",
        content_type=ContentType.NEWS,
        keywords=["startup", "funding"],
        priority=Priority.HIGH,
    )


@pytest.fixture
def engine(config, fetch_fn, clock, metrics):
    """Engine with in-memory SQLite tiers and mocked providers."""
    return Engine.build(
        config,
        fetchers={"gnews": fetch_fn, "meetup": fetch_fn, "gemini": fetch_fn, "reddit": fetch_fn},
        clock=clock,
        metrics=metrics,
    )
