"""Provider fetch functions and their registry."""

from content_engine.providers.http import HTTPSearchFetcher, default_fetchers
from content_engine.providers.registry import FetchFunction, ProviderRegistry
from content_engine.providers.retry import backoff_delay, is_retryable, with_retries

__all__ = [
    "FetchFunction",
    "HTTPSearchFetcher",
    "default_fetchers",
    "ProviderRegistry",
    "backoff_delay",
    "is_retryable",
    "with_retries",
]
