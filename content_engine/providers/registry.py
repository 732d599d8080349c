"""Binding of provider names to opaque fetch functions."""

import inspect
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List

import structlog

from content_engine.errors import ProviderFetchFailed

logger = structlog.get_logger(__name__)

FetchFunction = Callable[[str, List[str], int], Awaitable[Any]]


class ProviderRegistry:
    """Maps provider names to ``fetch(provider, keywords, count)`` coroutines."""

    def __init__(self, fetchers: Dict[str, FetchFunction] = None):
        self._fetchers: Dict[str, FetchFunction] = dict(fetchers or {})

    def register(self, provider: str, fetch_fn: FetchFunction) -> None:
        self._fetchers[provider] = fetch_fn
        logger.info("provider_registered", provider=provider)

    def unregister(self, provider: str) -> None:
        self._fetchers.pop(provider, None)

    def __contains__(self, provider: str) -> bool:
        return provider in self._fetchers

    @property
    def providers(self) -> List[str]:
        return sorted(self._fetchers)

    async def fetch(self, provider: str, keywords: FrozenSet[str], count: int) -> Any:
        """Call the provider's fetch function.

        Raises:
            ProviderFetchFailed: If no fetch function is bound to ``provider``
                (no call is made, so ``executed`` is False) or the fetch function
                raised a non-engine error
        """
        fetch_fn = self._fetchers.get(provider)
        if fetch_fn is None:
            raise ProviderFetchFailed(provider, f"No fetch function for provider {provider}", executed=False)
        try:
            return await fetch_fn(provider, sorted(keywords), count)
        except ProviderFetchFailed:
            raise
        except Exception as e:
            raise ProviderFetchFailed(provider, f"{type(e).__name__}: {e}", executed=None) from e

    async def close(self) -> None:
        """Close fetch functions that hold resources, such as HTTP sessions."""
        for fetch_fn in self._fetchers.values():
            target = getattr(fetch_fn, "__wrapped__", fetch_fn)
            close = getattr(target, "close", None)
            if close is not None and inspect.iscoroutinefunction(close):
                await close()
