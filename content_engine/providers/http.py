"""Generic keyword-search fetcher for JSON HTTP providers."""

from typing import Any, Dict, List, Optional

import aiohttp
import structlog

from content_engine.errors import ProviderFetchFailed
from content_engine.providers.retry import with_retries

logger = structlog.get_logger(__name__)


class HTTPSearchFetcher:
    """Fetch function for search APIs taking a query and a result count.

    Keywords are joined with `` OR `` into the query parameter and the
    result list is read from ``items_path`` (dot separated) in the JSON body.
    Provider-specific parsing stays outside the engine.
    """

    def __init__(
        self,
        base_url: str,
        query_param: str = "q",
        count_param: str = "max",
        items_path: str = "articles",
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url
        self.query_param = query_param
        self.count_param = count_param
        self.items_path = items_path
        self.params = dict(params or {})
        self.headers = {"User-Agent": "ContentEngine/1.0", "Accept": "application/json"}
        self.headers.update(headers or {})
        self.session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None:
            self.session = aiohttp.ClientSession(headers=self.headers)
        return self.session

    async def close(self) -> None:
        if self.session is not None and self._owns_session:
            await self.session.close()
            self.session = None

    def build_params(self, keywords: List[str], count: int) -> Dict[str, Any]:
        params = dict(self.params)
        params[self.query_param] = " OR ".join(keywords)
        params[self.count_param] = count
        return params

    def extract_items(self, body: Any) -> Any:
        for part in self.items_path.split(".") if self.items_path else []:
            if not isinstance(body, dict):
                return []
            body = body.get(part)
        return body if body is not None else []

    async def __call__(self, provider: str, keywords: List[str], count: int) -> Any:
        session = await self._get_session()
        params = self.build_params(keywords, count)
        try:
            async with session.get(self.base_url, params=params) as response:
                if response.status == 429 or 400 <= response.status < 500:
                    # Rejected before execution.
                    raise ProviderFetchFailed(
                        provider,
                        f"{provider} API error: {response.status}",
                        executed=False,
                        status_code=response.status,
                    )
                if response.status >= 500:
                    raise ProviderFetchFailed(
                        provider,
                        f"{provider} API error: {response.status}",
                        executed=None,
                        status_code=response.status,
                    )
                body = await response.json()
        except aiohttp.ClientConnectorError as e:
            raise ProviderFetchFailed(provider, f"Connection failed: {e}", executed=False) from e
        except aiohttp.ClientError as e:
            raise ProviderFetchFailed(provider, f"Request failed: {e}", executed=None) from e

        items = self.extract_items(body)
        logger.debug("provider_response", provider=provider, items=len(items) if isinstance(items, list) else 1)
        return items


GNEWS_SEARCH_URL = "https://gnews.io/api/v4/search"
HN_SEARCH_URL = "https://hn.algolia.com/api/v1/search"


def default_fetchers(environ: Dict[str, str], max_attempts: int = 3) -> Dict[str, Any]:
    """Fetch functions for the providers configured in ``environ``.

    Hacker News search needs no key and is always included; GNews is added
    when ``GNEWS_API_KEY`` is set.
    """
    fetchers: Dict[str, Any] = {
        "hn": HTTPSearchFetcher(
            HN_SEARCH_URL, query_param="query", count_param="hitsPerPage", items_path="hits"
        ),
    }
    api_key = environ.get("GNEWS_API_KEY")
    if api_key:
        fetchers["gnews"] = HTTPSearchFetcher(
            GNEWS_SEARCH_URL, params={"apikey": api_key, "lang": "en"}
        )
    return {name: with_retries(fn, max_attempts=max_attempts) for name, fn in fetchers.items()}
