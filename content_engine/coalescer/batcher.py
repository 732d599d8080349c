"""Merging of distinct buckets with overlapping keywords into one provider call.

Only used on the explicit batch/refresh path. Buckets for the same provider
whose keyword sets overlap (directly or through a chain of other buckets)
form one group; the group is fetched once with the union of its keywords
and the response is sliced back out per bucket.
"""

import asyncio
import re
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import structlog

from content_engine.models import ContentBucket, ContentType, Priority

logger = structlog.get_logger(__name__)

MAX_MERGED_COUNT = 100

TEXT_FIELDS = ("title", "name", "headline", "description", "summary", "text", "content")

FlushFn = Callable[[List[ContentBucket]], Awaitable[Dict[str, Any]]]


def group_overlapping(buckets: List[ContentBucket]) -> List[List[ContentBucket]]:
    """Partition buckets into groups sharing a provider and overlapping keywords.

    Identical buckets collapse into one. Group order follows first appearance.
    """
    unique: List[ContentBucket] = []
    seen = set()
    for bucket in buckets:
        ident = (bucket.provider, bucket.cache_key)
        if ident not in seen:
            seen.add(ident)
            unique.append(bucket)

    parent = list(range(len(unique)))

    def find(i: int) -> int:
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    for i, a in enumerate(unique):
        for j in range(i + 1, len(unique)):
            b = unique[j]
            if a.provider == b.provider and a.keywords & b.keywords:
                parent[find(j)] = find(i)

    groups: Dict[int, List[ContentBucket]] = {}
    for i, bucket in enumerate(unique):
        groups.setdefault(find(i), []).append(bucket)
    return list(groups.values())


def merged_bucket(group: List[ContentBucket]) -> ContentBucket:
    """Bucket describing the single upstream call made for a group."""
    first = group[0]
    keywords = frozenset().union(*(b.keywords for b in group))
    priorities = [b.priority for b in group]
    priority = next(p for p in (Priority.HIGH, Priority.MEDIUM, Priority.LOW) if p in priorities)
    content_types = {b.content_type for b in group}
    content_type = first.content_type if len(content_types) == 1 else ContentType.NEWS
    count = min(MAX_MERGED_COUNT, sum(b.count for b in group))
    return ContentBucket(
        provider=first.provider,
        content_type=content_type,
        keywords=keywords,
        priority=priority,
        count=count,
    )


def _item_text(item: Any) -> str:
    if isinstance(item, dict):
        return " ".join(str(item.get(f, "")) for f in TEXT_FIELDS).lower()
    return str(item).lower()


def _keyword_pattern(keywords) -> re.Pattern:
    alternatives = "|".join(re.escape(kw) for kw in sorted(keywords))
    return re.compile(rf"\b(?:{alternatives})\b")


def split_payload(payload: Any, bucket: ContentBucket) -> Any:
    """Derive one bucket's slice of a merged response.

    List payloads keep the items mentioning one of the bucket's keywords as
    a whole word, up to the bucket's count. When nothing matches, or the
    payload is not a list, the bucket gets a copy of the merged response.
    """
    if not isinstance(payload, list):
        return payload
    if not bucket.keywords:
        return list(payload[: bucket.count])
    pattern = _keyword_pattern(bucket.keywords)
    matches = [item for item in payload if pattern.search(_item_text(item))]
    chosen = matches if matches else payload
    return list(chosen[: bucket.count])


class KeywordBatcher:
    """Collects batch submissions for a grouping window, then flushes them.

    Each ``submit`` waits until the window for its provider closes; the
    flush function receives every bucket submitted meanwhile and returns a
    mapping of cache key to result.
    """

    def __init__(self, flush_fn: FlushFn, window_seconds: float = 0.5):
        self.flush_fn = flush_fn
        self.window_seconds = window_seconds
        self._waiting: Dict[str, List[Tuple[ContentBucket, asyncio.Future]]] = defaultdict(list)
        self._timers: Dict[str, asyncio.Task] = {}

    async def submit(self, bucket: ContentBucket) -> Any:
        loop = asyncio.get_running_loop()
        waiter = loop.create_future()
        self._waiting[bucket.provider].append((bucket, waiter))
        if bucket.provider not in self._timers:
            self._timers[bucket.provider] = loop.create_task(self._flush_later(bucket.provider))
        return await waiter

    async def _flush_later(self, provider: str) -> None:
        try:
            await asyncio.sleep(self.window_seconds)
        finally:
            self._timers.pop(provider, None)
        waiting = self._waiting.pop(provider, [])
        if not waiting:
            return
        buckets = [bucket for bucket, _ in waiting]
        logger.info("batch_window_closed", provider=provider, buckets=len(buckets))
        results: Optional[Dict[str, Any]] = None
        error: Optional[Exception] = None
        try:
            results = await self.flush_fn(buckets)
        except Exception as e:
            error = e
        for bucket, waiter in waiting:
            if waiter.done():
                continue
            if error is not None:
                waiter.set_exception(error)
            else:
                waiter.set_result(results.get(bucket.cache_key))

    async def close(self) -> None:
        timers = list(self._timers.values())
        for task in timers:
            task.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
        for waiting in self._waiting.values():
            for _, waiter in waiting:
                if not waiter.done():
                    waiter.cancel()
        self._waiting.clear()
