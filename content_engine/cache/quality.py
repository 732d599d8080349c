"""Quality scoring for cached payloads.

The score ranks fallback candidates when only stale data can be served.
"""

from datetime import datetime, timezone
from typing import Any, Iterable, Optional

TITLE_FIELDS = ("title", "name", "headline")
DESCRIPTION_FIELDS = ("description", "summary", "text", "content", "body")
TIMESTAMP_FIELDS = ("publishedAt", "published_at", "date", "timestamp", "created_at", "createdAt")

DAY = 24 * 60 * 60


def _first_present(item: dict, names: Iterable[str]) -> Any:
    for name in names:
        value = item.get(name)
        if value not in (None, ""):
            return value
    return None


def parse_timestamp(value: Any) -> Optional[float]:
    """Parse an ISO-8601 string or epoch number (seconds or milliseconds)."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # Millisecond epochs are at least 1e11 for any date after 1973.
        return value / 1000.0 if value > 1e11 else float(value)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp()
    return None


def _items(payload: Any) -> list:
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]
    if isinstance(payload, dict):
        return [payload]
    return []


def _has_title_and_description(item: dict) -> bool:
    title = _first_present(item, TITLE_FIELDS)
    description = _first_present(item, DESCRIPTION_FIELDS)
    return bool(title) and bool(description)


def _newest_timestamp(items: list) -> Optional[float]:
    stamps = [parse_timestamp(_first_present(item, TIMESTAMP_FIELDS)) for item in items]
    stamps = [s for s in stamps if s is not None]
    return max(stamps) if stamps else None


def quality_score(payload: Any, now: float) -> int:
    """Score a payload from 0 to 100.

    +30 for a non-empty list, +20 for an object, +30/+20/+10 for content
    newer than a day / a week / older (only when a timestamp is present),
    +20 when a title-like and a description-like field are both filled.
    For lists the recency uses the newest item and the title/description
    bonus needs at least one complete item.
    """
    score = 0
    if isinstance(payload, list) and payload:
        score += 30
    elif isinstance(payload, dict):
        score += 20

    items = _items(payload)
    newest = _newest_timestamp(items)
    if newest is not None:
        age = now - newest
        if age < DAY:
            score += 30
        elif age < 7 * DAY:
            score += 20
        else:
            score += 10

    if any(_has_title_and_description(item) for item in items):
        score += 20

    return max(0, min(100, score))
