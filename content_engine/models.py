"""Data models for content buckets, cache entries and quota records."""

import hashlib
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ContentType(str, Enum):
    """Kinds of content the engine caches."""

    NEWS = "news"
    FUNDING = "funding"
    EVENTS = "events"
    AI_SUMMARY = "ai_summary"
    SOCIAL = "social"


class Priority(str, Enum):
    """Freshness priority of a bucket, fixed when the bucket is created."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Provenance(str, Enum):
    """How a resolved result was obtained."""

    FRESH = "fresh"
    CACHED = "cached"
    STALE_DEGRADED = "stale-degraded"
    ERROR = "error"


class DegradeReason(str, Enum):
    QUOTA_EXCEEDED = "quota_exceeded"
    FETCH_FAILED = "fetch_failed"
    TIMEOUT = "timeout"


class CacheTier(str, Enum):
    LOCAL = "local"
    SHARED = "shared"


def normalize_keywords(keywords: Iterable[str]) -> FrozenSet[str]:
    """Lowercase, strip and de-duplicate keywords."""
    return frozenset(k.strip().lower() for k in keywords if k and k.strip())


def make_cache_key(content_type: ContentType, keywords: Iterable[str], count: int) -> str:
    """Derive the deterministic cache key for a bucket.

    The content type stays readable as a prefix so pattern invalidation
    (``invalidate("news")``) can target a whole type.
    """
    canonical = "|".join(
        [ContentType(content_type).value, ",".join(sorted(normalize_keywords(keywords))), str(count)]
    )
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:32]
    return f"{ContentType(content_type).value}:{digest}"


class ContentBucket(BaseModel):
    """Identity of a cacheable unit of content."""

    model_config = ConfigDict(frozen=True)

    provider: str = Field(..., min_length=1, description="Provider domain the bucket is fetched from")
    content_type: ContentType
    keywords: FrozenSet[str] = Field(default_factory=frozenset)
    priority: Priority = Priority.MEDIUM
    count: int = Field(10, ge=1, le=100, description="Number of results requested")

    @field_validator("keywords", mode="before")
    @classmethod
    def _normalize(cls, value: Any) -> FrozenSet[str]:
        if isinstance(value, str):
            value = [value]
        return normalize_keywords(value or [])

    @property
    def cache_key(self) -> str:
        return make_cache_key(self.content_type, self.keywords, self.count)

    def describe(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "content_type": self.content_type.value,
            "keywords": sorted(self.keywords),
            "priority": self.priority.value,
            "count": self.count,
            "cache_key": self.cache_key,
        }


@dataclass
class CacheEntry:
    """A cached payload with its freshness metadata.

    Attributes:
        key: Cache key the entry is stored under
        payload: The cached content
        created_at: Epoch seconds when the payload was fetched
        ttl: Validity period in seconds
        source_provider: Provider that produced the payload
        quality_score: 0-100 score used to rank fallbacks
        tier: Tier the entry was read from
    """

    key: str
    payload: Any
    created_at: float
    ttl: float
    source_provider: str
    quality_score: int = 0
    tier: CacheTier = CacheTier.LOCAL
    content_type: Optional[ContentType] = None
    priority: Optional[Priority] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def age(self, now: float) -> float:
        return max(0.0, now - self.created_at)

    def is_valid(self, now: float) -> bool:
        return now - self.created_at < self.ttl

    def is_evictable(self, now: float, grace_multiplier: float) -> bool:
        return now - self.created_at > self.ttl * grace_multiplier

    def copy_to(self, tier: CacheTier) -> "CacheEntry":
        data = asdict(self)
        data["tier"] = tier
        return CacheEntry(**data)


@dataclass
class QuotaRecord:
    """Per-provider call budget with independent daily and hourly windows."""

    provider: str
    daily_limit: int
    hourly_limit: int
    daily_used: int = 0
    hourly_used: int = 0
    daily_reset_at: float = 0.0
    hourly_reset_at: float = 0.0
    is_active: bool = True
    cooldown: float = 0.0
    last_call_at: Optional[float] = None
    reserved: int = 0

    @property
    def window_reset_at(self) -> float:
        """Earliest moment any of the two windows rolls over."""
        return min(self.daily_reset_at, self.hourly_reset_at)

    @property
    def daily_remaining(self) -> int:
        return max(0, self.daily_limit - self.daily_used - self.reserved)

    @property
    def hourly_remaining(self) -> int:
        return max(0, self.hourly_limit - self.hourly_used - self.reserved)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "api_type": self.provider,
            "daily_limit": self.daily_limit,
            "daily_used": self.daily_used,
            "hourly_limit": self.hourly_limit,
            "hourly_used": self.hourly_used,
            "daily_percentage": _percentage(self.daily_used, self.daily_limit),
            "hourly_percentage": _percentage(self.hourly_used, self.hourly_limit),
            "daily_remaining": self.daily_remaining,
            "hourly_remaining": self.hourly_remaining,
            "daily_reset_at": self.daily_reset_at,
            "hourly_reset_at": self.hourly_reset_at,
            "reset_time": self.window_reset_at,
            "is_active": self.is_active,
            "in_flight": self.reserved,
        }


def _percentage(used: int, limit: int) -> int:
    if limit <= 0:
        return 100
    return round(used / limit * 100)


@dataclass
class ResolveResult:
    """Outcome of ``Orchestrator.resolve``."""

    payload: Any
    provenance: Provenance
    cache_key: str
    provider: str
    created_at: Optional[float] = None
    quality_score: Optional[int] = None
    degrade_reason: Optional[DegradeReason] = None
    error: Optional[str] = None
    refresh_scheduled: bool = False

    @property
    def has_data(self) -> bool:
        return self.payload is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payload": self.payload,
            "provenance": self.provenance.value,
            "cache_key": self.cache_key,
            "provider": self.provider,
            "created_at": self.created_at,
            "quality_score": self.quality_score,
            "degrade_reason": self.degrade_reason.value if self.degrade_reason else None,
            "error": self.error,
            "refresh_scheduled": self.refresh_scheduled,
        }
