"""Static job table created at startup: one job per priority and content type."""

from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Tuple

from content_engine.config.quota_profiles import HOUR
from content_engine.models import ContentBucket, ContentType, Priority

JOB_INTERVALS: Dict[Priority, Dict[ContentType, float]] = {
    Priority.HIGH: {
        ContentType.NEWS: 4 * HOUR,
        ContentType.FUNDING: 2 * HOUR,
        ContentType.EVENTS: 6 * HOUR,
    },
    Priority.MEDIUM: {
        ContentType.NEWS: 4 * HOUR,
        ContentType.FUNDING: 2 * HOUR,
        ContentType.EVENTS: 12 * HOUR,
    },
    Priority.LOW: {
        ContentType.NEWS: 8 * HOUR,
        ContentType.FUNDING: 4 * HOUR,
        ContentType.EVENTS: 24 * HOUR,
    },
}

DEFAULT_SOURCES: Dict[ContentType, Tuple[str, FrozenSet[str]]] = {
    ContentType.NEWS: ("gnews", frozenset({"startup", "technology"})),
    ContentType.FUNDING: ("gnews", frozenset({"funding", "series a", "venture capital"})),
    ContentType.EVENTS: ("meetup", frozenset({"startup", "tech meetup"})),
    ContentType.AI_SUMMARY: ("gemini", frozenset({"startup", "funding"})),
    ContentType.SOCIAL: ("reddit", frozenset({"startups"})),
}


@dataclass(frozen=True)
class JobSpec:
    job_id: str
    bucket: ContentBucket
    interval_seconds: float


def job_id_for(bucket: ContentBucket) -> str:
    return f"{bucket.content_type.value}-{bucket.priority.value}-refresh"


def default_job_table(
    count: int = 10,
    priorities: Optional[List[Priority]] = None,
    sources: Optional[Dict[ContentType, Tuple[str, FrozenSet[str]]]] = None,
) -> List[JobSpec]:
    """Build the startup job table.

    Args:
        count: Result count for every bucket
        priorities: Priorities to include, all by default
        sources: Provider and keywords per content type
    """
    sources = sources or DEFAULT_SOURCES
    specs = []
    for priority in priorities or list(Priority):
        for content_type, interval in JOB_INTERVALS[priority].items():
            if content_type not in sources:
                continue
            provider, keywords = sources[content_type]
            bucket = ContentBucket(
                provider=provider,
                content_type=content_type,
                keywords=keywords,
                priority=priority,
                count=count,
            )
            specs.append(JobSpec(job_id=job_id_for(bucket), bucket=bucket, interval_seconds=interval))
    return specs


def interval_for(content_type: ContentType, priority: Priority, fallback: float = 4 * HOUR) -> float:
    return JOB_INTERVALS.get(priority, {}).get(content_type, fallback)
