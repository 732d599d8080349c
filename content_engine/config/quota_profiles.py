"""Per-environment provider call budgets."""

from dataclasses import dataclass
from typing import Dict

HOUR = 60 * 60
DAY = 24 * HOUR


@dataclass(frozen=True)
class ProviderLimits:
    """Call budget for one provider.

    Attributes:
        daily_limit: Calls allowed per daily window
        hourly_limit: Calls allowed per hourly window
        cooldown: Minimum seconds between calls when cooldown is enforced
        is_active: Inactive providers are never admitted
    """

    daily_limit: int
    hourly_limit: int
    cooldown: float = 0.0
    is_active: bool = True


QUOTA_PROFILES: Dict[str, Dict[str, ProviderLimits]] = {
    "staging": {
        "gnews": ProviderLimits(daily_limit=100, hourly_limit=10, cooldown=60),
        "gemini": ProviderLimits(daily_limit=1500, hourly_limit=150, cooldown=2),
        "reddit": ProviderLimits(daily_limit=100, hourly_limit=6, cooldown=60),
        "hn": ProviderLimits(daily_limit=100, hourly_limit=3, cooldown=60),
        "rss": ProviderLimits(daily_limit=1000, hourly_limit=100, cooldown=10),
        "meetup": ProviderLimits(daily_limit=100, hourly_limit=20, cooldown=60),
    },
    "production": {
        "gnews": ProviderLimits(daily_limit=1000, hourly_limit=100, cooldown=60),
        "gemini": ProviderLimits(daily_limit=15000, hourly_limit=1500, cooldown=2),
        "reddit": ProviderLimits(daily_limit=1000, hourly_limit=60, cooldown=60),
        "hn": ProviderLimits(daily_limit=1000, hourly_limit=30, cooldown=60),
        "rss": ProviderLimits(daily_limit=10000, hourly_limit=1000, cooldown=10),
        "meetup": ProviderLimits(daily_limit=1000, hourly_limit=200, cooldown=60),
    },
}
