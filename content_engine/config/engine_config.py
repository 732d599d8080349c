"""Configuration settings for the content engine."""

import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional

from content_engine.config.quota_profiles import DAY, HOUR, QUOTA_PROFILES, ProviderLimits
from content_engine.errors import ConfigurationError
from content_engine.models import Priority

ENV_PREFIX = "CONTENT_ENGINE_"


def _default_refresh_intervals() -> Dict[Priority, float]:
    return {Priority.HIGH: 2 * HOUR, Priority.MEDIUM: 4 * HOUR, Priority.LOW: 12 * HOUR}


def _default_ttls() -> Dict[Priority, float]:
    # Twice the refresh interval, so a soft refresh comes due well before expiry.
    return {Priority.HIGH: 4 * HOUR, Priority.MEDIUM: 8 * HOUR, Priority.LOW: 24 * HOUR}


@dataclass
class EngineConfig:
    """Configuration for the content engine.

    Attributes:
        environment: Quota profile to load ("staging" or "production")
        local_max_entries: Maximum entries held by the local tier
        local_ttl_seconds: Upper bound on how long the local tier treats an entry as valid
        default_ttl_seconds: TTL used when neither the caller nor the priority gives one
        eviction_grace_multiplier: Entries older than ttl * multiplier are swept
        refresh_intervals: Soft refresh interval per priority
        ttl_by_priority: Hard TTL applied on write per priority
        fetch_timeout_seconds: Timeout bound on every provider fetch
        batch_window_seconds: Grouping window for the keyword batcher
        default_result_count: Result count for buckets built without one
        charge_ambiguous_timeouts: Record quota usage for calls with unknown outcome
        serve_stale_while_refresh: Serve a valid entry and refresh it in the background
        enforce_cooldown: Apply per-provider cooldown between calls
        shared_db_path: SQLite file backing the shared tier (None keeps it in memory)
        quota_db_path: SQLite file backing the quota table (None keeps it in memory)
        job_history_size: Number of runs kept per job
        cleanup_interval_seconds: Minimum time between periodic cache sweeps
        scheduler_poll_seconds: Sleep between scheduler loop ticks
        quota_overrides: Limits replacing or extending the environment profile
    """

    environment: str = "staging"
    local_max_entries: int = 1000
    local_ttl_seconds: float = 30 * 60
    default_ttl_seconds: float = 6 * HOUR
    eviction_grace_multiplier: float = 2.0
    refresh_intervals: Dict[Priority, float] = field(default_factory=_default_refresh_intervals)
    ttl_by_priority: Dict[Priority, float] = field(default_factory=_default_ttls)
    fetch_timeout_seconds: float = 10.0
    batch_window_seconds: float = 0.5
    default_result_count: int = 10
    charge_ambiguous_timeouts: bool = True
    serve_stale_while_refresh: bool = True
    enforce_cooldown: bool = False
    shared_db_path: Optional[str] = None
    quota_db_path: Optional[str] = None
    job_history_size: int = 50
    cleanup_interval_seconds: float = DAY
    scheduler_poll_seconds: float = 1.0
    quota_overrides: Dict[str, ProviderLimits] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.environment not in QUOTA_PROFILES:
            raise ConfigurationError(
                f"Unknown environment {self.environment!r}",
                {"known": sorted(QUOTA_PROFILES)},
            )
        if self.eviction_grace_multiplier < 1.0:
            raise ConfigurationError("eviction_grace_multiplier must be >= 1.0")
        if self.fetch_timeout_seconds <= 0:
            raise ConfigurationError("fetch_timeout_seconds must be positive")
        self.refresh_intervals = {Priority(k): float(v) for k, v in self.refresh_intervals.items()}
        self.ttl_by_priority = {Priority(k): float(v) for k, v in self.ttl_by_priority.items()}
        self.quota_overrides = {
            name: limits if isinstance(limits, ProviderLimits) else ProviderLimits(**limits)
            for name, limits in self.quota_overrides.items()
        }

    def quota_limits(self) -> Dict[str, ProviderLimits]:
        """Limits for the selected environment with overrides applied."""
        limits = dict(QUOTA_PROFILES[self.environment])
        limits.update(self.quota_overrides)
        return limits

    def refresh_interval(self, priority: Priority) -> float:
        return self.refresh_intervals[Priority(priority)]

    def ttl_for(self, priority: Optional[Priority]) -> float:
        if priority is None:
            return self.default_ttl_seconds
        return self.ttl_by_priority.get(Priority(priority), self.default_ttl_seconds)

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> "EngineConfig":
        """Create an EngineConfig instance from a dictionary.

        Unknown keys are ignored.
        """
        return cls(**{k: v for k, v in config_dict.items() if k in cls.__dataclass_fields__})

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "EngineConfig":
        """Create an EngineConfig from ``CONTENT_ENGINE_*`` environment variables."""
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            if f.type in (bool, "bool"):
                values[f.name] = raw.strip().lower() in ("1", "true", "yes", "on")
            elif f.type in (int, "int"):
                values[f.name] = int(raw)
            elif f.type in (float, "float"):
                values[f.name] = float(raw)
            elif f.name in ("shared_db_path", "quota_db_path", "environment"):
                values[f.name] = raw
        return cls.from_dict(values)
