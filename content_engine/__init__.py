"""Quota-aware content caching and fetch orchestration."""

from .clock import ManualClock, SystemClock
from .config import EngineConfig
from .engine import Engine
from .metrics import EngineMetrics
from .models import (
    CacheEntry,
    ContentBucket,
    ContentType,
    DegradeReason,
    Priority,
    Provenance,
    QuotaRecord,
    ResolveResult,
)
from .orchestrator import Orchestrator

__version__ = "1.0.0"

__all__ = [
    "CacheEntry",
    "ContentBucket",
    "ContentType",
    "DegradeReason",
    "Engine",
    "EngineConfig",
    "EngineMetrics",
    "ManualClock",
    "Orchestrator",
    "Priority",
    "Provenance",
    "QuotaRecord",
    "ResolveResult",
    "SystemClock",
]
