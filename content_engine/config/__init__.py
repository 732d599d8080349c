"""Configuration management for content engine components."""

from .engine_config import EngineConfig
from .quota_profiles import QUOTA_PROFILES, ProviderLimits

__all__ = ["EngineConfig", "ProviderLimits", "QUOTA_PROFILES"]
