"""Error definitions for the content engine."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(Enum):
    """Categories of errors that can occur in the engine."""

    QUOTA_ERROR = "quota_error"
    PROVIDER_ERROR = "provider_error"
    CACHE_ERROR = "cache_error"
    CONFIGURATION_ERROR = "configuration_error"
    VALIDATION_ERROR = "validation_error"
    SCHEDULER_ERROR = "scheduler_error"


class ErrorSeverity(Enum):
    """Severity levels for errors."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class EngineError(Exception):
    """Base error class for all content engine errors."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory,
        severity: ErrorSeverity,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Initialize base error.

        Args:
            message: Error message
            category: Error category
            severity: Error severity
            details: Optional error details
        """
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
            "details": self.details,
            "timestamp": self.timestamp,
        }


class QuotaExceeded(EngineError):
    """Raised inside the fetch path when a provider reservation is refused.

    Never leaves the orchestrator: it is converted into a degraded result.
    """

    def __init__(self, provider: str, reason: str = "limit_reached") -> None:
        super().__init__(
            f"Quota exhausted for provider {provider} ({reason})",
            ErrorCategory.QUOTA_ERROR,
            ErrorSeverity.LOW,
            {"provider": provider, "reason": reason},
        )
        self.provider = provider
        self.reason = reason


class ProviderFetchFailed(EngineError):
    """Error raised when a provider fetch function fails.

    ``executed`` tells the quota tracker whether the provider may have charged
    for the call: True (it did), False (the provider confirmed non-execution)
    or None (unknown, e.g. a timeout).
    """

    def __init__(
        self,
        provider: str,
        message: str,
        executed: Optional[bool] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        merged = {"provider": provider, "executed": executed, "status_code": status_code}
        merged.update(details or {})
        super().__init__(message, ErrorCategory.PROVIDER_ERROR, ErrorSeverity.MEDIUM, merged)
        self.provider = provider
        self.executed = executed
        self.status_code = status_code


class ProviderTimeout(ProviderFetchFailed):
    """Provider call did not finish within the configured timeout."""

    def __init__(self, provider: str, timeout: float) -> None:
        super().__init__(
            provider,
            f"Provider {provider} timed out after {timeout:.1f}s",
            executed=None,
            details={"timeout": timeout},
        )
        self.timeout = timeout


class CacheBackendUnavailable(EngineError):
    """Error raised when the shared cache tier cannot be read or written."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, ErrorCategory.CACHE_ERROR, ErrorSeverity.HIGH, details)


class ConfigurationError(EngineError):
    """Error raised for malformed or missing configuration."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, ErrorCategory.CONFIGURATION_ERROR, ErrorSeverity.CRITICAL, details)


class SchemaValidationError(EngineError):
    """Error raised when a payload does not match its content type schema."""

    def __init__(self, content_type: str, message: str) -> None:
        super().__init__(
            f"Invalid {content_type} payload: {message}",
            ErrorCategory.VALIDATION_ERROR,
            ErrorSeverity.MEDIUM,
            {"content_type": content_type},
        )
        self.content_type = content_type


class UnknownJobError(EngineError):
    """Error raised when a job id is not registered with the scheduler."""

    def __init__(self, job_id: str) -> None:
        super().__init__(
            f"Unknown job: {job_id}",
            ErrorCategory.SCHEDULER_ERROR,
            ErrorSeverity.LOW,
            {"job_id": job_id},
        )
        self.job_id = job_id


class UnknownActionError(EngineError):
    """Error raised by the action dispatcher for unsupported actions."""

    def __init__(self, action: str) -> None:
        super().__init__(
            f"Invalid action: {action}",
            ErrorCategory.VALIDATION_ERROR,
            ErrorSeverity.LOW,
            {"action": action},
        )
        self.action = action


class RefreshFailed(EngineError):
    """Error raised by a refresh job whose resolve produced no data."""

    def __init__(self, cache_key: str, reason: Optional[str] = None) -> None:
        super().__init__(
            reason or f"Refresh of {cache_key} returned no data",
            ErrorCategory.SCHEDULER_ERROR,
            ErrorSeverity.MEDIUM,
            {"cache_key": cache_key},
        )
        self.cache_key = cache_key
