"""Per-provider daily and hourly call budgets."""

import threading
from dataclasses import replace
from typing import Any, Dict, Optional

import structlog

from content_engine.clock import SystemClock
from content_engine.config.quota_profiles import DAY, HOUR, ProviderLimits
from content_engine.errors import CacheBackendUnavailable
from content_engine.metrics import EngineMetrics
from content_engine.models import QuotaRecord
from content_engine.quota.store import SQLiteQuotaTable

logger = structlog.get_logger(__name__)


class QuotaReservation:
    """A slot held against a provider's budget while its call is in flight.

    Exactly one of ``commit`` or ``release`` takes effect; later calls are
    ignored.
    """

    def __init__(self, tracker: "QuotaTracker", provider: str):
        self.tracker = tracker
        self.provider = provider
        self.settled = False

    def commit(self, count: int = 1) -> None:
        """The provider call happened (or may have): charge it."""
        if self.settled:
            return
        self.settled = True
        self.tracker._settle(self.provider, charge=count)

    def release(self) -> None:
        """The provider confirmed the call never executed: free the slot."""
        if self.settled:
            return
        self.settled = True
        self.tracker._settle(self.provider, charge=0)


class QuotaTracker:
    """Admission control against provider call budgets.

    The daily and hourly windows roll over independently and lazily, on the
    next check after they expire. A process that was down for several windows
    gets one reset, never back-filled capacity.

    Check-then-increment is atomic per provider: ``reserve`` takes a provider
    lock, verifies headroom counting in-flight reservations, and holds the
    slot until the call is committed or released.
    """

    def __init__(
        self,
        limits: Dict[str, ProviderLimits],
        clock: Optional[SystemClock] = None,
        metrics: Optional[EngineMetrics] = None,
        store: Optional[SQLiteQuotaTable] = None,
        enforce_cooldown: bool = False,
    ):
        """Initialize the quota tracker.

        Args:
            limits: Budget per provider, fixed for the tracker's lifetime
            clock: Time source
            metrics: Metrics sink
            store: Optional quota table shared with other instances
            enforce_cooldown: Refuse calls inside a provider's cooldown
        """
        self.clock = clock or SystemClock()
        self.metrics = metrics or EngineMetrics()
        self.store = store
        self.enforce_cooldown = enforce_cooldown
        self._records: Dict[str, QuotaRecord] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._warned: set = set()

        now = self.clock.now()
        persisted = store.load_all() if store else {}
        for provider, provider_limits in limits.items():
            record = QuotaRecord(
                provider=provider,
                daily_limit=provider_limits.daily_limit,
                hourly_limit=provider_limits.hourly_limit,
                daily_reset_at=now + DAY,
                hourly_reset_at=now + HOUR,
                is_active=provider_limits.is_active,
                cooldown=provider_limits.cooldown,
            )
            row = persisted.get(provider)
            if row:
                record.daily_used = row["daily_used"]
                record.hourly_used = row["hourly_used"]
                record.daily_reset_at = row["reset_time"]
                record.hourly_reset_at = row["hourly_reset_time"]
                record.last_call_at = row["last_call_at"]
            if store:
                store.ensure(record)
            self._records[provider] = record
            self._locks[provider] = threading.Lock()
            self._publish(record)

        logger.info("quota_tracker_initialized", providers=sorted(self._records))

    @property
    def providers(self):
        return sorted(self._records)

    def _unconfigured(self, provider: str) -> None:
        if provider not in self._warned:
            self._warned.add(provider)
            logger.warning("quota_unconfigured", provider=provider, policy="fail_open")

    def _persist(self, operation: str, *args) -> None:
        """Mirror a counter change into the quota table.

        The in-memory record stays authoritative when the table cannot be
        written.
        """
        if not self.store:
            return
        try:
            getattr(self.store, operation)(*args)
        except CacheBackendUnavailable as e:
            logger.error("quota_table_write_failed", operation=operation, error=str(e))

    def _read_row(self, provider: str) -> Optional[Dict[str, Any]]:
        if not self.store:
            return None
        try:
            return self.store.get(provider)
        except CacheBackendUnavailable as e:
            logger.error("quota_table_read_failed", provider=provider, error=str(e))
            return None

    @staticmethod
    def _adopt_row(record: QuotaRecord, row: Optional[Dict[str, Any]], now: float) -> None:
        # Rows whose window already expired carry counts nobody reset yet.
        if not row:
            return
        if row["reset_time"] > now:
            record.daily_used = max(record.daily_used, row["daily_used"])
        if row["hourly_reset_time"] > now:
            record.hourly_used = max(record.hourly_used, row["hourly_used"])
        last_call_at = row.get("last_call_at")
        if last_call_at is not None and (record.last_call_at is None or last_call_at > record.last_call_at):
            record.last_call_at = last_call_at

    def _roll(self, record: QuotaRecord, now: float) -> None:
        if now >= record.daily_reset_at:
            record.daily_used = 0
            record.daily_reset_at = now + DAY
            self._persist("reset_daily", record.provider, record.daily_reset_at)
            logger.info("quota_window_reset", provider=record.provider, window="daily")
        if now >= record.hourly_reset_at:
            record.hourly_used = 0
            record.hourly_reset_at = now + HOUR
            self._persist("reset_hourly", record.provider, record.hourly_reset_at)
            logger.debug("quota_window_reset", provider=record.provider, window="hourly")

    def _headroom(self, record: QuotaRecord, now: float) -> Optional[str]:
        """Return the reason a call would be refused, or None."""
        if not record.is_active:
            return "inactive"
        if record.daily_used + record.reserved >= record.daily_limit:
            return "daily_limit"
        if record.hourly_used + record.reserved >= record.hourly_limit:
            return "hourly_limit"
        if (
            self.enforce_cooldown
            and record.cooldown
            and record.last_call_at is not None
            and now - record.last_call_at < record.cooldown
        ):
            return "cooldown"
        return None

    def can_admit(self, provider: str) -> bool:
        """Whether a call to ``provider`` fits both windows right now."""
        record = self._records.get(provider)
        if record is None:
            self._unconfigured(provider)
            return True
        row = self._read_row(provider)
        with self._locks[provider]:
            now = self.clock.now()
            self._adopt_row(record, row, now)
            self._roll(record, now)
            reason = self._headroom(record, now)
        if reason:
            self.metrics.quota_denials.labels(provider=provider).inc()
            logger.info("quota_denied", provider=provider, reason=reason)
            return False
        return True

    def reserve(self, provider: str) -> Optional[QuotaReservation]:
        """Atomically check and hold one call slot.

        Returns:
            A reservation, or None if the provider has no headroom
        """
        record = self._records.get(provider)
        if record is None:
            self._unconfigured(provider)
            return QuotaReservation(self, provider)
        row = self._read_row(provider)
        with self._locks[provider]:
            now = self.clock.now()
            self._adopt_row(record, row, now)
            self._roll(record, now)
            reason = self._headroom(record, now)
            if reason is None:
                record.reserved += 1
        if reason:
            self.metrics.quota_denials.labels(provider=provider).inc()
            logger.info("quota_reservation_refused", provider=provider, reason=reason)
            return None
        return QuotaReservation(self, provider)

    def record(self, provider: str, count: int = 1) -> None:
        """Charge ``count`` calls that were made without a reservation."""
        self._charge(provider, count, from_reservation=False)

    def _settle(self, provider: str, charge: int) -> None:
        if charge:
            self._charge(provider, charge, from_reservation=True)
            return
        record = self._records.get(provider)
        if record is None:
            return
        with self._locks[provider]:
            record.reserved = max(0, record.reserved - 1)

    def _charge(self, provider: str, count: int, from_reservation: bool) -> None:
        record = self._records.get(provider)
        if record is None:
            self._unconfigured(provider)
            return
        with self._locks[provider]:
            now = self.clock.now()
            self._roll(record, now)
            if from_reservation:
                record.reserved = max(0, record.reserved - 1)
            record.daily_used += count
            record.hourly_used += count
            record.last_call_at = now
            self._persist("increment", provider, count, now)
        self._publish(record)
        logger.debug(
            "quota_recorded",
            provider=provider,
            daily_used=record.daily_used,
            hourly_used=record.hourly_used,
        )

    def snapshot(self, provider: str) -> Optional[QuotaRecord]:
        """Read-only copy of a provider's record, windows rolled forward."""
        record = self._records.get(provider)
        if record is None:
            return None
        with self._locks[provider]:
            self._roll(record, self.clock.now())
            return replace(record)

    def snapshot_all(self) -> Dict[str, QuotaRecord]:
        return {provider: self.snapshot(provider) for provider in self.providers}

    def roll_all(self) -> None:
        """Apply pending window resets to every provider."""
        for provider in self.providers:
            self.snapshot(provider)
            self._publish(self._records[provider])

    def sync_from_store(self) -> None:
        """Adopt usage written to the shared quota table by other instances."""
        if not self.store:
            return
        try:
            rows = self.store.load_all()
        except CacheBackendUnavailable as e:
            logger.error("quota_table_read_failed", error=str(e))
            return
        now = self.clock.now()
        for provider, record in self._records.items():
            with self._locks[provider]:
                self._adopt_row(record, rows.get(provider), now)
            self._publish(record)

    def _publish(self, record: QuotaRecord) -> None:
        self.metrics.quota_used.labels(provider=record.provider, window="daily").set(
            record.daily_used
        )
        self.metrics.quota_used.labels(provider=record.provider, window="hourly").set(
            record.hourly_used
        )
