"""Per-key request coalescing."""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from content_engine.clock import SystemClock
from content_engine.metrics import EngineMetrics

logger = structlog.get_logger(__name__)

FetchFn = Callable[[], Awaitable[Any]]


@dataclass
class PendingBatch:
    """Callers waiting on the single in-flight fetch for one cache key.

    Attributes:
        cache_key: Key being fetched
        enrolled_callers: One future per caller, in arrival order
        created_at: When the first caller opened the batch
        task: Task running the fetch
    """

    cache_key: str
    created_at: float
    enrolled_callers: List[asyncio.Future] = field(default_factory=list)
    task: Optional[asyncio.Task] = None


class RequestCoalescer:
    """Runs at most one fetch per cache key at a time.

    The first caller for a key opens a ``PendingBatch`` and starts the fetch
    in its own task; later callers enroll and wait. When the fetch settles,
    every enrolled caller receives the same result or exception and the
    batch is removed, on every exit path.
    """

    def __init__(self, clock: Optional[SystemClock] = None, metrics: Optional[EngineMetrics] = None):
        self.clock = clock or SystemClock()
        self.metrics = metrics or EngineMetrics()
        self._pending: Dict[str, PendingBatch] = {}

    def is_pending(self, key: str) -> bool:
        return key in self._pending

    def pending_keys(self) -> List[str]:
        return list(self._pending)

    def enrolled_count(self, key: str) -> int:
        batch = self._pending.get(key)
        return len(batch.enrolled_callers) if batch else 0

    async def enroll(self, key: str, fetch_fn: FetchFn) -> Any:
        """Wait for the fetch of ``key``, starting it if none is in flight.

        Args:
            key: Cache key being fetched
            fetch_fn: Coroutine function performing the fetch; only called
                when this caller opens the batch

        Returns:
            The fetch result shared by every enrolled caller

        Raises:
            Whatever ``fetch_fn`` raised, to every enrolled caller
        """
        loop = asyncio.get_running_loop()
        waiter = loop.create_future()

        batch = self._pending.get(key)
        if batch is not None:
            batch.enrolled_callers.append(waiter)
            self.metrics.coalesced_callers.inc()
            logger.debug("coalescer_joined", key=key, waiting=len(batch.enrolled_callers))
        else:
            batch = PendingBatch(cache_key=key, created_at=self.clock.now(), enrolled_callers=[waiter])
            self._pending[key] = batch
            batch.task = loop.create_task(self._run(batch, fetch_fn))
            logger.debug("coalescer_opened", key=key)

        # Shield so one caller giving up does not cancel the shared fetch.
        try:
            return await asyncio.shield(waiter)
        except asyncio.CancelledError:
            # Nobody awaits an abandoned waiter; settle it so its outcome is not reported as lost.
            if waiter.done() and not waiter.cancelled():
                waiter.exception()
            else:
                waiter.cancel()
            raise

    async def _run(self, batch: PendingBatch, fetch_fn: FetchFn) -> None:
        outcome: Any = None
        error: Optional[BaseException] = None
        try:
            outcome = await fetch_fn()
        except asyncio.CancelledError as e:
            error = e
            raise
        except Exception as e:
            error = e
        finally:
            if self._pending.get(batch.cache_key) is batch:
                del self._pending[batch.cache_key]
            self._fan_out(batch, outcome, error)

    @staticmethod
    def _fan_out(batch: PendingBatch, outcome: Any, error: Optional[BaseException]) -> None:
        for waiter in batch.enrolled_callers:
            if waiter.done():
                continue
            if isinstance(error, asyncio.CancelledError):
                waiter.cancel()
            elif error is not None:
                waiter.set_exception(error)
            else:
                waiter.set_result(outcome)
        logger.debug(
            "coalescer_settled",
            key=batch.cache_key,
            callers=len(batch.enrolled_callers),
            failed=error is not None,
        )

    async def close(self) -> None:
        """Cancel every in-flight fetch; waiting callers are cancelled too."""
        batches = list(self._pending.values())
        tasks = [b.task for b in batches if b.task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        # A task cancelled before its first step never runs its own cleanup.
        for batch in batches:
            if self._pending.get(batch.cache_key) is batch:
                del self._pending[batch.cache_key]
            self._fan_out(batch, None, asyncio.CancelledError())
