"""Recurring job scheduler driven by an explicit loop and an injectable clock."""

import asyncio
from collections import deque
from typing import Dict, List, Optional, Set

import structlog

from content_engine.clock import SystemClock
from content_engine.errors import UnknownJobError
from content_engine.metrics import EngineMetrics
from content_engine.models import ContentBucket
from content_engine.scheduler.jobs import JobHandler, JobRun, JobStatus, RunTrigger, ScheduledJob

logger = structlog.get_logger(__name__)


class JobScheduler:
    """Runs registered jobs on their interval, never overlapping a job with itself.

    ``run_pending`` is one tick of the loop: every due job that is idle is
    started, every due job that is still running is pushed back one
    interval. ``run_forever`` repeats the tick. Tests drive ``run_pending``
    directly after advancing a ``ManualClock``.
    """

    def __init__(
        self,
        clock: Optional[SystemClock] = None,
        metrics: Optional[EngineMetrics] = None,
        history_size: int = 50,
        poll_seconds: float = 1.0,
    ):
        self.clock = clock or SystemClock()
        self.metrics = metrics or EngineMetrics()
        self.history_size = history_size
        self.poll_seconds = poll_seconds
        self._jobs: Dict[str, ScheduledJob] = {}
        self._in_flight: Set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def add_job(
        self,
        job_id: str,
        handler: JobHandler,
        interval_seconds: float,
        bucket: Optional[ContentBucket] = None,
        name: Optional[str] = None,
    ) -> ScheduledJob:
        """Register a job, or update an existing one in place.

        A new job first runs one interval from now. Updating a job keeps its
        history and running state; its next tick moves to one new interval
        from now unless a scheduled run is in flight.
        """
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        now = self.clock.now()
        job = self._jobs.get(job_id)
        if job is None:
            job = ScheduledJob(
                id=job_id,
                handler=handler,
                interval_seconds=interval_seconds,
                bucket=bucket,
                name=name,
                next_run_at=now + interval_seconds,
                history=deque(maxlen=self.history_size),
            )
            self._jobs[job_id] = job
            logger.info("job_scheduled", job_id=job_id, interval=interval_seconds)
        else:
            job.handler = handler
            job.interval_seconds = interval_seconds
            job.bucket = bucket
            job.name = name or job.name
            if job.next_run_at is not None:
                job.next_run_at = now + interval_seconds
            logger.info("job_updated", job_id=job_id, interval=interval_seconds)
        return job

    def remove_job(self, job_id: str) -> bool:
        removed = self._jobs.pop(job_id, None) is not None
        if removed:
            logger.info("job_removed", job_id=job_id)
        return removed

    def get_job(self, job_id: str) -> ScheduledJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise UnknownJobError(job_id)
        return job

    def jobs(self) -> List[ScheduledJob]:
        return list(self._jobs.values())

    def job_status(self) -> List[Dict]:
        return [job.to_dict() for job in self._jobs.values()]

    async def _execute(self, job: ScheduledJob, trigger: RunTrigger) -> Optional[JobRun]:
        if job.is_running:
            logger.info("job_already_running", job_id=job.id, trigger=trigger.value)
            return None

        job.is_running = True
        job.status = JobStatus.RUNNING
        started = self.clock.now()
        job.last_run_at = started
        if trigger is RunTrigger.SCHEDULED:
            job.next_run_at = None
        logger.info("job_started", job_id=job.id, trigger=trigger.value)

        run = JobRun(job_id=job.id, trigger=trigger, started_at=started, finished_at=started, succeeded=False)
        try:
            run.result = await job.handler()
            run.succeeded = True
            job.status = JobStatus.COMPLETED
            job.last_error = None
            logger.info("job_completed", job_id=job.id)
        except Exception as e:
            run.error = str(e)
            job.status = JobStatus.FAILED
            job.last_error = str(e)
            job.failure_count += 1
            logger.error("job_failed", job_id=job.id, error=str(e), error_type=type(e).__name__)
        finally:
            run.finished_at = self.clock.now()
            job.is_running = False
            job.run_count += 1
            if trigger is RunTrigger.SCHEDULED:
                job.next_run_at = run.finished_at + job.interval_seconds
            job.history.append(run)
            self.metrics.job_runs.labels(
                job=job.id, status="success" if run.succeeded else "failure"
            ).inc()
        return run

    async def execute_job(self, job_id: str) -> Optional[JobRun]:
        """Run a job's handler now without moving its schedule.

        Returns:
            The run record, or None if the job was already running

        Raises:
            UnknownJobError: If ``job_id`` is not registered
        """
        return await self._execute(self.get_job(job_id), RunTrigger.MANUAL)

    async def run_pending(self, wait: bool = False) -> List[str]:
        """Start every due job.

        Args:
            wait: Await the started runs before returning

        Returns:
            Ids of the jobs started by this tick
        """
        now = self.clock.now()
        started: List[str] = []
        tasks: List[asyncio.Task] = []
        for job in list(self._jobs.values()):
            if not job.is_due(now):
                continue
            if job.is_running:
                job.next_run_at = now + job.interval_seconds
                logger.info("job_tick_skipped", job_id=job.id, next_run_at=job.next_run_at)
                continue
            task = asyncio.create_task(self._execute(job, RunTrigger.SCHEDULED))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
            tasks.append(task)
            started.append(job.id)
        if wait and tasks:
            await asyncio.gather(*tasks)
        return started

    async def run_forever(self) -> None:
        self._running = True
        logger.info("scheduler_started", jobs=len(self._jobs))
        try:
            while self._running:
                await self.run_pending()
                await asyncio.sleep(self.poll_seconds)
        finally:
            self._running = False

    def start(self) -> asyncio.Task:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self.run_forever())
        return self._loop_task

    async def stop(self) -> None:
        """Stop ticking and wait for runs already in flight."""
        self._running = False
        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None
        if self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)
        logger.info("scheduler_stopped")
