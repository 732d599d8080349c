"""Tests for the job scheduler."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from content_engine.config.quota_profiles import HOUR
from content_engine.errors import UnknownJobError
from content_engine.models import ContentType, Priority
from content_engine.scheduler import (
    JobScheduler,
    JobStatus,
    RunTrigger,
    default_job_table,
    interval_for,
)


@pytest.fixture
def scheduler(clock, metrics):
    return JobScheduler(clock=clock, metrics=metrics, history_size=3)


def blocking_handler():
    """Handler that runs until released, counting entries."""
    release = asyncio.Event()
    entered = []

    async def handler():
        entered.append(1)
        await release.wait()
        return "ok"

    return handler, release, entered


@pytest.mark.asyncio
async def test_new_job_first_runs_one_interval_from_now(scheduler, clock):
    job = scheduler.add_job("news", AsyncMock(), 60)

    assert job.next_run_at == clock.now() + 60
    assert await scheduler.run_pending() == []


@pytest.mark.asyncio
async def test_due_job_runs_and_reschedules_from_finish(scheduler, clock):
    handler = AsyncMock(return_value={"items": 3})
    job = scheduler.add_job("news", handler, 60)
    clock.advance(60)

    started = await scheduler.run_pending(wait=True)

    assert started == ["news"]
    handler.assert_awaited_once()
    assert job.status is JobStatus.COMPLETED
    assert job.next_run_at == clock.now() + 60
    assert job.history[-1].result == {"items": 3}
    assert job.history[-1].trigger is RunTrigger.SCHEDULED


@pytest.mark.asyncio
async def test_manual_run_while_running_is_noop(scheduler):
    """execute_job on a running job returns without re-entering the handler."""
    handler, release, entered = blocking_handler()
    scheduler.add_job("news", handler, 60)

    first = asyncio.create_task(scheduler.execute_job("news"))
    await asyncio.sleep(0)
    assert scheduler.get_job("news").is_running

    assert await scheduler.execute_job("news") is None
    assert len(entered) == 1

    release.set()
    run = await first
    assert run.succeeded
    assert run.trigger is RunTrigger.MANUAL


@pytest.mark.asyncio
async def test_manual_run_keeps_schedule(scheduler, clock):
    job = scheduler.add_job("news", AsyncMock(), 60)
    next_run = job.next_run_at
    clock.advance(30)

    await scheduler.execute_job("news")

    assert job.next_run_at == next_run
    assert job.run_count == 1


@pytest.mark.asyncio
async def test_running_job_tick_is_skipped(scheduler, clock):
    handler, release, entered = blocking_handler()
    job = scheduler.add_job("news", handler, 60)

    manual = asyncio.create_task(scheduler.execute_job("news"))
    await asyncio.sleep(0)
    clock.advance(60)

    assert await scheduler.run_pending() == []
    assert job.next_run_at == clock.now() + 60
    assert len(entered) == 1

    release.set()
    await manual


@pytest.mark.asyncio
async def test_scheduled_run_in_flight_has_no_next_tick(scheduler, clock):
    handler, release, _ = blocking_handler()
    job = scheduler.add_job("news", handler, 60)
    clock.advance(60)

    await scheduler.run_pending()
    await asyncio.sleep(0)
    assert job.is_running
    assert job.next_run_at is None

    clock.advance(5)
    release.set()
    await scheduler.stop()
    assert job.next_run_at == clock.now() + 60


@pytest.mark.asyncio
async def test_failed_job_recorded(scheduler, clock, metrics):
    job = scheduler.add_job("news", AsyncMock(side_effect=RuntimeError("quota gone")), 60)
    clock.advance(60)

    await scheduler.run_pending(wait=True)

    assert job.status is JobStatus.FAILED
    assert job.last_error == "quota gone"
    assert job.failure_count == 1
    assert not job.is_running
    assert job.next_run_at == clock.now() + 60
    assert (
        metrics.registry.get_sample_value(
            "content_engine_job_runs_total", {"job": "news", "status": "failure"}
        )
        == 1.0
    )


@pytest.mark.asyncio
async def test_history_is_bounded(scheduler):
    scheduler.add_job("news", AsyncMock(), 60)
    for _ in range(5):
        await scheduler.execute_job("news")

    assert len(scheduler.get_job("news").history) == 3


def test_add_job_upserts(scheduler, clock):
    first = scheduler.add_job("news", AsyncMock(), 60, name="News")
    clock.advance(10)
    second = scheduler.add_job("news", AsyncMock(), 120)

    assert first is second
    assert second.interval_seconds == 120
    assert second.next_run_at == clock.now() + 120
    assert second.name == "News"
    assert len(scheduler.jobs()) == 1


def test_remove_and_unknown_job(scheduler):
    scheduler.add_job("news", AsyncMock(), 60)

    assert scheduler.remove_job("news") is True
    assert scheduler.remove_job("news") is False
    with pytest.raises(UnknownJobError):
        scheduler.get_job("news")


def test_add_job_rejects_non_positive_interval(scheduler):
    with pytest.raises(ValueError):
        scheduler.add_job("news", AsyncMock(), 0)


def test_job_status_lists_jobs(scheduler):
    scheduler.add_job("news", AsyncMock(), 60)
    status = scheduler.job_status()

    assert status[0]["id"] == "news"
    assert status[0]["status"] == "scheduled"
    assert status[0]["is_running"] is False


def test_default_job_table_intervals():
    specs = {spec.job_id: spec for spec in default_job_table()}

    assert specs["funding-high-refresh"].interval_seconds == 2 * HOUR
    assert specs["events-low-refresh"].interval_seconds == 24 * HOUR
    assert specs["news-medium-refresh"].bucket.provider == "gnews"
    assert len(specs) == 9
    assert interval_for(ContentType.AI_SUMMARY, Priority.HIGH) == 4 * HOUR


@pytest.mark.asyncio
async def test_run_forever_ticks_until_stopped(clock, metrics):
    scheduler = JobScheduler(clock=clock, metrics=metrics, poll_seconds=0.01)
    handler = AsyncMock()
    scheduler.add_job("news", handler, 60)
    clock.advance(60)

    scheduler.start()
    await asyncio.sleep(0.05)
    await scheduler.stop()

    handler.assert_awaited_once()
    assert not scheduler.running
