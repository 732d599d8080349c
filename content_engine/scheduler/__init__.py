"""Job scheduling for recurring content refreshes."""

from content_engine.scheduler.defaults import JOB_INTERVALS, JobSpec, default_job_table, interval_for, job_id_for
from content_engine.scheduler.jobs import JobRun, JobStatus, RunTrigger, ScheduledJob
from content_engine.scheduler.scheduler import JobScheduler

__all__ = [
    "JOB_INTERVALS",
    "JobRun",
    "JobScheduler",
    "JobSpec",
    "JobStatus",
    "RunTrigger",
    "ScheduledJob",
    "default_job_table",
    "interval_for",
    "job_id_for",
]
