"""Engine context object wiring every component together.

There is no module-level singleton: each ``Engine`` owns its tracker, cache,
coalescer, scheduler and metrics registry, so several engines can coexist in
one process (tests build a fresh one per case).
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import structlog

from content_engine.cache import LayeredCacheStore, LocalTier, SQLiteSharedTier
from content_engine.clock import SystemClock
from content_engine.coalescer import RequestCoalescer
from content_engine.config import EngineConfig
from content_engine.errors import RefreshFailed
from content_engine.metrics import EngineMetrics
from content_engine.models import ContentBucket, ContentType, Priority, Provenance, ResolveResult
from content_engine.orchestrator import Orchestrator
from content_engine.providers import FetchFunction, ProviderRegistry
from content_engine.quota import QuotaTracker, SQLiteQuotaTable
from content_engine.scheduler import JobScheduler, ScheduledJob, default_job_table, interval_for, job_id_for
from content_engine.scheduler.defaults import DEFAULT_SOURCES

logger = structlog.get_logger(__name__)

CLEANUP_JOB_ID = "cache-cleanup"


@dataclass
class Engine:
    """Explicit context holding one engine's components."""

    config: EngineConfig
    clock: SystemClock
    metrics: EngineMetrics
    quota: QuotaTracker
    cache: LayeredCacheStore
    coalescer: RequestCoalescer
    providers: ProviderRegistry
    orchestrator: Orchestrator
    scheduler: JobScheduler
    quota_table: Optional[SQLiteQuotaTable] = None

    @classmethod
    def build(
        cls,
        config: Optional[EngineConfig] = None,
        fetchers: Optional[Dict[str, FetchFunction]] = None,
        clock: Optional[SystemClock] = None,
        metrics: Optional[EngineMetrics] = None,
    ) -> "Engine":
        """Create an engine from configuration.

        Args:
            config: Engine configuration, defaults to ``EngineConfig()``
            fetchers: Fetch function per provider name
            clock: Time source, ``SystemClock`` by default
            metrics: Metrics sink, a fresh registry by default
        """
        config = config or EngineConfig()
        clock = clock or SystemClock()
        metrics = metrics or EngineMetrics()

        quota_table = SQLiteQuotaTable(config.quota_db_path or ":memory:")
        quota = QuotaTracker(
            config.quota_limits(),
            clock=clock,
            metrics=metrics,
            store=quota_table,
            enforce_cooldown=config.enforce_cooldown,
        )
        cache = LayeredCacheStore(
            LocalTier(max_size=config.local_max_entries, metrics=metrics),
            SQLiteSharedTier(config.shared_db_path or ":memory:"),
            config=config,
            clock=clock,
            metrics=metrics,
        )
        coalescer = RequestCoalescer(clock=clock, metrics=metrics)
        providers = ProviderRegistry(fetchers)
        orchestrator = Orchestrator(
            quota, cache, coalescer, providers, config=config, clock=clock, metrics=metrics
        )
        scheduler = JobScheduler(
            clock=clock,
            metrics=metrics,
            history_size=config.job_history_size,
            poll_seconds=config.scheduler_poll_seconds,
        )
        logger.info(
            "engine_built",
            environment=config.environment,
            providers=providers.providers,
            shared_db=config.shared_db_path or ":memory:",
        )
        return cls(
            config=config,
            clock=clock,
            metrics=metrics,
            quota=quota,
            cache=cache,
            coalescer=coalescer,
            providers=providers,
            orchestrator=orchestrator,
            scheduler=scheduler,
            quota_table=quota_table,
        )

    def bucket(
        self,
        content_type: ContentType,
        keywords: Iterable[str],
        provider: Optional[str] = None,
        priority: Priority = Priority.MEDIUM,
        count: Optional[int] = None,
    ) -> ContentBucket:
        """Build a bucket, taking the provider from the default sources when omitted."""
        content_type = ContentType(content_type)
        if provider is None:
            provider = DEFAULT_SOURCES[content_type][0]
        return ContentBucket(
            provider=provider,
            content_type=content_type,
            keywords=list(keywords),
            priority=Priority(priority),
            count=count or self.config.default_result_count,
        )

    async def resolve(self, bucket: ContentBucket) -> ResolveResult:
        return await self.orchestrator.resolve(bucket)

    async def batch_fetch(self, buckets: List[ContentBucket]) -> Dict[str, ResolveResult]:
        return await self.orchestrator.batch_fetch(buckets)

    # Jobs

    def _refresh_handler(self, bucket: ContentBucket):
        async def handler() -> Dict[str, Any]:
            result = await self.orchestrator.refresh(bucket)
            if result.provenance is Provenance.ERROR:
                raise RefreshFailed(bucket.cache_key, result.error)
            return result.to_dict()

        return handler

    def schedule_bucket_job(
        self,
        bucket: ContentBucket,
        interval_seconds: Optional[float] = None,
        job_id: Optional[str] = None,
    ) -> ScheduledJob:
        """Register (or update) a recurring refresh of ``bucket``."""
        interval = interval_seconds or interval_for(bucket.content_type, bucket.priority)
        return self.scheduler.add_job(
            job_id or job_id_for(bucket),
            self._refresh_handler(bucket),
            interval,
            bucket=bucket,
            name=f"Refresh {bucket.content_type.value} ({bucket.priority.value})",
        )

    def register_default_jobs(self, priorities: Optional[List[Priority]] = None) -> List[ScheduledJob]:
        """Register the startup job table and the periodic cleanup job."""
        jobs = [
            self.schedule_bucket_job(spec.bucket, spec.interval_seconds, spec.job_id)
            for spec in default_job_table(count=self.config.default_result_count, priorities=priorities)
        ]
        jobs.append(
            self.scheduler.add_job(
                CLEANUP_JOB_ID,
                self.maybe_cleanup,
                self.config.cleanup_interval_seconds,
                name="Cache cleanup",
            )
        )
        return jobs

    # Maintenance

    async def cleanup(self, force: bool = True) -> Dict[str, Any]:
        """Sweep long-expired cache entries, adopt quota usage recorded by
        other instances and roll quota windows forward.

        Args:
            force: Sweep even if ``cleanup_interval_seconds`` has not passed
        """
        swept = await self.cache.sweep() if force else await self.cache.maybe_sweep()
        self.quota.sync_from_store()
        self.quota.roll_all()
        self.metrics.local_entries.set(len(self.cache.local))
        return {"swept": swept, "quotas": self.monitor_quotas()}

    async def maybe_cleanup(self) -> Dict[str, Any]:
        return await self.cleanup(force=False)

    def monitor_quotas(self) -> List[Dict[str, Any]]:
        return [record.to_dict() for record in self.quota.snapshot_all().values()]

    def observability(self) -> Dict[str, Any]:
        """Counters plus every quota record, for dashboards."""
        self.metrics.local_entries.set(len(self.cache.local))
        return {
            "stats": self.metrics.snapshot(),
            "quotas": self.monitor_quotas(),
            "pending": self.coalescer.pending_keys(),
            "local_entries": len(self.cache.local),
        }

    # Lifecycle

    def start(self) -> None:
        """Start the scheduler loop on the running event loop."""
        self.scheduler.start()
        logger.info("engine_started", jobs=len(self.scheduler.jobs()))

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.orchestrator.close()
        await self.coalescer.close()
        await self.providers.close()
        if self.cache.shared is not None:
            self.cache.shared.close()
        if self.quota_table is not None:
            self.quota_table.close()
        logger.info("engine_stopped")
