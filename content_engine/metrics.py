"""Prometheus metrics for the content engine.

Each engine owns its metrics in its own ``CollectorRegistry`` so several
engines (for example in tests) never collide on metric names.
"""

from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server


class EngineMetrics:
    """Counters, gauges and histograms describing engine behaviour."""

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        """Initialize engine metrics.

        Args:
            registry: Prometheus registry to use for metrics
        """
        self.registry = registry or CollectorRegistry()

        self.cache_hits = Counter(
            "content_engine_cache_hits",
            "Resolves served from a valid cache entry",
            ["tier"],
            registry=self.registry,
        )
        self.cache_misses = Counter(
            "content_engine_cache_misses",
            "Resolves that found no servable cache entry",
            registry=self.registry,
        )
        self.fresh_results = Counter(
            "content_engine_fresh_results",
            "Resolves answered by a live provider fetch",
            registry=self.registry,
        )
        self.degradations = Counter(
            "content_engine_degradations",
            "Resolves answered with stale data",
            ["reason"],
            registry=self.registry,
        )
        self.errors = Counter(
            "content_engine_errors",
            "Resolves that returned no data",
            registry=self.registry,
        )
        self.provider_calls = Counter(
            "content_engine_provider_calls",
            "Provider fetches by outcome",
            ["provider", "outcome"],
            registry=self.registry,
        )
        self.quota_denials = Counter(
            "content_engine_quota_denials",
            "Admission checks refused by the quota tracker",
            ["provider"],
            registry=self.registry,
        )
        self.coalesced_callers = Counter(
            "content_engine_coalesced_callers",
            "Callers that joined an in-flight fetch instead of starting one",
            registry=self.registry,
        )
        self.shared_tier_errors = Counter(
            "content_engine_shared_tier_errors",
            "Failed reads or writes against the shared cache tier",
            ["operation"],
            registry=self.registry,
        )
        self.evictions = Counter(
            "content_engine_cache_evictions",
            "Entries removed by the eviction sweep",
            ["tier"],
            registry=self.registry,
        )
        self.job_runs = Counter(
            "content_engine_job_runs",
            "Scheduler job executions",
            ["job", "status"],
            registry=self.registry,
        )
        self.fetch_latency = Histogram(
            "content_engine_fetch_duration_seconds",
            "Duration of provider fetches",
            ["provider"],
            buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
            registry=self.registry,
        )
        self.quota_used = Gauge(
            "content_engine_quota_used",
            "Calls used in the current window",
            ["provider", "window"],
            registry=self.registry,
        )
        self.local_entries = Gauge(
            "content_engine_local_entries",
            "Entries held by the local tier",
            registry=self.registry,
        )

    def _value(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        return self.registry.get_sample_value(name, labels or {}) or 0.0

    def _sum_by_label(self, name: str) -> float:
        total = 0.0
        for metric in self.registry.collect():
            for sample in metric.samples:
                if sample.name == name:
                    total += sample.value
        return total

    def snapshot(self) -> Dict[str, int]:
        """Hit/miss/degradation counts for dashboards."""
        return {
            "hits": int(self._sum_by_label("content_engine_cache_hits_total")),
            "misses": int(self._value("content_engine_cache_misses_total")),
            "fresh": int(self._value("content_engine_fresh_results_total")),
            "degraded": int(self._sum_by_label("content_engine_degradations_total")),
            "errors": int(self._value("content_engine_errors_total")),
            "coalesced": int(self._value("content_engine_coalesced_callers_total")),
        }


def start_metrics_server(metrics: EngineMetrics, port: int = 8000) -> None:
    """Expose an engine's registry over HTTP on the given port."""
    start_http_server(port, registry=metrics.registry)
