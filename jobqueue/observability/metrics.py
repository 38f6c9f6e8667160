"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from jobqueue.constants import (
    METRIC_JOBS_CLAIMED,
    METRIC_JOBS_FINISHED,
    METRIC_JOBS_PROMOTED,
    METRIC_JOBS_SAVED,
    METRIC_METHOD_CALLS,
    METRIC_METHOD_LATENCY,
    METRIC_POOL_ACTIVE_TASKS,
    METRIC_RUNS_EXPIRED,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job queue.

    Collects metrics for:
    - Operation calls and their latency
    - Jobs saved, claimed, promoted and finished
    - Runs expired by the sweeper
    - Active worker pool tasks
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.method_calls = Counter(
            METRIC_METHOD_CALLS,
            "Total number of job server operations invoked",
            ["method", "outcome"],
            registry=self._registry,
        )

        self.method_latency = Histogram(
            METRIC_METHOD_LATENCY,
            "Job server operation latency in seconds",
            ["method"],
            buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
            registry=self._registry,
        )

        self.jobs_saved = Counter(
            METRIC_JOBS_SAVED,
            "Total number of jobs saved",
            ["type"],
            registry=self._registry,
        )

        self.jobs_claimed = Counter(
            METRIC_JOBS_CLAIMED,
            "Total number of jobs claimed by workers",
            ["type"],
            registry=self._registry,
        )

        self.jobs_finished = Counter(
            METRIC_JOBS_FINISHED,
            "Total number of job runs that ended, by resulting status",
            ["status"],
            registry=self._registry,
        )

        self.jobs_promoted = Counter(
            METRIC_JOBS_PROMOTED,
            "Total number of jobs promoted from waiting to ready",
            registry=self._registry,
        )

        self.runs_expired = Counter(
            METRIC_RUNS_EXPIRED,
            "Total number of runs failed for exceeding their work timeout",
            registry=self._registry,
        )

        self.pool_active_tasks = Gauge(
            METRIC_POOL_ACTIVE_TASKS,
            "Tasks currently executing in a worker pool",
            ["queue"],
            registry=self._registry,
        )

    def record_method_call(self, method: str, outcome: str, duration_seconds: float) -> None:
        """Record an operation call."""
        self.method_calls.labels(method=method, outcome=outcome).inc()
        self.method_latency.labels(method=method).observe(duration_seconds)

    def record_job_saved(self, job_type: str) -> None:
        """Record a saved job."""
        self.jobs_saved.labels(type=job_type).inc()

    def record_jobs_claimed(self, job_type: str, count: int = 1) -> None:
        """Record claimed jobs."""
        self.jobs_claimed.labels(type=job_type).inc(count)

    def record_job_finished(self, status: str, count: int = 1) -> None:
        """Record runs ending in the given status."""
        self.jobs_finished.labels(status=status).inc(count)

    def record_jobs_promoted(self, count: int) -> None:
        """Record promoted jobs."""
        self.jobs_promoted.inc(count)

    def record_runs_expired(self, count: int) -> None:
        """Record runs expired by the sweeper."""
        self.runs_expired.inc(count)

    def set_pool_active_tasks(self, queue: str, count: int) -> None:
        """Update the active task count of a worker pool."""
        self.pool_active_tasks.labels(queue=queue).set(count)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
