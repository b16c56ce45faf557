"""
Prometheus metrics collection.
"""

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

from delayed_jobs.constants import (
    METRIC_CLAIMS,
    METRIC_DISPATCH_ERRORS,
    METRIC_EXECUTION_DURATION,
    METRIC_EXECUTIONS,
    METRIC_IN_FLIGHT,
    METRIC_JOBS_ENQUEUED,
    METRIC_STALE_RECLAIMED,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the delayed job queue.

    Collects metrics for:
    - Enqueued jobs
    - Claim wins and contention misses
    - Execution outcomes and duration
    - Stale lock reclaims
    - Dispatch loop errors and pool occupancy
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            ["queue"],
            registry=self._registry,
        )

        self.claims = Counter(
            METRIC_CLAIMS,
            "Claim attempts by outcome",
            ["outcome"],
            registry=self._registry,
        )

        self.executions = Counter(
            METRIC_EXECUTIONS,
            "Job executions by outcome",
            ["queue", "outcome"],
            registry=self._registry,
        )

        self.execution_duration = Histogram(
            METRIC_EXECUTION_DURATION,
            "Handler execution duration in seconds",
            ["queue"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
            registry=self._registry,
        )

        self.stale_reclaimed = Counter(
            METRIC_STALE_RECLAIMED,
            "Total number of stale locks released",
            registry=self._registry,
        )

        self.dispatch_errors = Counter(
            METRIC_DISPATCH_ERRORS,
            "Dispatch ticks that raised",
            registry=self._registry,
        )

        self.in_flight = Gauge(
            METRIC_IN_FLIGHT,
            "Jobs currently executing in this process",
            registry=self._registry,
        )

    def record_job_enqueued(self, queue: str) -> None:
        """Record a job enqueue."""
        self.jobs_enqueued.labels(queue=queue).inc()

    def record_claim(self, outcome: str) -> None:
        """Record a claim attempt."""
        self.claims.labels(outcome=outcome).inc()

    def record_execution(
        self,
        queue: str,
        outcome: str,
        duration_seconds: float,
    ) -> None:
        """Record a finished execution."""
        self.executions.labels(queue=queue, outcome=outcome).inc()
        self.execution_duration.labels(queue=queue).observe(duration_seconds)

    def record_stale_reclaimed(self, count: int = 1) -> None:
        self.stale_reclaimed.inc(count)

    def record_dispatch_error(self) -> None:
        self.dispatch_errors.inc()

    def set_in_flight(self, count: int) -> None:
        self.in_flight.set(count)


def setup_metrics(registry: CollectorRegistry | None = None) -> MetricsCollector:
    """
    Set up and return the process-wide metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector(registry)
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics


def start_metrics_server(port: int) -> None:
    """Expose the default registry over HTTP for Prometheus scraping."""
    start_http_server(port)
