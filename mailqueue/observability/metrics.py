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

from mailqueue.constants import (
    METRIC_API_REQUESTS,
    METRIC_EMAILS_CLAIMED,
    METRIC_EMAILS_ENQUEUED,
    METRIC_EMAILS_PROCESSED,
    METRIC_EMAILS_SWEPT,
    METRIC_LEASE_RECOVERED,
    METRIC_QUEUE_DEPTH,
    METRIC_SEND_DURATION,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the email queue.

    Collects metrics for:
    - Queue depth
    - Enqueued emails and send outcomes
    - Provider call duration
    - Claims and lease recoveries
    - Retention sweeps
    - API requests
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of emails waiting to be claimed",
            registry=self._registry,
        )

        self.emails_enqueued = Counter(
            METRIC_EMAILS_ENQUEUED,
            "Total number of emails put on the queue",
            ["email_type"],
            registry=self._registry,
        )

        # outcome is sent, retry or failed
        self.emails_processed = Counter(
            METRIC_EMAILS_PROCESSED,
            "Total number of send attempts by outcome",
            ["outcome"],
            registry=self._registry,
        )

        self.send_duration = Histogram(
            METRIC_SEND_DURATION,
            "Provider send call duration in seconds",
            ["outcome"],
            buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
            registry=self._registry,
        )

        self.emails_claimed = Counter(
            METRIC_EMAILS_CLAIMED,
            "Total number of emails claimed by workers",
            ["worker_id"],
            registry=self._registry,
        )

        self.leases_recovered = Counter(
            METRIC_LEASE_RECOVERED,
            "Total number of abandoned claims returned to pending",
            registry=self._registry,
        )

        self.emails_swept = Counter(
            METRIC_EMAILS_SWEPT,
            "Total number of terminal emails deleted by retention",
            registry=self._registry,
        )

        self.api_requests = Counter(
            METRIC_API_REQUESTS,
            "Total number of API requests",
            ["method", "endpoint", "status"],
            registry=self._registry,
        )

    def record_enqueued(self, email_type: str, count: int = 1) -> None:
        """Record emails put on the queue."""
        self.emails_enqueued.labels(email_type=email_type).inc(count)

    def record_processed(self, outcome: str, duration_seconds: float) -> None:
        """Record the outcome of one send attempt."""
        self.emails_processed.labels(outcome=outcome).inc()
        self.send_duration.labels(outcome=outcome).observe(duration_seconds)

    def record_claimed(self, worker_id: str, count: int = 1) -> None:
        """Record claimed entries."""
        self.emails_claimed.labels(worker_id=worker_id).inc(count)

    def record_leases_recovered(self, count: int) -> None:
        """Record recovered leases."""
        self.leases_recovered.inc(count)

    def record_swept(self, count: int) -> None:
        """Record entries removed by retention."""
        self.emails_swept.inc(count)

    def update_queue_depth(self, depth: int) -> None:
        """Update the pending queue depth."""
        self.queue_depth.set(depth)

    def record_api_request(self, method: str, endpoint: str, status: int) -> None:
        """Record an API request."""
        self.api_requests.labels(
            method=method,
            endpoint=endpoint,
            status=str(status),
        ).inc()

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
