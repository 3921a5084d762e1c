"""
Prometheus metrics for the ingestion pipeline.

Defines and exposes metrics for:
- Queue task outcomes and depth
- Per-stage ingestion latency
- Chunks stored and deleted
- Query latency
- Filesystem watcher activity

Metrics are exposed via HTTP endpoint for Prometheus scraping.
"""

import structlog
from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

from docrepo.config.settings import get_settings

logger = structlog.get_logger(__name__)

# Buckets for latency histograms (in seconds)
LATENCY_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)


class MetricsCollector:
    """
    Prometheus metrics collector for the document repository.

    Usage:
        metrics = get_metrics()
        metrics.start_server()

        metrics.record_task("file", "success")
        metrics.stage_latency.labels(stage="embedding").observe(0.4)
    """

    def __init__(self):
        """Initialize Prometheus metrics."""

        # Queue
        self.tasks_processed = Counter(
            "docrepo_tasks_processed_total",
            "Total ingestion tasks processed",
            ["type", "status"],  # status: success, error, cancelled
        )

        self.queue_depth = Gauge(
            "docrepo_queue_depth",
            "Number of tasks pending or in flight",
        )

        # Ingestion
        self.stage_latency = Histogram(
            "docrepo_stage_latency_seconds",
            "Time spent in an ingestion stage",
            ["stage"],  # loading, splitting, embedding, storing
            buckets=LATENCY_BUCKETS,
        )

        self.chunks_stored = Counter(
            "docrepo_chunks_stored_total",
            "Total chunks inserted into vector stores",
        )

        self.vectors_deleted = Counter(
            "docrepo_vectors_deleted_total",
            "Total vector items deleted from vector stores",
        )

        self.child_failures = Counter(
            "docrepo_child_failures_total",
            "Children skipped during folder or sitemap expansion",
            ["error_type"],
        )

        # Retrieval
        self.query_latency = Histogram(
            "docrepo_query_latency_seconds",
            "Time to embed and answer a similarity query",
            buckets=LATENCY_BUCKETS,
        )

        # Monitor
        self.watcher_events = Counter(
            "docrepo_watcher_events_total",
            "Filesystem events dispatched after debouncing",
            ["event"],  # add, change, unlink, unlink_dir
        )

        self.active_watchers = Gauge(
            "docrepo_active_watchers",
            "Number of filesystem watches currently scheduled",
        )

        logger.info("Prometheus metrics initialized")

    def start_server(self, port: int | None = None) -> None:
        """
        Start Prometheus metrics HTTP server.

        Args:
            port: Port to expose metrics on (default from settings)
        """
        settings = get_settings()
        port = port or settings.metrics_port

        start_http_server(port, registry=REGISTRY)
        logger.info("Prometheus metrics server started", port=port)

    # Convenience methods

    def record_task(self, source_type: str, status: str) -> None:
        """Record the outcome of one queue task."""
        self.tasks_processed.labels(type=source_type, status=status).inc()

    def record_stage_latency(self, stage: str, latency: float) -> None:
        """Record time spent in one ingestion stage."""
        self.stage_latency.labels(stage=stage).observe(latency)

    def record_child_failure(self, error: Exception) -> None:
        """Record a child skipped during container expansion."""
        self.child_failures.labels(error_type=type(error).__name__).inc()


# Global metrics instance
_metrics: MetricsCollector | None = None


def get_metrics() -> MetricsCollector:
    """Get global metrics collector instance."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics
