"""Observability layer - logging and metrics."""

from docrepo.observability.logging import setup_logging
from docrepo.observability.metrics import MetricsCollector, get_metrics

__all__ = ["setup_logging", "MetricsCollector", "get_metrics"]
