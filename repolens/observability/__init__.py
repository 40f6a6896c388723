"""Logging and metrics for Repolens."""

from .logging import LogContext, configure_logging, get_logger
from .metrics import MetricsCollector, get_metrics_collector

__all__ = [
    "LogContext",
    "configure_logging",
    "get_logger",
    "MetricsCollector",
    "get_metrics_collector",
]
