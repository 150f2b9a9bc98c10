"""
Monitoring for LunarScry.

- Counters, gauges and histograms (Prometheus-compatible export)
- Structured logging with JSON output and credential redaction
- Request timing middleware for the Flask API

Usage:
    from monitoring import metrics, get_logger

    metrics.increment("votes_cast_total", labels={"direction": "approve"})
    logger = get_logger(__name__)
"""

from monitoring.logging import LoggingContext, configure_logging, get_logger
from monitoring.metrics import MetricsCollector, metrics
from monitoring.middleware import setup_request_logging

__all__ = [
    "MetricsCollector",
    "metrics",
    "get_logger",
    "configure_logging",
    "LoggingContext",
    "setup_request_logging",
]
