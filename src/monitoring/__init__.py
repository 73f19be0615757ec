"""
Monitoring for the pNode crawler.

This package provides:
- Crawler metrics (counters, gauges, histograms) with Prometheus export
- Structured logging with console and JSON output

Usage:
    from monitoring import metrics, get_logger, LoggingContext

    metrics.increment("sync_cycles_total", labels={"result": "success"})

    logger = get_logger(__name__)
    with LoggingContext(cycle_id="c-3f2a9b"):
        logger.info("Probing peers")
"""

from monitoring.logging import LoggingContext, configure_logging, get_logger
from monitoring.metrics import MetricsCollector, metrics

__all__ = [
    "MetricsCollector",
    "metrics",
    "get_logger",
    "configure_logging",
    "LoggingContext",
]
