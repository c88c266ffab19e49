"""
Defines and manages Prometheus metrics for ScholarGuard.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional

import structlog
from prometheus_client import REGISTRY as _PROM_REGISTRY
from prometheus_client import Counter as _OrigCounter
from prometheus_client import Gauge as _OrigGauge
from prometheus_client import Histogram as _OrigHistogram
from prometheus_client import start_http_server

if TYPE_CHECKING:
    from scholarguard.config.config import MonitoringConfig

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Duplicate-safe Prometheus metric wrappers
# ---------------------------------------------------------------------------
# Importing this module more than once (test reloads, plugin imports) must not
# raise "Duplicated timeseries" errors, so an existing collector is reused.


def _duplicate_safe_factory(metric_cls):
    """Return a factory that reuses an existing collector if already present."""

    def _factory(name: str, documentation: str, *args, **kwargs):  # type: ignore[override]
        existing = _PROM_REGISTRY._names_to_collectors.get(name)
        if existing is not None:
            return existing  # type: ignore[return-value]

        try:
            return metric_cls(name, documentation, *args, **kwargs)  # type: ignore[call-arg]
        except ValueError:
            # Registration lost the race, fall back to the now-existing collector.
            return _PROM_REGISTRY._names_to_collectors[name]  # type: ignore[return-value]

    return _factory


Counter = _duplicate_safe_factory(_OrigCounter)  # type: ignore[assignment]
Gauge = _duplicate_safe_factory(_OrigGauge)  # type: ignore[assignment]
Histogram = _duplicate_safe_factory(_OrigHistogram)  # type: ignore[assignment]

BREAKER_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


def _create_metrics() -> Dict[str, Any]:
    """Create the collectors used across the application."""
    return {
        "scrape_runs_total": Counter(
            "scholarguard_scrape_runs_total",
            "Total number of orchestrator runs",
            ["outcome"],
        ),
        "source_runs_total": Counter(
            "scholarguard_source_runs_total",
            "Source adapter executions by outcome",
            ["source", "outcome"],
        ),
        "candidates_total": Counter(
            "scholarguard_candidates_total",
            "Candidates processed by the ingestion pipeline",
            ["outcome"],
        ),
        "validation_duration_seconds": Histogram(
            "scholarguard_validation_duration_seconds",
            "Time taken to validate one application link",
            buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 15.0, 30.0],
        ),
        "validation_errors_total": Counter(
            "scholarguard_validation_errors_total",
            "Validation problems by kind",
            ["kind"],
        ),
        "quality_score": Histogram(
            "scholarguard_quality_score",
            "Distribution of candidate quality scores",
            buckets=[0, 10, 20, 30, 40, 50, 60, 70, 80, 90, 100],
        ),
        "breaker_state": Gauge(
            "scholarguard_breaker_state",
            "Circuit breaker state per source (0=closed, 1=half_open, 2=open)",
            ["source"],
        ),
        "http_responses_total": Counter(
            "scholarguard_http_responses_total",
            "HTTP responses by status class",
            ["status_class"],
        ),
        "sweep_records_total": Counter(
            "scholarguard_sweep_records_total",
            "Records visited by health sweeps by outcome",
            ["outcome"],
        ),
        "last_sweep_timestamp": Gauge(
            "scholarguard_last_sweep_timestamp_seconds",
            "Unix time the last health sweep finished",
        ),
    }


METRICS: Dict[str, Any] = _create_metrics()


def increment(name: str, value: float = 1.0, labels: Optional[Dict[str, Any]] = None) -> None:
    """Increment a counter metric."""
    metric = METRICS.get(name)
    if metric is None:
        return
    if labels is not None:
        metric.labels(**labels).inc(value)
    else:
        metric.inc(value)


def gauge(name: str, value: float, labels: Optional[Dict[str, Any]] = None) -> None:
    """Set a gauge metric."""
    metric = METRICS.get(name)
    if metric is None:
        return
    if labels is not None:
        metric.labels(**labels).set(value)
    else:
        metric.set(value)


def observe(name: str, value: float, labels: Optional[Dict[str, Any]] = None) -> None:
    """Observe a value on a histogram metric."""
    metric = METRICS.get(name)
    if metric is None:
        return
    if labels is not None:
        metric.labels(**labels).observe(value)
    else:
        metric.observe(value)


def start_metrics_server(config: MonitoringConfig) -> bool:
    """Start the Prometheus exporter if a port is configured."""
    if config.prometheus_port is None:
        return False
    start_http_server(config.prometheus_port)
    logger.info("Prometheus exporter started", port=config.prometheus_port)
    return True
