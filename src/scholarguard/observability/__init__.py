"""Logging and metrics."""

from __future__ import annotations

from .logging import configure_logging
from .metrics import METRICS, gauge, increment, observe, start_metrics_server

__all__ = ["METRICS", "configure_logging", "gauge", "increment", "observe", "start_metrics_server"]
