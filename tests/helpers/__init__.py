"""Shared test helpers."""

from .fakes import FakeAdapter, FakeClock, FakeValidator, failing_result, make_candidate, passing_result
from .metric_delta import counter_value, get_histogram_count, histogram_observes, metric_delta

__all__ = [
    "FakeAdapter",
    "FakeClock",
    "FakeValidator",
    "counter_value",
    "failing_result",
    "get_histogram_count",
    "histogram_observes",
    "make_candidate",
    "metric_delta",
    "passing_result",
]
