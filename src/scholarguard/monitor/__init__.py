"""Health monitoring and link repair."""

from __future__ import annotations

from .health import HealthMonitor
from .repair import ChainedRepair, SourceUrlRepair, UrlVariationRepair, build_repair_strategy, url_variations

__all__ = [
    "ChainedRepair",
    "HealthMonitor",
    "SourceUrlRepair",
    "UrlVariationRepair",
    "build_repair_strategy",
    "url_variations",
]
