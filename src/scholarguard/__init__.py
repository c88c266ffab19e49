"""
ScholarGuard - validated scholarship ingestion with link health monitoring.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .config import Config
from .container import ScholarGuardContainer
from .pipeline import IngestionPipeline

__all__ = ["__version__", "Config", "IngestionPipeline", "ScholarGuardContainer"]
