"""Link validation and page content analysis."""

from __future__ import annotations

from .content import HeuristicContentAnalyzer
from .link_validator import LinkValidator

__all__ = ["HeuristicContentAnalyzer", "LinkValidator"]
