"""Quality scoring for validated application links."""

from .scorer import ACCEPTANCE_THRESHOLD, SIGNAL_POINTS, QualityScorer, breakdown, is_acceptable, score

__all__ = ["ACCEPTANCE_THRESHOLD", "SIGNAL_POINTS", "QualityScorer", "breakdown", "is_acceptable", "score"]
