"""
Deterministic 0-100 quality score for a validated application link.

The score is the sum of the points of every satisfied signal. When the link
itself is not valid the content checks were skipped during validation, so
nothing else can contribute and the score is 0.
"""

from __future__ import annotations

from typing import Dict, Optional

from scholarguard.protocols import ValidationResult

ACCEPTANCE_THRESHOLD = 70

SIGNAL_POINTS: Dict[str, int] = {
    "application_link_valid": 40,
    "leads_to_correct_page": 20,
    "title_matches": 10,
    "application_form_present": 20,
    "contact_info_present": 5,
    "deadline_info_present": 5,
}

MAX_SCORE = sum(SIGNAL_POINTS.values())


def score(result: ValidationResult) -> int:
    """Score a validation result. Pure: same input, same output, always in [0, 100]."""
    if not result.application_link_valid:
        return 0
    total = sum(points for signal, points in SIGNAL_POINTS.items() if getattr(result, signal))
    return max(0, min(MAX_SCORE, total))


def breakdown(result: ValidationResult) -> Dict[str, int]:
    """Points contributed by each signal, for audit output."""
    if not result.application_link_valid:
        return {signal: 0 for signal in SIGNAL_POINTS}
    return {signal: (points if getattr(result, signal) else 0) for signal, points in SIGNAL_POINTS.items()}


def is_acceptable(result: ValidationResult, value: Optional[int] = None, threshold: int = ACCEPTANCE_THRESHOLD) -> bool:
    """A result is acceptable when its link works and its score reaches the threshold."""
    if value is None:
        value = score(result)
    return result.application_link_valid and value >= threshold


class QualityScorer:
    """Scorer bound to a configured acceptance threshold."""

    def __init__(self, threshold: int = ACCEPTANCE_THRESHOLD):
        self.threshold = threshold

    def score(self, result: ValidationResult) -> int:
        return score(result)

    def is_acceptable(self, result: ValidationResult, value: Optional[int] = None) -> bool:
        return is_acceptable(result, value, self.threshold)
