"""Recovery of refused work for later inspection."""

from __future__ import annotations

from .rejected import RejectedCandidate, RejectedCandidateQueue

__all__ = ["RejectedCandidate", "RejectedCandidateQueue"]
