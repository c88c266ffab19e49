"""Record identity for deduplication."""

from __future__ import annotations

from .keys import dedup_key, normalize_text

__all__ = ["dedup_key", "normalize_text"]
