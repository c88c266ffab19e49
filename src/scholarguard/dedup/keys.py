"""
Deduplication keys for scholarship records.

Two candidates describe the same scholarship when their normalised title and
provider agree. Normalisation applies NFKC, case-folds, strips punctuation and
collapses whitespace, so cosmetic differences between sources do not produce
separate records.
"""

from __future__ import annotations

import hashlib
import re
import unicodedata

_PUNCTUATION = re.compile(r"[^\w\s]", re.UNICODE)
_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str | None) -> str:
    """Canonical form of a free-text field used for matching."""
    if not text:
        return ""
    text = unicodedata.normalize("NFKC", text).casefold()
    text = _PUNCTUATION.sub(" ", text).replace("_", " ")
    return _WHITESPACE.sub(" ", text).strip()


def dedup_key(title: str, provider: str | None) -> str:
    """SHA-256 hex digest of ``normalize(title) | normalize(provider)``."""
    material = f"{normalize_text(title)}|{normalize_text(provider)}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()
