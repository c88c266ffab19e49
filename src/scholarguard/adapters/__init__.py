"""Source adapter discovery."""

from __future__ import annotations

from .registry import ENTRY_POINT_GROUP, AdapterRegistry

__all__ = ["ENTRY_POINT_GROUP", "AdapterRegistry"]
