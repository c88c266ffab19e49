"""
Conversions shared by the record stores.

Stores accept filters and patches keyed by ``Scholarship`` field names. Values
may be given either in their Python form (``LinkStatus``, ``datetime``) or in
their persisted form (``"broken"``, ISO-8601 text).
"""

from __future__ import annotations

import dataclasses
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from scholarguard.protocols import LinkStatus, Scholarship

FIELD_NAMES = frozenset(Scholarship.field_names())
DATETIME_FIELDS = frozenset({"last_validated", "created_at", "updated_at"})
IMMUTABLE_FIELDS = frozenset({"id", "created_at"})


def _check_fields(keys, allowed=FIELD_NAMES) -> None:
    unknown = sorted(set(keys) - allowed)
    if unknown:
        raise ValueError(f"Unknown scholarship field(s): {', '.join(unknown)}")


def coerce_value(name: str, value: Any) -> Any:
    """Bring a filter or patch value into its Python form."""
    if value is None:
        return None
    if name == "link_status" and not isinstance(value, LinkStatus):
        return LinkStatus(value)
    if name in DATETIME_FIELDS and isinstance(value, str):
        return datetime.fromisoformat(value)
    if name == "is_active":
        return bool(value)
    return value


def coerce_filter(filter: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    if not filter:
        return {}
    _check_fields(filter.keys())
    return {name: coerce_value(name, value) for name, value in filter.items()}


def coerce_patch(patch: Mapping[str, Any]) -> Dict[str, Any]:
    _check_fields(patch.keys(), FIELD_NAMES - IMMUTABLE_FIELDS)
    return {name: coerce_value(name, value) for name, value in patch.items()}


def matches(record: Scholarship, filter: Mapping[str, Any]) -> bool:
    return all(getattr(record, name) == value for name, value in filter.items())


def apply_patch(record: Scholarship, patch: Mapping[str, Any]) -> Scholarship:
    """Copy of ``record`` with ``patch`` applied. ``updated_at`` is only changed when patched."""
    return dataclasses.replace(record, **patch)


def to_row(record: Scholarship) -> Dict[str, Any]:
    """Persisted column values of a record."""
    row = {name: getattr(record, name) for name in Scholarship.field_names()}
    return {name: to_column(name, value) for name, value in row.items()}


def to_column(name: str, value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, LinkStatus):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if name == "is_active":
        return 1 if value else 0
    return value


def from_row(row: Mapping[str, Any]) -> Scholarship:
    values = {name: row[name] for name in Scholarship.field_names()}
    values["is_active"] = bool(values["is_active"])
    values["link_status"] = LinkStatus(values["link_status"])
    for name in DATETIME_FIELDS:
        if values[name] is not None:
            values[name] = datetime.fromisoformat(values[name])
    return Scholarship(**values)
