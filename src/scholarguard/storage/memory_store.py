"""
In-process record store.

Used in tests and for dry runs. Every mutation happens under one lock, and
callers always receive copies, so a half-applied update is never observable.
"""

from __future__ import annotations

import asyncio
import dataclasses
from typing import Any, Dict, List, Mapping, Optional

import structlog

from scholarguard.exceptions import DuplicateRecordError, RecordNotFoundError
from scholarguard.protocols import Scholarship

from .records import apply_patch, coerce_filter, coerce_patch, matches

logger = structlog.get_logger(__name__)


class InMemoryScholarshipStore:
    """Dictionary-backed ``ScholarshipStore``."""

    def __init__(self) -> None:
        self._records: Dict[str, Scholarship] = {}
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None

    def _active_key_taken(self, dedup_key: str, exclude_id: Optional[str] = None) -> bool:
        return any(
            r.is_active and r.dedup_key == dedup_key and r.id != exclude_id for r in self._records.values()
        )

    async def find(self, filter: Optional[Mapping[str, Any]] = None) -> List[Scholarship]:
        criteria = coerce_filter(filter)
        async with self._lock:
            return [dataclasses.replace(r) for r in self._records.values() if matches(r, criteria)]

    async def get(self, record_id: str) -> Scholarship:
        async with self._lock:
            record = self._records.get(record_id)
            if record is None:
                raise RecordNotFoundError(record_id)
            return dataclasses.replace(record)

    async def save(self, record: Scholarship) -> Scholarship:
        async with self._lock:
            if record.id in self._records:
                raise ValueError(f"Record id already exists: {record.id}")
            if record.is_active and self._active_key_taken(record.dedup_key):
                raise DuplicateRecordError(record.dedup_key)
            self._records[record.id] = dataclasses.replace(record)
        logger.debug("Record saved", record_id=record.id, title=record.title)
        return dataclasses.replace(record)

    async def update(self, record_id: str, patch: Mapping[str, Any]) -> Scholarship:
        changes = coerce_patch(patch)
        async with self._lock:
            current = self._records.get(record_id)
            if current is None:
                raise RecordNotFoundError(record_id)
            updated = apply_patch(current, changes)
            if updated.is_active and self._active_key_taken(updated.dedup_key, exclude_id=record_id):
                raise DuplicateRecordError(updated.dedup_key)
            self._records[record_id] = updated
            return dataclasses.replace(updated)

    def __len__(self) -> int:
        return len(self._records)
