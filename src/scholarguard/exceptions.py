"""
Exception hierarchy for ScholarGuard.

Only a handful of these ever escape a run: adapter and validator failures are
recovered where they happen and turned into breaker failures or rejection
reasons. Storage outages and "nothing was callable" are the run-level faults.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from scholarguard.protocols import ScrapeRun


class ScholarGuardError(Exception):
    """Base class for all ScholarGuard errors."""


class ConfigurationError(ScholarGuardError):
    """Raised when configuration cannot be loaded or is inconsistent."""


class AdapterFailure(ScholarGuardError):
    """A source adapter raised, or overran its time budget, while producing candidates."""

    def __init__(self, source: str, cause: BaseException | str):
        self.detail = cause if isinstance(cause, str) else f"{type(cause).__name__}: {cause}"
        super().__init__(f"Adapter '{source}' failed: {self.detail}")
        self.source = source
        self.cause = cause


class FetchError(ScholarGuardError):
    """A page could not be fetched successfully."""

    def __init__(self, url: str, kind: str, detail: str = ""):
        super().__init__(f"{kind}: {detail} ({url})" if detail else f"{kind} ({url})")
        self.url = url
        self.kind = kind
        self.detail = detail


class NoCallableSourcesError(ScholarGuardError):
    """Raised when an orchestrator run had no source it was allowed to call."""

    def __init__(self, message: str, run: Optional["ScrapeRun"] = None):
        super().__init__(message)
        self.run = run


class StorageError(ScholarGuardError):
    """The persisted store is unavailable or rejected an operation."""


class DuplicateRecordError(StorageError):
    """An active record with the same deduplication key already exists."""

    def __init__(self, dedup_key: str):
        super().__init__(f"Active record already exists for key {dedup_key}")
        self.dedup_key = dedup_key


class RecordNotFoundError(StorageError):
    """No record exists with the requested id."""

    def __init__(self, record_id: str):
        super().__init__(f"Record not found: {record_id}")
        self.record_id = record_id
