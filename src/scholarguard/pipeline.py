"""
Ingestion pipeline: turns one raw candidate into a persisted record or a rejection.

The pipeline is the only writer of new records. Per candidate it cleans the
text fields, checks the required fields, deduplicates against active records,
validates the link, scores the result and persists the record only when it is
acceptable.
Submissions sharing a deduplication key are serialised, so the same
scholarship arriving twice in one run produces exactly one active record.
"""

from __future__ import annotations

import asyncio
import sqlite3
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import structlog

from scholarguard.dedup.keys import dedup_key
from scholarguard.exceptions import DuplicateRecordError
from scholarguard.monitoring.audit import AuditLogger
from scholarguard.observability.metrics import increment, observe
from scholarguard.protocols import (
    Accepted,
    IngestionOutcome,
    LinkValidatorProtocol,
    Rejected,
    RejectionReason,
    Scholarship,
    ScholarshipCandidate,
    ScholarshipStore,
    utcnow,
)
from scholarguard.quality.scorer import QualityScorer
from scholarguard.recovery.rejected import RejectedCandidateQueue

logger = structlog.get_logger(__name__)


class IngestionPipeline:
    """
    Validates, scores and persists scholarship candidates.

    Args:
        store: Record store new scholarships are saved to.
        validator: Link validator run on every non-duplicate candidate.
        scorer: Quality scorer bound to the acceptance threshold.
        refresh_duplicates: Refresh ``last_validated`` of the existing active
            record when a duplicate arrives.
        audit: Optional audit trail for every decision.
        rejected_queue: Optional queue rejected candidates are kept in.
    """

    def __init__(
        self,
        store: ScholarshipStore,
        validator: LinkValidatorProtocol,
        scorer: Optional[QualityScorer] = None,
        *,
        refresh_duplicates: bool = True,
        audit: Optional[AuditLogger] = None,
        rejected_queue: Optional[RejectedCandidateQueue] = None,
    ):
        self.store = store
        self.validator = validator
        self.scorer = scorer or QualityScorer()
        self.refresh_duplicates = refresh_duplicates
        self.audit = audit
        self.rejected_queue = rejected_queue

        self._key_locks: Dict[str, asyncio.Lock] = {}
        self._key_waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def _key_lock(self, key: str) -> AsyncIterator[None]:
        """Serialise work on one deduplication key; the lock is dropped once unused."""
        lock = self._key_locks.setdefault(key, asyncio.Lock())
        self._key_waiters[key] = self._key_waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._key_waiters[key] -= 1
            if self._key_waiters[key] == 0:
                del self._key_waiters[key]
                del self._key_locks[key]

    async def process(self, candidate: ScholarshipCandidate, *, run_id: Optional[str] = None) -> IngestionOutcome:
        """Accept or reject one candidate. Only storage failures propagate."""
        candidate = candidate.cleaned()
        missing = candidate.missing_fields()
        if missing:
            outcome: IngestionOutcome = Rejected(RejectionReason.MISSING_FIELDS, detail=f"missing {', '.join(missing)}")
        else:
            key = dedup_key(candidate.title, candidate.provider)
            async with self._key_lock(key):
                outcome = await self._process_keyed(candidate, key)

        await self._record(candidate, outcome, run_id)
        return outcome

    async def _process_keyed(self, candidate: ScholarshipCandidate, key: str) -> IngestionOutcome:
        existing = await self.store.find({"dedup_key": key, "is_active": True})
        if existing:
            record = existing[0]
            if self.refresh_duplicates:
                await self.store.update(record.id, {"last_validated": utcnow()})
            return Rejected(RejectionReason.DUPLICATE, detail=f"active record {record.id}")

        try:
            result = await self.validator.validate(candidate)
        except Exception as e:
            logger.warning(
                "Validator raised, rejecting candidate",
                title=candidate.title,
                link=candidate.application_link,
                error=str(e),
            )
            return Rejected(RejectionReason.LOW_QUALITY, score=0, detail=f"validator error: {type(e).__name__}: {e}")

        value = self.scorer.score(result)
        observe("quality_score", value)
        if not self.scorer.is_acceptable(result, value):
            return Rejected(RejectionReason.LOW_QUALITY, score=value, detail=result.summary())

        record = Scholarship.from_candidate(
            candidate,
            dedup_key=key,
            quality_score=value,
            validation_summary=result.summary(),
        )
        try:
            saved = await self.store.save(record)
        except DuplicateRecordError as e:
            # Another writer persisted the same scholarship first
            return Rejected(RejectionReason.DUPLICATE, detail=str(e))
        return Accepted(saved)

    async def _record(self, candidate: ScholarshipCandidate, outcome: IngestionOutcome, run_id: Optional[str]) -> None:
        if isinstance(outcome, Accepted):
            increment("candidates_total", labels={"outcome": "accepted"})
            logger.info(
                "Candidate accepted",
                title=outcome.scholarship.title,
                source=candidate.source_name,
                score=outcome.scholarship.quality_score,
            )
        else:
            increment("candidates_total", labels={"outcome": outcome.reason.value})
            logger.info("Candidate rejected", title=candidate.title, source=candidate.source_name, outcome=str(outcome))

        try:
            if self.audit is not None:
                if isinstance(outcome, Accepted):
                    await self.audit.candidate_accepted(outcome.scholarship, run_id)
                else:
                    await self.audit.candidate_rejected(candidate, outcome, run_id)
            if self.rejected_queue is not None and isinstance(outcome, Rejected):
                await self.rejected_queue.add(candidate, outcome, run_id)
        except (OSError, sqlite3.Error) as e:
            logger.warning("Failed to record ingestion outcome", title=candidate.title, error=str(e))
