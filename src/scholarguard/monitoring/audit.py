"""
Audit trail for ingestion and health decisions.

Every acceptance, rejection, repair and deactivation is recorded as a typed
event. Events go to a dedicated structlog logger, a bounded in-memory buffer
for the service facade, and optionally a JSONL file.
"""

from __future__ import annotations

import asyncio
import json
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional
from uuid import UUID, uuid4

import aiofiles
import structlog

from scholarguard.protocols import (
    LinkStatus,
    Rejected,
    RepairResult,
    Scholarship,
    ScholarshipCandidate,
    ScrapeRun,
    SweepReport,
    utcnow,
)


class AuditEventType(Enum):
    """Types of audit events."""

    CANDIDATE_ACCEPTED = "candidate_accepted"
    CANDIDATE_REJECTED = "candidate_rejected"
    RECORD_REPAIRED = "record_repaired"
    RECORD_DEACTIVATED = "record_deactivated"
    BREAKER_OPENED = "breaker_opened"
    BREAKER_RESET = "breaker_reset"
    RUN_COMPLETED = "run_completed"
    SWEEP_COMPLETED = "sweep_completed"


@dataclass
class AuditEvent:
    """One audited decision."""

    event_type: AuditEventType
    resource: str
    outcome: str
    details: Dict[str, Any] = field(default_factory=dict)
    correlation_id: Optional[str] = None
    event_id: UUID = field(default_factory=uuid4)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "event_id": str(self.event_id),
            "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
            "resource": self.resource,
            "outcome": self.outcome,
            "details": self.details,
            "correlation_id": self.correlation_id,
        }


class AuditLogger:
    """
    Records audit events.

    Args:
        log_path: JSONL file to append events to, or None to keep them in
            memory and in the structured log only.
        buffer_size: Number of recent events retained in memory.
    """

    def __init__(self, log_path: Optional[Path] = None, buffer_size: int = 1000):
        self.log_path = Path(log_path) if log_path is not None else None
        if self.log_path is not None:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self.logger = structlog.get_logger("scholarguard.audit")
        self._events: Deque[AuditEvent] = deque(maxlen=buffer_size)
        self._write_lock = asyncio.Lock()

    async def log(self, event: AuditEvent) -> None:
        self._events.append(event)
        self.logger.info(
            event.event_type.value,
            resource=event.resource,
            outcome=event.outcome,
            correlation_id=event.correlation_id,
            **event.details,
        )
        if self.log_path is None:
            return
        line = json.dumps(event.to_dict(), default=str)
        async with self._write_lock:
            async with aiofiles.open(self.log_path, "a", encoding="utf-8") as f:
                await f.write(line + "\n")

    def recent(self, limit: int = 100, event_type: Optional[AuditEventType] = None) -> List[AuditEvent]:
        """Most recent events, newest last."""
        events = [e for e in self._events if event_type is None or e.event_type is event_type]
        return events[-limit:]

    # ------------------------------------------------------------------
    # Typed helpers
    # ------------------------------------------------------------------

    async def candidate_accepted(self, scholarship: Scholarship, run_id: Optional[str] = None) -> None:
        await self.log(
            AuditEvent(
                event_type=AuditEventType.CANDIDATE_ACCEPTED,
                resource=scholarship.id,
                outcome="accepted",
                details={
                    "title": scholarship.title,
                    "source": scholarship.source_name,
                    "quality_score": scholarship.quality_score,
                    "application_link": scholarship.application_link,
                },
                correlation_id=run_id,
            )
        )

    async def candidate_rejected(
        self, candidate: ScholarshipCandidate, rejection: Rejected, run_id: Optional[str] = None
    ) -> None:
        await self.log(
            AuditEvent(
                event_type=AuditEventType.CANDIDATE_REJECTED,
                resource=candidate.application_link or candidate.title or "<empty>",
                outcome=str(rejection),
                details={
                    "title": candidate.title,
                    "source": candidate.source_name,
                    "reason": rejection.reason.value,
                    "score": rejection.score,
                    "detail": rejection.detail,
                },
                correlation_id=run_id,
            )
        )

    async def record_repaired(self, scholarship: Scholarship, result: RepairResult) -> None:
        await self.log(
            AuditEvent(
                event_type=AuditEventType.RECORD_REPAIRED,
                resource=scholarship.id,
                outcome="repaired",
                details={
                    "old_url": scholarship.application_link,
                    "new_url": result.new_url,
                    "method": result.method,
                    "quality_score": result.quality_score,
                },
            )
        )

    async def record_deactivated(self, scholarship: Scholarship, link_status: LinkStatus, reason: str) -> None:
        await self.log(
            AuditEvent(
                event_type=AuditEventType.RECORD_DEACTIVATED,
                resource=scholarship.id,
                outcome=link_status.value,
                details={
                    "title": scholarship.title,
                    "application_link": scholarship.application_link,
                    "reason": reason,
                },
            )
        )

    async def breaker_opened(self, source: str, failure_count: int, error: Optional[str]) -> None:
        await self.log(
            AuditEvent(
                event_type=AuditEventType.BREAKER_OPENED,
                resource=source,
                outcome="open",
                details={"failure_count": failure_count, "last_error": error},
            )
        )

    async def breaker_reset(self, source: Optional[str] = None) -> None:
        await self.log(
            AuditEvent(event_type=AuditEventType.BREAKER_RESET, resource=source or "*", outcome="closed")
        )

    async def run_completed(self, run: ScrapeRun) -> None:
        await self.log(
            AuditEvent(
                event_type=AuditEventType.RUN_COMPLETED,
                resource="orchestrator",
                outcome="cancelled" if run.cancelled else "completed",
                details={
                    "sources_attempted": run.sources_attempted,
                    "sources_succeeded": run.sources_succeeded,
                    "candidates_produced": run.candidates_produced,
                    "candidates_accepted": run.candidates_accepted,
                },
                correlation_id=run.run_id,
            )
        )

    async def sweep_completed(self, report: SweepReport) -> None:
        await self.log(
            AuditEvent(
                event_type=AuditEventType.SWEEP_COMPLETED,
                resource="health_monitor",
                outcome="completed",
                details={
                    "checked": report.checked,
                    "healthy": report.healthy,
                    "repaired": report.repaired,
                    "deactivated": report.deactivated,
                    "quarantined": report.quarantined,
                    "errors": report.errors,
                },
            )
        )
