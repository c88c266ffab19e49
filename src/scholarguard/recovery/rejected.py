"""
Queue of rejected candidates kept for later inspection.

Rejected candidates are never shown to end users, but operators need to see
why a source keeps producing rejects. Every rejection is stored with its
reason, score and detail.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

import aiosqlite
import structlog

from scholarguard.protocols import Rejected, RejectionReason, ScholarshipCandidate, utcnow

logger = structlog.get_logger(__name__)


@dataclass
class RejectedCandidate:
    """A candidate the ingestion pipeline refused."""

    entry_id: UUID
    candidate: ScholarshipCandidate
    reason: RejectionReason
    score: Optional[int] = None
    detail: str = ""
    run_id: Optional[str] = None
    rejected_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": str(self.entry_id),
            "candidate": asdict(self.candidate),
            "reason": self.reason.value,
            "score": self.score,
            "detail": self.detail,
            "run_id": self.run_id,
            "rejected_at": self.rejected_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> RejectedCandidate:
        return cls(
            entry_id=UUID(data["entry_id"]),
            candidate=ScholarshipCandidate(**data["candidate"]),
            reason=RejectionReason(data["reason"]),
            score=data.get("score"),
            detail=data.get("detail", ""),
            run_id=data.get("run_id"),
            rejected_at=datetime.fromisoformat(data["rejected_at"]),
        )


class RejectedCandidateQueue:
    """
    Persistent store of rejected candidates.

    Args:
        db_path: SQLite file to keep entries in, or None for an in-memory
            database that lives as long as the queue.
    """

    def __init__(self, db_path: Optional[Path] = Path("./data/rejected.db")):
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None

    async def initialize(self) -> None:
        """Open the database and create the table."""
        if self._db is not None:
            return
        if self.db_path is None:
            self._db = await aiosqlite.connect(":memory:")
        else:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._db = await aiosqlite.connect(self.db_path)

        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS rejected_candidates (
                entry_id TEXT PRIMARY KEY,
                source_name TEXT NOT NULL,
                title TEXT NOT NULL,
                application_link TEXT NOT NULL,
                reason TEXT NOT NULL,
                score INTEGER,
                detail TEXT NOT NULL,
                run_id TEXT,
                rejected_at TEXT NOT NULL,
                payload TEXT NOT NULL
            )
        """
        )
        await self._db.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_rejected_reason
            ON rejected_candidates(reason)
        """
        )
        await self._db.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_rejected_source
            ON rejected_candidates(source_name)
        """
        )
        await self._db.commit()

    async def add(
        self,
        candidate: ScholarshipCandidate,
        rejection: Rejected,
        run_id: Optional[str] = None,
    ) -> UUID:
        """Record a rejected candidate and return its entry id."""
        if self._db is None:
            raise RuntimeError("Rejected candidate queue not initialized. Call initialize() first.")

        entry = RejectedCandidate(
            entry_id=uuid4(),
            candidate=candidate,
            reason=rejection.reason,
            score=rejection.score,
            detail=rejection.detail,
            run_id=run_id,
        )
        await self._db.execute(
            """
            INSERT INTO rejected_candidates (
                entry_id, source_name, title, application_link, reason,
                score, detail, run_id, rejected_at, payload
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
            (
                str(entry.entry_id),
                candidate.source_name or "",
                candidate.title or "",
                candidate.application_link or "",
                entry.reason.value,
                entry.score,
                entry.detail,
                entry.run_id,
                entry.rejected_at.isoformat(),
                json.dumps(entry.to_dict()),
            ),
        )
        await self._db.commit()
        return entry.entry_id

    async def get_rejected(
        self,
        reason: Optional[RejectionReason] = None,
        source_name: Optional[str] = None,
        limit: int = 100,
    ) -> List[RejectedCandidate]:
        """Most recent rejections, optionally filtered by reason or source."""
        if self._db is None:
            return []

        query = "SELECT payload FROM rejected_candidates WHERE 1=1"
        params: List[Any] = []
        if reason is not None:
            query += " AND reason = ?"
            params.append(reason.value)
        if source_name is not None:
            query += " AND source_name = ?"
            params.append(source_name)
        query += " ORDER BY rejected_at DESC LIMIT ?"
        params.append(limit)

        async with self._db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [RejectedCandidate.from_dict(json.loads(row[0])) for row in rows]

    async def get_statistics(self) -> Dict[str, Any]:
        """Counts of rejections in total, by reason and by source."""
        if self._db is None:
            return {"total": 0, "by_reason": {}, "by_source": {}}

        async with self._db.execute("SELECT COUNT(*) FROM rejected_candidates") as cursor:
            row = await cursor.fetchone()
            total = row[0] if row else 0
        async with self._db.execute(
            "SELECT reason, COUNT(*) FROM rejected_candidates GROUP BY reason ORDER BY reason"
        ) as cursor:
            by_reason = {reason: count for reason, count in await cursor.fetchall()}
        async with self._db.execute(
            "SELECT source_name, COUNT(*) FROM rejected_candidates GROUP BY source_name ORDER BY source_name"
        ) as cursor:
            by_source = {source: count for source, count in await cursor.fetchall()}

        return {"total": total, "by_reason": by_reason, "by_source": by_source}

    async def purge_older_than(self, days: int) -> int:
        """Delete entries older than ``days``; returns how many were removed."""
        if self._db is None:
            return 0
        cutoff = (utcnow() - timedelta(days=days)).isoformat()
        cursor = await self._db.execute("DELETE FROM rejected_candidates WHERE rejected_at < ?", (cutoff,))
        await self._db.commit()
        removed = cursor.rowcount
        if removed:
            logger.info("Purged old rejected candidates", removed=removed, days=days)
        return removed

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None
