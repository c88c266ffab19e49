"""
Scheduled health monitoring of persisted scholarships.

A sweep re-validates every active record. Healthy records only have their
``last_validated`` refreshed, so repeated sweeps over an unchanged healthy set
are idempotent. Records that no longer qualify are repaired when a repair
strategy finds a working link, and deactivated otherwise: ``broken`` when the
link itself failed, ``quarantined`` when the link answered but the page no
longer looks like the application page. Records are never deleted.
"""

from __future__ import annotations

import asyncio
import json
import time
from pathlib import Path
from typing import Any, Dict, Optional

import aiofiles
import structlog

from scholarguard.monitoring.audit import AuditLogger
from scholarguard.observability.metrics import gauge, increment
from scholarguard.protocols import (
    LinkStatus,
    LinkValidatorProtocol,
    RepairResult,
    RepairStrategy,
    Scholarship,
    ScholarshipStore,
    SweepReport,
    utcnow,
)
from scholarguard.quality.scorer import QualityScorer

logger = structlog.get_logger(__name__)


class HealthMonitor:
    """
    Re-validates active records and repairs or deactivates failing ones.

    ``SweepReport.deactivated`` counts records marked broken and
    ``SweepReport.quarantined`` counts records marked quarantined; both end
    up inactive. With a ``report_file`` the latest report is written after
    every sweep, so other processes can read when the last sweep ran.
    """

    def __init__(
        self,
        store: ScholarshipStore,
        validator: LinkValidatorProtocol,
        scorer: Optional[QualityScorer] = None,
        repair_strategy: Optional[RepairStrategy] = None,
        *,
        concurrency: int = 8,
        repair_timeout: float = 60.0,
        audit: Optional[AuditLogger] = None,
        report_file: Optional[Path] = None,
    ):
        self.store = store
        self.validator = validator
        self.scorer = scorer or QualityScorer()
        self.repair_strategy = repair_strategy
        self.repair_timeout = repair_timeout
        self.audit = audit
        self._limit = asyncio.Semaphore(concurrency)
        self.report_file = report_file
        self.last_report: Optional[SweepReport] = None

    async def sweep(self) -> SweepReport:
        """Check every active record once."""
        report = SweepReport()
        records = await self.store.find({"is_active": True})
        report.total = len(records)
        logger.info("Health sweep starting", records=report.total)

        async with asyncio.TaskGroup() as tg:
            for record in records:
                tg.create_task(self._check_guarded(record, report))

        report.finished_at = utcnow()
        self.last_report = report
        gauge("last_sweep_timestamp", time.time())
        logger.info("Health sweep finished", **{k: v for k, v in report.to_dict().items() if isinstance(v, int)})
        if self.report_file is not None:
            await self._save_report(report)
        if self.audit is not None:
            await self.audit.sweep_completed(report)
        return report

    async def _save_report(self, report: SweepReport) -> None:
        path = self.report_file
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(path, "w", encoding="utf-8") as f:
                await f.write(json.dumps(report.to_dict(), indent=2))
        except OSError as e:
            logger.error("Failed to save sweep report", path=str(path), error=str(e))

    async def load_last_report(self) -> Optional[SweepReport]:
        """Restore ``last_report`` from ``report_file`` unless a sweep already ran here."""
        if self.last_report is not None or self.report_file is None or not self.report_file.exists():
            return self.last_report
        async with aiofiles.open(self.report_file, "r", encoding="utf-8") as f:
            content = await f.read()
        try:
            self.last_report = SweepReport.from_dict(json.loads(content))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Ignoring unreadable sweep report", path=str(self.report_file), error=str(e))
        return self.last_report

    async def _check_guarded(self, record: Scholarship, report: SweepReport) -> None:
        async with self._limit:
            try:
                outcome = await self.check_record(record)
            except Exception as e:
                report.errors += 1
                increment("sweep_records_total", labels={"outcome": "error"})
                logger.error("Health check failed for record", record_id=record.id, error=str(e), exc_info=True)
                return

        report.checked += 1
        if outcome == "healthy":
            report.healthy += 1
        elif outcome == "repaired":
            report.repaired += 1
        elif outcome == LinkStatus.QUARANTINED.value:
            report.quarantined += 1
        else:
            report.deactivated += 1
        increment("sweep_records_total", labels={"outcome": outcome})

    async def check_record(self, record: Scholarship) -> str:
        """Validate one record and apply the resulting patch. Returns the outcome name."""
        result = await self.validator.validate(record.to_candidate())
        value = self.scorer.score(result)
        now = utcnow()

        if self.scorer.is_acceptable(result, value):
            await self.store.update(record.id, {"last_validated": now})
            return "healthy"

        logger.info(
            "Record failed re-validation",
            record_id=record.id,
            link=record.application_link,
            score=value,
            errors=result.errors,
        )
        repair = await self._attempt_repair(record)
        if repair.success and repair.new_url:
            patch: Dict[str, Any] = {
                "application_link": repair.new_url,
                "last_validated": now,
                "link_status": LinkStatus.REPAIRED,
                "updated_at": now,
            }
            if repair.quality_score is not None:
                patch["quality_score"] = repair.quality_score
            await self.store.update(record.id, patch)
            logger.info("Record repaired", record_id=record.id, new_url=repair.new_url, method=repair.method)
            if self.audit is not None:
                await self.audit.record_repaired(record, repair)
            return "repaired"

        status = LinkStatus.QUARANTINED if result.application_link_valid else LinkStatus.BROKEN
        await self.store.update(
            record.id,
            {
                "is_active": False,
                "link_status": status,
                "last_validated": now,
                "updated_at": now,
                "validation_summary": result.summary(),
            },
        )
        logger.warning("Record deactivated", record_id=record.id, link_status=status.value, repair_error=repair.error)
        if self.audit is not None:
            await self.audit.record_deactivated(record, status, repair.error or result.summary())
        return status.value

    async def _attempt_repair(self, record: Scholarship) -> RepairResult:
        if self.repair_strategy is None:
            return RepairResult(success=False, error="no repair strategy configured")
        try:
            async with asyncio.timeout(self.repair_timeout):
                return await self.repair_strategy.attempt_repair(record)
        except TimeoutError:
            return RepairResult(success=False, error=f"repair exceeded {self.repair_timeout:g}s")
        except Exception as e:
            logger.warning("Repair strategy raised", record_id=record.id, error=str(e))
            return RepairResult(success=False, error=f"{type(e).__name__}: {e}")
