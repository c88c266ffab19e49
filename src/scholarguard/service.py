"""
Operations exposed to the HTTP API layer, the CLI and the scheduler.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from typing import Any, Dict, List, Optional

import structlog

from scholarguard.adapters.registry import AdapterRegistry
from scholarguard.crawler.circuit_breaker import CircuitBreakerManager
from scholarguard.exceptions import NoCallableSourcesError
from scholarguard.monitor.health import HealthMonitor
from scholarguard.monitoring.audit import AuditLogger
from scholarguard.orchestrator import ScrapeOrchestrator
from scholarguard.protocols import LinkStatus, ScholarshipStore, ScrapeRun, SweepReport
from scholarguard.recovery.rejected import RejectedCandidateQueue

logger = structlog.get_logger(__name__)


class ScholarGuardService:
    """Facade over the orchestrator, breakers, store and health monitor."""

    def __init__(
        self,
        *,
        registry: AdapterRegistry,
        orchestrator: ScrapeOrchestrator,
        breakers: CircuitBreakerManager,
        store: ScholarshipStore,
        monitor: HealthMonitor,
        audit: Optional[AuditLogger] = None,
        rejected_queue: Optional[RejectedCandidateQueue] = None,
    ):
        self.registry = registry
        self.orchestrator = orchestrator
        self.breakers = breakers
        self.store = store
        self.monitor = monitor
        self.audit = audit
        self.rejected_queue = rejected_queue
        self.last_run: Optional[ScrapeRun] = None
        self._run_lock = asyncio.Lock()

    async def trigger_run(self, cancel_event: Optional[asyncio.Event] = None) -> ScrapeRun:
        """Run every registered adapter once. Runs triggered concurrently execute one after another."""
        async with self._run_lock:
            try:
                run = await self.orchestrator.run_all(self.registry.adapters(), cancel_event=cancel_event)
            except NoCallableSourcesError as e:
                if e.run is not None:
                    self.last_run = e.run
                raise
            self.last_run = run
            return run

    async def breaker_states(self) -> Dict[str, Dict[str, Any]]:
        """Breaker state of every registered or previously seen source."""
        names: List[str] = sorted(set(self.registry.names()) | set(self.breakers.sources()))
        return {name: await self.breakers.get_state(name) for name in names}

    async def reset_breaker(self, source: str) -> None:
        await self.breakers.reset(source)
        if self.audit is not None:
            await self.audit.breaker_reset(source)

    async def reset_all_breakers(self) -> None:
        await self.breakers.reset_all()
        if self.audit is not None:
            await self.audit.breaker_reset()

    async def run_sweep(self) -> SweepReport:
        return await self.monitor.sweep()

    async def ingestion_stats(self) -> Dict[str, Any]:
        """Totals over the store plus the latest run and sweep."""
        records = await self.store.find()
        active = [r for r in records if r.is_active]
        by_status = Counter(r.link_status.value for r in records)
        average = round(sum(r.quality_score for r in active) / len(active), 2) if active else None

        last_sweep = self.monitor.last_report
        stats: Dict[str, Any] = {
            "total_records": len(records),
            "active_records": len(active),
            "average_quality_score": average,
            "records_by_link_status": {status.value: by_status.get(status.value, 0) for status in LinkStatus},
            "last_sweep_at": last_sweep.finished_at.isoformat() if last_sweep and last_sweep.finished_at else None,
            "last_sweep": last_sweep.to_dict() if last_sweep else None,
            "last_run": self.last_run.to_dict() if self.last_run else None,
        }
        if self.rejected_queue is not None:
            stats["rejections"] = await self.rejected_queue.get_statistics()
        return stats
