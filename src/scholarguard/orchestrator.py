"""
Scrape orchestrator.

Runs every source adapter concurrently, one task per source, gated by that
source's circuit breaker. Candidates stream from each adapter through a
bounded queue into the ingestion pipeline, so a source's candidates are
processed in the order it produced them while sources never wait on each
other. A failing source is recorded against its breaker and never aborts the
run.
"""

from __future__ import annotations

import asyncio
from typing import Iterable, List, Optional

import structlog
from structlog.contextvars import bound_contextvars

from scholarguard.crawler.circuit_breaker import CircuitBreakerManager
from scholarguard.crawler.http_client import HttpClient
from scholarguard.exceptions import AdapterFailure, NoCallableSourcesError, StorageError
from scholarguard.monitoring.audit import AuditLogger
from scholarguard.observability.metrics import increment
from scholarguard.pipeline import IngestionPipeline
from scholarguard.protocols import BreakerState, ScholarshipCandidate, ScrapeRun, SourceAdapter, utcnow

logger = structlog.get_logger(__name__)

_END_OF_SOURCE = object()


class _RunCancelled(Exception):
    """Raised inside the run's task group when the cancel event is set."""


class PoolBoundSourceContext:
    """
    ``SourceContext`` handed to adapters. Fetches are rate limited per domain
    and take a worker-pool slot only while a request is in flight.
    """

    def __init__(self, source_name: str, http_client: HttpClient, pool: asyncio.Semaphore):
        self.source_name = source_name
        self._http_client = http_client
        self._pool = pool

    async def fetch(self, url: str) -> str:
        return await self._http_client.fetch_text(url, slot=self._pool)


def _first_leaf(group: BaseExceptionGroup) -> BaseException:
    exc: BaseException = group
    while isinstance(exc, BaseExceptionGroup):
        exc = exc.exceptions[0]
    return exc


class ScrapeOrchestrator:
    """
    Coordinates one scrape run across all sources.

    Args:
        breakers: Circuit breaker manager shared with the service facade.
        pipeline: Ingestion pipeline candidates are fed into.
        http_client: Client adapters fetch pages through.
        pool: Worker-pool semaphore shared by adapter fetches and validations.
        source_timeout: Time budget of one adapter run. Time spent waiting for
            the pipeline to drain a full queue is not counted.
        queue_size: Candidates buffered per source.
        audit: Optional audit trail.
    """

    def __init__(
        self,
        breakers: CircuitBreakerManager,
        pipeline: IngestionPipeline,
        http_client: HttpClient,
        *,
        pool: Optional[asyncio.Semaphore] = None,
        source_timeout: float = 300.0,
        queue_size: int = 100,
        audit: Optional[AuditLogger] = None,
    ):
        self.breakers = breakers
        self.pipeline = pipeline
        self.http_client = http_client
        self.pool = pool or asyncio.Semaphore(8)
        self.source_timeout = source_timeout
        self.queue_size = queue_size
        self.audit = audit

    async def run_all(
        self,
        sources: Iterable[SourceAdapter],
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ScrapeRun:
        """
        Run every source once and return the run summary.

        Raises:
            NoCallableSourcesError: No source was registered, or every source
                was blocked by its breaker. The partial run is attached.
            StorageError: The record store failed; the run is aborted.
        """
        run = ScrapeRun()
        ordered: List[SourceAdapter] = sorted(sources, key=lambda a: (a.priority, a.name))

        with bound_contextvars(run_id=run.run_id):
            logger.info("Scrape run starting", sources=[a.name for a in ordered])
            if not ordered:
                self._finish(run, "no_sources")
                raise NoCallableSourcesError("No source adapters are registered", run)

            storage_error: Optional[BaseException] = None
            try:
                async with asyncio.TaskGroup() as tg:
                    watcher = tg.create_task(self._watch_cancel(cancel_event)) if cancel_event is not None else None
                    async with asyncio.TaskGroup() as sources_tg:
                        for adapter in ordered:
                            sources_tg.create_task(self._run_source(adapter, run), name=f"source:{adapter.name}")
                    if watcher is not None:
                        watcher.cancel()
            except* _RunCancelled:
                run.cancelled = True
                logger.warning("Scrape run cancelled", accepted_so_far=run.candidates_accepted)
            except* StorageError as eg:
                storage_error = _first_leaf(eg)

            if storage_error is not None:
                self._finish(run, "failed")
                logger.error("Scrape run aborted by storage failure", error=str(storage_error))
                raise storage_error

            if run.sources_attempted == 0 and not run.cancelled:
                self._finish(run, "no_sources")
                raise NoCallableSourcesError("Every source is blocked by its circuit breaker", run)

            self._finish(run, "cancelled" if run.cancelled else "completed")
            if self.audit is not None:
                await self.audit.run_completed(run)
            return run

    def _finish(self, run: ScrapeRun, outcome: str) -> None:
        run.finished_at = utcnow()
        increment("scrape_runs_total", labels={"outcome": outcome})
        logger.info(
            "Scrape run finished",
            outcome=outcome,
            attempted=run.sources_attempted,
            succeeded=run.sources_succeeded,
            failed=run.sources_failed,
            blocked=run.sources_blocked,
            produced=run.candidates_produced,
            accepted=run.candidates_accepted,
            rejected=run.candidates_rejected,
            duration=run.duration,
        )

    async def _watch_cancel(self, cancel_event: asyncio.Event) -> None:
        await cancel_event.wait()
        raise _RunCancelled()

    async def _run_source(self, adapter: SourceAdapter, run: ScrapeRun) -> None:
        name = adapter.name
        decision = await self.breakers.before_call(name)
        if not decision.allowed:
            run.sources_blocked += 1
            increment("source_runs_total", labels={"source": name, "outcome": "blocked"})
            logger.info("Source blocked by circuit breaker", source=name, blocked_until=decision.blocked_until)
            return

        run.sources_attempted += 1
        try:
            failure = await self._drive_source(adapter, run)
        except BaseException:
            # cancelled or aborted before the adapter reported back
            await self.breakers.abandon(name)
            raise

        if failure is None:
            await self.breakers.record_success(name)
            run.sources_succeeded += 1
            increment("source_runs_total", labels={"source": name, "outcome": "success"})
            return

        state = await self.breakers.record_failure(name, failure.detail)
        run.sources_failed += 1
        run.source_errors[name] = failure.detail
        increment("source_runs_total", labels={"source": name, "outcome": "failure"})
        logger.warning("Source failed", source=name, error=run.source_errors[name], breaker=state.value)
        if state is BreakerState.OPEN and self.audit is not None:
            snapshot = await self.breakers.get_state(name)
            await self.audit.breaker_opened(name, snapshot["failure_count"], snapshot["last_error"])

    async def _drive_source(self, adapter: SourceAdapter, run: ScrapeRun) -> Optional[AdapterFailure]:
        """Produce and ingest one source's candidates; returns the failure, if any."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        context = PoolBoundSourceContext(adapter.name, self.http_client, self.pool)
        failure: Optional[AdapterFailure] = None

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.source_timeout

        async with asyncio.TaskGroup() as tg:
            tg.create_task(self._consume(queue, run))
            try:
                async with asyncio.timeout_at(deadline) as budget:
                    async for candidate in adapter.produce_candidates(context):
                        if not candidate.source_name:
                            candidate.source_name = adapter.name
                        run.candidates_produced += 1
                        if not queue.full():
                            queue.put_nowait(candidate)
                            continue
                        # the budget stops while the pipeline drains
                        budget.reschedule(None)
                        blocked_since = loop.time()
                        await queue.put(candidate)
                        deadline += loop.time() - blocked_since
                        budget.reschedule(deadline)
            except TimeoutError as e:
                cause = f"Timeout: adapter exceeded {self.source_timeout:g}s" if budget.expired() else e
                failure = AdapterFailure(adapter.name, cause)
            except Exception as e:
                failure = AdapterFailure(adapter.name, e)
            await queue.put(_END_OF_SOURCE)
        return failure

    async def _consume(self, queue: asyncio.Queue, run: ScrapeRun) -> None:
        while True:
            item = await queue.get()
            if item is _END_OF_SOURCE:
                return
            candidate: ScholarshipCandidate = item
            outcome = await self.pipeline.process(candidate, run_id=run.run_id)
            run.record_outcome(outcome)
