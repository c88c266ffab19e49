"""
Tests for the scrape orchestrator: breaker gating, failure isolation,
ordering, time budgets and cancellation.
"""

import asyncio

import pytest
from scholarguard.exceptions import AdapterFailure, NoCallableSourcesError, StorageError
from scholarguard.monitoring.audit import AuditEventType, AuditLogger
from scholarguard.orchestrator import ScrapeOrchestrator
from scholarguard.pipeline import IngestionPipeline
from scholarguard.storage import InMemoryScholarshipStore
from tests.helpers import FakeAdapter, FakeValidator, failing_result, make_candidate

pytestmark = pytest.mark.usefixtures("cleanup_tasks")


class RecordingPipeline(IngestionPipeline):
    """Pipeline that remembers the order candidates reached it."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.seen = []

    async def process(self, candidate, *, run_id=None):
        self.seen.append((candidate.source_name, candidate.title))
        return await super().process(candidate, run_id=run_id)


class BrokenStore(InMemoryScholarshipStore):
    async def find(self, filter=None):
        raise StorageError("database is gone")


@pytest.mark.unit
class TestRunAll:
    @pytest.mark.asyncio
    async def test_all_sources_succeed(self, orchestrator, memory_store):
        adapters = [
            FakeAdapter("alpha", [make_candidate("Alpha Grant"), make_candidate("Alpha Bursary")]),
            FakeAdapter("beta", [make_candidate("Beta Fellowship")]),
        ]

        run = await orchestrator.run_all(adapters)

        assert run.sources_attempted == 2
        assert run.sources_succeeded == 2
        assert run.sources_failed == 0
        assert run.candidates_produced == 3
        assert run.candidates_accepted == 3
        assert run.finished_at is not None
        records = await memory_store.find()
        assert {r.source_name for r in records} == {"alpha", "beta"}

    @pytest.mark.asyncio
    async def test_no_sources_raises(self, orchestrator):
        with pytest.raises(NoCallableSourcesError):
            await orchestrator.run_all([])

    @pytest.mark.asyncio
    async def test_failing_source_does_not_abort_the_run(self, orchestrator, breakers):
        adapters = [
            FakeAdapter("good", [make_candidate("Good Grant")]),
            FakeAdapter("bad", [make_candidate("Partial Grant")], error=ConnectionError("site down")),
        ]

        run = await orchestrator.run_all(adapters)

        assert run.sources_succeeded == 1
        assert run.sources_failed == 1
        assert run.source_errors == {"bad": "ConnectionError: site down"}
        # candidates produced before the failure are still ingested
        assert run.candidates_accepted == 2
        assert (await breakers.get_state("bad"))["failure_count"] == 1
        assert (await breakers.get_state("good"))["failure_count"] == 0

    @pytest.mark.asyncio
    async def test_rejections_are_counted_by_reason(self, breakers, memory_store):
        bad = make_candidate("Dead Link Grant")
        validator = FakeValidator({bad.application_link: failing_result(404)})
        pipeline = IngestionPipeline(memory_store, validator)
        orchestrator = ScrapeOrchestrator(breakers, pipeline, None, source_timeout=5)
        adapter = FakeAdapter(
            "mixed",
            [make_candidate("Good Grant"), make_candidate("Good Grant"), bad, make_candidate(title="")],
        )

        run = await orchestrator.run_all([adapter])

        assert run.candidates_produced == 4
        assert run.candidates_accepted == 1
        assert run.candidates_rejected == 3
        assert run.rejections_by_reason == {"Duplicate": 1, "LowQuality": 1, "MissingFields": 1}

    @pytest.mark.asyncio
    async def test_candidates_of_a_source_keep_their_order(self, breakers, memory_store):
        pipeline = RecordingPipeline(memory_store, FakeValidator())
        orchestrator = ScrapeOrchestrator(breakers, pipeline, None, queue_size=2)
        titles = [f"Grant {i}" for i in range(10)]
        adapters = [
            FakeAdapter("a", [make_candidate(f"A {t}") for t in titles], delay=0.001),
            FakeAdapter("b", [make_candidate(f"B {t}") for t in titles]),
        ]

        await orchestrator.run_all(adapters)

        for source, prefix in (("a", "A"), ("b", "B")):
            seen = [title for name, title in pipeline.seen if name == source]
            assert seen == [f"{prefix} {t}" for t in titles]

    @pytest.mark.asyncio
    async def test_adapter_source_name_is_kept_when_set(self, orchestrator, memory_store):
        adapter = FakeAdapter("aggregator", [make_candidate(source_name="upstream-site")])

        await orchestrator.run_all([adapter])

        assert (await memory_store.find())[0].source_name == "upstream-site"

    @pytest.mark.asyncio
    async def test_same_scholarship_from_two_sources_yields_one_record(self, orchestrator, memory_store):
        adapters = [FakeAdapter("a", [make_candidate()]), FakeAdapter("b", [make_candidate()])]

        run = await orchestrator.run_all(adapters)

        assert run.candidates_accepted == 1
        assert run.rejections_by_reason == {"Duplicate": 1}
        assert len(await memory_store.find({"is_active": True})) == 1


@pytest.mark.unit
class TestBreakerGating:
    @pytest.mark.asyncio
    async def test_source_opens_after_threshold_runs(self, orchestrator, breakers):
        adapter = FakeAdapter("flaky", error=RuntimeError("boom"))
        healthy = FakeAdapter("healthy", [make_candidate()])

        for _ in range(3):
            await orchestrator.run_all([adapter, healthy])
        run = await orchestrator.run_all([adapter, healthy])

        assert adapter.calls == 3
        assert run.sources_blocked == 1
        assert run.sources_attempted == 1
        assert (await breakers.get_state("flaky"))["state"] == "open"

    @pytest.mark.asyncio
    async def test_every_source_blocked_raises_with_partial_run(self, orchestrator, breakers):
        for _ in range(3):
            await breakers.record_failure("only", "boom")

        with pytest.raises(NoCallableSourcesError) as exc_info:
            await orchestrator.run_all([FakeAdapter("only", [make_candidate()])])

        assert exc_info.value.run is not None
        assert exc_info.value.run.sources_blocked == 1

    @pytest.mark.asyncio
    async def test_half_open_trial_success_closes(self, orchestrator, breakers, clock):
        for _ in range(3):
            await breakers.record_failure("recovering", "boom")
        clock.advance(600)

        run = await orchestrator.run_all([FakeAdapter("recovering", [make_candidate()])])

        assert run.sources_succeeded == 1
        assert (await breakers.get_state("recovering"))["state"] == "closed"

    @pytest.mark.asyncio
    async def test_breaker_opening_is_audited(self, breakers, pipeline):
        audit = AuditLogger()
        orchestrator = ScrapeOrchestrator(breakers, pipeline, None, audit=audit)
        adapter = FakeAdapter("flaky", error=RuntimeError("boom"))

        for _ in range(3):
            await orchestrator.run_all([adapter])

        opened = audit.recent(event_type=AuditEventType.BREAKER_OPENED)
        assert [e.resource for e in opened] == ["flaky"]
        assert len(audit.recent(event_type=AuditEventType.RUN_COMPLETED)) == 3


@pytest.mark.unit
class TestTimeBudget:
    @pytest.mark.asyncio
    async def test_hanging_adapter_times_out(self, breakers, pipeline):
        orchestrator = ScrapeOrchestrator(breakers, pipeline, None, source_timeout=0.2)
        adapters = [
            FakeAdapter("stuck", [make_candidate("Stuck Grant")], hang=True),
            FakeAdapter("fine", [make_candidate("Fine Grant")]),
        ]

        run = await orchestrator.run_all(adapters)

        assert run.source_errors["stuck"] == "Timeout: adapter exceeded 0.2s"
        assert run.sources_succeeded == 1
        assert run.candidates_accepted == 2
        assert (await breakers.get_state("stuck"))["last_error"] == "Timeout: adapter exceeded 0.2s"

    @pytest.mark.asyncio
    async def test_slow_pipeline_does_not_fail_the_source(self, breakers, memory_store):
        pipeline = IngestionPipeline(memory_store, FakeValidator(delay=0.05))
        orchestrator = ScrapeOrchestrator(breakers, pipeline, None, source_timeout=0.2, queue_size=1)
        candidates = [make_candidate(f"Grant {i}") for i in range(10)]

        run = await orchestrator.run_all([FakeAdapter("healthy", candidates)])

        assert run.source_errors == {}
        assert run.sources_succeeded == 1
        assert run.candidates_produced == 10
        assert run.candidates_accepted == 10
        assert (await breakers.get_state("healthy"))["failure_count"] == 0

    @pytest.mark.asyncio
    async def test_budget_still_bounds_adapter_time_under_backpressure(self, breakers, memory_store):
        pipeline = IngestionPipeline(memory_store, FakeValidator(delay=0.05))
        orchestrator = ScrapeOrchestrator(breakers, pipeline, None, source_timeout=0.3, queue_size=1)
        candidates = [make_candidate(f"Grant {i}") for i in range(4)]

        run = await orchestrator.run_all([FakeAdapter("stuck", candidates, hang=True)])

        assert run.source_errors["stuck"] == "Timeout: adapter exceeded 0.3s"
        assert run.candidates_accepted == 4

    @pytest.mark.asyncio
    async def test_adapter_raising_timeout_error_is_not_a_budget_timeout(self, orchestrator):
        run = await orchestrator.run_all([FakeAdapter("upstream", error=TimeoutError("upstream api"))])

        assert run.source_errors["upstream"] == "TimeoutError: upstream api"


@pytest.mark.unit
class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_event_stops_run_and_keeps_accepted_records(self, breakers, memory_store):
        pipeline = IngestionPipeline(memory_store, FakeValidator())
        orchestrator = ScrapeOrchestrator(breakers, pipeline, None, source_timeout=30)
        adapter = FakeAdapter("slow", [make_candidate(f"Grant {i}") for i in range(100)], delay=0.01)
        cancel = asyncio.Event()

        async def cancel_soon():
            while not await memory_store.find():
                await asyncio.sleep(0.005)
            cancel.set()

        canceller = asyncio.create_task(cancel_soon())
        run = await orchestrator.run_all([adapter], cancel_event=cancel)
        await canceller

        assert run.cancelled
        assert 0 < run.candidates_accepted < 100
        assert len(await memory_store.find()) == run.candidates_accepted
        # an interrupted run is neither a success nor a failure of the source
        state = await breakers.get_state("slow")
        assert state["failure_count"] == 0

    @pytest.mark.asyncio
    async def test_cancelled_half_open_trial_is_released(self, breakers, pipeline, clock):
        for _ in range(3):
            await breakers.record_failure("flaky", "boom")
        clock.advance(600)
        orchestrator = ScrapeOrchestrator(breakers, pipeline, None, source_timeout=30)
        cancel = asyncio.Event()
        loop = asyncio.get_running_loop()
        loop.call_later(0.05, cancel.set)

        run = await orchestrator.run_all([FakeAdapter("flaky", hang=True)], cancel_event=cancel)

        assert run.cancelled
        assert (await breakers.before_call("flaky")).allowed

    @pytest.mark.asyncio
    async def test_outer_task_cancellation_propagates(self, orchestrator):
        task = asyncio.create_task(orchestrator.run_all([FakeAdapter("stuck", hang=True)]))
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task


@pytest.mark.unit
class TestStorageFailure:
    @pytest.mark.asyncio
    async def test_storage_error_aborts_the_run(self, breakers):
        pipeline = IngestionPipeline(BrokenStore(), FakeValidator())
        orchestrator = ScrapeOrchestrator(breakers, pipeline, None)

        with pytest.raises(StorageError):
            await orchestrator.run_all([FakeAdapter("a", [make_candidate()])])

        # the source itself did not fail
        assert (await breakers.get_state("a"))["failure_count"] == 0

    @pytest.mark.asyncio
    async def test_accepted_candidates_are_reported(self, orchestrator):
        run = await orchestrator.run_all([FakeAdapter("a", [make_candidate()])])

        assert run.to_dict()["candidates_accepted"] == 1
        assert run.duration is not None and run.duration >= 0
        assert isinstance(run.run_id, str)


@pytest.mark.unit
class TestAdapterFailure:
    def test_message_names_the_source_and_cause(self):
        failure = AdapterFailure("site", ConnectionError("refused"))

        assert failure.detail == "ConnectionError: refused"
        assert str(failure) == "Adapter 'site' failed: ConnectionError: refused"

    def test_budget_overrun_detail_is_kept_verbatim(self):
        assert AdapterFailure("site", "Timeout: adapter exceeded 5s").detail == "Timeout: adapter exceeded 5s"
