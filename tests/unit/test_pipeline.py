"""
Tests for the ingestion pipeline: required fields, deduplication, scoring and persistence.
"""

import asyncio

import pytest
from scholarguard.dedup import dedup_key
from scholarguard.exceptions import StorageError
from scholarguard.monitoring.audit import AuditEventType, AuditLogger
from scholarguard.observability.metrics import METRICS
from scholarguard.pipeline import IngestionPipeline
from scholarguard.protocols import Accepted, LinkStatus, Rejected, RejectionReason
from scholarguard.quality.scorer import QualityScorer
from scholarguard.recovery import RejectedCandidateQueue
from scholarguard.storage import InMemoryScholarshipStore
from tests.helpers import FakeValidator, failing_result, make_candidate, metric_delta, passing_result


class FailingStore(InMemoryScholarshipStore):
    async def save(self, record):
        raise StorageError("disk full")


@pytest.mark.unit
class TestAcceptance:
    @pytest.mark.asyncio
    async def test_score_95_is_accepted(self, memory_store):
        validator = FakeValidator(default=passing_result(contact_info_present=False))
        pipeline = IngestionPipeline(memory_store, validator)

        outcome = await pipeline.process(make_candidate(source_name="site-a"))

        assert isinstance(outcome, Accepted)
        record = outcome.scholarship
        assert record.quality_score == 95
        assert record.is_active
        assert record.link_status is LinkStatus.VALID
        assert record.last_validated is not None
        assert record.dedup_key == dedup_key("Merit Scholarship 2025", "Example Foundation")
        assert [r.id for r in await memory_store.find()] == [record.id]

    @pytest.mark.asyncio
    async def test_404_is_rejected_with_score_zero(self, memory_store):
        candidate = make_candidate()
        validator = FakeValidator({candidate.application_link: failing_result(404)})
        pipeline = IngestionPipeline(memory_store, validator)

        outcome = await pipeline.process(candidate)

        assert isinstance(outcome, Rejected)
        assert outcome.reason is RejectionReason.LOW_QUALITY
        assert outcome.score == 0
        assert str(outcome) == "LowQuality(0)"
        assert await memory_store.find() == []

    @pytest.mark.asyncio
    async def test_below_threshold_is_rejected(self, memory_store):
        # 40 + 20 + 5 = 65
        result = passing_result(title_matches=False, application_form_present=False, deadline_info_present=False)
        pipeline = IngestionPipeline(memory_store, FakeValidator(default=result))

        outcome = await pipeline.process(make_candidate())

        assert str(outcome) == "LowQuality(65)"
        assert await memory_store.find() == []

    @pytest.mark.asyncio
    async def test_configured_threshold_is_honoured(self, memory_store):
        result = passing_result(title_matches=False, application_form_present=False, deadline_info_present=False)
        pipeline = IngestionPipeline(memory_store, FakeValidator(default=result), QualityScorer(threshold=60))

        assert isinstance(await pipeline.process(make_candidate()), Accepted)

    @pytest.mark.asyncio
    async def test_validator_exception_is_low_quality_zero(self, memory_store):
        candidate = make_candidate()
        validator = FakeValidator({candidate.application_link: RuntimeError("analyzer crashed")})
        pipeline = IngestionPipeline(memory_store, validator)

        outcome = await pipeline.process(candidate)

        assert str(outcome) == "LowQuality(0)"
        assert "analyzer crashed" in outcome.detail

    @pytest.mark.asyncio
    async def test_accepted_metric(self, pipeline):
        with metric_delta(METRICS["candidates_total"], 1, outcome="accepted"):
            await pipeline.process(make_candidate())


@pytest.mark.unit
class TestMissingFields:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides,missing",
        [
            ({"title": ""}, "title"),
            ({"title": "   "}, "title"),
            ({"application_link": ""}, "application_link"),
        ],
    )
    async def test_missing_required_field(self, pipeline, fake_validator, overrides, missing):
        outcome = await pipeline.process(make_candidate(**overrides))

        assert isinstance(outcome, Rejected)
        assert outcome.reason is RejectionReason.MISSING_FIELDS
        assert missing in outcome.detail
        assert fake_validator.calls == []


@pytest.mark.unit
class TestCandidateCleaning:
    @pytest.mark.asyncio
    async def test_text_is_trimmed_and_collapsed(self, pipeline, fake_validator):
        candidate = make_candidate(
            "  Merit   Scholarship\n2025 ",
            description="Support  for\n\tstudents. ",
            application_link=" https://example.org/apply ",
        )

        outcome = await pipeline.process(candidate)

        assert isinstance(outcome, Accepted)
        assert outcome.scholarship.title == "Merit Scholarship 2025"
        assert outcome.scholarship.description == "Support for students."
        assert fake_validator.calls == ["https://example.org/apply"]

    @pytest.mark.asyncio
    async def test_sparse_candidate_gets_defaults(self, pipeline):
        candidate = make_candidate(
            description=None, eligibility=None, amount=None, provider=None, category=None, source_url=None
        )

        outcome = await pipeline.process(candidate)

        assert isinstance(outcome, Accepted)
        record = outcome.scholarship
        assert (record.description, record.eligibility, record.provider, record.source_url) == ("", "", "", "")
        assert record.amount == "Amount varies"
        assert record.category == "Other"

    @pytest.mark.asyncio
    async def test_none_title_is_missing(self, pipeline):
        outcome = await pipeline.process(make_candidate(title=None))

        assert outcome.reason is RejectionReason.MISSING_FIELDS


@pytest.mark.unit
class TestDeduplication:
    @pytest.mark.asyncio
    async def test_second_submission_is_duplicate(self, pipeline, memory_store, fake_validator):
        first = await pipeline.process(make_candidate())
        second = await pipeline.process(make_candidate("merit scholarship, 2025", provider="EXAMPLE FOUNDATION"))

        assert isinstance(first, Accepted)
        assert isinstance(second, Rejected)
        assert second.reason is RejectionReason.DUPLICATE
        assert len(await memory_store.find()) == 1
        assert len(fake_validator.calls) == 1

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_produce_one_record(self, memory_store):
        validator = FakeValidator(delay=0.05)
        pipeline = IngestionPipeline(memory_store, validator)

        outcomes = await asyncio.gather(*(pipeline.process(make_candidate()) for _ in range(5)))

        assert sum(isinstance(o, Accepted) for o in outcomes) == 1
        assert sum(isinstance(o, Rejected) and o.reason is RejectionReason.DUPLICATE for o in outcomes) == 4
        assert len(await memory_store.find({"is_active": True})) == 1
        assert pipeline._key_locks == {}

    @pytest.mark.asyncio
    async def test_different_keys_are_not_serialised(self, memory_store):
        validator = FakeValidator(delay=0.2)
        pipeline = IngestionPipeline(memory_store, validator)

        loop = asyncio.get_running_loop()
        start = loop.time()
        await asyncio.gather(*(pipeline.process(make_candidate(f"Scholarship {i}")) for i in range(5)))

        assert loop.time() - start < 0.8
        assert len(await memory_store.find()) == 5

    @pytest.mark.asyncio
    async def test_duplicate_refreshes_last_validated(self, pipeline, memory_store):
        accepted = await pipeline.process(make_candidate())
        before = accepted.scholarship.last_validated
        await asyncio.sleep(0.01)

        await pipeline.process(make_candidate())

        record = await memory_store.get(accepted.scholarship.id)
        assert record.last_validated > before

    @pytest.mark.asyncio
    async def test_refresh_can_be_disabled(self, memory_store, fake_validator):
        pipeline = IngestionPipeline(memory_store, fake_validator, refresh_duplicates=False)
        accepted = await pipeline.process(make_candidate())

        await pipeline.process(make_candidate())

        record = await memory_store.get(accepted.scholarship.id)
        assert record.last_validated == accepted.scholarship.last_validated

    @pytest.mark.asyncio
    async def test_inactive_record_does_not_block_new_one(self, pipeline, memory_store):
        accepted = await pipeline.process(make_candidate())
        await memory_store.update(accepted.scholarship.id, {"is_active": False, "link_status": LinkStatus.BROKEN})

        outcome = await pipeline.process(make_candidate())

        assert isinstance(outcome, Accepted)
        assert len(await memory_store.find()) == 2
        assert len(await memory_store.find({"is_active": True})) == 1


@pytest.mark.unit
class TestSideEffects:
    @pytest.mark.asyncio
    async def test_storage_failure_propagates(self, fake_validator):
        pipeline = IngestionPipeline(FailingStore(), fake_validator)

        with pytest.raises(StorageError):
            await pipeline.process(make_candidate())

    @pytest.mark.asyncio
    async def test_outcomes_are_audited_and_rejections_queued(self, memory_store):
        candidate = make_candidate("Broken Link Grant", source_name="site-b")
        validator = FakeValidator({candidate.application_link: failing_result(410)})
        audit = AuditLogger()
        queue = RejectedCandidateQueue(None)
        await queue.initialize()
        pipeline = IngestionPipeline(memory_store, validator, audit=audit, rejected_queue=queue)

        await pipeline.process(make_candidate(source_name="site-a"), run_id="run-1")
        await pipeline.process(candidate, run_id="run-1")

        accepted = audit.recent(event_type=AuditEventType.CANDIDATE_ACCEPTED)
        rejected = audit.recent(event_type=AuditEventType.CANDIDATE_REJECTED)
        assert len(accepted) == 1 and accepted[0].correlation_id == "run-1"
        assert rejected[0].outcome == "LowQuality(0)"

        queued = await queue.get_rejected()
        assert [q.candidate.title for q in queued] == ["Broken Link Grant"]
        assert queued[0].run_id == "run-1"
        await queue.close()
