"""
Tests for the per-source circuit breaker.
"""

import asyncio
import json

import pytest
from scholarguard.crawler.circuit_breaker import CircuitBreakerManager
from scholarguard.protocols import BreakerState


@pytest.mark.unit
class TestBreakerTransitions:
    @pytest.mark.asyncio
    async def test_unknown_source_is_closed_and_allowed(self, breakers):
        decision = await breakers.before_call("new-source")

        assert decision.allowed
        state = await breakers.get_state("new-source")
        assert state["state"] == "closed"
        assert state["failure_count"] == 0

    @pytest.mark.asyncio
    async def test_opens_at_threshold(self, breakers, clock):
        for _ in range(2):
            assert await breakers.record_failure("flaky", RuntimeError("boom")) is BreakerState.CLOSED
        assert await breakers.record_failure("flaky", RuntimeError("boom")) is BreakerState.OPEN

        decision = await breakers.before_call("flaky")
        assert not decision.allowed
        assert decision.blocked_until == clock.now + 600

        state = await breakers.get_state("flaky")
        assert state["failure_count"] == 3
        assert state["last_error"] == "RuntimeError: boom"

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, breakers):
        await breakers.record_failure("flaky", "Timeout")
        await breakers.record_failure("flaky", "Timeout")
        await breakers.record_success("flaky")
        await breakers.record_failure("flaky", "Timeout")

        state = await breakers.get_state("flaky")
        assert state["state"] == "closed"
        assert state["failure_count"] == 1

    @pytest.mark.asyncio
    async def test_half_open_after_cooldown_allows_exactly_one_trial(self, breakers, clock):
        for _ in range(3):
            await breakers.record_failure("flaky", "boom")

        clock.advance(599)
        assert not (await breakers.before_call("flaky")).allowed

        clock.advance(1)
        first = await breakers.before_call("flaky")
        second = await breakers.before_call("flaky")

        assert first.allowed
        assert not second.allowed
        assert second.blocked_until is None
        assert (await breakers.get_state("flaky"))["state"] == "half_open"

    @pytest.mark.asyncio
    async def test_trial_success_closes(self, breakers, clock):
        for _ in range(3):
            await breakers.record_failure("flaky", "boom")
        clock.advance(600)
        await breakers.before_call("flaky")

        await breakers.record_success("flaky")

        state = await breakers.get_state("flaky")
        assert state["state"] == "closed"
        assert state["failure_count"] == 0
        assert (await breakers.before_call("flaky")).allowed

    @pytest.mark.asyncio
    async def test_trial_failure_reopens_with_fresh_cooldown(self, breakers, clock):
        for _ in range(3):
            await breakers.record_failure("flaky", "boom")
        clock.advance(600)
        await breakers.before_call("flaky")

        assert await breakers.record_failure("flaky", "still broken") is BreakerState.OPEN

        decision = await breakers.before_call("flaky")
        assert not decision.allowed
        assert decision.blocked_until == clock.now + 600

    @pytest.mark.asyncio
    async def test_abandoned_trial_can_be_retried(self, breakers, clock):
        for _ in range(3):
            await breakers.record_failure("flaky", "boom")
        clock.advance(600)
        assert (await breakers.before_call("flaky")).allowed

        await breakers.abandon("flaky")

        assert (await breakers.before_call("flaky")).allowed

    @pytest.mark.asyncio
    async def test_sources_are_independent(self, breakers):
        for _ in range(3):
            await breakers.record_failure("bad", "boom")

        assert not (await breakers.before_call("bad")).allowed
        assert (await breakers.before_call("good")).allowed

    @pytest.mark.asyncio
    async def test_concurrent_failures_are_all_counted(self, clock):
        manager = CircuitBreakerManager(failure_threshold=100, cooldown_seconds=60, clock=clock)

        await asyncio.gather(*(manager.record_failure("busy", "boom") for _ in range(50)))

        assert (await manager.get_state("busy"))["failure_count"] == 50

    def test_threshold_must_be_positive(self):
        with pytest.raises(ValueError):
            CircuitBreakerManager(failure_threshold=0)


@pytest.mark.unit
class TestBreakerReset:
    @pytest.mark.asyncio
    async def test_reset_closes_one_source(self, breakers):
        for _ in range(3):
            await breakers.record_failure("a", "boom")
            await breakers.record_failure("b", "boom")

        await breakers.reset("a")

        assert (await breakers.get_state("a"))["state"] == "closed"
        assert (await breakers.get_state("b"))["state"] == "open"

    @pytest.mark.asyncio
    async def test_reset_all(self, breakers):
        for source in ("a", "b", "c"):
            for _ in range(3):
                await breakers.record_failure(source, "boom")

        await breakers.reset_all()

        states = await breakers.get_all_states()
        assert sorted(states) == ["a", "b", "c"]
        assert all(s["state"] == "closed" and s["failure_count"] == 0 for s in states.values())


@pytest.mark.unit
class TestBreakerPersistence:
    @pytest.mark.asyncio
    async def test_state_survives_save_and_load(self, tmp_path, clock):
        path = tmp_path / "state" / "breakers.json"
        first = CircuitBreakerManager(failure_threshold=2, cooldown_seconds=600, clock=clock)
        await first.record_failure("down", "HttpError: 503")
        await first.record_failure("down", "HttpError: 503")
        await first.record_failure("wobbly", "Timeout")
        await first.save_state(path)

        second = CircuitBreakerManager(failure_threshold=2, cooldown_seconds=600, clock=clock)
        loaded = await second.load_state(path)

        assert loaded == 2
        assert second.sources() == ["down", "wobbly"]
        down = await second.get_state("down")
        assert down["state"] == "open"
        assert down["last_error"] == "HttpError: 503"
        assert not (await second.before_call("down")).allowed
        assert (await second.get_state("wobbly"))["failure_count"] == 1

    @pytest.mark.asyncio
    async def test_half_open_is_restored_as_open(self, tmp_path, clock):
        path = tmp_path / "breakers.json"
        first = CircuitBreakerManager(failure_threshold=1, cooldown_seconds=600, clock=clock)
        await first.record_failure("flaky", "boom")
        clock.advance(600)
        await first.before_call("flaky")
        await first.save_state(path)

        second = CircuitBreakerManager(failure_threshold=1, cooldown_seconds=600, clock=clock)
        await second.load_state(path)

        assert (await second.get_state("flaky"))["state"] == "open"
        # cooldown has already elapsed, so the next call is the trial
        assert (await second.before_call("flaky")).allowed

    @pytest.mark.asyncio
    async def test_missing_file_loads_nothing(self, tmp_path, breakers):
        assert await breakers.load_state(tmp_path / "absent.json") == 0

    @pytest.mark.asyncio
    async def test_corrupt_file_is_ignored(self, tmp_path, breakers):
        path = tmp_path / "breakers.json"
        path.write_text("{not json")

        assert await breakers.load_state(path) == 0
        assert breakers.sources() == []

    @pytest.mark.asyncio
    async def test_saved_file_is_json(self, tmp_path, breakers):
        await breakers.record_failure("a", "boom")
        path = tmp_path / "breakers.json"

        await breakers.save_state(path)

        data = json.loads(path.read_text())
        assert data["breakers"]["a"]["failure_count"] == 1
