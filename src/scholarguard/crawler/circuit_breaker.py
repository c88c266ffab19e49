"""
Circuit Breaker Pattern Implementation for Source Failure Management

Prevents a persistently failing scholarship source from being called over and
over. Each source gets its own breaker entry with its own lock, so different
sources never contend with each other; the registry lock only guards entry
creation.

State machine per source:

- CLOSED: consecutive failures accumulate; at the threshold the breaker opens.
- OPEN: calls are blocked until ``open_since + cooldown``; then the breaker
  moves to HALF_OPEN and lets exactly one trial call through.
- HALF_OPEN: a success closes the breaker, a failure re-opens it.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import aiofiles
import structlog

from scholarguard.observability.metrics import BREAKER_STATE_VALUES, gauge
from scholarguard.protocols import BreakerDecision, BreakerState

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]


@dataclass
class CircuitBreakerState:
    """Failure-tracking state of one source."""

    source: str
    state: BreakerState = BreakerState.CLOSED
    failure_count: int = 0
    last_failure_time: Optional[float] = None
    open_since: Optional[float] = None
    last_error: Optional[str] = None
    trial_in_flight: bool = False

    def snapshot(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_time": self.last_failure_time,
            "open_since": self.open_since,
            "last_error": self.last_error,
        }


class _BreakerEntry:
    __slots__ = ("state", "lock")

    def __init__(self, source: str):
        self.state = CircuitBreakerState(source=source)
        self.lock = asyncio.Lock()


class CircuitBreakerManager:
    """
    Manages one circuit breaker per scholarship source.

    All transitions for a given source happen under that source's lock, so
    concurrent callers observe them atomically.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_seconds: float = 600.0,
        clock: Clock = time.time,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._entries: Dict[str, _BreakerEntry] = {}
        self._registry_lock = asyncio.Lock()

        logger.debug(
            "Circuit breaker manager initialized",
            failure_threshold=failure_threshold,
            cooldown_seconds=cooldown_seconds,
        )

    async def _entry(self, source: str) -> _BreakerEntry:
        """Get or create the breaker entry for a source."""
        entry = self._entries.get(source)
        if entry is None:
            async with self._registry_lock:
                entry = self._entries.get(source)
                if entry is None:
                    entry = _BreakerEntry(source)
                    self._entries[source] = entry
                    logger.debug("Created circuit breaker", source=source)
        return entry

    def _publish(self, state: CircuitBreakerState) -> None:
        gauge("breaker_state", BREAKER_STATE_VALUES[state.state.value], labels={"source": state.source})

    async def before_call(self, source: str) -> BreakerDecision:
        """Ask whether the source may be called now."""
        entry = await self._entry(source)
        async with entry.lock:
            state = entry.state
            now = self._clock()

            if state.state is BreakerState.CLOSED:
                return BreakerDecision.allow()

            if state.state is BreakerState.OPEN:
                reopen_at = (state.open_since or now) + self.cooldown_seconds
                if now < reopen_at:
                    return BreakerDecision.block(reopen_at)
                logger.info("Circuit breaker half-open, allowing trial call", source=source)
                state.state = BreakerState.HALF_OPEN
                state.trial_in_flight = True
                self._publish(state)
                return BreakerDecision.allow()

            # HALF_OPEN: exactly one trial call until it reports back
            if state.trial_in_flight:
                return BreakerDecision.block(None)
            state.trial_in_flight = True
            return BreakerDecision.allow()

    async def record_success(self, source: str) -> None:
        """Record a successful adapter run."""
        entry = await self._entry(source)
        async with entry.lock:
            state = entry.state
            if state.state is BreakerState.HALF_OPEN:
                logger.info("Circuit breaker closing, source recovered", source=source)
            state.state = BreakerState.CLOSED
            state.failure_count = 0
            state.open_since = None
            state.trial_in_flight = False
            self._publish(state)

    async def record_failure(self, source: str, error: Optional[BaseException | str] = None) -> BreakerState:
        """Record a failed adapter run and return the resulting state."""
        entry = await self._entry(source)
        async with entry.lock:
            state = entry.state
            now = self._clock()
            state.failure_count += 1
            state.last_failure_time = now
            if error is not None:
                state.last_error = error if isinstance(error, str) else f"{type(error).__name__}: {error}"

            if state.state is BreakerState.HALF_OPEN:
                logger.warning("Trial call failed, circuit breaker re-opening", source=source)
                state.state = BreakerState.OPEN
                state.open_since = now
                state.trial_in_flight = False
            elif state.state is BreakerState.CLOSED and state.failure_count >= self.failure_threshold:
                logger.warning(
                    "Circuit breaker opening",
                    source=source,
                    failures=state.failure_count,
                    cooldown_seconds=self.cooldown_seconds,
                )
                state.state = BreakerState.OPEN
                state.open_since = now
            else:
                logger.debug("Circuit breaker failure recorded", source=source, failures=state.failure_count)
            self._publish(state)
            return state.state

    async def abandon(self, source: str) -> None:
        """Release a half-open trial whose call was cancelled before it reported back."""
        entry = await self._entry(source)
        async with entry.lock:
            if entry.state.trial_in_flight:
                logger.info("Trial call abandoned", source=source)
            entry.state.trial_in_flight = False

    async def reset(self, source: str) -> None:
        """Manually reset one source to CLOSED."""
        entry = await self._entry(source)
        async with entry.lock:
            entry.state = CircuitBreakerState(source=source)
            self._publish(entry.state)
        logger.info("Circuit breaker manually reset", source=source)

    async def reset_all(self) -> None:
        """Force every known source to CLOSED with zero failures."""
        for source in list(self._entries):
            await self.reset(source)
        logger.info("All circuit breakers reset", count=len(self._entries))

    async def get_state(self, source: str) -> Dict[str, Any]:
        entry = await self._entry(source)
        async with entry.lock:
            return entry.state.snapshot()

    async def get_all_states(self) -> Dict[str, Dict[str, Any]]:
        """Get states of all circuit breakers for monitoring."""
        states = {}
        for source in sorted(self._entries):
            states[source] = await self.get_state(source)
        return states

    def sources(self) -> list[str]:
        return sorted(self._entries)

    async def save_state(self, path: Path) -> None:
        """Persist every breaker so a later process resumes with the same view of each source."""
        snapshot = {"saved_at": self._clock(), "breakers": await self.get_all_states()}
        path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(path, "w", encoding="utf-8") as f:
            await f.write(json.dumps(snapshot, indent=2))

    async def load_state(self, path: Path) -> int:
        """
        Restore breakers saved by ``save_state``. Returns how many were loaded.

        A half-open breaker whose trial never reported back is restored as
        open, so the next call after the cooldown becomes the trial.
        """
        if not path.exists():
            return 0
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            content = await f.read()
        try:
            data = json.loads(content)
            saved = data["breakers"]
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.warning("Ignoring unreadable circuit breaker state", path=str(path), error=str(e))
            return 0

        for source, values in saved.items():
            entry = await self._entry(source)
            async with entry.lock:
                state = BreakerState(values.get("state", BreakerState.CLOSED.value))
                if state is BreakerState.HALF_OPEN:
                    state = BreakerState.OPEN
                entry.state = CircuitBreakerState(
                    source=source,
                    state=state,
                    failure_count=int(values.get("failure_count", 0)),
                    last_failure_time=values.get("last_failure_time"),
                    open_since=values.get("open_since"),
                    last_error=values.get("last_error"),
                )
                self._publish(entry.state)
        logger.info("Circuit breaker state loaded", path=str(path), sources=len(saved))
        return len(saved)
