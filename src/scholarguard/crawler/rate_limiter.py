"""
Per-domain request spacing.

Every request to a domain waits until a jittered minimum interval has passed
since the previous request to that domain. Domain policies raise the floor of
that interval for hosts under a given suffix (government portals get the
longest gaps). Servers that send ``Retry-After`` push the next allowed request
further out.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional
from urllib.parse import urlparse

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class DomainRateState:
    """Rate limiting state for a specific domain."""

    last_request_time: float = 0.0
    forced_until: float = 0.0
    requests: int = 0


def domain_of(url: str) -> str:
    """Lower-cased host of a URL, or the URL itself when it has none."""
    parsed = urlparse(url)
    return (parsed.hostname or url).lower()


class DomainRateLimiter:
    """
    Enforces a minimum, jittered delay between requests to the same domain.

    Requests to different domains never wait on each other. ``domain_policies``
    maps a domain suffix such as ``gov.in`` to the minimum delay for hosts under
    it; the most specific matching suffix wins and the jitter width stays
    ``max_delay - min_delay``.
    """

    def __init__(
        self,
        min_delay: float = 1.0,
        max_delay: float = 3.0,
        domain_policies: Optional[Mapping[str, float]] = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        if max_delay < min_delay:
            raise ValueError("max_delay must be >= min_delay")
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.domain_policies = {suffix.lower().strip("."): delay for suffix, delay in (domain_policies or {}).items()}
        if any(delay < 0 for delay in self.domain_policies.values()):
            raise ValueError("domain policy delays must be >= 0")
        self._clock = clock
        self._rng = rng or random.Random()
        self._states: Dict[str, DomainRateState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _get_domain_lock(self, domain: str) -> asyncio.Lock:
        """Get or create lock for domain."""
        if domain not in self._locks:
            self._locks[domain] = asyncio.Lock()
        return self._locks[domain]

    def _get_state(self, domain: str) -> DomainRateState:
        if domain not in self._states:
            self._states[domain] = DomainRateState()
        return self._states[domain]

    def policy_delay(self, domain: str) -> Optional[float]:
        """Minimum delay of the longest policy suffix matching ``domain``, if any."""
        matches = [suffix for suffix in self.domain_policies if domain == suffix or domain.endswith(f".{suffix}")]
        if not matches:
            return None
        return self.domain_policies[max(matches, key=len)]

    def _interval(self, domain: str) -> float:
        floor = self.policy_delay(domain)
        low = self.min_delay if floor is None else floor
        high = low + self.max_delay - self.min_delay
        if high == low:
            return low
        return self._rng.uniform(low, high)

    async def wait_for_domain(self, domain: str) -> float:
        """
        Wait until a request to ``domain`` is allowed.

        Returns:
            Actual delay applied in seconds
        """
        async with self._get_domain_lock(domain):
            state = self._get_state(domain)
            now = self._clock()

            delay = 0.0
            if state.requests:
                delay = max(0.0, state.last_request_time + self._interval(domain) - now)
            delay = max(delay, state.forced_until - now)

            if delay > 0:
                logger.debug("Rate limiting domain", domain=domain, delay=round(delay, 3))
                await asyncio.sleep(delay)

            state.last_request_time = self._clock()
            state.requests += 1
            return delay

    def update_from_response(self, domain: str, headers: Mapping[str, str]) -> None:
        """Honour a numeric ``Retry-After`` header from the server."""
        retry_after = headers.get("Retry-After") or headers.get("retry-after")
        if not retry_after:
            return
        try:
            delay_seconds = float(retry_after)
        except ValueError:
            # HTTP-date form, not worth parsing for a probe
            return
        state = self._get_state(domain)
        state.forced_until = max(state.forced_until, self._clock() + delay_seconds)
        logger.info("Server requested delay", domain=domain, delay=delay_seconds)

    def get_stats(self) -> Dict[str, int]:
        return {domain: state.requests for domain, state in self._states.items()}
