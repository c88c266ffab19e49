"""Network-facing building blocks: circuit breakers, rate limiting and the HTTP client."""

from __future__ import annotations

from .circuit_breaker import CircuitBreakerManager, CircuitBreakerState
from .http_client import HttpClient, ProbeResult
from .rate_limiter import DomainRateLimiter, domain_of

__all__ = [
    "CircuitBreakerManager",
    "CircuitBreakerState",
    "DomainRateLimiter",
    "HttpClient",
    "ProbeResult",
    "domain_of",
]
