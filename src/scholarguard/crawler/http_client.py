"""
HTTP client used for adapter fetches and link probes.

Redirects are followed by hand so that every hop is counted, loops are
detected, and each hop is spaced by the per-domain rate limiter. Certificate
failures are reported rather than raised: the page is fetched again without
verification so its content can still be analysed.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass, field
from contextlib import AbstractAsyncContextManager, nullcontext
from typing import Any, Dict, Optional, Set
from urllib.parse import urljoin, urlparse

import aiohttp
import structlog

from scholarguard.crawler.rate_limiter import DomainRateLimiter, domain_of
from scholarguard.exceptions import FetchError
from scholarguard.observability.metrics import increment
from scholarguard.protocols import ErrorKind

logger = structlog.get_logger(__name__)

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})
RETRY_STATUSES = frozenset({429, 502, 503, 504})

DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}


@dataclass
class ProbeResult:
    """Outcome of requesting a URL and following its redirects."""

    url: str
    final_url: str
    status: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    charset: Optional[str] = None
    hops: int = 0
    attempts: int = 0
    ssl_verified: bool = True
    tls_error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error: str = ""
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error_kind is None and self.status is not None and 200 <= self.status < 300

    @property
    def secure(self) -> bool:
        """Final URL is https and its certificate chain verified."""
        return urlparse(self.final_url).scheme == "https" and self.ssl_verified

    def text(self) -> str:
        try:
            return self.body.decode(self.charset or "utf-8", errors="replace")
        except LookupError:
            # unknown charset label in Content-Type
            return self.body.decode("utf-8", errors="replace")


class _RedirectLoop(Exception):
    pass


class HttpClient:
    """Async HTTP client with redirect accounting, TLS reporting, and retries."""

    def __init__(
        self,
        *,
        user_agent: str,
        timeout: float = 30.0,
        max_redirects: int = 5,
        max_retries: int = 1,
        rate_limiter: Optional[DomainRateLimiter] = None,
        backoff_base: float = 1.0,
        max_body_bytes: int = 2_000_000,
    ):
        self.user_agent = user_agent
        self.timeout = timeout
        self.max_redirects = max_redirects
        self.max_retries = max_retries
        self.rate_limiter = rate_limiter
        self.backoff_base = backoff_base
        self.max_body_bytes = max_body_bytes

        self.session: Optional[aiohttp.ClientSession] = None
        self._in_flight_requests = 0

        logger.debug(
            "HTTP client created",
            max_redirects=max_redirects,
            max_retries=max_retries,
            user_agent=user_agent,
        )

    async def initialize(self) -> None:
        """Initialize the HTTP client session."""
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"User-Agent": self.user_agent, **DEFAULT_HEADERS},
            )
            logger.info("HTTP client session initialized")

    async def close(self) -> None:
        """Close the HTTP client and clean up resources."""
        if self.session:
            await self.session.close()
            self.session = None
            logger.info("HTTP client closed")

    async def __aenter__(self) -> "HttpClient":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _calculate_backoff_delay(self, attempt: int) -> float:
        """Exponential backoff delay with jitter."""
        base_delay = self.backoff_base * 2 ** (attempt - 1)
        return base_delay * random.uniform(0.8, 1.2)

    async def _request_once(
        self, url: str, user_agent: Optional[str], verify_ssl: bool, slot: Optional[AbstractAsyncContextManager]
    ) -> ProbeResult:
        """
        Issue a GET for a single hop, retrying on transient statuses.

        ``slot`` is held only while the request is in flight, never during
        rate-limit or backoff sleeps.
        """
        if self.session is None:
            raise RuntimeError("HTTP client not initialized. Call initialize() first.")

        headers = {"User-Agent": user_agent} if user_agent else None
        domain = domain_of(url)
        guard = slot if slot is not None else nullcontext()
        attempt = 0
        while True:
            attempt += 1
            if self.rate_limiter is not None:
                await self.rate_limiter.wait_for_domain(domain)

            kwargs: Dict[str, Any] = {"allow_redirects": False, "headers": headers}
            if not verify_ssl:
                kwargs["ssl"] = False

            self._in_flight_requests += 1
            try:
                async with guard, self.session.get(url, **kwargs) as response:
                    increment("http_responses_total", labels={"status_class": f"{response.status // 100}xx"})
                    response_headers = {k: v for k, v in response.headers.items()}
                    if self.rate_limiter is not None:
                        self.rate_limiter.update_from_response(domain, response_headers)

                    if response.status in RETRY_STATUSES and attempt <= self.max_retries:
                        logger.info("Retrying request", url=url, status=response.status, attempt=attempt)
                        retry = True
                    else:
                        retry = False
                        body = b""
                        if response.status not in REDIRECT_STATUSES:
                            body = await response.content.read(self.max_body_bytes)
                        return ProbeResult(
                            url=url,
                            final_url=url,
                            status=response.status,
                            headers=response_headers,
                            body=body,
                            charset=response.charset,
                            attempts=attempt,
                        )
            finally:
                self._in_flight_requests -= 1

            if retry:
                await asyncio.sleep(self._calculate_backoff_delay(attempt))

    async def _follow(
        self, url: str, user_agent: Optional[str], verify_ssl: bool, slot: Optional[AbstractAsyncContextManager]
    ) -> ProbeResult:
        visited: Set[str] = set()
        current = url
        hops = 0
        attempts = 0
        while True:
            if current in visited:
                raise _RedirectLoop(f"revisited {current}")
            visited.add(current)

            result = await self._request_once(current, user_agent, verify_ssl, slot)
            attempts += result.attempts
            location = result.headers.get("Location") or result.headers.get("location")
            if result.status in REDIRECT_STATUSES and location:
                if hops >= self.max_redirects:
                    raise _RedirectLoop(f"exceeded {self.max_redirects} redirects")
                hops += 1
                current = urljoin(current, location)
                continue

            result.url = url
            result.final_url = current
            result.hops = hops
            result.attempts = attempts
            return result

    async def probe(
        self,
        url: str,
        *,
        user_agent: Optional[str] = None,
        slot: Optional[AbstractAsyncContextManager] = None,
    ) -> ProbeResult:
        """
        Request ``url`` following redirects up to the hop limit.

        Never raises for network-level problems: they are classified into
        ``error_kind`` instead. Cancellation still propagates.
        """
        start = time.monotonic()
        parsed = urlparse(url or "")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            return ProbeResult(
                url=url,
                final_url=url,
                error_kind=ErrorKind.INVALID_URL,
                error=f"unsupported or malformed URL {url!r}",
            )

        tls_error: Optional[str] = None
        try:
            try:
                result = await self._follow(url, user_agent, True, slot)
            except aiohttp.ClientSSLError as e:
                tls_error = f"{type(e).__name__}: {e}"
                logger.info("Certificate verification failed, re-probing unverified", url=url, error=tls_error)
                result = await self._follow(url, user_agent, False, slot)
        except _RedirectLoop as e:
            result = ProbeResult(url=url, final_url=url, error_kind=ErrorKind.REDIRECT_LOOP, error=str(e))
        except asyncio.TimeoutError as e:
            result = ProbeResult(
                url=url, final_url=url, error_kind=ErrorKind.TIMEOUT, error=str(e) or "request timed out"
            )
        except (aiohttp.ClientError, OSError) as e:
            result = ProbeResult(
                url=url,
                final_url=url,
                error_kind=ErrorKind.NETWORK_UNREACHABLE,
                error=f"{type(e).__name__}: {e}",
            )

        if tls_error is not None:
            result.ssl_verified = False
            result.tls_error = tls_error
        result.elapsed = time.monotonic() - start
        return result

    async def fetch_text(
        self,
        url: str,
        *,
        user_agent: Optional[str] = None,
        slot: Optional[AbstractAsyncContextManager] = None,
    ) -> str:
        """Fetch a page body as text, raising ``FetchError`` unless the final status is 2xx."""
        result = await self.probe(url, user_agent=user_agent, slot=slot)
        if result.error_kind is not None:
            raise FetchError(url, result.error_kind.value, result.error)
        if not result.ok:
            raise FetchError(url, ErrorKind.HTTP_ERROR.value, str(result.status))
        return result.text()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "in_flight_requests": self._in_flight_requests,
            "rate_limited_domains": self.rate_limiter.get_stats() if self.rate_limiter else {},
        }
