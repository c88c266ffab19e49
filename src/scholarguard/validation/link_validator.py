"""
Link validation engine.

Validation of one candidate runs these steps and stops at the first lethal
failure:

0. The link must be an absolute http(s) URL.
1. The link is requested and redirects are followed up to the hop limit.
   Network failures, redirect loops and any final status other than 200 are
   lethal.
2. The final URL must be https with a verified certificate. Not lethal.
3. The page content is analysed for scholarship signals.
4. The link is requested again with a mobile user agent; a different status
   or final host is recorded. Not lethal.

All network work for one candidate shares one overall time budget.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from typing import TYPE_CHECKING, AsyncIterator, Optional
from urllib.parse import urlparse

import structlog

from scholarguard.crawler.http_client import HttpClient, ProbeResult
from scholarguard.observability.metrics import increment, observe
from scholarguard.protocols import ContentAnalyzer, ErrorKind, ScholarshipCandidate, ValidationResult
from scholarguard.validation.content import HeuristicContentAnalyzer

if TYPE_CHECKING:
    from scholarguard.config.config import ValidatorConfig

logger = structlog.get_logger(__name__)


class LinkValidator:
    """Validates candidate application links against live pages."""

    def __init__(
        self,
        http_client: HttpClient,
        *,
        analyzer: Optional[ContentAnalyzer] = None,
        timeout: float = 15.0,
        mobile_user_agent: Optional[str] = None,
        check_mobile: bool = True,
        pool: Optional[asyncio.Semaphore] = None,
    ):
        self.http_client = http_client
        self.analyzer: ContentAnalyzer = analyzer or HeuristicContentAnalyzer()
        self.timeout = timeout
        self.mobile_user_agent = mobile_user_agent
        self.check_mobile = check_mobile and mobile_user_agent is not None
        self._pool = pool

    @classmethod
    def from_config(
        cls,
        config: "ValidatorConfig",
        http_client: HttpClient,
        *,
        analyzer: Optional[ContentAnalyzer] = None,
        pool: Optional[asyncio.Semaphore] = None,
    ) -> "LinkValidator":
        return cls(
            http_client,
            analyzer=analyzer
            or HeuristicContentAnalyzer(
                title_match_threshold=config.title_match_threshold,
                min_keyword_matches=config.min_keyword_matches,
            ),
            timeout=config.timeout,
            mobile_user_agent=config.mobile_user_agent,
            check_mobile=config.check_mobile,
            pool=pool,
        )

    @contextlib.asynccontextmanager
    async def _pool_slot(self) -> AsyncIterator[None]:
        if self._pool is None:
            yield
            return
        async with self._pool:
            yield

    async def validate(self, candidate: ScholarshipCandidate) -> ValidationResult:
        """Probe and analyse ``candidate.application_link``."""
        result = ValidationResult()
        start = time.monotonic()
        try:
            async with self._pool_slot():
                async with asyncio.timeout(self.timeout):
                    await self._run_checks(candidate, result)
        except TimeoutError:
            result.application_link_valid = False
            result.add_error(ErrorKind.TIMEOUT, f"validation exceeded {self.timeout:g}s")
        result.elapsed = time.monotonic() - start

        observe("validation_duration_seconds", result.elapsed)
        for error in result.errors:
            increment("validation_errors_total", labels={"kind": error.split(":", 1)[0]})
        logger.debug(
            "Link validated",
            link=candidate.application_link,
            valid=result.application_link_valid,
            status=result.http_status,
            errors=result.errors,
            elapsed=round(result.elapsed, 3),
        )
        return result

    async def _run_checks(self, candidate: ScholarshipCandidate, result: ValidationResult) -> None:
        link = (candidate.application_link or "").strip()

        probe = await self.http_client.probe(link)
        result.final_url = probe.final_url
        result.http_status = probe.status
        result.redirect_hops = probe.hops
        if probe.error_kind is not None:
            result.add_error(probe.error_kind, probe.error)
            return
        if probe.status != 200:
            result.add_error(ErrorKind.HTTP_ERROR, probe.status)
            return
        result.application_link_valid = True

        result.ssl_valid = probe.secure
        if not result.ssl_valid:
            result.add_error(ErrorKind.TLS_INVALID, probe.tls_error or f"final URL is not https ({probe.final_url})")

        await self._analyze_content(candidate, probe, result)

        if self.check_mobile:
            await self._check_mobile(link, probe, result)

    async def _analyze_content(
        self, candidate: ScholarshipCandidate, probe: ProbeResult, result: ValidationResult
    ) -> None:
        try:
            signals = await self.analyzer.analyze(probe.text(), probe.final_url, candidate)
        except Exception as e:
            logger.warning("Content analyzer failed", url=probe.final_url, error=str(e))
            result.add_error(ErrorKind.CONTENT_MISMATCH, f"analyzer failed: {type(e).__name__}: {e}")
            return

        result.apply_signals(signals)
        if not signals.leads_to_correct_page:
            result.add_error(ErrorKind.CONTENT_MISMATCH, "page does not look like a scholarship application page")

    async def _check_mobile(self, link: str, desktop: ProbeResult, result: ValidationResult) -> None:
        mobile = await self.http_client.probe(link, user_agent=self.mobile_user_agent)
        desktop_host = urlparse(desktop.final_url).hostname
        mobile_host = urlparse(mobile.final_url).hostname
        if mobile.status != desktop.status or mobile_host != desktop_host:
            result.mobile_consistent = False
            mobile_status = mobile.status
            if mobile_status is None and mobile.error_kind is not None:
                mobile_status = mobile.error_kind.value
            result.add_error(
                ErrorKind.MOBILE_DIVERGENCE,
                f"desktop {desktop.status} at {desktop_host}, mobile {mobile_status} at {mobile_host}",
            )
