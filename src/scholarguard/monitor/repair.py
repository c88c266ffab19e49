"""
Repair strategies for records whose application link went bad.

A strategy proposes replacement links and validates each one with the same
validator and scorer used at ingestion. The first acceptable replacement wins.
"""

from __future__ import annotations

import dataclasses
from typing import List, Optional, Sequence

import structlog

from scholarguard.protocols import LinkValidatorProtocol, RepairResult, RepairStrategy, Scholarship
from scholarguard.quality.scorer import QualityScorer

logger = structlog.get_logger(__name__)


class _ValidatingRepair:
    method = "validate"

    def __init__(self, validator: LinkValidatorProtocol, scorer: Optional[QualityScorer] = None):
        self.validator = validator
        self.scorer = scorer or QualityScorer()

    async def _try_url(self, scholarship: Scholarship, url: str) -> RepairResult:
        candidate = dataclasses.replace(scholarship.to_candidate(), application_link=url)
        result = await self.validator.validate(candidate)
        value = self.scorer.score(result)
        if self.scorer.is_acceptable(result, value):
            return RepairResult(
                success=True,
                new_url=result.final_url or url,
                method=self.method,
                quality_score=value,
            )
        return RepairResult(success=False, method=self.method, quality_score=value, error=f"{url}: {result.summary()}")


class SourceUrlRepair(_ValidatingRepair):
    """Use the page the record was scraped from as its application link."""

    method = "source_url"

    async def attempt_repair(self, scholarship: Scholarship) -> RepairResult:
        source_url = (scholarship.source_url or "").strip()
        if not source_url or source_url == scholarship.application_link:
            return RepairResult(success=False, method=self.method, error="no distinct source URL")
        return await self._try_url(scholarship, source_url)


def url_variations(url: str) -> List[str]:
    """Common spellings of the same link: scheme swap, trailing slash, ``www.`` toggle."""
    variants: List[str] = []
    if url.startswith("http://"):
        variants.append("https://" + url[len("http://") :])
    elif url.startswith("https://"):
        variants.append("http://" + url[len("https://") :])

    variants.append(url[:-1] if url.endswith("/") else url + "/")

    scheme, sep, rest = url.partition("://")
    if sep:
        if rest.startswith("www."):
            variants.append(f"{scheme}://{rest[4:]}")
        else:
            variants.append(f"https://www.{rest}")

    unique: List[str] = []
    for variant in variants:
        if variant != url and variant not in unique:
            unique.append(variant)
    return unique


class UrlVariationRepair(_ValidatingRepair):
    """Try simple variations of the broken link."""

    method = "url_variation"

    async def attempt_repair(self, scholarship: Scholarship) -> RepairResult:
        errors: List[str] = []
        for variant in url_variations(scholarship.application_link):
            outcome = await self._try_url(scholarship, variant)
            if outcome.success:
                return outcome
            if outcome.error:
                errors.append(outcome.error)
        return RepairResult(
            success=False,
            method=self.method,
            error="; ".join(errors) or "no working URL variation found",
        )


class ChainedRepair:
    """Run strategies in order; the first success wins."""

    method = "chained"

    def __init__(self, strategies: Sequence[RepairStrategy]):
        if not strategies:
            raise ValueError("ChainedRepair needs at least one strategy")
        self.strategies = list(strategies)

    async def attempt_repair(self, scholarship: Scholarship) -> RepairResult:
        errors: List[str] = []
        for strategy in self.strategies:
            result = await strategy.attempt_repair(scholarship)
            if result.success:
                return result
            errors.append(f"{result.method or type(strategy).__name__}: {result.error}")
        return RepairResult(success=False, method=self.method, error=" | ".join(errors))


STRATEGIES = {
    "source_url": SourceUrlRepair,
    "url_variations": UrlVariationRepair,
}


def build_repair_strategy(
    names: Sequence[str],
    validator: LinkValidatorProtocol,
    scorer: Optional[QualityScorer] = None,
) -> RepairStrategy:
    """Build the configured strategy, chaining when more than one is named."""
    try:
        strategies: List[RepairStrategy] = [STRATEGIES[name](validator, scorer) for name in names]
    except KeyError as e:
        raise ValueError(f"Unknown repair strategy: {e.args[0]}") from e
    if len(strategies) == 1:
        return strategies[0]
    return ChainedRepair(strategies)
