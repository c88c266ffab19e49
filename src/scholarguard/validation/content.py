"""
Heuristic page analysis for application links.

Reads the HTML of the page an application link resolves to and decides whether
it looks like the application page for the candidate scholarship. Any other
``ContentAnalyzer`` (for example one backed by a language model) can be
plugged into the validator instead.
"""

from __future__ import annotations

import re
from typing import Iterable, List, Sequence

import structlog
from rapidfuzz import fuzz
from selectolax.parser import HTMLParser

from scholarguard.dedup.keys import normalize_text
from scholarguard.protocols import ContentSignals, ScholarshipCandidate

logger = structlog.get_logger(__name__)

SCHOLARSHIP_KEYWORDS = (
    "scholarship",
    "fellowship",
    "grant",
    "bursary",
    "financial aid",
    "education funding",
    "student assistance",
    "academic award",
    "application form",
    "apply now",
    "eligibility",
    "criteria",
    "deadline",
    "submit",
    "register",
    "enrollment",
)

# Looked for in the page title, headings and the opening text only
RED_FLAGS = (
    "page not found",
    "404 not found",
    "error 404",
    "404 error",
    "scholarship expired",
    "this page has expired",
    "applications closed",
    "application closed",
    "under maintenance",
    "temporarily unavailable",
    "access denied",
    "under construction",
    "coming soon",
    "invalid request",
)

CONTACT_INDICATORS = ("contact", "email", "phone", "helpdesk", "helpline", "support", "office address")
DEADLINE_INDICATORS = ("deadline", "last date", "apply by", "closing date", "closes on", "due date")

FORM_SELECTORS = (
    "form",
    "input[type='submit']",
    "button[type='submit']",
    ".apply-now",
    ".application-form",
    ".register-now",
    "a[href*='apply']",
    "a[href*='register']",
    "a[href*='application']",
)
_APPLY_TEXT = re.compile(r"\b(apply|register|application)\b", re.IGNORECASE)

_HEADLINE_PREFIX_CHARS = 500
_MIN_TERM_LENGTH = 4
_TITLE_WORD_COVERAGE = 0.6


def _significant_terms(*texts: str) -> List[str]:
    terms: List[str] = []
    for text in texts:
        for word in normalize_text(text).split():
            if len(word) >= _MIN_TERM_LENGTH and word not in terms:
                terms.append(word)
    return terms


def _contains_phrase(haystack: str, phrase: str) -> bool:
    return re.search(rf"\b{re.escape(phrase)}\b", haystack) is not None


def _count_phrases(haystack: str, phrases: Iterable[str]) -> int:
    return sum(1 for phrase in phrases if _contains_phrase(haystack, phrase))


class HeuristicContentAnalyzer:
    """
    Keyword and structure heuristics over the page DOM.

    Args:
        title_match_threshold: Minimum rapidfuzz ``token_set_ratio`` for the
            candidate title to match the page title or main heading.
        min_keyword_matches: Scholarship keywords a correct page must contain.
    """

    def __init__(self, title_match_threshold: int = 60, min_keyword_matches: int = 3):
        self.title_match_threshold = title_match_threshold
        self.min_keyword_matches = min_keyword_matches

    async def analyze(self, html: str, final_url: str, candidate: ScholarshipCandidate) -> ContentSignals:
        return self.analyze_sync(html, final_url, candidate)

    def analyze_sync(self, html: str, final_url: str, candidate: ScholarshipCandidate) -> ContentSignals:
        tree = HTMLParser(html or "")
        form_present = self._has_application_form(tree)
        mail_or_tel = bool(tree.css("a[href^='mailto:'], a[href^='tel:']"))

        for node in tree.css("script, style, noscript"):
            node.decompose()

        title_node = tree.css_first("title")
        page_title = title_node.text(strip=True) if title_node is not None else ""
        headings = [node.text(separator=" ", strip=True) for node in tree.css("h1, h2")]
        body = tree.body if tree.body is not None else tree.root
        body_text = normalize_text(body.text(separator=" ") if body is not None else "")

        headline_text = " ".join(
            [normalize_text(page_title), *(normalize_text(h) for h in headings), body_text[:_HEADLINE_PREFIX_CHARS]]
        )
        red_flags = [flag for flag in RED_FLAGS if _contains_phrase(headline_text, flag)]
        keyword_matches = _count_phrases(body_text + " " + normalize_text(page_title), SCHOLARSHIP_KEYWORDS)

        candidate_terms = _significant_terms(candidate.title, candidate.eligibility)
        term_overlap = not candidate_terms or any(term in body_text for term in candidate_terms)

        leads_to_correct_page = keyword_matches >= self.min_keyword_matches and not red_flags and term_overlap
        title_matches = self._title_matches(candidate.title, page_title, headings, body_text)

        signals = ContentSignals(
            leads_to_correct_page=leads_to_correct_page,
            title_matches=title_matches,
            application_form_present=form_present,
            contact_info_present=mail_or_tel or _count_phrases(body_text, CONTACT_INDICATORS) > 0,
            deadline_info_present=_count_phrases(body_text, DEADLINE_INDICATORS) > 0,
            page_title=page_title,
        )
        logger.debug(
            "Page analysed",
            url=final_url,
            keywords=keyword_matches,
            red_flags=red_flags,
            title_matches=title_matches,
            form=form_present,
        )
        return signals

    def _has_application_form(self, tree: HTMLParser) -> bool:
        for selector in FORM_SELECTORS:
            if tree.css_first(selector) is not None:
                return True
        for node in tree.css("a, button"):
            if _APPLY_TEXT.search(node.text(strip=True) or ""):
                return True
        return False

    def _title_matches(self, title: str, page_title: str, headings: Sequence[str], body_text: str) -> bool:
        wanted = normalize_text(title)
        if not wanted:
            return False
        for text in (page_title, *headings):
            if text and fuzz.token_set_ratio(wanted, normalize_text(text)) >= self.title_match_threshold:
                return True

        # Fall back to the share of significant title words present anywhere on the page
        words = _significant_terms(title)
        if not words:
            return False
        found = sum(1 for word in words if word in body_text)
        return found / len(words) >= _TITLE_WORD_COVERAGE
