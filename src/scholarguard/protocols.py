"""
Core contracts and dataclasses for ScholarGuard.

This module defines the data flowing through the ingestion pipeline and the
protocols of the external collaborators it depends on:

- Source adapters produce ``ScholarshipCandidate`` records lazily
- The link validator turns a candidate into a ``ValidationResult``
- The quality scorer turns a ``ValidationResult`` into a 0-100 score
- Accepted candidates become persisted ``Scholarship`` records
- The health monitor re-validates persisted records and repairs or deactivates them
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Protocol, Union, runtime_checkable
from uuid import uuid4


def utcnow() -> datetime:
    """Timezone-aware UTC now, used for every persisted timestamp."""
    return datetime.now(timezone.utc)


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _collapse(value: Any) -> str:
    return " ".join(_text(value).split())


# ============================================================================
# Enums
# ============================================================================


class BreakerState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, calls blocked
    HALF_OPEN = "half_open"  # One trial call allowed


class LinkStatus(Enum):
    """Health of a persisted record's application link."""

    VALID = "valid"
    BROKEN = "broken"
    REPAIRED = "repaired"
    QUARANTINED = "quarantined"


class ErrorKind(Enum):
    """Classification of problems found while validating a link."""

    NETWORK_UNREACHABLE = "NetworkUnreachable"
    TIMEOUT = "Timeout"
    HTTP_ERROR = "HttpError"
    REDIRECT_LOOP = "RedirectLoop"
    TLS_INVALID = "TlsInvalid"
    CONTENT_MISMATCH = "ContentMismatch"
    INVALID_URL = "InvalidUrl"
    MOBILE_DIVERGENCE = "MobileDivergence"

    def describe(self, detail: Any = None) -> str:
        """Render as the ``Kind: detail`` string stored in ``ValidationResult.errors``."""
        if detail is None or detail == "":
            return self.value
        return f"{self.value}: {detail}"


class RejectionReason(Enum):
    """Why the ingestion pipeline refused a candidate."""

    MISSING_FIELDS = "MissingFields"
    DUPLICATE = "Duplicate"
    LOW_QUALITY = "LowQuality"


# ============================================================================
# Candidates and validation
# ============================================================================


@dataclass
class ScholarshipCandidate:
    """An unvalidated scholarship record freshly extracted from a source."""

    title: str = ""
    description: str = ""
    eligibility: str = ""
    amount: str = ""
    deadline: Optional[str] = None
    provider: str = ""
    category: str = "Other"
    application_link: str = ""
    source_url: str = ""
    source_name: str = ""

    def cleaned(self) -> "ScholarshipCandidate":
        """
        Copy with surrounding whitespace trimmed and runs of whitespace in
        free text collapsed. Fields an adapter left as ``None`` become empty
        strings, a missing amount reads "Amount varies" and a missing
        category "Other".
        """
        return ScholarshipCandidate(
            title=_collapse(self.title),
            description=_collapse(self.description),
            eligibility=_collapse(self.eligibility),
            amount=_text(self.amount) or "Amount varies",
            deadline=_text(self.deadline) or None,
            provider=_text(self.provider),
            category=_text(self.category) or "Other",
            application_link=_text(self.application_link),
            source_url=_text(self.source_url),
            source_name=_text(self.source_name),
        )

    def missing_fields(self) -> List[str]:
        """Names of required fields that are empty."""
        missing = []
        if not (self.title or "").strip():
            missing.append("title")
        if not (self.application_link or "").strip():
            missing.append("application_link")
        return missing


@dataclass(frozen=True)
class ContentSignals:
    """Structured signals extracted from an application page."""

    leads_to_correct_page: bool = False
    title_matches: bool = False
    application_form_present: bool = False
    contact_info_present: bool = False
    deadline_info_present: bool = False
    page_title: str = ""


@dataclass
class ValidationResult:
    """Outcome of probing and analysing one application link."""

    application_link_valid: bool = False
    http_status: Optional[int] = None
    final_url: Optional[str] = None
    ssl_valid: bool = False
    leads_to_correct_page: bool = False
    application_form_present: bool = False
    title_matches: bool = False
    contact_info_present: bool = False
    deadline_info_present: bool = False
    mobile_consistent: bool = True
    redirect_hops: int = 0
    elapsed: float = 0.0
    errors: List[str] = field(default_factory=list)

    def add_error(self, kind: ErrorKind, detail: Any = None) -> None:
        self.errors.append(kind.describe(detail))

    def has_error(self, kind: ErrorKind) -> bool:
        return any(error == kind.value or error.startswith(f"{kind.value}:") for error in self.errors)

    def apply_signals(self, signals: ContentSignals) -> None:
        self.leads_to_correct_page = signals.leads_to_correct_page
        self.title_matches = signals.title_matches
        self.application_form_present = signals.application_form_present
        self.contact_info_present = signals.contact_info_present
        self.deadline_info_present = signals.deadline_info_present

    def summary(self) -> str:
        """Compact, persisted description of this validation."""
        status = self.http_status if self.http_status is not None else "-"
        head = f"status={status} valid={self.application_link_valid} ssl={self.ssl_valid}"
        if not self.errors:
            return head
        return f"{head} errors=[{'; '.join(self.errors)}]"


# ============================================================================
# Persisted records
# ============================================================================


@dataclass
class Scholarship:
    """A persisted scholarship. Deactivated, never deleted."""

    title: str
    application_link: str
    dedup_key: str
    description: str = ""
    eligibility: str = ""
    amount: str = ""
    deadline: Optional[str] = None
    provider: str = ""
    category: str = "Other"
    source_url: str = ""
    source_name: str = ""
    is_active: bool = True
    link_status: LinkStatus = LinkStatus.VALID
    quality_score: int = 0
    validation_summary: str = ""
    last_validated: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: uuid4().hex)

    @classmethod
    def from_candidate(
        cls,
        candidate: ScholarshipCandidate,
        *,
        dedup_key: str,
        quality_score: int,
        validation_summary: str = "",
    ) -> "Scholarship":
        now = utcnow()
        return cls(
            title=candidate.title.strip(),
            application_link=candidate.application_link.strip(),
            dedup_key=dedup_key,
            description=candidate.description,
            eligibility=candidate.eligibility,
            amount=candidate.amount,
            deadline=candidate.deadline,
            provider=candidate.provider,
            category=candidate.category or "Other",
            source_url=candidate.source_url,
            source_name=candidate.source_name,
            is_active=True,
            link_status=LinkStatus.VALID,
            quality_score=quality_score,
            validation_summary=validation_summary,
            last_validated=now,
            created_at=now,
            updated_at=now,
        )

    def to_candidate(self) -> ScholarshipCandidate:
        """View the record as a candidate so it can be re-validated."""
        return ScholarshipCandidate(
            title=self.title,
            description=self.description,
            eligibility=self.eligibility,
            amount=self.amount,
            deadline=self.deadline,
            provider=self.provider,
            category=self.category,
            application_link=self.application_link,
            source_url=self.source_url,
            source_name=self.source_name,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["link_status"] = self.link_status.value
        for key in ("last_validated", "created_at", "updated_at"):
            value = data[key]
            data[key] = value.isoformat() if value is not None else None
        return data

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in fields(cls)]


# ============================================================================
# Outcomes and reports
# ============================================================================


@dataclass(frozen=True)
class Accepted:
    """The candidate was persisted as an active record."""

    scholarship: Scholarship

    @property
    def accepted(self) -> bool:
        return True


@dataclass(frozen=True)
class Rejected:
    """The candidate was refused; nothing was persisted."""

    reason: RejectionReason
    score: Optional[int] = None
    detail: str = ""

    @property
    def accepted(self) -> bool:
        return False

    def __str__(self) -> str:
        if self.reason is RejectionReason.LOW_QUALITY:
            return f"{self.reason.value}({self.score if self.score is not None else 0})"
        return self.reason.value


IngestionOutcome = Union[Accepted, Rejected]


@dataclass(frozen=True)
class BreakerDecision:
    """Result of asking a circuit breaker for permission to call a source.

    ``blocked_until`` is the epoch time the cooldown ends, or None when the
    breaker is half-open and its single trial call is still outstanding.
    """

    allowed: bool
    blocked_until: Optional[float] = None

    @classmethod
    def allow(cls) -> "BreakerDecision":
        return cls(allowed=True)

    @classmethod
    def block(cls, until: Optional[float]) -> "BreakerDecision":
        return cls(allowed=False, blocked_until=until)


@dataclass
class ScrapeRun:
    """Summary of one orchestrator execution."""

    run_id: str = field(default_factory=lambda: uuid4().hex)
    sources_attempted: int = 0
    sources_succeeded: int = 0
    sources_failed: int = 0
    sources_blocked: int = 0
    candidates_produced: int = 0
    candidates_accepted: int = 0
    candidates_rejected: int = 0
    rejections_by_reason: Dict[str, int] = field(default_factory=dict)
    source_errors: Dict[str, str] = field(default_factory=dict)
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    cancelled: bool = False

    def record_outcome(self, outcome: IngestionOutcome) -> None:
        if isinstance(outcome, Accepted):
            self.candidates_accepted += 1
        else:
            self.candidates_rejected += 1
            key = outcome.reason.value
            self.rejections_by_reason[key] = self.rejections_by_reason.get(key, 0) + 1

    @property
    def duration(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        data["duration"] = self.duration
        return data


@dataclass
class SweepReport:
    """Summary of one health-monitor sweep over active records."""

    total: int = 0
    checked: int = 0
    healthy: int = 0
    repaired: int = 0
    deactivated: int = 0
    quarantined: int = 0
    errors: int = 0
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SweepReport":
        names = ("total", "checked", "healthy", "repaired", "deactivated", "quarantined", "errors")
        counts = {name: int(data.get(name, 0)) for name in names}
        finished_at = data.get("finished_at")
        return cls(
            **counts,
            started_at=datetime.fromisoformat(data["started_at"]),
            finished_at=datetime.fromisoformat(finished_at) if finished_at else None,
        )


@dataclass(frozen=True)
class RepairResult:
    """Outcome of trying to find a working replacement link."""

    success: bool
    new_url: Optional[str] = None
    method: str = ""
    quality_score: Optional[int] = None
    error: Optional[str] = None


# ============================================================================
# Collaborator protocols
# ============================================================================


class SourceContext(Protocol):
    """Services an adapter may use while producing candidates."""

    source_name: str

    async def fetch(self, url: str) -> str:
        """Fetch a page body, honouring the per-domain rate limit and worker pool."""
        ...


@runtime_checkable
class SourceAdapter(Protocol):
    """An external scholarship website plus the logic that extracts candidates from it."""

    name: str
    priority: int

    def produce_candidates(self, context: SourceContext) -> AsyncIterator[ScholarshipCandidate]:
        """Return a finite, lazily produced sequence of candidates for one run."""
        ...


class ScholarshipStore(Protocol):
    """Document-style persisted store for scholarships."""

    async def find(self, filter: Optional[Mapping[str, Any]] = None) -> List[Scholarship]:
        """Records whose fields equal every key/value in ``filter``."""
        ...

    async def save(self, record: Scholarship) -> Scholarship:
        """Insert a new record atomically."""
        ...

    async def update(self, record_id: str, patch: Mapping[str, Any]) -> Scholarship:
        """Apply a partial update to one record atomically."""
        ...


class ContentAnalyzer(Protocol):
    """Pluggable capability that reads page content and returns structured signals."""

    async def analyze(self, html: str, final_url: str, candidate: ScholarshipCandidate) -> ContentSignals:
        ...


class LinkValidatorProtocol(Protocol):
    async def validate(self, candidate: ScholarshipCandidate) -> ValidationResult:
        ...


class RepairStrategy(Protocol):
    """Tries to find a working replacement link for a record whose link went bad."""

    async def attempt_repair(self, scholarship: Scholarship) -> RepairResult:
        ...
