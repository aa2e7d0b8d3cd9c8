"""Domain models for grant records and verification results."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, conint, field_validator


class VerificationStatus(str, Enum):
    VERIFIED = "verified"
    WARNING = "warning"
    FAILED = "failed"
    UNVERIFIED = "unverified"


class Severity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class SourceType(str, Enum):
    OFFICIAL_GOVERNMENT = "official_government"
    GOVERNMENT = "government"
    INSTITUTIONAL = "institutional"
    THIRD_PARTY = "third_party"
    UNKNOWN = "unknown"


class AuthorityTier(str, Enum):
    TOP_TIER = "top_tier"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"


class MatchState(str, Enum):
    """Outcome of comparing one stored field against fresh research."""

    MATCH = "match"
    MISMATCH = "mismatch"
    NOT_CHECKED = "not_checked"

    @classmethod
    def from_flag(cls, value: bool | None) -> MatchState:
        if value is None:
            return cls.NOT_CHECKED
        return cls.MATCH if value else cls.MISMATCH

    def as_flag(self) -> bool | None:
        """Wire representation used by the verification log (true/false/null)."""
        if self is MatchState.NOT_CHECKED:
            return None
        return self is MatchState.MATCH


class GrantRecord(BaseModel):
    """Stored grant opportunity as read from the grants table."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    name_it: str | None = None
    official_url: str | None = None
    funding_source: str | None = None
    regulation_reference: str | None = None
    min_amount: float | None = None
    max_amount: float | None = None
    application_window_closes: date | None = None
    window_status: str | None = None
    eligibility_summary: str | None = None
    verification_status: VerificationStatus = VerificationStatus.UNVERIFIED
    verification_confidence: conint(ge=0, le=100) | None = None  # type: ignore[valid-type]
    last_verified_at: datetime | None = None
    verification_details: dict[str, Any] | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        return str(value) if value is not None else value

    @property
    def application_deadline(self) -> date | None:
        return self.application_window_closes


class Discrepancy(BaseModel):
    """A single mismatch between a stored field and independently researched data."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    field: str = "unknown"
    database_value: Any = None
    fresh_value: Any = None
    severity: str = Severity.INFO.value
    explanation: str = ""

    @field_validator("field", "severity", "explanation", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> Any:
        if value is None:
            return ""
        return value if isinstance(value, str) else str(value)

    @property
    def is_critical(self) -> bool:
        return self.severity.strip().lower() == Severity.CRITICAL.value


class Issue(BaseModel):
    """Typed problem surfaced by the confidence aggregator."""

    model_config = ConfigDict(frozen=True)

    type: str
    severity: Severity
    message: str


class TrustScore(BaseModel):
    """Authority assessment of the grant's claimed source domain."""

    model_config = ConfigDict(frozen=True)

    source_quality_score: conint(ge=0, le=100)  # type: ignore[valid-type]
    source_type: SourceType
    source_domain_authority: AuthorityTier


@dataclass(frozen=True)
class ProbeResult:
    """Live fetch outcome for a grant's claimed official URL."""

    url_valid: bool = False
    url_status_code: int | None = None
    url_contains_grant_name: bool = False
    url_domain: str = ""
    url_is_government: bool = False
    page_text: str | None = None

    @classmethod
    def empty(cls) -> ProbeResult:
        return cls()


@dataclass(frozen=True)
class CrossReferenceResult:
    """Independent research comparison against the stored record."""

    crossref_ran: bool = False
    amount_match: MatchState = MatchState.NOT_CHECKED
    deadline_match: MatchState = MatchState.NOT_CHECKED
    eligibility_match: MatchState = MatchState.NOT_CHECKED
    discrepancies: tuple[Discrepancy, ...] = ()
    fresh_data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def not_run(cls) -> CrossReferenceResult:
        return cls()

    @property
    def critical_discrepancies(self) -> list[Discrepancy]:
        return [item for item in self.discrepancies if item.is_critical]


@dataclass(frozen=True)
class VerificationOutcome:
    """Aggregated confidence, status and issues for one verification run."""

    confidence: int
    status: VerificationStatus
    checks_passed: int
    checks_total: int
    issues: tuple[Issue, ...] = ()

    @property
    def has_critical(self) -> bool:
        return any(issue.severity is Severity.CRITICAL for issue in self.issues)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VerificationLogEntry(BaseModel):
    """Immutable row written to the verification log for every run."""

    grant_id: str
    overall_confidence: conint(ge=0, le=100)  # type: ignore[valid-type]
    status: VerificationStatus
    url_valid: bool
    url_status_code: int | None
    url_contains_grant_name: bool
    url_domain: str
    url_is_government: bool
    crossref_ran: bool
    crossref_amount_match: bool | None
    crossref_deadline_match: bool | None
    crossref_eligibility_match: bool | None
    crossref_discrepancies: list[Discrepancy] = Field(default_factory=list)
    crossref_fresh_data: dict[str, Any] = Field(default_factory=dict)
    source_quality_score: int
    source_type: SourceType
    source_domain_authority: AuthorityTier
    checks_passed: int
    checks_total: int
    issues: list[Issue] = Field(default_factory=list)
    duration_ms: int
    created_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def from_run(
        cls,
        *,
        grant_id: str,
        probe: ProbeResult,
        trust: TrustScore,
        crossref: CrossReferenceResult,
        outcome: VerificationOutcome,
        duration_ms: int,
    ) -> VerificationLogEntry:
        return cls(
            grant_id=grant_id,
            overall_confidence=outcome.confidence,
            status=outcome.status,
            url_valid=probe.url_valid,
            url_status_code=probe.url_status_code,
            url_contains_grant_name=probe.url_contains_grant_name,
            url_domain=probe.url_domain,
            url_is_government=probe.url_is_government,
            crossref_ran=crossref.crossref_ran,
            crossref_amount_match=crossref.amount_match.as_flag(),
            crossref_deadline_match=crossref.deadline_match.as_flag(),
            crossref_eligibility_match=crossref.eligibility_match.as_flag(),
            crossref_discrepancies=list(crossref.discrepancies),
            crossref_fresh_data=dict(crossref.fresh_data),
            source_quality_score=trust.source_quality_score,
            source_type=trust.source_type,
            source_domain_authority=trust.source_domain_authority,
            checks_passed=outcome.checks_passed,
            checks_total=outcome.checks_total,
            issues=list(outcome.issues),
            duration_ms=duration_ms,
        )


class GrantVerificationUpdate(BaseModel):
    """Overwrite applied to a grant's denormalized verification fields."""

    verification_status: VerificationStatus
    verification_confidence: conint(ge=0, le=100)  # type: ignore[valid-type]
    last_verified_at: datetime
    verification_details: dict[str, Any]

    @classmethod
    def from_run(
        cls,
        *,
        trust: TrustScore,
        crossref: CrossReferenceResult,
        outcome: VerificationOutcome,
        duration_ms: int,
        verified_at: datetime,
    ) -> GrantVerificationUpdate:
        return cls(
            verification_status=outcome.status,
            verification_confidence=outcome.confidence,
            last_verified_at=verified_at,
            verification_details={
                "checks_passed": outcome.checks_passed,
                "checks_total": outcome.checks_total,
                "issues": [issue.model_dump(mode="json") for issue in outcome.issues],
                "source_type": trust.source_type.value,
                "crossref_ran": crossref.crossref_ran,
                "discrepancy_count": len(crossref.discrepancies),
                "fresh_data": dict(crossref.fresh_data),
                "duration_ms": duration_ms,
            },
        )


class VerificationReport(BaseModel):
    """API response returned after a verification run."""

    grant_id: str
    status: VerificationStatus
    confidence: conint(ge=0, le=100)  # type: ignore[valid-type]
    checks_passed: int
    checks_total: int
    issues: list[Issue]
    source: TrustScore
    crossref_discrepancies: list[Discrepancy]
    fresh_data: dict[str, Any]
    duration_ms: int


TIMEOUT_MARKER = "TIMEOUT"


class BatchResultEntry(BaseModel):
    """One line of a batch re-verification summary."""

    grant_id: str
    status: VerificationStatus | None = None
    confidence: int | None = None
    checks: str | None = None
    issues: int | None = None
    duration_ms: int | None = None
    error: str | None = None
    message: str | None = None

    @classmethod
    def from_report(cls, report: VerificationReport) -> BatchResultEntry:
        return cls(
            grant_id=report.grant_id,
            status=report.status,
            confidence=report.confidence,
            checks=f"{report.checks_passed}/{report.checks_total}",
            issues=len(report.issues),
            duration_ms=report.duration_ms,
        )


class BatchSummary(BaseModel):
    """Outcome of a sequential re-verification sweep."""

    status: str = "complete"
    message: str | None = None
    total_queued: int = 0
    verified: int = 0
    failed: int = 0
    results: list[BatchResultEntry] = Field(default_factory=list)
    duration_ms: int = 0

    @property
    def timed_out(self) -> bool:
        return any(entry.grant_id == TIMEOUT_MARKER for entry in self.results)
