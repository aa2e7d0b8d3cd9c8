"""Collapse probe, trust and cross-reference signals into one verdict.

Point budget (out of 100):

* URL checks, 30: reachable (15) and page mentions the grant (15).
* Source quality, 25: a quarter of the trust score.
* Cross-reference, 45: amount (20), deadline (15), eligibility (10). Fields the
  research could not check are skipped entirely. Any critical discrepancy takes
  a flat 20 points off this subtotal, floored at zero.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from app.models.grant import (
    CrossReferenceResult,
    Issue,
    MatchState,
    ProbeResult,
    Severity,
    TrustScore,
    VerificationOutcome,
    VerificationStatus,
)

URL_REACHABLE_POINTS = 15
URL_MENTIONS_POINTS = 15
SOURCE_WEIGHT = 0.25
SOURCE_PASS_THRESHOLD = 70
SOURCE_WARNING_THRESHOLD = 40
CRITICAL_DISCREPANCY_PENALTY = 20
VERIFIED_THRESHOLD = 70
WARNING_THRESHOLD = 40


@dataclass(frozen=True)
class _CrossReferenceField:
    name: str
    state: MatchState
    points: int
    mismatch_severity: Severity


def aggregate(
    probe: ProbeResult,
    trust: TrustScore,
    crossref: CrossReferenceResult,
) -> VerificationOutcome:
    issues: list[Issue] = []
    checks_passed = 0
    checks_total = 0

    url_score = 0
    checks_total += 2
    if probe.url_valid:
        url_score += URL_REACHABLE_POINTS
        checks_passed += 1
    else:
        status_label = probe.url_status_code or "no response"
        issues.append(
            Issue(
                type="url",
                severity=Severity.WARNING,
                message=f"Official URL is not accessible ({status_label})",
            )
        )
    if probe.url_contains_grant_name:
        url_score += URL_MENTIONS_POINTS
        checks_passed += 1
    elif probe.url_valid:
        issues.append(
            Issue(
                type="url",
                severity=Severity.INFO,
                message="Official URL does not appear to contain grant-specific content",
            )
        )

    source_score = _round_half_up(trust.source_quality_score * SOURCE_WEIGHT)
    checks_total += 1
    if trust.source_quality_score >= SOURCE_PASS_THRESHOLD:
        checks_passed += 1
    elif trust.source_quality_score < SOURCE_WARNING_THRESHOLD:
        issues.append(
            Issue(
                type="source",
                severity=Severity.WARNING,
                message=(
                    f"Source is {trust.source_type.value} "
                    f"({trust.source_domain_authority.value} authority)"
                ),
            )
        )

    crossref_score = 0
    if crossref.crossref_ran:
        for field in _cross_reference_fields(crossref):
            if field.state is MatchState.NOT_CHECKED:
                continue
            checks_total += 1
            if field.state is MatchState.MATCH:
                crossref_score += field.points
                checks_passed += 1
            else:
                issues.append(
                    Issue(
                        type="crossref",
                        severity=field.mismatch_severity,
                        message=f"{field.name} does not match fresh research",
                    )
                )

        critical = crossref.critical_discrepancies
        if critical:
            crossref_score = max(0, crossref_score - CRITICAL_DISCREPANCY_PENALTY)
            for discrepancy in critical:
                issues.append(
                    Issue(
                        type="crossref",
                        severity=Severity.CRITICAL,
                        message=discrepancy.explanation or f"Critical: {discrepancy.field} mismatch",
                    )
                )

    confidence = max(0, min(100, url_score + source_score + crossref_score))
    return VerificationOutcome(
        confidence=confidence,
        status=decide_status(confidence, issues),
        checks_passed=checks_passed,
        checks_total=checks_total,
        issues=tuple(issues),
    )


def decide_status(confidence: int, issues: list[Issue] | tuple[Issue, ...]) -> VerificationStatus:
    severities = {issue.severity for issue in issues}
    if Severity.CRITICAL in severities:
        return VerificationStatus.FAILED
    has_warning = Severity.WARNING in severities
    if confidence >= VERIFIED_THRESHOLD and not has_warning:
        return VerificationStatus.VERIFIED
    if confidence >= WARNING_THRESHOLD or has_warning:
        return VerificationStatus.WARNING
    return VerificationStatus.FAILED


def _cross_reference_fields(crossref: CrossReferenceResult) -> tuple[_CrossReferenceField, ...]:
    return (
        _CrossReferenceField("amount", crossref.amount_match, 20, Severity.CRITICAL),
        _CrossReferenceField("deadline", crossref.deadline_match, 15, Severity.WARNING),
        _CrossReferenceField("eligibility", crossref.eligibility_match, 10, Severity.WARNING),
    )


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))
