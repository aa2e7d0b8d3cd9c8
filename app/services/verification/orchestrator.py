"""Sequences one verification run end to end, plus batch re-verification."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable, Sequence
from datetime import datetime, timedelta, timezone

from app.config import settings
from app.models.grant import (
    TIMEOUT_MARKER,
    BatchResultEntry,
    BatchSummary,
    CrossReferenceResult,
    GrantRecord,
    GrantVerificationUpdate,
    ProbeResult,
    TrustScore,
    VerificationLogEntry,
    VerificationOutcome,
    VerificationReport,
)
from app.observability.metrics import metrics
from app.services.verification.confidence import aggregate
from app.services.verification.crossref import CrossReferenceVerifier, build_cross_reference_verifier
from app.services.verification.errors import (
    GrantNotFoundError,
    GrantStoreError,
    VerificationConfigurationError,
    VerificationError,
    VerificationInputError,
)
from app.services.verification.prober import HttpxPageFetcher, WebPageProber
from app.services.verification.repositories import GrantStore, build_grant_store
from app.services.verification.trust import DomainTrustTables, get_trust_tables, score_source

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GrantVerificationService:
    """Runs probe, trust scoring, cross-reference and aggregation for stored grants."""

    def __init__(
        self,
        *,
        store: GrantStore,
        prober: WebPageProber,
        verifier: CrossReferenceVerifier | None,
        tables: DomainTrustTables,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._store = store
        self._prober = prober
        self._verifier = verifier
        self._tables = tables
        self._clock = clock or _utcnow
        self._sleep = sleep or asyncio.sleep

    @property
    def store(self) -> GrantStore:
        return self._store

    @property
    def research_configured(self) -> bool:
        return self._verifier is not None

    async def verify(self, grant_id: str | None) -> VerificationReport:
        """Verify one grant and persist the outcome.

        Raises VerificationInputError, VerificationConfigurationError,
        GrantNotFoundError or GrantStoreError before any side effect happens.
        Probe, cross-reference and persistence failures never escape.
        """
        normalized_id = (grant_id or "").strip()
        if not normalized_id:
            raise VerificationInputError("grant_id is required.", code="400_GRANT_ID_REQUIRED")
        if self._verifier is None:
            raise VerificationConfigurationError(
                "OPENAI_API_KEY is required to cross-reference grants.",
                code="503_RESEARCH_UNCONFIGURED",
            )

        start = time.perf_counter()
        grant = await self._store.get_grant(normalized_id)
        if grant is None:
            raise GrantNotFoundError(f"Grant {normalized_id} not found.", code="404_GRANT_NOT_FOUND")

        probe, crossref = await asyncio.gather(
            self._probe(grant),
            self._verifier.cross_reference(grant),
        )
        trust = score_source(probe.url_domain, probe.url_is_government, probe.url_valid, self._tables)
        outcome = aggregate(probe, trust, crossref)
        duration_ms = int(round((time.perf_counter() - start) * 1000))

        await self._persist(grant, probe, trust, crossref, outcome, duration_ms)

        metrics.increment("verification.completed", tags={"status": outcome.status.value})
        metrics.timing("verification.duration_ms", duration_ms)
        logger.info(
            "verification.completed",
            extra={
                "grant_id": grant.id,
                "status": outcome.status.value,
                "confidence": outcome.confidence,
                "checks": f"{outcome.checks_passed}/{outcome.checks_total}",
                "duration_ms": duration_ms,
            },
        )
        return VerificationReport(
            grant_id=grant.id,
            status=outcome.status,
            confidence=outcome.confidence,
            checks_passed=outcome.checks_passed,
            checks_total=outcome.checks_total,
            issues=list(outcome.issues),
            source=trust,
            crossref_discrepancies=list(crossref.discrepancies),
            fresh_data=dict(crossref.fresh_data),
            duration_ms=duration_ms,
        )

    async def verify_many(
        self,
        grant_ids: Sequence[str],
        *,
        time_budget_seconds: float | None = None,
        pause_seconds: float | None = None,
    ) -> BatchSummary:
        """Verify grants one at a time, stopping once the time budget is spent."""
        budget = settings.verify_all_time_budget_seconds if time_budget_seconds is None else time_budget_seconds
        pause = settings.verify_all_pause_seconds if pause_seconds is None else pause_seconds
        start = time.perf_counter()
        summary = BatchSummary(total_queued=len(grant_ids))

        for index, grant_id in enumerate(grant_ids):
            if time.perf_counter() - start > budget:
                summary.results.append(
                    BatchResultEntry(
                        grant_id=TIMEOUT_MARKER,
                        message=f"Stopped after {summary.verified} grants due to timeout",
                    )
                )
                logger.warning(
                    "verification.batch.timeout",
                    extra={"verified": summary.verified, "remaining": len(grant_ids) - index},
                )
                break

            try:
                report = await self.verify(grant_id)
            except VerificationError as exc:
                summary.results.append(BatchResultEntry(grant_id=grant_id, error=str(exc)))
                summary.failed += 1
                logger.warning(
                    "verification.batch.grant_failed",
                    extra={"grant_id": grant_id, "code": exc.code, "error": str(exc)},
                )
            except Exception as exc:
                summary.results.append(BatchResultEntry(grant_id=grant_id, error=str(exc)))
                summary.failed += 1
                logger.exception("verification.batch.grant_crashed", extra={"grant_id": grant_id})
            else:
                summary.results.append(BatchResultEntry.from_report(report))
                summary.verified += 1

            if pause > 0 and index < len(grant_ids) - 1:
                await self._sleep(pause)

        summary.duration_ms = int(round((time.perf_counter() - start) * 1000))
        metrics.gauge("verification.batch.queued", summary.total_queued)
        metrics.increment("verification.batch.verified", summary.verified)
        metrics.increment("verification.batch.failed", summary.failed)
        logger.info(
            "verification.batch.completed",
            extra={
                "total_queued": summary.total_queued,
                "verified": summary.verified,
                "failed": summary.failed,
                "duration_ms": summary.duration_ms,
            },
        )
        return summary

    async def reverify_stale(
        self,
        *,
        extra_ids: Iterable[str] = (),
        stale_after_days: int | None = None,
        time_budget_seconds: float | None = None,
        pause_seconds: float | None = None,
    ) -> BatchSummary:
        """Collect grants due for verification and run them through verify_many."""
        targets = await collect_reverification_targets(
            self._store,
            stale_after_days=stale_after_days,
            extra_ids=extra_ids,
            now=self._clock(),
        )
        if not targets:
            logger.info("verification.batch.empty")
            return BatchSummary(message="No grants need verification")
        return await self.verify_many(
            targets,
            time_budget_seconds=time_budget_seconds,
            pause_seconds=pause_seconds,
        )

    async def _probe(self, grant: GrantRecord) -> ProbeResult:
        if not grant.official_url:
            return ProbeResult.empty()
        return await self._prober.probe(grant.official_url, grant.name)

    async def _persist(
        self,
        grant: GrantRecord,
        probe: ProbeResult,
        trust: TrustScore,
        crossref: CrossReferenceResult,
        outcome: VerificationOutcome,
        duration_ms: int,
    ) -> None:
        entry = VerificationLogEntry.from_run(
            grant_id=grant.id,
            probe=probe,
            trust=trust,
            crossref=crossref,
            outcome=outcome,
            duration_ms=duration_ms,
        )
        try:
            await self._store.insert_verification(entry)
        except Exception as exc:
            _record_persistence_failure(grant.id, "insert_log", exc)

        update = GrantVerificationUpdate.from_run(
            trust=trust,
            crossref=crossref,
            outcome=outcome,
            duration_ms=duration_ms,
            verified_at=self._clock(),
        )
        try:
            await self._store.update_grant_verification(grant.id, update)
        except Exception as exc:
            _record_persistence_failure(grant.id, "update_grant", exc)


def _record_persistence_failure(grant_id: str, operation: str, exc: Exception) -> None:
    code = exc.code if isinstance(exc, GrantStoreError) else "502_GRANT_STORE_WRITE"
    metrics.increment("verification.persistence.errors", tags={"operation": operation, "code": code})
    logger.exception(
        "verification.persistence.failed",
        extra={"grant_id": grant_id, "operation": operation, "code": code},
    )


async def collect_reverification_targets(
    store: GrantStore,
    *,
    stale_after_days: int | None = None,
    extra_ids: Iterable[str] = (),
    now: datetime | None = None,
) -> list[str]:
    """Explicit ids first, then grants never verified or verified before the cutoff."""
    days = settings.verify_all_stale_after_days if stale_after_days is None else stale_after_days
    cutoff = (now or _utcnow()) - timedelta(days=days)
    stale_ids = await store.list_stale_grant_ids(cutoff)

    targets: list[str] = []
    seen: set[str] = set()
    for grant_id in [*extra_ids, *stale_ids]:
        normalized = str(grant_id).strip()
        if normalized and normalized not in seen:
            seen.add(normalized)
            targets.append(normalized)
    logger.info(
        "verification.batch.targets",
        extra={"stale": len(stale_ids), "total": len(targets), "cutoff": cutoff.isoformat()},
    )
    return targets


def build_verification_service(
    *,
    store: GrantStore | None = None,
    verifier: CrossReferenceVerifier | None = None,
) -> GrantVerificationService:
    """Wire the service from settings; research stays unset when no key is configured."""
    tables = get_trust_tables()
    if verifier is None and settings.research_configured:
        verifier = build_cross_reference_verifier()
    elif verifier is None:
        logger.warning("verification.research.unconfigured")
    return GrantVerificationService(
        store=store or build_grant_store(),
        prober=WebPageProber(fetcher=HttpxPageFetcher(), tables=tables),
        verifier=verifier,
        tables=tables,
    )


_SERVICE_INSTANCE: GrantVerificationService | None = None


def get_verification_service() -> GrantVerificationService:
    """Singleton accessor used by API routes."""
    global _SERVICE_INSTANCE  # noqa: PLW0603
    if _SERVICE_INSTANCE is None:
        _SERVICE_INSTANCE = build_verification_service()
    return _SERVICE_INSTANCE
