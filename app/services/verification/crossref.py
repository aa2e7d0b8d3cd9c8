"""Independent re-research of a grant's facts through a web-search-enabled model."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping, Sequence
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

from app.clients.research import OpenAIResearchClient, ResearchService, ResearchServiceError
from app.config import settings
from app.models.grant import CrossReferenceResult, Discrepancy, GrantRecord, MatchState, Severity
from app.observability.metrics import metrics
from app.services.verification.errors import VerificationConfigurationError
from app.services.verification.parsing import (
    ResearchPayload,
    Unparsable,
    collect_text_segments,
    parse_research_payload,
)
from app.services.verification.trust import PROJECT_ROOT

logger = logging.getLogger(__name__)

NOT_SET = "Not set"


class CrossReferenceVerifier:
    """Asks the research service to re-derive a grant's facts and diff them."""

    def __init__(
        self,
        *,
        service: ResearchService,
        system_prompt: str,
        today: Callable[[], date] | None = None,
    ) -> None:
        self._service = service
        self._system_prompt = system_prompt
        self._today = today or _utc_today

    async def cross_reference(self, grant: GrantRecord) -> CrossReferenceResult:
        user_prompt = render_user_prompt(grant, today=self._today())
        start = time.perf_counter()
        try:
            blocks = await self._service.research(
                system_prompt=self._system_prompt,
                user_prompt=user_prompt,
            )
        except ResearchServiceError as exc:
            metrics.increment("crossref.errors", tags={"code": exc.code})
            logger.error(
                "verification.crossref.provider_error",
                extra={"grant_id": grant.id, "code": exc.code, "error": str(exc)},
            )
            return CrossReferenceResult.not_run()
        except Exception:  # pragma: no cover - provider SDK bugs
            metrics.increment("crossref.errors", tags={"code": "UNEXPECTED"})
            logger.exception("verification.crossref.unexpected_error", extra={"grant_id": grant.id})
            return CrossReferenceResult.not_run()
        finally:
            metrics.timing("crossref.latency_ms", (time.perf_counter() - start) * 1000)

        text = "\n".join(collect_text_segments(blocks))
        parsed = parse_research_payload(text)
        if isinstance(parsed, Unparsable):
            metrics.increment("crossref.unparsable", tags={"reason": parsed.reason})
            logger.warning(
                "verification.crossref.unparsable",
                extra={"grant_id": grant.id, "reason": parsed.reason, "excerpt": parsed.excerpt},
            )
            return CrossReferenceResult.not_run()

        result = build_cross_reference_result(parsed.payload, grant)
        logger.info(
            "verification.crossref.completed",
            extra={
                "grant_id": grant.id,
                "strategy": parsed.strategy,
                "discrepancies": len(result.discrepancies),
                "notes": parsed.payload.confidence_notes,
            },
        )
        return result


def build_cross_reference_result(payload: ResearchPayload, grant: GrantRecord) -> CrossReferenceResult:
    comparisons = payload.comparisons
    discrepancies = _copy_discrepancies(payload.discrepancies, grant_id=grant.id)

    if payload.program_found is False:
        discrepancies.append(
            Discrepancy(
                field="program_existence",
                database_value="Listed as active",
                fresh_value="Program not found via web search",
                severity=Severity.CRITICAL.value,
                explanation=(
                    "Could not verify this grant program exists. It may have been discontinued, "
                    "renamed, or the search terms may not match."
                ),
            )
        )
    if payload.program_still_active is False:
        discrepancies.append(
            Discrepancy(
                field="program_status",
                database_value=grant.window_status or "Unknown",
                fresh_value="Program appears inactive/closed",
                severity=Severity.CRITICAL.value,
                explanation="This program may no longer be accepting applications.",
            )
        )

    return CrossReferenceResult(
        crossref_ran=True,
        amount_match=MatchState.from_flag(comparisons.amount_match if comparisons else None),
        deadline_match=MatchState.from_flag(comparisons.deadline_match if comparisons else None),
        eligibility_match=MatchState.from_flag(comparisons.eligibility_match if comparisons else None),
        discrepancies=tuple(discrepancies),
        fresh_data=dict(payload.fresh_data),
    )


def render_user_prompt(grant: GrantRecord, *, today: date) -> str:
    lines = [
        "INDEPENDENTLY verify this grant. Search the web for current, official information "
        "and compare against our database record.",
        "",
        f"GRANT NAME: {grant.name}",
    ]
    if grant.name_it:
        lines.append(f"ITALIAN NAME: {grant.name_it}")
    lines.append(f"FUNDING SOURCE: {grant.funding_source or 'Unknown'}")
    if grant.regulation_reference:
        lines.append(f"REGULATION: {grant.regulation_reference}")
    deadline = grant.application_deadline.isoformat() if grant.application_deadline else NOT_SET
    lines.extend(
        [
            "",
            "DATABASE VALUES TO VERIFY:",
            f"- Max amount: {_format_amount(grant.max_amount)}",
            f"- Min amount: {_format_amount(grant.min_amount)}",
            f"- Application deadline: {deadline}",
            f"- Window status: {grant.window_status or 'Unknown'}",
            f"- Eligibility: {grant.eligibility_summary or NOT_SET}",
            f"- Official URL: {grant.official_url or NOT_SET}",
            "",
            f"Today's date: {today.isoformat()}",
            "",
            "Search for the OFFICIAL source of this grant program and verify each field above.",
        ]
    )
    return "\n".join(lines)


def load_system_prompt(path: str | None = None) -> str:
    prompt_path = Path(path or settings.research_system_prompt_path).expanduser()
    if not prompt_path.is_absolute():
        prompt_path = PROJECT_ROOT / prompt_path
    if not prompt_path.exists():
        raise FileNotFoundError(f"Verification prompt not found at {prompt_path}")
    return prompt_path.read_text(encoding="utf-8").strip()


def build_cross_reference_verifier(service: ResearchService | None = None) -> CrossReferenceVerifier:
    """Create a verifier backed by OpenAI unless a service is supplied."""
    if service is None:
        if not settings.research_configured:
            raise VerificationConfigurationError(
                "OPENAI_API_KEY is required to cross-reference grants.",
                code="503_RESEARCH_UNCONFIGURED",
            )
        service = OpenAIResearchClient.from_settings()
    return CrossReferenceVerifier(service=service, system_prompt=load_system_prompt())


def _copy_discrepancies(entries: Sequence[Any], *, grant_id: str) -> list[Discrepancy]:
    copied: list[Discrepancy] = []
    for entry in entries:
        if not isinstance(entry, Mapping):
            logger.warning(
                "verification.crossref.discrepancy_skipped",
                extra={"grant_id": grant_id, "entry_type": type(entry).__name__},
            )
            continue
        copied.append(Discrepancy.model_validate(dict(entry)))
    return copied


def _format_amount(value: float | None) -> str:
    if not value:
        return NOT_SET
    if float(value).is_integer():
        return f"€{int(value):,}"
    return f"€{value:,.2f}"


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()
