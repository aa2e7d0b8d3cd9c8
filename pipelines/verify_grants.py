"""Batch re-verification of stale grants from the command line."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Sequence

from app.config import settings
from app.models.grant import BatchSummary
from app.services.verification.errors import VerificationConfigurationError, VerificationError
from app.services.verification.orchestrator import GrantVerificationService, build_verification_service

logger = logging.getLogger("pipelines.verify_grants")


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Re-verify grants that are stale or never verified.")
    parser.add_argument(
        "--grant-id",
        dest="grant_ids",
        action="append",
        default=[],
        help="Grant id to verify in addition to stale grants (repeatable).",
    )
    parser.add_argument(
        "--stale-after-days",
        type=int,
        default=settings.verify_all_stale_after_days,
        help="Treat grants verified more than this many days ago as stale.",
    )
    parser.add_argument(
        "--time-budget-seconds",
        type=float,
        default=settings.verify_all_time_budget_seconds,
        help="Stop starting new verifications after this many seconds.",
    )
    parser.add_argument(
        "--pause-seconds",
        type=float,
        default=settings.verify_all_pause_seconds,
        help="Delay between consecutive verifications.",
    )
    parser.add_argument("--json", action="store_true", help="Print the summary as JSON to stdout.")
    return parser.parse_args(argv)


async def run(args: argparse.Namespace, service: GrantVerificationService) -> BatchSummary:
    return await service.reverify_stale(
        extra_ids=args.grant_ids,
        stale_after_days=args.stale_after_days,
        time_budget_seconds=args.time_budget_seconds,
        pause_seconds=args.pause_seconds,
    )


def main(
    argv: Sequence[str] | None = None,
    *,
    service: GrantVerificationService | None = None,
) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    try:
        service = service or build_verification_service()
        if not service.research_configured:
            raise VerificationConfigurationError(
                "OPENAI_API_KEY is required to cross-reference grants.",
                code="503_RESEARCH_UNCONFIGURED",
            )
        summary = asyncio.run(run(args, service))
    except VerificationError as exc:
        logger.error("verification.batch.run_failed", extra={"code": exc.code, "error": str(exc)})
        return 1

    logger.info(
        "verification.batch.summary",
        extra={
            "total_queued": summary.total_queued,
            "verified": summary.verified,
            "failed": summary.failed,
            "timed_out": summary.timed_out,
            "duration_ms": summary.duration_ms,
        },
    )
    if args.json:
        print(json.dumps(summary.model_dump(mode="json", exclude_none=True), indent=2))
    return 0


if __name__ == "__main__":
    logging.basicConfig(level=getattr(logging, settings.log_level.upper()))
    raise SystemExit(main())
