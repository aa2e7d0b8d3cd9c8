"""API endpoints for verifying stored grants."""

from __future__ import annotations

import logging
import secrets

from fastapi import APIRouter, Depends, Header, HTTPException, status
from pydantic import BaseModel, Field

from app.config import settings
from app.models.grant import BatchSummary, VerificationReport
from app.services.verification.errors import VerificationError
from app.services.verification.orchestrator import (
    GrantVerificationService,
    get_verification_service,
)

router = APIRouter()
logger = logging.getLogger(__name__)

VERIFICATION_CHECKS = [
    "URL accessibility (HTTP status)",
    "URL content matches grant name",
    "Government domain detection",
    "Source quality scoring",
    "AI web search cross-reference",
    "Amount verification",
    "Deadline verification",
    "Eligibility verification",
    "Program existence check",
    "Program active status check",
]


class VerifyGrantRequest(BaseModel):
    """Request payload identifying the grant to verify."""

    grant_id: str | None = Field(default=None, description="Identifier of the stored grant.")


@router.post("/verify-grant", response_model=VerificationReport)
async def verify_grant(
    payload: VerifyGrantRequest,
    service: GrantVerificationService = Depends(get_verification_service),
) -> VerificationReport:
    """Run a full verification for one grant."""
    try:
        return await service.verify(payload.grant_id)
    except VerificationError as exc:
        logger.error(
            "verification.api_error",
            extra={"grant_id": payload.grant_id, "code": exc.code},
        )
        raise HTTPException(status_code=_map_error_code(exc.code), detail=str(exc)) from exc


@router.get("/verify-grant")
async def describe_verify_grant() -> dict[str, object]:
    """Describe the verification endpoint and whether research is configured."""
    return {
        "endpoint": "POST /api/verify-grant",
        "description": "Verifies a grant by probing its official URL and cross-referencing with web research",
        "body": {"grant_id": "string"},
        "api_key_set": settings.research_configured,
        "checks": VERIFICATION_CHECKS,
    }


@router.get("/verify-all", response_model=BatchSummary, response_model_exclude_none=True)
async def verify_all(
    authorization: str | None = Header(default=None),
    service: GrantVerificationService = Depends(get_verification_service),
) -> BatchSummary:
    """Re-verify every grant that is stale or has never been verified."""
    _require_cron_secret(authorization)
    try:
        return await service.reverify_stale()
    except VerificationError as exc:
        logger.error("verification.batch.api_error", extra={"code": exc.code})
        raise HTTPException(status_code=_map_error_code(exc.code), detail=str(exc)) from exc


def _require_cron_secret(authorization: str | None) -> None:
    secret = settings.cron_secret
    if not secret:
        return
    expected = f"Bearer {secret}"
    if not authorization or not secrets.compare_digest(authorization, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def _map_error_code(code: str) -> int:
    if code.startswith("400_"):
        return status.HTTP_400_BAD_REQUEST
    if code.startswith("404_"):
        return status.HTTP_404_NOT_FOUND
    if code.startswith("503_"):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if code.startswith("502_"):
        return status.HTTP_502_BAD_GATEWAY
    if code == "429_RATE_LIMIT":
        return status.HTTP_429_TOO_MANY_REQUESTS
    return status.HTTP_500_INTERNAL_SERVER_ERROR
