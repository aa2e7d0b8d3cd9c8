from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from app.config import settings
from app.services.verification.orchestrator import (
    GrantVerificationService,
    get_verification_service,
)

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("")
async def health_check():
    """Basic health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
    }


@router.get("/ready")
async def readiness_check(service: GrantVerificationService = Depends(get_verification_service)):
    """Readiness check covering the grant store and the research credentials."""
    checks: dict[str, dict[str, str]] = {}

    if await service.store.ping():
        checks["store"] = {"status": "ok"}
    else:
        checks["store"] = {"status": "fail", "error": "Grant store is not reachable"}

    if service.research_configured:
        checks["research_key"] = {"status": "ok"}
    else:
        checks["research_key"] = {"status": "fail", "error": "OPENAI_API_KEY not set"}

    degraded = any(check["status"] == "fail" for check in checks.values())
    if degraded:
        logger.warning("health.degraded", extra={"checks": checks})
    return JSONResponse(
        status_code=503 if degraded else 200,
        content={
            "status": "degraded" if degraded else "ready",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": settings.app_version,
            "environment": settings.environment,
            "checks": checks,
        },
    )
