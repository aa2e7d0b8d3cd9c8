from __future__ import annotations

from contextlib import contextmanager

from app.main import app
from app.services.verification.crossref import CrossReferenceVerifier
from app.services.verification.orchestrator import (
    GrantVerificationService,
    get_verification_service,
)
from app.services.verification.prober import WebPageProber
from app.services.verification.repositories import GrantStore, InMemoryGrantStore
from tests.helpers.fakes import TRUST_TABLES, FailingReadsGrantStore, FakePageFetcher, FakeResearchService


def _service(store: GrantStore, *, configured: bool) -> GrantVerificationService:
    verifier = (
        CrossReferenceVerifier(service=FakeResearchService(), system_prompt="Return JSON only.")
        if configured
        else None
    )
    return GrantVerificationService(
        store=store,
        prober=WebPageProber(fetcher=FakePageFetcher(), tables=TRUST_TABLES),
        verifier=verifier,
        tables=TRUST_TABLES,
    )


@contextmanager
def _override_service(service: GrantVerificationService):
    app.dependency_overrides[get_verification_service] = lambda: service
    try:
        yield
    finally:
        app.dependency_overrides.pop(get_verification_service, None)


def test_health_check(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert "version" in body


def test_readiness_ok(client):
    with _override_service(_service(InMemoryGrantStore(), configured=True)):
        response = client.get("/health/ready")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ready"
    assert body["checks"]["store"] == {"status": "ok"}
    assert body["checks"]["research_key"] == {"status": "ok"}


def test_readiness_degraded_without_research_key(client):
    with _override_service(_service(InMemoryGrantStore(), configured=False)):
        response = client.get("/health/ready")

    assert response.status_code == 503
    body = response.json()
    assert body["status"] == "degraded"
    assert body["checks"]["research_key"]["status"] == "fail"


def test_readiness_degraded_when_store_unreachable(client):
    with _override_service(_service(FailingReadsGrantStore(), configured=True)):
        response = client.get("/health/ready")

    assert response.status_code == 503
    assert response.json()["checks"]["store"]["status"] == "fail"


def test_root_endpoint(client):
    response = client.get("/")

    assert response.status_code == 200
    assert "Welcome" in response.json()["message"]
