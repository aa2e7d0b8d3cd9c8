from __future__ import annotations

from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone

from app.api.routes import verification as verification_routes
from app.main import app
from app.services.verification.crossref import CrossReferenceVerifier
from app.services.verification.orchestrator import (
    GrantVerificationService,
    get_verification_service,
)
from app.services.verification.prober import WebPageProber
from app.services.verification.repositories import GrantStore, InMemoryGrantStore
from tests.helpers.fakes import (
    MATCHING_RESEARCH,
    TRUST_TABLES,
    FailingReadsGrantStore,
    FakePageFetcher,
    FakeResearchService,
    build_grant,
    research_blocks,
)

NOW = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)


def _build_service(store: GrantStore, *, configured: bool = True) -> GrantVerificationService:
    verifier = None
    if configured:
        verifier = CrossReferenceVerifier(
            service=FakeResearchService(research_blocks(MATCHING_RESEARCH)),
            system_prompt="Return JSON only.",
            today=lambda: date(2026, 3, 1),
        )

    async def _no_sleep(seconds: float) -> None:
        return None

    return GrantVerificationService(
        store=store,
        prober=WebPageProber(
            fetcher=FakePageFetcher(body="<h1>Smart&Start Italia</h1>"),
            tables=TRUST_TABLES,
        ),
        verifier=verifier,
        tables=TRUST_TABLES,
        clock=lambda: NOW,
        sleep=_no_sleep,
    )


@contextmanager
def _override_service(service: GrantVerificationService):
    app.dependency_overrides[get_verification_service] = lambda: service
    try:
        yield
    finally:
        app.dependency_overrides.pop(get_verification_service, None)


def test_verify_grant_returns_report(client):
    store = InMemoryGrantStore([build_grant()])
    with _override_service(_build_service(store)):
        response = client.post("/api/verify-grant", json={"grant_id": "grant-1"})

    assert response.status_code == 200
    body = response.json()
    assert body["grant_id"] == "grant-1"
    assert body["status"] == "verified"
    assert body["confidence"] == 89
    assert body["checks_passed"] == 5
    assert body["checks_total"] == 5
    assert body["source"] == {
        "source_quality_score": 95,
        "source_type": "official_government",
        "source_domain_authority": "top_tier",
    }
    assert body["crossref_discrepancies"] == []
    assert len(store.verifications) == 1


def test_verify_grant_requires_grant_id(client):
    with _override_service(_build_service(InMemoryGrantStore())):
        response = client.post("/api/verify-grant", json={})

    assert response.status_code == 400


def test_verify_grant_unknown_id_returns_404(client):
    with _override_service(_build_service(InMemoryGrantStore())):
        response = client.post("/api/verify-grant", json={"grant_id": "missing"})

    assert response.status_code == 404


def test_verify_grant_without_research_key_returns_503(client):
    store = InMemoryGrantStore([build_grant()])
    with _override_service(_build_service(store, configured=False)):
        response = client.post("/api/verify-grant", json={"grant_id": "grant-1"})

    assert response.status_code == 503
    assert store.verifications == []


def test_verify_grant_store_failure_returns_502(client):
    with _override_service(_build_service(FailingReadsGrantStore())):
        response = client.post("/api/verify-grant", json={"grant_id": "grant-1"})

    assert response.status_code == 502


def test_describe_verify_grant(client, monkeypatch):
    monkeypatch.setattr(verification_routes.settings, "openai_api_key", "sk-test")

    response = client.get("/api/verify-grant")

    assert response.status_code == 200
    body = response.json()
    assert body["api_key_set"] is True
    assert "Program existence check" in body["checks"]


def test_verify_all_runs_stale_grants(client, monkeypatch):
    monkeypatch.setattr(verification_routes.settings, "cron_secret", None)
    store = InMemoryGrantStore(
        [
            build_grant(id="stale", last_verified_at=NOW - timedelta(days=30)),
            build_grant(id="fresh", last_verified_at=NOW - timedelta(hours=1)),
        ]
    )
    with _override_service(_build_service(store)):
        response = client.get("/api/verify-all")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "complete"
    assert body["total_queued"] == 1
    assert body["verified"] == 1
    assert body["results"][0]["grant_id"] == "stale"
    assert body["results"][0]["checks"] == "5/5"


def test_verify_all_requires_cron_secret(client, monkeypatch):
    monkeypatch.setattr(verification_routes.settings, "cron_secret", "s3cret")
    store = InMemoryGrantStore([build_grant(id="stale")])
    with _override_service(_build_service(store)):
        missing = client.get("/api/verify-all")
        wrong = client.get("/api/verify-all", headers={"Authorization": "Bearer nope"})
        accepted = client.get("/api/verify-all", headers={"Authorization": "Bearer s3cret"})

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert accepted.status_code == 200
    assert accepted.json()["verified"] == 1


def test_verify_all_store_failure_returns_502(client, monkeypatch):
    monkeypatch.setattr(verification_routes.settings, "cron_secret", None)
    with _override_service(_build_service(FailingReadsGrantStore())):
        response = client.get("/api/verify-all")

    assert response.status_code == 502
