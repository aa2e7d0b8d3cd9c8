from __future__ import annotations

import json
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest
from sqlmodel import Session, SQLModel, create_engine, select

from app.models.grant import (
    AuthorityTier,
    CrossReferenceResult,
    Discrepancy,
    GrantVerificationUpdate,
    MatchState,
    ProbeResult,
    SourceType,
    TrustScore,
    VerificationLogEntry,
    VerificationOutcome,
    VerificationStatus,
)
from app.models.grant_record import GrantRow, GrantVerificationRow
from app.services.verification import repositories
from app.services.verification.errors import GrantStoreError
from app.services.verification.repositories import (
    InMemoryGrantStore,
    SqlGrantStore,
    SupabaseGrantStore,
)
from tests.helpers.fakes import build_grant, mock_http_client

NOW = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)
TRUST = TrustScore(
    source_quality_score=95,
    source_type=SourceType.OFFICIAL_GOVERNMENT,
    source_domain_authority=AuthorityTier.TOP_TIER,
)
CROSSREF = CrossReferenceResult(
    crossref_ran=True,
    amount_match=MatchState.MISMATCH,
    deadline_match=MatchState.MATCH,
    discrepancies=(Discrepancy(field="max_amount", database_value=50000, fresh_value=40000, severity="critical"),),
    fresh_data={"max_amount": 40000},
)
OUTCOME = VerificationOutcome(confidence=42, status=VerificationStatus.FAILED, checks_passed=4, checks_total=5)


def _log_entry(grant_id: str = "grant-1") -> VerificationLogEntry:
    return VerificationLogEntry.from_run(
        grant_id=grant_id,
        probe=ProbeResult(url_valid=True, url_status_code=200, url_domain="www.invitalia.it", url_is_government=True),
        trust=TRUST,
        crossref=CROSSREF,
        outcome=OUTCOME,
        duration_ms=1234,
    )


def _update() -> GrantVerificationUpdate:
    return GrantVerificationUpdate.from_run(
        trust=TRUST,
        crossref=CROSSREF,
        outcome=OUTCOME,
        duration_ms=1234,
        verified_at=NOW,
    )


@pytest.mark.asyncio
async def test_in_memory_store_round_trip():
    store = InMemoryGrantStore([build_grant()])

    await store.insert_verification(_log_entry())
    await store.update_grant_verification("grant-1", _update())

    grant = await store.get_grant("grant-1")
    assert grant.verification_status is VerificationStatus.FAILED
    assert grant.verification_confidence == 42
    assert grant.verification_details["discrepancy_count"] == 1
    assert store.verifications[0].crossref_amount_match is False
    assert await store.get_grant("other") is None
    assert await store.ping() is True


@pytest.mark.asyncio
async def test_in_memory_update_of_missing_grant_raises():
    store = InMemoryGrantStore()

    with pytest.raises(GrantStoreError):
        await store.update_grant_verification("missing", _update())


@pytest.fixture
def sqlite_url(tmp_path: Path) -> str:
    url = f"sqlite:///{tmp_path / 'grants.db'}"
    engine = create_engine(url)
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        session.add(
            GrantRow(
                id="grant-1",
                name="Smart&Start Italia",
                official_url="https://www.invitalia.it",
                max_amount=50000,
                application_window_closes=date(2026, 12, 31),
            )
        )
        session.add(
            GrantRow(
                id="grant-2",
                name="Resto al Sud",
                last_verified_at=NOW - timedelta(days=1),
            )
        )
        session.commit()
    engine.dispose()
    return url


@pytest.mark.asyncio
async def test_sql_store_reads_and_writes(sqlite_url: str):
    store = SqlGrantStore(sqlite_url)
    try:
        grant = await store.get_grant("grant-1")
        assert grant is not None
        assert grant.name == "Smart&Start Italia"
        assert grant.application_deadline == date(2026, 12, 31)
        assert await store.get_grant("missing") is None

        await store.insert_verification(_log_entry())
        await store.update_grant_verification("grant-1", _update())

        refreshed = await store.get_grant("grant-1")
        assert refreshed.verification_status is VerificationStatus.FAILED
        assert refreshed.verification_confidence == 42
        assert refreshed.last_verified_at.replace(tzinfo=None) == NOW.replace(tzinfo=None)
        assert refreshed.verification_details["fresh_data"] == {"max_amount": 40000}
        assert await store.ping() is True
    finally:
        store.dispose()

    engine = create_engine(sqlite_url)
    with Session(engine) as session:
        rows = session.exec(select(GrantVerificationRow)).all()
    engine.dispose()
    assert len(rows) == 1
    assert rows[0].grant_id == "grant-1"
    assert rows[0].crossref_amount_match is False
    assert rows[0].crossref_eligibility_match is None
    assert rows[0].crossref_discrepancies[0]["field"] == "max_amount"
    assert rows[0].source_type == "official_government"


@pytest.mark.asyncio
async def test_sql_store_lists_stale_grants(sqlite_url: str):
    store = SqlGrantStore(sqlite_url)
    try:
        stale = await store.list_stale_grant_ids(NOW - timedelta(days=7))
        everything = await store.list_stale_grant_ids(NOW)
    finally:
        store.dispose()

    assert stale == ["grant-1"]
    assert everything == ["grant-1", "grant-2"]


@pytest.mark.asyncio
async def test_sql_store_update_of_missing_grant_raises(sqlite_url: str):
    store = SqlGrantStore(sqlite_url)
    try:
        with pytest.raises(GrantStoreError) as excinfo:
            await store.update_grant_verification("missing", _update())
    finally:
        store.dispose()

    assert excinfo.value.code == "404_GRANT_NOT_FOUND"


def _supabase_store(handler) -> SupabaseGrantStore:
    return SupabaseGrantStore(
        base_url="https://project.supabase.co/",
        service_key="service-key",
        grants_table="grants",
        verifications_table="grant_verifications",
        http_client=mock_http_client(handler),
    )


@pytest.mark.asyncio
async def test_supabase_store_reads_grant():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[{"id": 7, "name": "Smart&Start Italia", "max_amount": 50000}])

    store = _supabase_store(handler)
    grant = await store.get_grant("7")

    assert grant.id == "7"
    assert grant.max_amount == 50000
    request = seen[0]
    assert request.url.path == "/rest/v1/grants"
    assert request.url.params["id"] == "eq.7"
    assert request.headers["apikey"] == "service-key"
    assert request.headers["authorization"] == "Bearer service-key"


@pytest.mark.asyncio
async def test_supabase_store_returns_none_for_empty_result():
    store = _supabase_store(lambda request: httpx.Response(200, json=[]))

    assert await store.get_grant("missing") is None


@pytest.mark.asyncio
async def test_supabase_store_writes_log_and_patches_grant():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201 if request.method == "POST" else 204)

    store = _supabase_store(handler)
    await store.insert_verification(_log_entry())
    await store.update_grant_verification("grant-1", _update())

    insert, patch = seen
    assert insert.method == "POST"
    assert insert.url.path == "/rest/v1/grant_verifications"
    assert insert.headers["prefer"] == "return=minimal"
    inserted = json.loads(insert.content)
    assert inserted["overall_confidence"] == 42
    assert inserted["crossref_amount_match"] is False
    assert inserted["crossref_eligibility_match"] is None

    assert patch.method == "PATCH"
    assert patch.url.params["id"] == "eq.grant-1"
    patched = json.loads(patch.content)
    assert patched["verification_status"] == "failed"
    assert patched["updated_at"] == patched["last_verified_at"]
    assert patched["verification_details"]["checks_passed"] == 4


@pytest.mark.asyncio
async def test_supabase_store_lists_stale_ids():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[{"id": "a"}, {"id": 2}])

    store = _supabase_store(handler)
    ids = await store.list_stale_grant_ids(NOW - timedelta(days=7))

    assert ids == ["a", "2"]
    assert seen[0].url.params["or"] == "(last_verified_at.is.null,last_verified_at.lt.2026-02-22T09:30:00Z)"


@pytest.mark.asyncio
async def test_supabase_store_maps_http_failures():
    store = _supabase_store(lambda request: httpx.Response(500, json={"message": "boom"}))

    with pytest.raises(GrantStoreError) as excinfo:
        await store.get_grant("grant-1")

    assert excinfo.value.code == "502_GRANT_STORE_READ"
    assert await store.ping() is False


@pytest.mark.asyncio
async def test_supabase_store_maps_invalid_grant_rows():
    store = _supabase_store(lambda request: httpx.Response(200, json=[{"id": "g1", "name": None}]))

    with pytest.raises(GrantStoreError) as excinfo:
        await store.get_grant("g1")

    assert excinfo.value.code == "502_GRANT_STORE_READ"


@pytest.mark.asyncio
async def test_supabase_store_maps_non_json_bodies():
    store = _supabase_store(lambda request: httpx.Response(200, text="<html>gateway</html>"))

    with pytest.raises(GrantStoreError) as excinfo:
        await store.get_grant("g1")
    with pytest.raises(GrantStoreError):
        await store.list_stale_grant_ids(NOW)

    assert excinfo.value.code == "502_GRANT_STORE_READ"

@pytest.mark.asyncio
async def test_supabase_store_maps_transport_failures():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    store = _supabase_store(handler)

    with pytest.raises(GrantStoreError) as excinfo:
        await store.insert_verification(_log_entry())

    assert excinfo.value.code == "502_GRANT_STORE_WRITE"


def test_build_grant_store_defaults_to_memory(monkeypatch):
    monkeypatch.setattr(repositories.settings, "supabase_url", None)
    monkeypatch.setattr(repositories.settings, "database_url", None)

    assert isinstance(repositories.build_grant_store(), InMemoryGrantStore)


def test_build_grant_store_prefers_supabase(monkeypatch):
    monkeypatch.setattr(repositories.settings, "supabase_url", "https://project.supabase.co")
    monkeypatch.setattr(repositories.settings, "supabase_service_key", "service-key")

    assert isinstance(repositories.build_grant_store(), SupabaseGrantStore)


def test_build_grant_store_uses_database_url(monkeypatch, tmp_path: Path):
    monkeypatch.setattr(repositories.settings, "supabase_url", None)
    monkeypatch.setattr(repositories.settings, "db_auto_create_schema", True)

    store = repositories.build_grant_store(f"sqlite:///{tmp_path / 'auto.db'}")
    try:
        assert isinstance(store, SqlGrantStore)
    finally:
        store.dispose()
