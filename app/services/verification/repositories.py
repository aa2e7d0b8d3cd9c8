"""Persistence backends for grants and their verification log."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Protocol

import httpx
from sqlalchemy import or_, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import URL, make_url
from sqlalchemy.exc import SQLAlchemyError
from pydantic import ValidationError
from sqlmodel import Session, SQLModel, create_engine, select

from app.config import settings
from app.models.grant import GrantRecord, GrantVerificationUpdate, VerificationLogEntry
from app.models.grant_record import GrantRow, GrantVerificationRow
from app.observability.metrics import metrics
from app.services.verification.errors import GrantStoreError

logger = logging.getLogger(__name__)


class GrantStore(Protocol):
    """Persistence contract used by the verification orchestrator."""

    async def get_grant(self, grant_id: str) -> GrantRecord | None:
        ...

    async def insert_verification(self, entry: VerificationLogEntry) -> None:
        ...

    async def update_grant_verification(self, grant_id: str, update: GrantVerificationUpdate) -> None:
        ...

    async def list_stale_grant_ids(self, verified_before: datetime) -> list[str]:
        ...

    async def ping(self) -> bool:
        ...


class InMemoryGrantStore(GrantStore):
    """Thread-safe store used for local development and tests."""

    def __init__(self, grants: list[GrantRecord] | None = None) -> None:
        self._grants: dict[str, GrantRecord] = {}
        self._verifications: list[VerificationLogEntry] = []
        self._lock = Lock()
        for grant in grants or []:
            self.add_grant(grant)

    def add_grant(self, grant: GrantRecord) -> None:
        with self._lock:
            self._grants[grant.id] = grant

    @property
    def verifications(self) -> list[VerificationLogEntry]:
        with self._lock:
            return list(self._verifications)

    async def get_grant(self, grant_id: str) -> GrantRecord | None:
        with self._lock:
            return self._grants.get(grant_id)

    async def insert_verification(self, entry: VerificationLogEntry) -> None:
        with self._lock:
            self._verifications.append(entry)
        metrics.increment("verification.persistence.logged", tags={"repository": "memory"})

    async def update_grant_verification(self, grant_id: str, update: GrantVerificationUpdate) -> None:
        with self._lock:
            current = self._grants.get(grant_id)
            if current is None:
                raise GrantStoreError(
                    f"Grant {grant_id} disappeared before its verification was stored.",
                    code="404_GRANT_NOT_FOUND",
                )
            self._grants[grant_id] = current.model_copy(update=update.model_dump())
        metrics.increment("verification.persistence.updated", tags={"repository": "memory"})

    async def list_stale_grant_ids(self, verified_before: datetime) -> list[str]:
        with self._lock:
            grants = list(self._grants.values())
        return [
            grant.id
            for grant in grants
            if grant.last_verified_at is None or grant.last_verified_at < verified_before
        ]

    async def ping(self) -> bool:
        return True


class SqlGrantStore(GrantStore):
    """SQLModel-backed store for Postgres/Supabase connections or local SQLite."""

    def __init__(
        self,
        database_url: str,
        *,
        pool_min_size: int | None = None,
        pool_max_size: int | None = None,
        auto_create_schema: bool = False,
    ) -> None:
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlGrantStore.")

        parsed_url = make_url(database_url)
        sync_url, connect_args, drivername = _coerce_sync_database_url(parsed_url)
        pool_min = max(pool_min_size or settings.db_pool_min_size, 1)
        pool_max = max(pool_max_size or settings.db_pool_max_size, pool_min)
        is_sqlite = drivername.startswith("sqlite")
        engine_kwargs: dict[str, Any] = {
            "echo": settings.debug and not is_sqlite,
            "connect_args": connect_args,
            "pool_pre_ping": not is_sqlite,
        }
        if not is_sqlite:
            engine_kwargs["pool_size"] = pool_min
            engine_kwargs["max_overflow"] = max(pool_max - pool_min, 0)

        self._engine: Engine = create_engine(sync_url, **engine_kwargs)
        if auto_create_schema:
            SQLModel.metadata.create_all(self._engine)
        self._metrics_tags = {"repository": _resolve_metrics_tag(parsed_url, drivername)}

    def dispose(self) -> None:
        """Close the underlying SQLAlchemy engine."""
        self._engine.dispose()

    async def get_grant(self, grant_id: str) -> GrantRecord | None:
        return await asyncio.to_thread(self._get_grant, grant_id)

    async def insert_verification(self, entry: VerificationLogEntry) -> None:
        await asyncio.to_thread(self._insert_verification, entry)

    async def update_grant_verification(self, grant_id: str, update: GrantVerificationUpdate) -> None:
        await asyncio.to_thread(self._update_grant_verification, grant_id, update)

    async def list_stale_grant_ids(self, verified_before: datetime) -> list[str]:
        return await asyncio.to_thread(self._list_stale_grant_ids, verified_before)

    async def ping(self) -> bool:
        return await asyncio.to_thread(self._ping)

    def _get_grant(self, grant_id: str) -> GrantRecord | None:
        try:
            with self._session() as session:
                row = session.get(GrantRow, grant_id)
                return row.to_grant_record() if row else None
        except (SQLAlchemyError, ValidationError) as exc:
            logger.exception(
                "verification.persistence.error",
                extra={"grant_id": grant_id, "operation": "get_grant", **self._metrics_tags},
            )
            raise GrantStoreError("Failed to load grant.", code="502_GRANT_STORE_READ") from exc

    def _insert_verification(self, entry: VerificationLogEntry) -> None:
        try:
            with self._session() as session:
                session.add(GrantVerificationRow.from_log_entry(entry))
                session.commit()
        except SQLAlchemyError as exc:
            raise GrantStoreError(
                "Failed to insert verification log row.", code="502_GRANT_STORE_WRITE"
            ) from exc
        metrics.increment("verification.persistence.logged", tags=self._metrics_tags)

    def _update_grant_verification(self, grant_id: str, update: GrantVerificationUpdate) -> None:
        try:
            with self._session() as session:
                row = session.get(GrantRow, grant_id)
                if row is None:
                    raise GrantStoreError(
                        f"Grant {grant_id} disappeared before its verification was stored.",
                        code="404_GRANT_NOT_FOUND",
                    )
                row.apply_update(update)
                session.add(row)
                session.commit()
        except SQLAlchemyError as exc:
            raise GrantStoreError(
                "Failed to update grant verification fields.", code="502_GRANT_STORE_WRITE"
            ) from exc
        metrics.increment("verification.persistence.updated", tags=self._metrics_tags)

    def _list_stale_grant_ids(self, verified_before: datetime) -> list[str]:
        try:
            with self._session() as session:
                statement = (
                    select(GrantRow.id)
                    .where(
                        or_(
                            GrantRow.last_verified_at.is_(None),  # type: ignore[union-attr]
                            GrantRow.last_verified_at < verified_before,  # type: ignore[operator]
                        )
                    )
                    .order_by(GrantRow.id)
                )
                return [str(grant_id) for grant_id in session.exec(statement).all()]
        except SQLAlchemyError as exc:
            logger.exception(
                "verification.persistence.error",
                extra={"operation": "list_stale", **self._metrics_tags},
            )
            raise GrantStoreError(
                "Failed to list grants due for verification.", code="502_GRANT_STORE_READ"
            ) from exc

    def _ping(self) -> bool:
        try:
            with self._engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            logger.exception("verification.persistence.ping_failed", extra=self._metrics_tags)
            return False

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with Session(self._engine) as session:
            yield session


class SupabaseGrantStore(GrantStore):
    """Reads and writes grants through the Supabase REST interface."""

    def __init__(
        self,
        *,
        base_url: str,
        service_key: str,
        grants_table: str | None = None,
        verifications_table: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not base_url or not service_key:
            raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_KEY are required.")
        self._base = base_url.rstrip("/")
        self._grants_table = grants_table or settings.supabase_grants_table
        self._verifications_table = verifications_table or settings.supabase_verifications_table
        self._client = http_client or httpx.AsyncClient(timeout=settings.supabase_timeout_seconds)
        self._owns_client = http_client is None
        self._headers = {
            "apikey": service_key,
            "Authorization": f"Bearer {service_key}",
            "Content-Type": "application/json",
            "Prefer": "return=minimal",
        }

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _table_url(self, table: str) -> str:
        return f"{self._base}/rest/v1/{table}"

    async def get_grant(self, grant_id: str) -> GrantRecord | None:
        response = await self._request(
            "GET",
            self._grants_table,
            params={"id": f"eq.{grant_id}", "select": "*", "limit": "1"},
            code="502_GRANT_STORE_READ",
        )
        rows = _json_rows(response, code="502_GRANT_STORE_READ")
        if not rows:
            return None
        try:
            return GrantRecord.model_validate(rows[0])
        except ValidationError as exc:
            logger.warning(
                "verification.persistence.invalid_row",
                extra={"grant_id": grant_id, "table": self._grants_table, "error": str(exc)},
            )
            raise GrantStoreError(f"Grant {grant_id} has an invalid row.", code="502_GRANT_STORE_READ") from exc

    async def insert_verification(self, entry: VerificationLogEntry) -> None:
        await self._request(
            "POST",
            self._verifications_table,
            json=entry.model_dump(mode="json"),
            code="502_GRANT_STORE_WRITE",
        )
        metrics.increment("verification.persistence.logged", tags={"repository": "supabase"})

    async def update_grant_verification(self, grant_id: str, update: GrantVerificationUpdate) -> None:
        payload = update.model_dump(mode="json")
        payload["updated_at"] = payload["last_verified_at"]
        await self._request(
            "PATCH",
            self._grants_table,
            params={"id": f"eq.{grant_id}"},
            json=payload,
            code="502_GRANT_STORE_WRITE",
        )
        metrics.increment("verification.persistence.updated", tags={"repository": "supabase"})

    async def list_stale_grant_ids(self, verified_before: datetime) -> list[str]:
        cutoff = verified_before.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
        response = await self._request(
            "GET",
            self._grants_table,
            params={
                "select": "id",
                "or": f"(last_verified_at.is.null,last_verified_at.lt.{cutoff})",
                "order": "id.asc",
            },
            code="502_GRANT_STORE_READ",
        )
        rows = _json_rows(response, code="502_GRANT_STORE_READ")
        return [str(row["id"]) for row in rows if row.get("id") is not None]

    async def ping(self) -> bool:
        try:
            await self._request(
                "GET",
                self._grants_table,
                params={"select": "id", "limit": "1"},
                code="502_GRANT_STORE_READ",
            )
        except GrantStoreError:
            return False
        return True

    async def _request(
        self,
        method: str,
        table: str,
        *,
        code: str,
        params: dict[str, str] | None = None,
        json: Any = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(
                method,
                self._table_url(table),
                params=params,
                json=json,
                headers=self._headers,
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "verification.persistence.transport_error",
                extra={"method": method, "table": table, "error": str(exc)},
            )
            raise GrantStoreError(f"Supabase {method} {table} failed: {exc}", code=code) from exc
        if response.status_code >= 400:
            raise GrantStoreError(
                f"Supabase {method} {table} failed with status {response.status_code}",
                code=code,
            )
        return response


def _json_rows(response: httpx.Response, *, code: str) -> list[dict[str, Any]]:
    try:
        rows = response.json()
    except ValueError as exc:
        raise GrantStoreError("Supabase returned a non-JSON body.", code=code) from exc
    if not isinstance(rows, list):
        raise GrantStoreError("Supabase returned an unexpected payload.", code=code)
    return rows


def _coerce_sync_database_url(url: URL) -> tuple[str, dict[str, Any], str]:
    """Convert async connection strings into sync SQLAlchemy URLs."""
    drivername = url.drivername
    connect_args: dict[str, Any] = {}
    if drivername.endswith("+asyncpg"):
        drivername = drivername.replace("+asyncpg", "+psycopg2")
    elif drivername.endswith("+psycopg"):
        drivername = drivername.replace("+psycopg", "+psycopg2")
    elif drivername.endswith("+aiosqlite"):
        drivername = drivername.replace("+aiosqlite", "")
    sync_url = url.set(drivername=drivername)
    query = dict(sync_url.query) if sync_url.query else {}
    removed_ssl = query.pop("ssl", None) is not None
    sync_url = sync_url.set(query=query or None)

    host = (url.host or "").lower()
    if drivername.startswith("postgresql"):
        if "sslmode" not in query and (removed_ssl or "supabase.co" in host):
            connect_args["sslmode"] = "require"
    if drivername.startswith("sqlite"):
        connect_args.setdefault("check_same_thread", False)
    return sync_url.render_as_string(hide_password=False), connect_args, drivername


def _resolve_metrics_tag(url: URL, drivername: str) -> str:
    host = (url.host or "").lower()
    if "supabase.co" in host:
        return "supabase"
    if drivername.startswith("sqlite"):
        return "sqlite"
    return "postgres"


def build_grant_store(database_url: str | None = None) -> GrantStore:
    """Pick Supabase REST, a SQL database or memory based on configuration."""
    if database_url is None and settings.supabase_url and settings.supabase_service_key:
        logger.info("verification.store.initialized", extra={"backend": "supabase"})
        return SupabaseGrantStore(
            base_url=settings.supabase_url,
            service_key=settings.supabase_service_key,
        )
    resolved_url = database_url or settings.database_url
    if not resolved_url:
        logger.info("verification.store.initialized", extra={"backend": "memory"})
        return InMemoryGrantStore()
    try:
        store = SqlGrantStore(
            resolved_url,
            pool_min_size=settings.db_pool_min_size,
            pool_max_size=settings.db_pool_max_size,
            auto_create_schema=settings.db_auto_create_schema,
        )
        logger.info("verification.store.initialized", extra={"backend": "database"})
        return store
    except Exception:
        logger.exception("verification.store.init_failed", extra={"backend": "database"})
        raise
