"""SQLModel mappings for stored grants and their verification log."""
# ruff: noqa: UP017

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any
from uuid import UUID, uuid4

import sqlalchemy as sa
from sqlalchemy import Column, Date, DateTime, Float, Integer, String, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql import expression
from sqlmodel import Field, SQLModel

from app.models.grant import GrantRecord, GrantVerificationUpdate, VerificationLogEntry


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


JSON_BACKING_TYPE = sa.JSON().with_variant(JSONB(astext_type=sa.Text()), "postgresql")


class UtcNow(expression.FunctionElement):
    """Dialect-aware server default that pins timestamps to UTC."""

    type = DateTime(timezone=True)
    inherit_cache = True


@compiles(UtcNow)
def _utc_now_default(
    element, compiler, **kwargs
) -> str:  # pragma: no cover - trivial sql generator
    return "CURRENT_TIMESTAMP"


@compiles(UtcNow, "postgresql")
def _utc_now_default_postgres(
    element, compiler, **kwargs
) -> str:  # pragma: no cover - trivial sql generator
    return "timezone('utc', now())"


class GrantRow(SQLModel, table=True):
    """ORM model for the grants table (only the columns verification touches)."""

    __tablename__ = "grants"
    __table_args__ = (sa.Index("ix_grants_last_verified_at", "last_verified_at"),)

    id: str = Field(sa_column=Column(String(length=64), primary_key=True, nullable=False))
    name: str = Field(sa_column=Column(String(length=512), nullable=False))
    name_it: str | None = Field(default=None, sa_column=Column(String(length=512), nullable=True))
    official_url: str | None = Field(default=None, sa_column=Column(String(length=2048), nullable=True))
    funding_source: str | None = Field(default=None, sa_column=Column(String(length=255), nullable=True))
    regulation_reference: str | None = Field(
        default=None, sa_column=Column(String(length=512), nullable=True)
    )
    min_amount: float | None = Field(default=None, sa_column=Column(Float, nullable=True))
    max_amount: float | None = Field(default=None, sa_column=Column(Float, nullable=True))
    application_window_closes: date | None = Field(default=None, sa_column=Column(Date, nullable=True))
    window_status: str | None = Field(default=None, sa_column=Column(String(length=64), nullable=True))
    eligibility_summary: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    verification_status: str = Field(
        default="unverified",
        sa_column=Column(String(length=32), nullable=False, server_default="unverified"),
    )
    verification_confidence: int | None = Field(default=None, sa_column=Column(Integer, nullable=True))
    last_verified_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    verification_details: dict[str, Any] | None = Field(
        default=None, sa_column=Column(JSON_BACKING_TYPE, nullable=True)
    )
    updated_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(
            DateTime(timezone=True),
            nullable=False,
            server_default=UtcNow(),
            onupdate=UtcNow(),
        ),
    )

    def to_grant_record(self) -> GrantRecord:
        return GrantRecord(
            id=self.id,
            name=self.name,
            name_it=self.name_it,
            official_url=self.official_url,
            funding_source=self.funding_source,
            regulation_reference=self.regulation_reference,
            min_amount=self.min_amount,
            max_amount=self.max_amount,
            application_window_closes=self.application_window_closes,
            window_status=self.window_status,
            eligibility_summary=self.eligibility_summary,
            verification_status=self.verification_status,
            verification_confidence=self.verification_confidence,
            last_verified_at=self.last_verified_at,
            verification_details=self.verification_details,
        )

    def apply_update(self, update: GrantVerificationUpdate) -> None:
        """Overwrite the denormalized verification columns."""
        self.verification_status = update.verification_status.value
        self.verification_confidence = update.verification_confidence
        self.last_verified_at = update.last_verified_at
        self.verification_details = update.verification_details
        self.updated_at = update.last_verified_at


class GrantVerificationRow(SQLModel, table=True):
    """ORM model for immutable verification log rows."""

    __tablename__ = "grant_verifications"
    __table_args__ = (sa.Index("ix_grant_verifications_grant_id", "grant_id"),)

    id: UUID = Field(
        default_factory=uuid4,
        sa_column=Column(Uuid(as_uuid=True), primary_key=True, nullable=False),
    )
    grant_id: str = Field(sa_column=Column(String(length=64), nullable=False))
    overall_confidence: int = Field(sa_column=Column(Integer, nullable=False))
    status: str = Field(sa_column=Column(String(length=32), nullable=False))
    url_valid: bool = Field(sa_column=Column(sa.Boolean, nullable=False))
    url_status_code: int | None = Field(default=None, sa_column=Column(Integer, nullable=True))
    url_contains_grant_name: bool = Field(sa_column=Column(sa.Boolean, nullable=False))
    url_domain: str = Field(sa_column=Column(String(length=255), nullable=False))
    url_is_government: bool = Field(sa_column=Column(sa.Boolean, nullable=False))
    crossref_ran: bool = Field(sa_column=Column(sa.Boolean, nullable=False))
    crossref_amount_match: bool | None = Field(default=None, sa_column=Column(sa.Boolean, nullable=True))
    crossref_deadline_match: bool | None = Field(default=None, sa_column=Column(sa.Boolean, nullable=True))
    crossref_eligibility_match: bool | None = Field(
        default=None, sa_column=Column(sa.Boolean, nullable=True)
    )
    crossref_discrepancies: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSON_BACKING_TYPE, nullable=False),
    )
    crossref_fresh_data: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON_BACKING_TYPE, nullable=False),
    )
    source_quality_score: int = Field(sa_column=Column(Integer, nullable=False))
    source_type: str = Field(sa_column=Column(String(length=32), nullable=False))
    source_domain_authority: str = Field(sa_column=Column(String(length=32), nullable=False))
    checks_passed: int = Field(sa_column=Column(Integer, nullable=False))
    checks_total: int = Field(sa_column=Column(Integer, nullable=False))
    issues: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSON_BACKING_TYPE, nullable=False),
    )
    duration_ms: int = Field(sa_column=Column(Integer, nullable=False))
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(
            DateTime(timezone=True),
            nullable=False,
            server_default=UtcNow(),
        ),
    )

    @classmethod
    def from_log_entry(cls, entry: VerificationLogEntry) -> GrantVerificationRow:
        """Convert an in-memory log entry into a persistence row."""
        payload = entry.model_dump(mode="json")
        payload["created_at"] = entry.created_at
        return cls(**payload)
