"""Source trust scoring for the domains grants claim as their official page."""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

from app.config import settings
from app.models.grant import AuthorityTier, SourceType, TrustScore
from app.services.verification.errors import TrustTableError

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[3]

OFFICIAL_GOVERNMENT_SCORE = 95
GOVERNMENT_SCORE = 85
INSTITUTIONAL_SCORE = 75
THIRD_PARTY_SCORE = 45
UNKNOWN_SCORE = 25


@dataclass(frozen=True)
class DomainTrustTables:
    """Lookup tables used to classify hostnames."""

    version: str
    sha256: str
    government_patterns: tuple[str, ...]
    top_authority_domains: tuple[str, ...]
    institutional_domains: tuple[str, ...]
    professional_suffixes: tuple[str, ...]

    def is_government(self, hostname: str) -> bool:
        host = hostname.lower()
        if not host:
            return False
        return any(
            pattern in host or host.endswith(pattern.removeprefix("."))
            for pattern in self.government_patterns
        )

    def is_top_authority(self, hostname: str) -> bool:
        host = hostname.lower()
        return any(domain in host for domain in self.top_authority_domains)

    def is_institutional(self, hostname: str) -> bool:
        host = hostname.lower()
        return any(domain in host for domain in self.institutional_domains)

    def has_professional_suffix(self, hostname: str) -> bool:
        host = hostname.lower()
        return any(host.endswith(suffix) for suffix in self.professional_suffixes)


def score_source(
    hostname: str,
    is_government: bool,
    reachable: bool,
    tables: DomainTrustTables,
) -> TrustScore:
    """Map a probed hostname onto a fixed trust tier."""
    if not reachable or not hostname:
        return TrustScore(
            source_quality_score=0,
            source_type=SourceType.UNKNOWN,
            source_domain_authority=AuthorityTier.NONE,
        )

    if is_government:
        if tables.is_top_authority(hostname):
            return TrustScore(
                source_quality_score=OFFICIAL_GOVERNMENT_SCORE,
                source_type=SourceType.OFFICIAL_GOVERNMENT,
                source_domain_authority=AuthorityTier.TOP_TIER,
            )
        return TrustScore(
            source_quality_score=GOVERNMENT_SCORE,
            source_type=SourceType.GOVERNMENT,
            source_domain_authority=AuthorityTier.HIGH,
        )

    if tables.is_institutional(hostname):
        return TrustScore(
            source_quality_score=INSTITUTIONAL_SCORE,
            source_type=SourceType.INSTITUTIONAL,
            source_domain_authority=AuthorityTier.HIGH,
        )

    if tables.has_professional_suffix(hostname):
        return TrustScore(
            source_quality_score=THIRD_PARTY_SCORE,
            source_type=SourceType.THIRD_PARTY,
            source_domain_authority=AuthorityTier.MEDIUM,
        )

    return TrustScore(
        source_quality_score=UNKNOWN_SCORE,
        source_type=SourceType.UNKNOWN,
        source_domain_authority=AuthorityTier.LOW,
    )


def load_trust_tables(path: Path) -> DomainTrustTables:
    """Parse the YAML domain tables."""
    if not path.exists():
        raise TrustTableError(f"Domain trust tables missing at {path}", code="RULES_MISSING")
    blob = path.read_bytes()
    try:
        raw = yaml.safe_load(blob.decode("utf-8"))
    except yaml.YAMLError as exc:  # pragma: no cover - unlikely but surfaces quickly
        raise TrustTableError(f"Unable to parse domain trust tables: {exc}", code="SCHEMA_INVALID") from exc

    if not isinstance(raw, Mapping):
        raise TrustTableError("Domain trust tables must be a mapping", code="SCHEMA_INVALID")

    version = str(raw.get("version") or "").strip()
    if not version:
        raise TrustTableError("Domain trust tables missing version", code="SCHEMA_INVALID")

    government_patterns = _normalize_entries(raw.get("government_patterns"))
    if not government_patterns:
        raise TrustTableError("government_patterns must not be empty", code="SCHEMA_INVALID")

    tables = DomainTrustTables(
        version=version,
        sha256=hashlib.sha256(blob).hexdigest(),
        government_patterns=government_patterns,
        top_authority_domains=_normalize_entries(raw.get("top_authority_domains")),
        institutional_domains=_normalize_entries(raw.get("institutional_domains")),
        professional_suffixes=_normalize_entries(raw.get("professional_suffixes")),
    )
    logger.info(
        "verification.trust_tables.loaded",
        extra={"version": tables.version, "sha256": tables.sha256, "path": str(path)},
    )
    return tables


@lru_cache(maxsize=1)
def get_trust_tables() -> DomainTrustTables:
    """Load the configured tables once per process."""
    path = Path(settings.domain_trust_rules_path).expanduser()
    if not path.is_absolute():
        path = PROJECT_ROOT / path
    return load_trust_tables(path)


def _normalize_entries(entries: Any) -> tuple[str, ...]:
    if entries is None:
        return ()
    if isinstance(entries, str) or not isinstance(entries, Iterable):
        raise TrustTableError("Domain table entries must be lists of strings", code="SCHEMA_INVALID")
    normalized: list[str] = []
    for entry in entries:
        value = str(entry or "").strip().lower()
        if value and value not in normalized:
            normalized.append(value)
    return tuple(normalized)
