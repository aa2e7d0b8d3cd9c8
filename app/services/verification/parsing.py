"""Tolerant parsing of free-form research model output."""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
_TEXT_BLOCK_TYPES = {"text", "output_text"}
_TOOL_RESULT_TYPES = {"tool_result", "web_search_tool_result"}
_EXCERPT_CHARS = 200


EXPECTED_KEYS = frozenset(
    {
        "program_found",
        "program_still_active",
        "fresh_data",
        "comparisons",
        "discrepancies",
        "confidence_notes",
    }
)
_TRUE_STRINGS = {"true", "yes"}
_FALSE_STRINGS = {"false", "no"}


def _tri_state(value: Any) -> bool | None:
    # Anything other than an explicit yes/no reads as "could not verify".
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    return None


class ResearchComparisons(BaseModel):
    model_config = ConfigDict(extra="ignore")

    amount_match: bool | None = None
    deadline_match: bool | None = None
    eligibility_match: bool | None = None

    @field_validator("amount_match", "deadline_match", "eligibility_match", mode="before")
    @classmethod
    def _coerce_flag(cls, value: Any) -> bool | None:
        return _tri_state(value)


class ResearchPayload(BaseModel):
    """Expected shape of the research model's JSON answer."""

    model_config = ConfigDict(extra="ignore")

    program_found: bool | None = None
    program_still_active: bool | None = None
    fresh_data: dict[str, Any] = {}
    comparisons: ResearchComparisons | None = None
    discrepancies: list[Any] = []
    confidence_notes: str | None = None

    @field_validator("program_found", "program_still_active", mode="before")
    @classmethod
    def _coerce_flag(cls, value: Any) -> bool | None:
        return _tri_state(value)

    @field_validator("fresh_data", mode="before")
    @classmethod
    def _coerce_fresh_data(cls, value: Any) -> Any:
        return dict(value) if isinstance(value, Mapping) else {}

    @field_validator("comparisons", mode="before")
    @classmethod
    def _coerce_comparisons(cls, value: Any) -> Any:
        return value if isinstance(value, Mapping) else None

    @field_validator("discrepancies", mode="before")
    @classmethod
    def _coerce_discrepancies(cls, value: Any) -> Any:
        return value if isinstance(value, list) else []

    @field_validator("confidence_notes", mode="before")
    @classmethod
    def _coerce_notes(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return str(value)


@dataclass(frozen=True)
class Parsed:
    payload: ResearchPayload
    strategy: Literal["strict", "extracted"]


@dataclass(frozen=True)
class Unparsable:
    reason: str
    excerpt: str


ParseResult = Parsed | Unparsable


def collect_text_segments(blocks: Iterable[Any]) -> list[str]:
    """Gather text from direct text blocks, message content and tool results."""
    segments: list[str] = []
    for block in blocks:
        block_type = _read(block, "type")
        if block_type in _TEXT_BLOCK_TYPES:
            text = _read(block, "text")
            if isinstance(text, str) and text:
                segments.append(text)
            continue
        content = _read(block, "content")
        if block_type == "message" or block_type in _TOOL_RESULT_TYPES:
            if isinstance(content, str) and content:
                segments.append(content)
            elif isinstance(content, Iterable) and not isinstance(content, (str, bytes, Mapping)):
                segments.extend(collect_text_segments(content))
    return segments


def parse_research_payload(raw_text: str) -> ParseResult:
    """Strict schema validation first, heuristic object extraction second."""
    candidate = (raw_text or "").strip()
    if not candidate:
        return Unparsable(reason="empty_response", excerpt="")

    strict = _validate(_loads_object(candidate))
    if strict is not None:
        return Parsed(payload=strict, strategy="strict")

    cleaned = _FENCE_RE.sub("", candidate).strip()
    extracted = _first_json_object(cleaned)
    if extracted is None:
        return Unparsable(reason="no_json_object", excerpt=candidate[:_EXCERPT_CHARS])
    payload = _validate(extracted)
    if payload is None:
        return Unparsable(reason="schema_mismatch", excerpt=candidate[:_EXCERPT_CHARS])
    return Parsed(payload=payload, strategy="extracted")


def _loads_object(text: str) -> dict[str, Any] | None:
    try:
        value = json.loads(text)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def _first_json_object(text: str) -> dict[str, Any] | None:
    decoder = json.JSONDecoder()
    index = text.find("{")
    while index != -1:
        try:
            value, _ = decoder.raw_decode(text, index)
        except ValueError:
            value = None
        if isinstance(value, dict) and EXPECTED_KEYS & value.keys():
            return value
        index = text.find("{", index + 1)
    return None


def _validate(value: dict[str, Any] | None) -> ResearchPayload | None:
    if value is None or not EXPECTED_KEYS & value.keys():
        return None
    try:
        return ResearchPayload.model_validate(value)
    except ValidationError:
        return None


def _read(block: Any, key: str) -> Any:
    if isinstance(block, Mapping):
        return block.get(key)
    return getattr(block, key, None)
