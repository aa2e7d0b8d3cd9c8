"""Live probing of a grant's claimed official page."""

from __future__ import annotations

import logging
import math
import re
import time
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import urlparse

import httpx

from app.config import settings
from app.models.grant import ProbeResult
from app.observability.metrics import metrics
from app.services.verification.trust import DomainTrustTables

logger = logging.getLogger(__name__)

HEADERS = {
    "Accept": "text/html,application/xhtml+xml;q=0.9,*/*;q=0.8",
}
BOT_PROTECTION_STATUS = 403
KEYWORD_MIN_LENGTH = 4
KEYWORD_MATCH_RATIO = 0.5

_SCRIPT_RE = re.compile(r"<script[^>]*>[\s\S]*?</script>", re.IGNORECASE)
_STYLE_RE = re.compile(r"<style[^>]*>[\s\S]*?</style>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")
_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)


@dataclass(frozen=True)
class FetchedPage:
    """Minimal HTTP response surface needed by the prober."""

    status_code: int
    body: str

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300


class PageFetcher(Protocol):
    """Fetch capability supporting timeouts and redirect-following."""

    async def fetch(self, url: str) -> FetchedPage:
        ...


class HttpxPageFetcher(PageFetcher):
    """Single-attempt GET through an httpx.AsyncClient."""

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float | None = None,
        user_agent: str | None = None,
    ) -> None:
        self._timeout = httpx.Timeout(timeout_seconds or settings.probe_timeout_seconds)
        self._headers = {**HEADERS, "User-Agent": user_agent or settings.probe_user_agent}
        self._owns_http_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=self._timeout)

    async def fetch(self, url: str) -> FetchedPage:
        response = await self._client.get(
            url,
            headers=self._headers,
            follow_redirects=True,
            timeout=self._timeout,
        )
        return FetchedPage(status_code=response.status_code, body=response.text)

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        if self._owns_http_client:
            await self._client.aclose()


class WebPageProber:
    """Checks reachability and relevance of a grant's official URL."""

    def __init__(
        self,
        *,
        fetcher: PageFetcher,
        tables: DomainTrustTables,
        max_text_chars: int | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._tables = tables
        self._max_text_chars = max_text_chars or settings.probe_max_text_chars

    async def probe(self, url: str, grant_name: str) -> ProbeResult:
        full_url = normalize_url(url)
        try:
            hostname = (urlparse(full_url).hostname or "").lower()
        except ValueError:
            logger.warning("verification.probe.invalid_url", extra={"url": url})
            return ProbeResult.empty()
        if not hostname:
            return ProbeResult.empty()
        is_government = self._tables.is_government(hostname)

        start = time.perf_counter()
        try:
            page = await self._fetcher.fetch(full_url)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            metrics.increment("probe.errors", tags={"error": type(exc).__name__})
            logger.warning(
                "verification.probe.request_error",
                extra={"url": full_url, "error": type(exc).__name__},
            )
            return ProbeResult(url_domain=hostname, url_is_government=is_government)
        finally:
            metrics.timing("probe.latency_ms", (time.perf_counter() - start) * 1000)

        url_valid = page.is_success or page.status_code == BOT_PROTECTION_STATUS
        page_text: str | None = None
        mentions_grant = False
        if page.is_success:
            text = extract_page_text(page.body)
            page_text = text[: self._max_text_chars]
            mentions_grant = mentions_grant_name(text, grant_name)

        logger.info(
            "verification.probe.completed",
            extra={
                "url": full_url,
                "status": page.status_code,
                "url_valid": url_valid,
                "mentions_grant": mentions_grant,
            },
        )
        return ProbeResult(
            url_valid=url_valid,
            url_status_code=page.status_code,
            url_contains_grant_name=mentions_grant,
            url_domain=hostname,
            url_is_government=is_government,
            page_text=page_text,
        )


def normalize_url(url: str) -> str:
    candidate = url.strip()
    if _SCHEME_RE.match(candidate):
        return candidate
    return f"https://{candidate}"


def extract_page_text(html: str) -> str:
    """Strip scripts, styles and tags, then collapse whitespace."""
    text = _SCRIPT_RE.sub("", html)
    text = _STYLE_RE.sub("", text)
    text = _TAG_RE.sub(" ", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def mentions_grant_name(text: str, grant_name: str) -> bool:
    """Exact name match, or at least half of the name's significant words."""
    name = grant_name.strip().lower()
    haystack = text.lower()
    if name in haystack:
        return True
    keywords = [word for word in name.split() if len(word) > KEYWORD_MIN_LENGTH]
    if not keywords:
        return False
    matched = sum(1 for keyword in keywords if keyword in haystack)
    return matched >= math.ceil(len(keywords) * KEYWORD_MATCH_RATIO)
