"""Web search and scrape providers.

Two interchangeable providers share one contract:

- :class:`FirecrawlClient` calls the hosted Firecrawl search/scrape API.
- :class:`LocalWebClient` needs no key: DuckDuckGo for search and
  httpx + lxml for scraping, where "main content only" means the page's
  ``<main>``/``<article>`` region.

Both record a ``web_search`` / ``web_scrape`` audit entry per call and raise
:class:`TransientSourceError` when a call fails.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx
from lxml import etree, html as lxml_html
from pydantic import BaseModel

from prospector.audit import AuditResponse, AuditSource, AuditTrail
from prospector.errors import TransientSourceError

log = logging.getLogger(__name__)

_MAX_TEXT = 20_000
MIN_SCRAPE_CHARS = 100

# ---------------------------------------------------------------------------
# Optional dependency detection
# ---------------------------------------------------------------------------

_DDGS_AVAILABLE = False
try:
    from duckduckgo_search import DDGS  # noqa: F401
    from duckduckgo_search.exceptions import RatelimitException  # noqa: F401
    _DDGS_AVAILABLE = True
except ImportError:
    DDGS = None  # type: ignore[assignment,misc]
    RatelimitException = Exception  # type: ignore[assignment,misc]


class SearchHit(BaseModel):
    url: str
    title: str = ""
    description: str = ""


class SearchResponse(BaseModel):
    data: list[SearchHit] = []


class ScrapeResult(BaseModel):
    url: str
    content: str = ""
    metadata: dict[str, Any] = {}


# ---------------------------------------------------------------------------
# Base provider
# ---------------------------------------------------------------------------


class WebResearchClient:
    """Common audit bookkeeping and the scrape-retry policy."""

    name = "web"

    async def _search(self, query: str, limit: int) -> list[SearchHit]:
        raise NotImplementedError

    async def _scrape(self, url: str, formats: tuple[str, ...], only_main_content: bool) -> ScrapeResult:
        raise NotImplementedError

    async def aclose(self) -> None:
        pass

    async def search(self, query: str, *, limit: int = 5, audit: AuditTrail | None = None) -> SearchResponse:
        started = time.monotonic()
        try:
            hits = (await self._search(query, limit))[:limit]
        except Exception as exc:
            if audit is not None:
                audit.record(
                    f"{self.name} search", "web_search",
                    duration_ms=(time.monotonic() - started) * 1000, query=query,
                    response=AuditResponse(success=False, error=str(exc)),
                )
                audit.record_error(f"{self.name} search", exc, query=query)
            raise TransientSourceError(f"{self.name} search", str(exc)) from exc

        if audit is not None:
            audit.record(
                f"{self.name} search", "web_search",
                duration_ms=(time.monotonic() - started) * 1000, query=query,
                options={"limit": limit},
                response=AuditResponse(success=True, summary=f"{len(hits)} results"),
                sources=[AuditSource(type="web", url=h.url, description=h.title) for h in hits],
            )
        return SearchResponse(data=hits)

    async def scrape(self, url: str, *, formats: tuple[str, ...] = ("markdown",),
                     only_main_content: bool = True, audit: AuditTrail | None = None) -> ScrapeResult:
        started = time.monotonic()
        options = {"formats": list(formats), "only_main_content": only_main_content}
        try:
            result = await self._scrape(url, formats, only_main_content)
        except Exception as exc:
            if audit is not None:
                audit.record(
                    f"{self.name} scrape", "web_scrape",
                    duration_ms=(time.monotonic() - started) * 1000, url=url, options=options,
                    response=AuditResponse(success=False, error=str(exc)),
                )
                audit.record_error(f"{self.name} scrape", exc, url=url)
            raise TransientSourceError(f"{self.name} scrape", str(exc)) from exc

        if audit is not None:
            audit.record(
                f"{self.name} scrape", "web_scrape",
                duration_ms=(time.monotonic() - started) * 1000, url=url, options=options,
                response=AuditResponse(success=True, summary=f"{len(result.content)} chars"),
                sources=[AuditSource(type="web", url=url)],
            )
        return result

    async def scrape_page(self, url: str, *, audit: AuditTrail | None = None) -> ScrapeResult:
        """Scrape main content; retry once on the full page if that comes back near-empty."""
        result = await self.scrape(url, only_main_content=True, audit=audit)
        if len(result.content.strip()) >= MIN_SCRAPE_CHARS:
            return result
        log.info("Near-empty main content for %s (%d chars), retrying full page",
                 url, len(result.content.strip()))
        return await self.scrape(url, only_main_content=False, audit=audit)


# ---------------------------------------------------------------------------
# Firecrawl
# ---------------------------------------------------------------------------


class FirecrawlClient(WebResearchClient):
    name = "firecrawl"

    def __init__(self, api_key: str, base_url: str = "https://api.firecrawl.dev",
                 timeout: float = 30.0, http: httpx.AsyncClient | None = None):
        self._http = http or httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout),
            headers={"Authorization": f"Bearer {api_key}"},
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        resp = await self._http.post(path, json=payload)
        resp.raise_for_status()
        body = resp.json()
        if isinstance(body, dict) and body.get("success") is False:
            raise RuntimeError(body.get("error") or "request unsuccessful")
        return body if isinstance(body, dict) else {}

    async def _search(self, query: str, limit: int) -> list[SearchHit]:
        body = await self._post("/v1/search", {"query": query, "limit": limit})
        hits = []
        for item in body.get("data") or []:
            if isinstance(item, dict) and item.get("url"):
                hits.append(SearchHit(
                    url=item["url"],
                    title=item.get("title") or "",
                    description=item.get("description") or "",
                ))
        return hits

    async def _scrape(self, url: str, formats: tuple[str, ...], only_main_content: bool) -> ScrapeResult:
        body = await self._post("/v1/scrape", {
            "url": url, "formats": list(formats), "onlyMainContent": only_main_content,
        })
        data = body.get("data") or {}
        content = data.get("markdown") or data.get("content") or data.get("html") or ""
        return ScrapeResult(url=url, content=content[:_MAX_TEXT], metadata=data.get("metadata") or {})


# ---------------------------------------------------------------------------
# Local provider: DuckDuckGo + httpx/lxml
# ---------------------------------------------------------------------------


class _SearchRateLimiter:
    """Serialises search calls with a minimum spacing and backoff on rate limits."""

    def __init__(self, min_delay: float = 1.5, max_delay: float = 30.0):
        self._lock = asyncio.Lock()
        self._min_delay = min_delay
        self._current_delay = min_delay
        self._max_delay = max_delay
        self._last_call: float = 0.0

    async def acquire(self) -> None:
        async with self._lock:
            wait = self._current_delay - (time.monotonic() - self._last_call)
            if wait > 0:
                log.debug("Search rate limiter: waiting %.1fs", wait)
                await asyncio.sleep(wait)
            self._last_call = time.monotonic()

    def backoff(self) -> None:
        self._current_delay = min(self._current_delay * 2, self._max_delay)
        log.warning("Search rate limited, backing off to %.0fs between requests", self._current_delay)

    def reset(self) -> None:
        self._current_delay = self._min_delay


_search_limiter = _SearchRateLimiter()


def extract_text(raw_html: str, only_main_content: bool = True) -> str:
    """Readable text from HTML.

    With *only_main_content* only ``<main>``/``<article>``/``role=main``
    regions count; pages without one yield an empty string.
    """
    try:
        tree = lxml_html.fromstring(raw_html)
    except (etree.ParserError, etree.XMLSyntaxError, ValueError):
        return ""
    for bad in tree.xpath("//script | //style | //noscript"):
        bad.drop_tree()

    if only_main_content:
        regions = tree.xpath("//main | //article | //*[@role='main']")
        text = "\n".join(" ".join(r.text_content().split()) for r in regions)
        return text.strip()[:_MAX_TEXT]

    title = " ".join(tree.xpath("//title//text()")).strip()
    meta = " ".join(tree.xpath("//meta[@name='description']/@content")).strip()
    headings = " ".join(tree.xpath("//h1//text() | //h2//text() | //h3//text()")).strip()
    paragraphs = " ".join(tree.xpath("//p//text() | //li//text()")).strip()
    parts = []
    if title:
        parts.append(f"TITLE: {title}")
    if meta:
        parts.append(f"META: {meta}")
    if headings:
        parts.append(f"HEADINGS: {headings}")
    if paragraphs:
        parts.append(f"CONTENT: {paragraphs}")
    return "\n".join(parts)[:_MAX_TEXT]


class LocalWebClient(WebResearchClient):
    name = "local web"

    def __init__(self, timeout: float = 15.0, user_agent: str = "ProspectorBot/1.0",
                 http: httpx.AsyncClient | None = None):
        self._http = http or httpx.AsyncClient(
            follow_redirects=True,
            timeout=httpx.Timeout(timeout),
            headers={"User-Agent": user_agent},
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    @staticmethod
    def _ddg_text(query: str, limit: int) -> list[dict]:
        return list(DDGS().text(query, max_results=limit) or [])

    async def _search(self, query: str, limit: int) -> list[SearchHit]:
        if not _DDGS_AVAILABLE:
            raise ImportError("duckduckgo-search not installed. Install: pip install 'prospector[search]'")
        await _search_limiter.acquire()
        try:
            results = await asyncio.to_thread(self._ddg_text, query, limit)
        except RatelimitException:
            _search_limiter.backoff()
            await _search_limiter.acquire()
            results = await asyncio.to_thread(self._ddg_text, query, limit)
        _search_limiter.reset()
        return [
            SearchHit(url=r["href"], title=r.get("title", ""), description=r.get("body", ""))
            for r in results if r.get("href")
        ]

    async def _scrape(self, url: str, formats: tuple[str, ...], only_main_content: bool) -> ScrapeResult:
        if not url.startswith(("http://", "https://")):
            url = "https://" + url
        resp = await self._http.get(url)
        resp.raise_for_status()
        return ScrapeResult(url=url, content=extract_text(resp.text, only_main_content))


def build_web_client(settings) -> WebResearchClient:
    """Firecrawl when a key is configured, otherwise the local provider."""
    if settings.firecrawl_api_key:
        return FirecrawlClient(
            settings.firecrawl_api_key, settings.firecrawl_base_url, settings.web_timeout_seconds,
        )
    return LocalWebClient(settings.web_timeout_seconds, settings.user_agent)
