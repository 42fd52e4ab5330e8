from __future__ import annotations

import json

import httpx
import pytest

from prospector.audit import AuditTrail
from prospector.errors import TransientSourceError
from prospector.web import FirecrawlClient, LocalWebClient, extract_text

ARTICLE_PAGE = """
<html><head><title>Acme Electric</title>
<meta name="description" content="Commercial electrical contractor"></head>
<body><nav>Home | About</nav>
<main><h1>About Acme</h1><p>Founded in 1998, Acme Electric serves Denver with 120 electricians.</p></main>
<script>var x = 1;</script></body></html>
"""

NO_MAIN_PAGE = """
<html><head><title>Acme Electric</title></head>
<body><div><h2>Our Services</h2><p>Commercial wiring, service work and solar installs across Colorado.</p>
<ul><li>Tenant improvements</li><li>Low voltage</li></ul></div></body></html>
"""


def _firecrawl(handler) -> FirecrawlClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://firecrawl.test")
    return FirecrawlClient("key", http=http)


class TestExtractText:
    def test_main_content_only(self):
        text = extract_text(ARTICLE_PAGE, only_main_content=True)
        assert "Founded in 1998" in text
        assert "Home | About" not in text
        assert "var x" not in text

    def test_no_main_region_is_empty(self):
        assert extract_text(NO_MAIN_PAGE, only_main_content=True) == ""

    def test_full_page(self):
        text = extract_text(NO_MAIN_PAGE, only_main_content=False)
        assert text.startswith("TITLE: Acme Electric")
        assert "HEADINGS: Our Services" in text
        assert "Tenant improvements" in text

    def test_garbage_input(self):
        assert extract_text("", only_main_content=False) == ""


class TestFirecrawl:
    @pytest.mark.asyncio
    async def test_search_maps_hits_and_audits(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/search"
            assert json.loads(request.content) == {"query": "acme electric", "limit": 3}
            return httpx.Response(200, json={"success": True, "data": [
                {"url": "https://acme.test", "title": "Acme", "description": "Electricians"},
                {"title": "no url, dropped"},
            ]})

        trail = AuditTrail()
        result = await _firecrawl(handler).search("acme electric", limit=3, audit=trail)
        assert [h.url for h in result.data] == ["https://acme.test"]
        assert trail.summary.total_web_actions == 1
        assert trail.entries[0].details.sources[0].url == "https://acme.test"

    @pytest.mark.asyncio
    async def test_search_failure_is_transient(self):
        def handler(request):
            return httpx.Response(500, json={"error": "boom"})

        trail = AuditTrail()
        with pytest.raises(TransientSourceError):
            await _firecrawl(handler).search("acme", audit=trail)
        assert [e.type for e in trail.entries] == ["web_search", "error"]

    @pytest.mark.asyncio
    async def test_unsuccessful_body_is_transient(self):
        def handler(request):
            return httpx.Response(200, json={"success": False, "error": "quota exceeded"})

        with pytest.raises(TransientSourceError, match="quota exceeded"):
            await _firecrawl(handler).scrape("https://acme.test")

    @pytest.mark.asyncio
    async def test_scrape_page_retries_full_page_when_near_empty(self):
        calls = []

        def handler(request):
            payload = json.loads(request.content)
            calls.append(payload["onlyMainContent"])
            content = "" if payload["onlyMainContent"] else "Acme Electric " * 20
            return httpx.Response(200, json={"success": True, "data": {"markdown": content}})

        trail = AuditTrail()
        result = await _firecrawl(handler).scrape_page("https://acme.test", audit=trail)
        assert calls == [True, False]
        assert result.content.startswith("Acme Electric")
        assert trail.summary.total_web_actions == 2

    @pytest.mark.asyncio
    async def test_scrape_page_no_retry_when_substantial(self):
        calls = []

        def handler(request):
            calls.append(json.loads(request.content)["onlyMainContent"])
            return httpx.Response(200, json={"success": True, "data": {"markdown": "x" * 500}})

        await _firecrawl(handler).scrape_page("https://acme.test")
        assert calls == [True]


class TestLocalWebClient:
    @pytest.mark.asyncio
    async def test_scrape_uses_main_region_then_full_page(self):
        def handler(request):
            return httpx.Response(200, text=NO_MAIN_PAGE, headers={"content-type": "text/html"})

        client = LocalWebClient(http=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        result = await client.scrape_page("acme.test")
        assert result.url == "https://acme.test"
        assert "Commercial wiring" in result.content

    @pytest.mark.asyncio
    async def test_http_error_is_transient(self):
        def handler(request):
            return httpx.Response(404)

        client = LocalWebClient(http=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        with pytest.raises(TransientSourceError):
            await client.scrape("https://acme.test/missing")
