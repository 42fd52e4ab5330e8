from __future__ import annotations

import asyncio

import pytest

from prospector.audit import AuditResponse, AuditTrail, TokenUsage


def _llm_response(tokens_in: int = 10, tokens_out: int = 5) -> AuditResponse:
    return AuditResponse(success=True, summary="ok", token_usage=TokenUsage(input=tokens_in, output=tokens_out))


class TestAppend:
    def test_summary_tracks_entry_counts(self):
        trail = AuditTrail()
        trail.record("a", "llm_query", response=_llm_response())
        trail.record("b", "llm_query", response=_llm_response(3, 4))
        trail.record("c", "knowledge_query", query="q")
        trail.record("d", "web_search", query="q")
        trail.record("e", "web_scrape", url="https://x.test")
        trail.record_error("f", RuntimeError("boom"))
        trail.record("g", "calculation")

        s = trail.summary
        assert s.total_llm_queries == sum(e.type == "llm_query" for e in trail.entries) == 2
        assert s.total_knowledge_queries == 1
        assert s.total_web_actions == 2
        assert s.errors == 1
        assert s.tokens.input == 13
        assert s.tokens.output == 9
        assert s.tokens.total == 22

    def test_entries_are_read_only_view(self):
        trail = AuditTrail()
        trail.record("a", "calculation")
        assert isinstance(trail.entries, tuple)
        assert len(trail.entries) == 1

    @pytest.mark.asyncio
    async def test_concurrent_writers_keep_counts_consistent(self):
        trail = AuditTrail()

        async def writer(n: int):
            for _ in range(n):
                await asyncio.sleep(0)
                trail.record("q", "knowledge_query")

        await asyncio.gather(*(writer(25) for _ in range(8)))
        assert trail.summary.total_knowledge_queries == len(trail.entries) == 200


class TestFinalize:
    def test_finalize_once(self):
        trail = AuditTrail()
        assert not trail.finalized
        trail.finalize()
        first = (trail.completed_at, trail.total_duration_ms)
        trail.finalize()
        assert (trail.completed_at, trail.total_duration_ms) == first
        assert trail.finalized
        assert trail.total_duration_ms >= 0


class TestFormat:
    def test_long_prompt_is_truncated(self):
        trail = AuditTrail()
        trail.record("Analyze website", "llm_query", prompt="p" * 1200, response=_llm_response())
        out = trail.format()
        assert "### 1. Analyze website (llm_query)" in out
        assert "p" * 500 + "…" in out
        assert "1200 chars total" in out
        assert "p" * 501 not in out

    def test_errors_are_listed(self):
        trail = AuditTrail()
        trail.record_error("Search failed", "timeout")
        out = trail.format()
        assert "**Response:** Error" in out
        assert "Error: timeout" in out
        assert "- Errors: 1" in out

    def test_deterministic_for_same_trail(self):
        trail = AuditTrail()
        trail.record("a", "web_search", query="acme")
        trail.finalize()
        assert trail.format() == trail.format()

    def test_to_dict(self):
        trail = AuditTrail()
        trail.record("a", "web_search", query="acme")
        data = trail.to_dict()
        assert data["summary"]["total_web_actions"] == 1
        assert data["entries"][0]["details"]["query"] == "acme"
        assert data["completed_at"] is None
