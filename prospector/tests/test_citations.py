from __future__ import annotations

import pytest

from prospector.citations import CitationTracker


@pytest.fixture()
def tracker() -> CitationTracker:
    return CitationTracker()


class TestLinking:
    def test_citations_for_returns_latest_link(self, tracker):
        a = tracker.cite_structured_data("Assessment", {"urgency": 9})
        b = tracker.cite_web_research("acme electric", [{"url": "https://acme.test", "title": "Acme"}])
        c = tracker.cite_knowledge("electrical contractors", [{"content": "x"}])

        tracker.link_content("Acme is growing fast.", [a, b])
        tracker.link_content("Acme is growing fast.", [c])
        assert [cit.id for cit in tracker.citations_for("Acme is growing fast.")] == [c]

    def test_identical_text_shares_key(self, tracker):
        a = tracker.cite_generated("summary", "model-x")
        tracker.link_content("Same paragraph", [a])
        assert [cit.id for cit in tracker.citations_for("Same " + "paragraph")] == [a]

    def test_unlinked_text_has_no_citations(self, tracker):
        assert tracker.citations_for("never linked") == []

    def test_unknown_id_rejected(self, tracker):
        with pytest.raises(KeyError):
            tracker.link_content("text", ["cite_missing"])


class TestHelpers:
    def test_default_confidences(self, tracker):
        ids = {
            "generated": tracker.cite_generated("x", "m"),
            "web": tracker.cite_web_research("q", []),
            "site": tracker.cite_company_website("https://acme.test", "content"),
            "kb": tracker.cite_knowledge("q", []),
            "data": tracker.cite_structured_data("Assessment", {}),
            "industry": tracker.cite_industry_data("Report", {}),
        }
        confidences = {k: tracker.get(v).confidence for k, v in ids.items()}
        assert confidences == {
            "generated": 0.8, "web": 0.7, "site": 0.9, "kb": 0.85, "data": 1.0, "industry": 0.75,
        }

    def test_web_research_keeps_first_three(self, tracker):
        results = [{"url": f"https://r{i}.test"} for i in range(6)]
        citation = tracker.get(tracker.cite_web_research("q", results))
        assert len(citation.data["results"]) == 3
        assert citation.source_url == "https://r0.test"

    def test_company_website_preview(self, tracker):
        citation = tracker.get(tracker.cite_company_website("https://acme.test", "c" * 2000))
        assert len(citation.data["content_preview"]) == 500

    def test_len_and_to_dict(self, tracker):
        a = tracker.cite_structured_data("Assessment", {})
        tracker.link_content("t", [a])
        assert len(tracker) == 1
        data = tracker.to_dict()
        assert data["citations"][0]["id"] == a
        assert list(data["content"].values()) == [[a]]


class TestRendering:
    def test_badge_empty_for_no_ids(self, tracker):
        assert tracker.format_badge([]) == ""
        assert tracker.format_badge(["cite_unknown"]) == ""

    def test_badge_lists_sources(self, tracker):
        a = tracker.cite_company_website("https://acme.test", "content")
        badge = tracker.format_badge([a])
        assert badge.startswith("[Sources: ")
        assert "(https://acme.test)" in badge
        assert "Confidence" not in badge

    def test_low_confidence_is_flagged(self, tracker):
        a = tracker.cite_web_research("q", [{"url": "https://r.test"}])
        assert "[Confidence: 70%]" in CitationTracker.format_citation(tracker.get(a))
