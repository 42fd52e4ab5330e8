"""Citation tracking: which sources back which generated text."""
from __future__ import annotations

import hashlib
import uuid
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

CitationType = Literal[
    "generated_content", "structured_data", "web_research",
    "semantic_lookup", "company_website", "industry_data",
]


class Citation(BaseModel):
    id: str
    type: CitationType
    source: str
    source_url: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    data: Any = None
    query: str | None = None
    confidence: float = Field(1.0, ge=0.0, le=1.0)


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class CitationTracker:
    """Citations by id, plus content-hash -> citation ids for paragraph lookups."""

    def __init__(self) -> None:
        self._citations: dict[str, Citation] = {}
        self._content: dict[str, list[str]] = {}

    def __len__(self) -> int:
        return len(self._citations)

    def cite(self, citation_type: CitationType, source: str, *, source_url: str | None = None,
             data: Any = None, query: str | None = None, confidence: float = 1.0) -> str:
        citation_id = f"cite_{uuid.uuid4().hex[:12]}"
        self._citations[citation_id] = Citation(
            id=citation_id, type=citation_type, source=source, source_url=source_url,
            data=data, query=query, confidence=confidence,
        )
        return citation_id

    def link_content(self, text: str, citation_ids: list[str]) -> None:
        """Back *text* with *citation_ids*, replacing any earlier link.

        Raises KeyError for ids the tracker has never issued.
        """
        unknown = [cid for cid in citation_ids if cid not in self._citations]
        if unknown:
            raise KeyError(f"Unknown citation ids: {', '.join(unknown)}")
        self._content[content_hash(text)] = list(citation_ids)

    def citations_for(self, text: str) -> list[Citation]:
        ids = self._content.get(content_hash(text), [])
        return [self._citations[cid] for cid in ids]

    def get(self, citation_id: str) -> Citation | None:
        return self._citations.get(citation_id)

    def all(self) -> list[Citation]:
        return list(self._citations.values())

    # -- helpers -----------------------------------------------------------

    def cite_generated(self, content: str, model: str, prompt: str | None = None,
                       confidence: float = 0.8) -> str:
        return self.cite("generated_content", model, query=prompt,
                         data={"content": content}, confidence=confidence)

    def cite_web_research(self, query: str, results: list[dict[str, Any]],
                          source: str = "Web Search") -> str:
        return self.cite(
            "web_research", source, query=query,
            source_url=results[0].get("url") if results else None,
            data={"results": results[:3]}, confidence=0.7,
        )

    def cite_company_website(self, url: str, content: str) -> str:
        return self.cite("company_website", "Company Website", source_url=url,
                         data={"content_preview": content[:500]}, confidence=0.9)

    def cite_knowledge(self, query: str, results: list[Any]) -> str:
        return self.cite(
            "semantic_lookup", "Knowledge Base", query=query,
            data={"result_count": len(results), "sample_results": results[:2]},
            confidence=0.85,
        )

    def cite_structured_data(self, source: str, data: Any) -> str:
        return self.cite("structured_data", source, data=data, confidence=1.0)

    def cite_industry_data(self, source: str, data: Any, url: str | None = None) -> str:
        return self.cite("industry_data", source, source_url=url, data=data, confidence=0.75)

    # -- rendering ---------------------------------------------------------

    @staticmethod
    def format_citation(citation: Citation) -> str:
        parts = [f"[{citation.source}]({citation.source_url})" if citation.source_url else citation.source]
        parts.append(f"({citation.timestamp.date().isoformat()})")
        if citation.confidence < 0.9:
            parts.append(f"[Confidence: {round(citation.confidence * 100)}%]")
        return " ".join(parts)

    def format_badge(self, citation_ids: list[str]) -> str:
        """``[Sources: ...]`` for the known ids; empty string when there are none."""
        found = [self._citations[cid] for cid in citation_ids if cid in self._citations]
        if not found:
            return ""
        return f"[Sources: {', '.join(self.format_citation(c) for c in found)}]"

    def to_dict(self) -> dict[str, Any]:
        return {
            "citations": [c.model_dump(mode="json") for c in self._citations.values()],
            "content": {h: list(ids) for h, ids in self._content.items()},
        }
