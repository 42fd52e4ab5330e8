"""Append-only audit trail of every external call made while building a report."""
from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from prospector.utils import truncate

EntryType = Literal[
    "llm_query", "knowledge_query", "web_scrape", "web_search",
    "data_source", "calculation", "error",
]

WEB_TYPES = frozenset({"web_scrape", "web_search"})

PROMPT_PREVIEW_CHARS = 500
SUMMARY_PREVIEW_CHARS = 200


class TokenUsage(BaseModel):
    input: int = 0
    output: int = 0
    thinking: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output + self.thinking


class AuditResponse(BaseModel):
    success: bool
    summary: str | None = None
    error: str | None = None
    token_usage: TokenUsage | None = None


class AuditSource(BaseModel):
    type: str
    identifier: str | None = None
    url: str | None = None
    description: str | None = None


class AuditDetails(BaseModel):
    prompt: str | None = None
    system_prompt: str | None = None
    query: str | None = None
    url: str | None = None
    model: str | None = None
    options: dict[str, Any] = {}
    response: AuditResponse | None = None
    sources: list[AuditSource] = []
    data_used: dict[str, Any] = {}


class AuditEntry(BaseModel):
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    action: str
    type: EntryType
    details: AuditDetails = Field(default_factory=AuditDetails)
    duration_ms: float | None = None


class AuditSummary(BaseModel):
    total_llm_queries: int = 0
    total_knowledge_queries: int = 0
    total_web_actions: int = 0
    tokens: TokenUsage = Field(default_factory=TokenUsage)
    errors: int = 0


class AuditTrail:
    """Ordered audit entries plus running counters.

    Counters are updated inside :meth:`append` with no await in between, so
    they always match the entries even with many concurrent coroutines
    writing to the same trail.
    """

    def __init__(self) -> None:
        self.started_at: datetime = datetime.now(UTC)
        self.completed_at: datetime | None = None
        self.total_duration_ms: float | None = None
        self._entries: list[AuditEntry] = []
        self.summary = AuditSummary()

    @property
    def entries(self) -> tuple[AuditEntry, ...]:
        return tuple(self._entries)

    @property
    def finalized(self) -> bool:
        return self.completed_at is not None

    def append(self, entry: AuditEntry) -> AuditEntry:
        self._entries.append(entry)
        s = self.summary
        if entry.type == "llm_query":
            s.total_llm_queries += 1
            usage = entry.details.response.token_usage if entry.details.response else None
            if usage is not None:
                s.tokens.input += usage.input
                s.tokens.output += usage.output
                s.tokens.thinking += usage.thinking
        elif entry.type == "knowledge_query":
            s.total_knowledge_queries += 1
        elif entry.type in WEB_TYPES:
            s.total_web_actions += 1
        elif entry.type == "error":
            s.errors += 1
        return entry

    def record(self, action: str, entry_type: EntryType, duration_ms: float | None = None,
               **details: Any) -> AuditEntry:
        """Build and append an entry from keyword details."""
        return self.append(AuditEntry(
            action=action, type=entry_type,
            details=AuditDetails(**details), duration_ms=duration_ms,
        ))

    def record_error(self, action: str, error: BaseException | str, **details: Any) -> AuditEntry:
        response = AuditResponse(success=False, error=str(error))
        return self.record(action, "error", response=response, **details)

    def finalize(self) -> None:
        """Stamp completion time once; later calls are no-ops."""
        if self.completed_at is not None:
            return
        self.completed_at = datetime.now(UTC)
        self.total_duration_ms = (self.completed_at - self.started_at).total_seconds() * 1000

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "total_duration_ms": self.total_duration_ms,
            "entries": [e.model_dump(mode="json") for e in self._entries],
            "summary": self.summary.model_dump(mode="json"),
        }

    def format(self) -> str:
        """Render a markdown transcript of the trail for internal review."""
        s = self.summary
        lines = ["# Report Generation Audit Trail", ""]
        lines.append(f"**Started:** {self.started_at.isoformat()}")
        if self.completed_at is not None:
            lines.append(f"**Completed:** {self.completed_at.isoformat()}")
            lines.append(f"**Duration:** {self.total_duration_ms / 1000:.2f}s")
        lines += [
            "", "## Summary", "",
            f"- LLM queries: {s.total_llm_queries}",
            f"- Knowledge queries: {s.total_knowledge_queries}",
            f"- Web actions: {s.total_web_actions}",
            f"- Errors: {s.errors}",
            "", "### Token Usage",
            f"- Input: {s.tokens.input:,}",
            f"- Output: {s.tokens.output:,}",
            f"- Thinking: {s.tokens.thinking:,}",
            f"- Total: {s.tokens.total:,}",
            "", "## Detailed Actions", "",
        ]
        for index, entry in enumerate(self._entries, start=1):
            lines.extend(_format_entry(index, entry))
        return "\n".join(lines)


def _format_entry(index: int, entry: AuditEntry) -> list[str]:
    d = entry.details
    out = [f"### {index}. {entry.action} ({entry.type})", f"**Time:** {entry.timestamp.isoformat()}"]
    if entry.duration_ms is not None:
        out.append(f"**Duration:** {entry.duration_ms:.0f}ms")
    if d.prompt:
        out += ["", "**Prompt:**", "```", truncate(d.prompt, PROMPT_PREVIEW_CHARS), "```"]
    if d.query:
        out += ["", f"**Query:** {truncate(d.query, PROMPT_PREVIEW_CHARS)}"]
    if d.url:
        out += ["", f"**URL:** {d.url}"]
    if d.sources:
        out += ["", "**Sources:**"]
        for i, src in enumerate(d.sources, start=1):
            out.append(f"{i}. {src.type}: {src.description or src.identifier or src.url or 'N/A'}")
    if d.response is not None:
        out += ["", f"**Response:** {'Success' if d.response.success else 'Error'}"]
        if d.response.summary:
            out.append(f"Summary: {truncate(d.response.summary, SUMMARY_PREVIEW_CHARS)}")
        if d.response.error:
            out.append(f"Error: {d.response.error}")
    out += ["", "---", ""]
    return out
