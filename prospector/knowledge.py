"""Semantic knowledge-base client with a two-tier transport.

The primary tier is a long-lived MCP session over stdio
(:class:`KnowledgeSession`).  Its lifecycle is::

    UNINITIALIZED -> INITIALIZING -> READY -> (failure) UNINITIALIZED

Only one initialization runs at a time; concurrent callers await the same
attempt.  The connection is owned by a single runner task that enters and
exits the MCP context managers, so teardown never crosses task boundaries.

If the stateful tier raises, :class:`KnowledgeClient` retries the query
over a stateless HTTP POST.  Callers only ever see ``{"results": [...]}``.
"""
from __future__ import annotations

import asyncio
import enum
import json
import logging
import os
import time
from typing import Any

import httpx
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client

from prospector.audit import AuditResponse, AuditSource, AuditTrail
from prospector.errors import TransientSourceError

log = logging.getLogger(__name__)

SOURCE_LABEL = "Knowledge Base"
_TOOL_MARKERS = ("query", "knowledge", "atlas")


class ConnectionState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"


def normalize_results(data: Any) -> list[Any]:
    """Coerce a decoded payload into a list of hits."""
    if isinstance(data, dict):
        if isinstance(data.get("results"), list):
            return data["results"]
        return [data] if data else []
    if isinstance(data, list):
        return data
    return []


def parse_tool_content(content: list[Any]) -> list[Any]:
    """Text blocks of an MCP tool result, decoded as JSON when possible."""
    text = "".join(
        getattr(item, "text", "") for item in content or []
        if getattr(item, "type", None) == "text"
    )
    if not text:
        return []
    try:
        return normalize_results(json.loads(text))
    except json.JSONDecodeError:
        return [{"content": text, "source": SOURCE_LABEL}]


def pick_query_tool(tool_names: list[str], preferred: str | None = None) -> str | None:
    if preferred and preferred in tool_names:
        return preferred
    for name in tool_names:
        if any(marker in name.lower() for marker in _TOOL_MARKERS):
            return name
    return None


# ---------------------------------------------------------------------------
# Stateful tier
# ---------------------------------------------------------------------------


class KnowledgeSession:
    """Process-wide MCP stdio session to the knowledge server."""

    def __init__(
        self,
        command: str,
        args: list[str] | None = None,
        *,
        env: dict[str, str] | None = None,
        handshake_timeout: float = 30.0,
        call_timeout: float = 60.0,
        tool_name: str | None = None,
    ):
        self.command = command
        self.args = list(args or [])
        self.env = env
        self.handshake_timeout = handshake_timeout
        self.call_timeout = call_timeout
        self.preferred_tool = tool_name
        self.state = ConnectionState.UNINITIALIZED
        self.tool_names: list[str] = []
        self.query_tool: str | None = None
        self._session: ClientSession | None = None
        self._runner: asyncio.Task | None = None
        self._shutdown: asyncio.Event | None = None
        self._init_task: asyncio.Task | None = None

    @property
    def alive(self) -> bool:
        return self._runner is not None and not self._runner.done()

    async def _run(self, ready: asyncio.Future, shutdown: asyncio.Event) -> None:
        params = StdioServerParameters(
            command=self.command, args=self.args,
            env={**os.environ, **self.env} if self.env else None,
        )
        try:
            async with stdio_client(params) as (read, write):
                async with ClientSession(read, write) as session:
                    await session.initialize()
                    ready.set_result(session)
                    await shutdown.wait()
        except Exception as exc:
            if not ready.done():
                ready.set_exception(exc)
            else:
                log.warning("Knowledge MCP connection dropped: %s", exc)

    async def _initialize(self) -> ClientSession:
        loop = asyncio.get_running_loop()
        ready: asyncio.Future = loop.create_future()
        self._shutdown = asyncio.Event()
        self._runner = asyncio.create_task(self._run(ready, self._shutdown))
        try:
            session = await asyncio.wait_for(asyncio.shield(ready), self.handshake_timeout)
            # Liveness: a session is only trusted once it lists its tools
            listed = await asyncio.wait_for(session.list_tools(), self.handshake_timeout)
            self.tool_names = [t.name for t in listed.tools]
            self.query_tool = pick_query_tool(self.tool_names, self.preferred_tool)
            if self.query_tool is None:
                raise TransientSourceError(
                    "knowledge mcp",
                    f"no query tool advertised (available: {', '.join(self.tool_names) or 'none'})",
                )
        except BaseException:
            if not ready.done() and self._runner is not None:
                self._runner.cancel()
            await self._teardown()
            raise
        finally:
            self._init_task = None
        self._session = session
        self.state = ConnectionState.READY
        log.info("Knowledge MCP session ready (tool=%s)", self.query_tool)
        return session

    async def ensure_ready(self) -> ClientSession:
        """Return a live session, connecting (once) if needed."""
        if self.state is ConnectionState.READY:
            if self.alive and self._session is not None:
                return self._session
            log.info("Knowledge MCP connection found dead, reconnecting")
            await self._teardown()
        if self._init_task is None:
            self.state = ConnectionState.INITIALIZING
            self._init_task = asyncio.create_task(self._initialize())
        return await asyncio.shield(self._init_task)

    async def query(self, text: str) -> list[Any]:
        session = await self.ensure_ready()
        try:
            result = await asyncio.wait_for(
                session.call_tool(self.query_tool, {"query": text}), self.call_timeout,
            )
        except Exception:
            await self._teardown()
            raise
        if getattr(result, "isError", False):
            raise TransientSourceError("knowledge mcp", "tool reported an error")
        return parse_tool_content(result.content)

    async def _teardown(self) -> None:
        runner, self._runner = self._runner, None
        shutdown, self._shutdown = self._shutdown, None
        self._session = None
        self.query_tool = None
        self.state = ConnectionState.UNINITIALIZED
        if runner is None:
            return
        if shutdown is not None:
            shutdown.set()
        if not runner.done():
            done, _ = await asyncio.wait({runner}, timeout=5.0)
            if not done:
                log.warning("Knowledge MCP runner did not stop in time; cancelling")
                runner.cancel()

    async def close(self) -> None:
        await self._teardown()

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "connected": self.state is ConnectionState.READY and self.alive,
            "tool": self.query_tool,
            "tools": list(self.tool_names),
            "command": self.command,
        }


# ---------------------------------------------------------------------------
# Stateless tier
# ---------------------------------------------------------------------------


class KnowledgeHTTP:
    def __init__(self, endpoint: str, timeout: float = 30.0, http: httpx.AsyncClient | None = None):
        self.endpoint = endpoint
        self._http = http or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def query(self, text: str) -> list[Any]:
        resp = await self._http.post(self.endpoint, json={"query": text})
        resp.raise_for_status()
        return normalize_results(resp.json())

    async def close(self) -> None:
        await self._http.aclose()


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class KnowledgeClient:
    def __init__(self, session: KnowledgeSession | None = None, http: KnowledgeHTTP | None = None):
        self.session = session
        self.http = http

    @property
    def configured(self) -> bool:
        return self.session is not None or self.http is not None

    async def query(self, text: str, *, audit: AuditTrail | None = None) -> dict[str, list[Any]]:
        """Query the knowledge base, falling back from MCP to HTTP.

        Raises TransientSourceError when every configured tier fails.
        """
        failures: list[str] = []
        tiers: list[tuple[str, Any]] = []
        if self.session is not None:
            tiers.append(("mcp", self.session))
        if self.http is not None:
            tiers.append(("http", self.http))

        for tier, transport in tiers:
            started = time.monotonic()
            try:
                results = await transport.query(text)
            except Exception as exc:
                log.warning("Knowledge %s query failed: %s", tier, exc)
                failures.append(f"{tier}: {exc}")
                if audit is not None:
                    audit.record_error(
                        f"Knowledge query error ({tier})", exc, query=text,
                    )
                continue
            if audit is not None:
                audit.record(
                    f"Knowledge query ({tier})", "knowledge_query",
                    duration_ms=(time.monotonic() - started) * 1000,
                    query=text, options={"tier": tier},
                    response=AuditResponse(success=True, summary=f"Found {len(results)} results"),
                    sources=[AuditSource(type="knowledge", description=f"{SOURCE_LABEL} query: {text}")],
                )
            return {"results": results}

        raise TransientSourceError(
            "knowledge base", "; ".join(failures) or "no knowledge source configured",
        )

    def status(self) -> dict[str, Any]:
        return {
            "mcp": self.session.status() if self.session is not None else None,
            "http_endpoint": self.http.endpoint if self.http is not None else None,
        }

    async def close(self) -> None:
        if self.session is not None:
            await self.session.close()
        if self.http is not None:
            await self.http.close()


_client: KnowledgeClient | None = None


def get_knowledge_client(settings=None) -> KnowledgeClient:
    """Process-wide client built from settings on first use."""
    global _client
    if _client is None:
        if settings is None:
            from prospector.config import get_settings
            settings = get_settings()
        session = None
        if settings.knowledge_mcp_command:
            session = KnowledgeSession(
                settings.knowledge_mcp_command, settings.knowledge_mcp_args,
                handshake_timeout=settings.knowledge_handshake_timeout_seconds,
                call_timeout=settings.knowledge_query_timeout_seconds,
            )
        http = None
        if settings.knowledge_http_endpoint:
            http = KnowledgeHTTP(settings.knowledge_http_endpoint, settings.knowledge_query_timeout_seconds)
        _client = KnowledgeClient(session, http)
    return _client


async def close_knowledge_client() -> None:
    global _client
    if _client is not None:
        client, _client = _client, None
        await client.close()
