"""Research orchestrator: builds a CompanyResearch bundle as a state machine.

States run in a fixed order, each consuming what the previous one found::

    WEBSITE_DISCOVERY -> WEBSITE_SCRAPE -> PARALLEL_RESEARCH
        -> SALES_SYNTHESIS -> DONE

Discovery skips straight to PARALLEL_RESEARCH when no website is found.
PARALLEL_RESEARCH runs four tasks (competitors, industry, tools, knowledge
base) concurrently; each is settled into an ``Ok``/``Degraded``/``Fatal``
outcome so one failure never touches its siblings.

The run only raises when every generative-text call failed
(:class:`AvailabilityError`) or a task hit a configuration problem.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable
from urllib.parse import urlparse

from prospector import prompts
from prospector.audit import AuditTrail
from prospector.citations import CitationTracker
from prospector.errors import AvailabilityError, ConfigurationError, ParseError, TransientSourceError
from prospector.knowledge import KnowledgeClient
from prospector.llm import LLMCallError, LLMClient
from prospector.outcomes import Degraded, Fatal, Ok, Outcome, value_or_none
from prospector.schemas import (
    AssessmentInput,
    CompanyHistory,
    CompanyInfo,
    CompanyResearch,
    Competitor,
    IndustryInsights,
    KeyContact,
    KnowledgeIntelligence,
    SalesIntelligence,
    ToolsResearch,
    WebsiteAnalysis,
)
from prospector.utils import Parsed, decode_json, decode_or, string_list
from prospector.web import MIN_SCRAPE_CHARS, WebResearchClient

log = logging.getLogger(__name__)

ProgressCallback = Callable[[str, str], Any]

MAX_COMPETITOR_SCRAPES = 5
MAX_INDUSTRY_SCRAPES = 3

TECH_KEYWORDS = (
    "QuickBooks", "Sage", "Xero", "Procore", "Buildertrend", "CoConstruct",
    "Jobber", "ServiceTitan", "FieldPulse", "Housecall Pro", "monday.com",
    "Asana", "Trello", "Slack", "Microsoft", "Google Workspace", "Salesforce",
)

_FOUNDED_RE = re.compile(r"(?:founded|established|since)\s+(?:in\s+)?(\d{4})", re.IGNORECASE)
_HQ_RE = re.compile(
    r"(?:headquarters|based in|located in|head office)[:\s]+([^,\n]+(?:,\s*[A-Z]{2})?)",
    re.IGNORECASE,
)


class ResearchState(str, enum.Enum):
    WEBSITE_DISCOVERY = "website_discovery"
    WEBSITE_SCRAPE = "website_scrape"
    PARALLEL_RESEARCH = "parallel_research"
    SALES_SYNTHESIS = "sales_synthesis"
    DONE = "done"


@dataclass
class ResearchContext:
    assessment: AssessmentInput
    audit: AuditTrail
    research: CompanyResearch
    progress: ProgressCallback | None = None
    website_content: str = ""
    llm_calls: int = 0
    llm_failures: int = 0
    visited: list[ResearchState] = field(default_factory=list)

    def emit(self, message: str, level: str = "info") -> None:
        log.log(logging.WARNING if level in ("warning", "error") else logging.INFO, message)
        if self.progress is not None:
            self.progress(message, level)


# ---------------------------------------------------------------------------
# Fallback extraction
# ---------------------------------------------------------------------------


def extract_technologies(content: str) -> list[str]:
    lowered = content.lower()
    return [tech for tech in TECH_KEYWORDS if tech.lower() in lowered]


def extract_company_history(content: str) -> CompanyHistory | None:
    founded = _FOUNDED_RE.search(content)
    hq = _HQ_RE.search(content)
    if not founded and not hq:
        return None
    return CompanyHistory(
        founded=founded.group(1) if founded else None,
        headquarters=hq.group(1).strip() if hq else None,
    )


def fallback_website_analysis(content: str) -> WebsiteAnalysis:
    return WebsiteAnalysis(
        technologies=extract_technologies(content),
        company_history=extract_company_history(content),
    )


def fallback_knowledge_insights(hit_count: int, trade: str) -> list[str]:
    if hit_count == 0:
        return []
    return [
        f"Found {hit_count} relevant examples in the knowledge base",
        "Similar customers have adopted the platform successfully",
        f"Case studies available for {trade or 'this trade'}",
    ]


def fallback_sales_intelligence(assessment: AssessmentInput) -> SalesIntelligence:
    signals = [f"Timeline: {assessment.timeline}"] if assessment.timeline else []
    return SalesIntelligence(buying_signals=signals)


def _domain(url: str | None) -> str:
    if not url:
        return ""
    parsed = urlparse(url if "://" in url else f"https://{url}")
    return (parsed.netloc or "").lower().removeprefix("www.")


def _normalize_url(url: str) -> str:
    url = url.strip()
    return url if url.startswith(("http://", "https://")) else f"https://{url}"


# ---------------------------------------------------------------------------
# Parsers: loosely-shaped JSON -> strict models
# ---------------------------------------------------------------------------


def _get(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] not in (None, ""):
            return data[key]
    return None


def parse_company_info(data: dict[str, Any]) -> CompanyInfo:
    def text(*keys: str) -> str | None:
        value = _get(data, *keys)
        return str(value) if value is not None else None
    return CompanyInfo(
        description=text("description"), location=text("location"),
        industry=text("industry"), size=text("size"), founded=text("founded"),
    )


def parse_website_analysis(data: dict[str, Any]) -> WebsiteAnalysis:
    history = _get(data, "companyHistory", "company_history")
    parsed_history = None
    if isinstance(history, dict):
        founded = _get(history, "founded", "foundingYear")
        parsed_history = CompanyHistory(
            founded=str(founded) if founded is not None else None,
            headquarters=_get(history, "headquarters"),
            milestones=string_list(_get(history, "milestones")),
            summary=_get(history, "summary"),
        )
    return WebsiteAnalysis(
        technologies=string_list(_get(data, "technologies")),
        services=string_list(_get(data, "services")),
        value_propositions=string_list(_get(data, "valuePropositions", "value_propositions")),
        pain_points=string_list(_get(data, "painPoints", "pain_points")),
        key_pages=string_list(_get(data, "keyPages", "key_pages")),
        company_history=parsed_history,
    )


def parse_competitors(data: Any, exclude_name: str) -> list[Competitor]:
    items = data.get("competitors", []) if isinstance(data, dict) else data
    own = exclude_name.strip().lower()
    out: list[Competitor] = []
    for item in items or []:
        if not isinstance(item, dict) or not item.get("name"):
            continue
        name = str(item["name"]).strip()
        if own and (own in name.lower() or name.lower() in own):
            continue
        out.append(Competitor(
            name=name,
            website=item.get("website") or None,
            description=item.get("description") or None,
            differentiation=item.get("differentiation") or None,
        ))
    return out


def parse_industry(data: dict[str, Any]) -> IndustryInsights:
    market = _get(data, "marketSize", "market_size")
    return IndustryInsights(
        trends=string_list(data.get("trends")),
        challenges=string_list(data.get("challenges")),
        opportunities=string_list(data.get("opportunities")),
        market_size=str(market) if market is not None else None,
    )


def parse_sales_intelligence(data: dict[str, Any]) -> SalesIntelligence:
    contacts = []
    for item in _get(data, "keyContacts", "key_contacts") or []:
        if isinstance(item, dict):
            contacts.append(KeyContact(**{k: (str(v) if v is not None else None)
                                          for k, v in item.items() if k in KeyContact.model_fields}))
    return SalesIntelligence(
        talking_points=string_list(_get(data, "talkingPoints", "talking_points")),
        objections=string_list(data.get("objections")),
        competitive_advantages=string_list(_get(data, "competitiveAdvantages", "competitive_advantages")),
        buying_signals=string_list(_get(data, "buyingSignals", "buying_signals")),
        risks=string_list(data.get("risks")),
        key_contacts=contacts,
        decision_makers=string_list(_get(data, "decisionMakers", "decision_makers")),
    )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class ResearchOrchestrator:
    def __init__(
        self,
        llm: LLMClient,
        web: WebResearchClient,
        knowledge: KnowledgeClient,
        citations: CitationTracker | None = None,
        custom_prompts: dict[str, str] | None = None,
    ):
        self.llm = llm
        self.web = web
        self.knowledge = knowledge
        self.citations = citations if citations is not None else CitationTracker()
        self.prompts = {**prompts.DEFAULT_PROMPTS, **(custom_prompts or {})}
        self._handlers: dict[ResearchState, Callable[[ResearchContext], Awaitable[ResearchState]]] = {
            ResearchState.WEBSITE_DISCOVERY: self.discover_website,
            ResearchState.WEBSITE_SCRAPE: self.scrape_website,
            ResearchState.PARALLEL_RESEARCH: self.parallel_research,
            ResearchState.SALES_SYNTHESIS: self.synthesize,
        }

    async def research(
        self,
        assessment: AssessmentInput,
        audit: AuditTrail,
        progress: ProgressCallback | None = None,
    ) -> CompanyResearch:
        ctx = ResearchContext(
            assessment=assessment,
            audit=audit,
            progress=progress,
            research=CompanyResearch(
                company_name=assessment.company_name,
                website=_normalize_url(assessment.website) if assessment.website else None,
                contact_email=assessment.email or None,
            ),
        )
        ctx.emit(f"Researching {assessment.company_name or 'prospect'}")
        state = ResearchState.WEBSITE_DISCOVERY
        while state is not ResearchState.DONE:
            ctx.visited.append(state)
            state = await self._handlers[state](ctx)

        if ctx.llm_calls and ctx.llm_failures == ctx.llm_calls:
            ctx.emit("Generative-text service unreachable for every step", "error")
            raise AvailabilityError(
                f"LLM unavailable: all {ctx.llm_calls} calls failed",
                audit=audit, research=ctx.research,
            )
        ctx.emit("Research complete", "success")
        return ctx.research

    # -- shared helpers ----------------------------------------------------

    async def _ask(self, ctx: ResearchContext, action: str, prompt_key: str, prompt: str,
                   temperature: float = 0.3) -> str:
        """One LLM call, counted toward the availability check."""
        ctx.llm_calls += 1
        try:
            return await self.llm.analyze(
                prompt, self.prompts[prompt_key],
                temperature=temperature, audit=ctx.audit, action=action,
            )
        except LLMCallError:
            ctx.llm_failures += 1
            raise

    def _cite_generated(self, ctx: ResearchContext, section: str, text: str,
                        backing: list[str]) -> list[str]:
        ids = [self.citations.cite_generated(text[:2000], self.llm.model, prompt=section), *backing]
        ctx.research.sources[section] = ids
        return ids

    async def _settle(self, name: str, ctx: ResearchContext, coro: Awaitable[Any]) -> Outcome:
        try:
            return Ok(await coro)
        except ConfigurationError as exc:
            ctx.audit.record_error(f"{name} research", exc)
            return Fatal(exc)
        except Exception as exc:
            ctx.audit.record_error(f"{name} research", exc)
            ctx.emit(f"{name.capitalize()} research failed: {exc}", "warning")
            return Degraded(str(exc))

    # -- states ------------------------------------------------------------

    async def discover_website(self, ctx: ResearchContext) -> ResearchState:
        a = ctx.assessment
        if ctx.research.website:
            ctx.emit(f"Using provided website {ctx.research.website}")
            return ResearchState.WEBSITE_SCRAPE

        query = f"{a.company_name} {a.trade} contractor".strip()
        ctx.emit(f"Searching the web: {query}")
        try:
            response = await self.web.search(query, limit=5, audit=ctx.audit)
        except TransientSourceError as exc:
            ctx.emit(f"Website search failed: {exc}", "warning")
            return ResearchState.PARALLEL_RESEARCH

        hits = [h.model_dump() for h in response.data]
        if not hits:
            ctx.emit("No search results for the company", "warning")
            return ResearchState.PARALLEL_RESEARCH

        ctx.research.website = hits[0]["url"]
        search_cite = self.citations.cite_web_research(query, hits)
        try:
            text = await self._ask(ctx, "Extract basic company info", "basic_info",
                                   prompts.basic_info_prompt(a.company_name, hits))
        except LLMCallError as exc:
            ctx.emit(f"Basic company info unavailable: {exc}", "warning")
        else:
            decoded = decode_json(text, dict)
            if isinstance(decoded, Parsed):
                ctx.research.company_info = parse_company_info(decoded.value)
                self._cite_generated(ctx, "company_info", text, [search_cite])
        ctx.emit(f"Found website {ctx.research.website}", "success")
        return ResearchState.WEBSITE_SCRAPE

    async def scrape_website(self, ctx: ResearchContext) -> ResearchState:
        url = ctx.research.website or ""
        ctx.emit(f"Scraping {url}")
        try:
            page = await self.web.scrape_page(url, audit=ctx.audit)
        except TransientSourceError as exc:
            ctx.emit(f"Website scrape failed: {exc}", "warning")
            return ResearchState.PARALLEL_RESEARCH

        content = page.content.strip()
        if len(content) < MIN_SCRAPE_CHARS:
            ctx.emit(f"Website returned too little content ({len(content)} chars)", "warning")
            return ResearchState.PARALLEL_RESEARCH

        ctx.website_content = content
        site_cite = self.citations.cite_company_website(url, content)
        analysis: WebsiteAnalysis | None = None
        try:
            text = await self._ask(
                ctx, "Analyze company website", "website_analysis",
                prompts.website_prompt(ctx.assessment.company_name, url, content),
            )
        except LLMCallError as exc:
            ctx.emit(f"Website analysis unavailable, using keyword extraction: {exc}", "warning")
        else:
            decoded = decode_json(text, dict)
            if isinstance(decoded, Parsed):
                analysis = parse_website_analysis(decoded.value)
                if analysis.company_history is None:
                    analysis = analysis.model_copy(
                        update={"company_history": extract_company_history(content)}
                    )
                self._cite_generated(ctx, "website_analysis", text, [site_cite])
            else:
                ctx.emit("Website analysis was not valid JSON, using keyword extraction", "warning")

        if analysis is None:
            analysis = fallback_website_analysis(content)
            ctx.research.sources["website_analysis"] = [site_cite]
        ctx.research.website_analysis = analysis
        ctx.emit(f"Website analyzed ({len(analysis.technologies)} technologies)", "success")
        return ResearchState.PARALLEL_RESEARCH

    async def parallel_research(self, ctx: ResearchContext) -> ResearchState:
        ctx.emit("Running competitor, industry, tools and knowledge-base research")
        competitors, industry, tools, knowledge = await asyncio.gather(
            self._settle("competitor", ctx, self.research_competitors(ctx)),
            self._settle("industry", ctx, self.research_industry(ctx)),
            self._settle("tools", ctx, self.research_tools(ctx)),
            self._settle("knowledge", ctx, self.research_knowledge(ctx)),
        )
        for outcome in (competitors, industry, tools, knowledge):
            if isinstance(outcome, Fatal):
                raise outcome.error

        r = ctx.research
        r.competitors = value_or_none(competitors)
        r.industry_insights = value_or_none(industry)
        r.tools_research = value_or_none(tools)
        r.knowledge_intelligence = value_or_none(knowledge)
        return ResearchState.SALES_SYNTHESIS

    async def synthesize(self, ctx: ResearchContext) -> ResearchState:
        r = ctx.research
        sections = {
            "Company Website": r.website_analysis.model_dump() if r.website_analysis else None,
            "Web Search": r.company_info.model_dump() if r.company_info else None,
            "Competitor Research": [c.model_dump() for c in r.competitors] if r.competitors else None,
            "Industry Research": r.industry_insights.model_dump() if r.industry_insights else None,
            "Tools Analysis": r.tools_research.model_dump() if r.tools_research else None,
            "Knowledge Base": r.knowledge_intelligence.model_dump() if r.knowledge_intelligence else None,
        }
        ctx.emit("Generating sales intelligence")
        try:
            text = await self._ask(
                ctx, "Generate sales intelligence", "sales_intelligence",
                prompts.sales_prompt(ctx.assessment, sections), temperature=0.8,
            )
        except LLMCallError as exc:
            ctx.emit(f"Sales intelligence unavailable: {exc}", "error")
            r.sales_intelligence = fallback_sales_intelligence(ctx.assessment)
            return ResearchState.DONE

        decoded = decode_json(text, dict)
        if not isinstance(decoded, Parsed):
            ctx.emit("Sales intelligence was not valid JSON, using basic intelligence", "warning")
            r.sales_intelligence = fallback_sales_intelligence(ctx.assessment)
            return ResearchState.DONE

        intel = parse_sales_intelligence(decoded.value)
        backing = [cid for ids in r.sources.values() for cid in ids]
        ids = self._cite_generated(ctx, "sales_intelligence", text, list(dict.fromkeys(backing)))
        for point in intel.talking_points:
            self.citations.link_content(point, ids)
        r.sales_intelligence = intel
        ctx.emit(f"Generated {len(intel.talking_points)} talking points", "success")
        return ResearchState.DONE

    # -- parallel tasks ----------------------------------------------------

    async def _scrape_or_snippet(self, ctx: ResearchContext, hit: dict[str, Any]) -> dict[str, str]:
        try:
            page = await self.web.scrape(hit["url"], audit=ctx.audit)
            content = page.content or hit.get("description", "")
        except TransientSourceError as exc:
            log.debug("Falling back to snippet for %s: %s", hit["url"], exc)
            content = hit.get("description", "")
        return {"url": hit["url"], "title": hit.get("title", ""), "content": content}

    async def research_competitors(self, ctx: ResearchContext) -> list[Competitor]:
        a = ctx.assessment
        location = a.location or (ctx.research.company_info.location if ctx.research.company_info else None) or ""
        query = f"{a.trade} contractors {location} competitors".replace("  ", " ").strip()
        response = await self.web.search(query, limit=10, audit=ctx.audit)
        hits = [h.model_dump() for h in response.data]
        if not hits:
            return []
        search_cite = self.citations.cite_web_research(query, hits)

        own = _domain(ctx.research.website)
        pages: list[dict[str, str]] = []
        # Sequential, bounded: these hit third-party sites
        for hit in hits:
            if len(pages) >= MAX_COMPETITOR_SCRAPES:
                break
            if own and _domain(hit["url"]) == own:
                continue
            pages.append(await self._scrape_or_snippet(ctx, hit))

        text = await self._ask(ctx, "Identify competitors", "competitors",
                               prompts.competitors_prompt(a, location, pages))
        decoded = decode_json(text, list)
        if not isinstance(decoded, Parsed):
            decoded = decode_json(text, dict)
        if not isinstance(decoded, Parsed):
            ctx.emit("Competitor analysis was not valid JSON", "warning")
            return []
        competitors = parse_competitors(decoded.value, a.company_name)
        self._cite_generated(ctx, "competitors", text, [search_cite])
        ctx.emit(f"Found {len(competitors)} competitors", "success")
        return competitors

    async def research_industry(self, ctx: ResearchContext) -> IndustryInsights:
        a = ctx.assessment
        year = datetime.now(UTC).year
        query = f"{a.trade} industry trends {year} challenges opportunities".strip()
        response = await self.web.search(query, limit=5, audit=ctx.audit)
        hits = [h.model_dump() for h in response.data]
        search_cite = self.citations.cite_web_research(query, hits) if hits else None

        pages = [await self._scrape_or_snippet(ctx, hit) for hit in hits[:MAX_INDUSTRY_SCRAPES]]
        text = await self._ask(ctx, "Summarize industry trends", "industry",
                               prompts.industry_prompt(a, pages))
        insights = parse_industry(decode_json(text, dict).unwrap())
        backing = [self.citations.cite_industry_data("Industry Research", {"pages": [p["url"] for p in pages]},
                                                     url=pages[0]["url"] if pages else None)]
        if search_cite:
            backing.append(search_cite)
        self._cite_generated(ctx, "industry_insights", text, backing)
        ctx.emit(f"Industry research found {len(insights.trends)} trends", "success")
        return insights

    async def research_tools(self, ctx: ResearchContext) -> ToolsResearch:
        mentioned = ctx.assessment.current_tools
        if not mentioned:
            return ToolsResearch(analysis="No specific tools mentioned in assessment.")
        intake_cite = self.citations.cite_structured_data("Assessment", {"tools": mentioned})
        try:
            text = await self._ask(ctx, "Analyze current tools", "tools",
                                   prompts.tools_prompt(ctx.assessment))
            data = decode_json(text, dict).unwrap()
        except (LLMCallError, ParseError) as exc:
            log.info("Tools analysis unavailable: %s", exc)
            return ToolsResearch(mentioned=mentioned, analysis="Analysis unavailable.")
        self._cite_generated(ctx, "tools_research", text, [intake_cite])
        return ToolsResearch(
            mentioned=string_list(data.get("mentioned")) or mentioned,
            likely_using=string_list(_get(data, "likelyUsing", "likely_using")),
            analysis=str(data.get("analysis") or ""),
        )

    async def research_knowledge(self, ctx: ResearchContext) -> KnowledgeIntelligence:
        a = ctx.assessment
        trade = a.trade or "construction"
        top_pains = " and ".join(a.pain_points[:2]) or "operational inefficiency"
        queries = {
            "similar": f"Similar customers: {trade} contractors with {a.field_workers or 'any number of'} field workers",
            "case_studies": f"Case studies: {trade} contractors solving {top_pains}",
            "success": f"Success stories and results for {trade} contractors",
        }
        results = await asyncio.gather(
            *(self.knowledge.query(q, audit=ctx.audit) for q in queries.values()),
            return_exceptions=True,
        )

        hits: dict[str, list[Any]] = {}
        cite_ids: list[str] = []
        for (key, query), result in zip(queries.items(), results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                ctx.emit(f"Knowledge query failed ({key}): {result}", "warning")
                continue
            hits[key] = list(result.get("results") or [])
            cite_ids.append(self.citations.cite_knowledge(query, hits[key]))
        if not hits:
            raise TransientSourceError("knowledge base", "all queries failed")

        everything = [h for rows in hits.values() for h in rows]
        intel = KnowledgeIntelligence(
            similar_customers=[_as_record(h) for h in hits.get("similar", [])][:5],
            case_studies=[_as_record(h) for h in everything
                          if isinstance(h, dict) and h.get("type") == "case_study"][:3],
            relevant_examples=[_as_record(h) for h in everything][:10],
        )

        insights = fallback_knowledge_insights(len(everything), a.trade)
        if everything:
            try:
                text = await self._ask(ctx, "Extract knowledge-base insights", "knowledge_insights",
                                       prompts.knowledge_prompt(a, hits))
            except LLMCallError as exc:
                ctx.emit(f"Knowledge insight extraction unavailable: {exc}", "warning")
            else:
                data = decode_or(text, None)
                listed = data.get("insights") if isinstance(data, dict) else decode_or(text, [], list)
                insights = string_list(listed) or insights
                self._cite_generated(ctx, "knowledge_intelligence", text, cite_ids)
        if "knowledge_intelligence" not in ctx.research.sources:
            ctx.research.sources["knowledge_intelligence"] = cite_ids
        ctx.emit(f"Knowledge base returned {len(everything)} records", "success")
        return intel.model_copy(update={"insights": insights})


def _as_record(hit: Any) -> dict[str, Any]:
    return hit if isinstance(hit, dict) else {"content": str(hit)}
