"""System prompts and prompt builders for the research steps.

Each system prompt states the JSON shape the step decodes.  Deployments may
override any of them by key through ``ScoringConfig.custom_prompts``.
"""
from __future__ import annotations

import json
from typing import Any

from prospector.schemas import AssessmentInput

_JSON_ONLY = "Respond with JSON only. No prose before or after the JSON."

BASIC_INFO_PROMPT = f"""You are a B2B research analyst. From web search snippets about a
contractor, extract basic company facts. Use null for anything not stated.

Return: {{"description": str, "location": str, "industry": str, "size": str, "founded": str}}
{_JSON_ONLY}"""

WEBSITE_ANALYSIS_PROMPT = f"""You analyze a construction contractor's website for a sales team.

Return:
{{"technologies": [str], "services": [str], "valuePropositions": [str],
  "painPoints": [str], "keyPages": [str],
  "companyHistory": {{"founded": str|null, "headquarters": str|null, "milestones": [str], "summary": str|null}}}}
Pain points are operational problems the site implies, not ones you invent.
{_JSON_ONLY}"""

COMPETITORS_PROMPT = f"""You identify local competitors of a contractor from search results and
scraped pages. Exclude the prospect itself.

Return: [{{"name": str, "website": str|null, "description": str, "differentiation": str}}]
{_JSON_ONLY}"""

INDUSTRY_PROMPT = f"""You summarize current trends for a construction trade from research pages.

Return: {{"trends": [str], "challenges": [str], "opportunities": [str], "marketSize": str|null}}
{_JSON_ONLY}"""

TOOLS_PROMPT = f"""You assess a contractor's software stack for integration and replacement
opportunities.

Return: {{"mentioned": [str], "likelyUsing": [str], "analysis": str}}
{_JSON_ONLY}"""

KNOWLEDGE_INSIGHTS_PROMPT = f"""You extract sales insights from knowledge-base hits about prior
customers and case studies. Every insight must name the record it came from,
e.g. "... (Source: Knowledge Base - <record>)".

Return: {{"insights": [str]}}
{_JSON_ONLY}"""

SALES_INTELLIGENCE_PROMPT = f"""You are a sales strategist preparing a rep for a call.
Every item MUST end with its source label in parentheses, e.g.
"(Source: Company Website)", "(Source: Assessment)", "(Source: Knowledge Base)".
Objections use "objection - response"; buying signals use "signal - evidence";
risks use "risk - mitigation".

Return:
{{"talkingPoints": [str], "objections": [str], "competitiveAdvantages": [str],
  "buyingSignals": [str], "risks": [str],
  "keyContacts": [{{"name": str, "role": str, "email": str|null, "source": str}}],
  "decisionMakers": [str]}}
{_JSON_ONLY}"""

DEFAULT_PROMPTS: dict[str, str] = {
    "basic_info": BASIC_INFO_PROMPT,
    "website_analysis": WEBSITE_ANALYSIS_PROMPT,
    "competitors": COMPETITORS_PROMPT,
    "industry": INDUSTRY_PROMPT,
    "tools": TOOLS_PROMPT,
    "knowledge_insights": KNOWLEDGE_INSIGHTS_PROMPT,
    "sales_intelligence": SALES_INTELLIGENCE_PROMPT,
}


def _dump(value: Any, limit: int = 6000) -> str:
    return json.dumps(value, default=str, indent=1)[:limit]


def intake_block(assessment: AssessmentInput) -> str:
    lines = [
        f"COMPANY: {assessment.company_name or 'Unknown'}",
        f"TRADE: {assessment.trade or 'Unknown'}",
        f"FIELD WORKERS: {assessment.field_workers or 'Unknown'}",
        f"PAIN POINTS: {', '.join(assessment.pain_points) or 'None stated'}",
        f"URGENCY: {assessment.urgency}/10",
        f"ADMIN HOURS/WEEK: {assessment.hours_per_week or 'Unknown'}",
        f"CURRENT TOOLS: {', '.join(assessment.current_tools) or 'None stated'}",
        f"TIMELINE: {assessment.timeline or 'Unknown'}",
        f"LIKELIHOOD: {assessment.likelihood}/10",
        f"EVALUATING: {', '.join(assessment.evaluating) or 'None'}",
    ]
    if assessment.magic_wand:
        lines.append(f"MAGIC WAND: {assessment.magic_wand}")
    return "\n".join(lines)


def basic_info_prompt(company: str, hits: list[dict[str, Any]]) -> str:
    snippets = "\n".join(f"- {h.get('title', '')}: {h.get('description', '')} ({h.get('url', '')})" for h in hits)
    return f"Company: {company}\n\nSearch results:\n{snippets}"


def website_prompt(company: str, url: str, content: str) -> str:
    return f"Company: {company}\nWebsite: {url}\n\nWEBSITE CONTENT:\n{content[:12000]}"


def competitors_prompt(assessment: AssessmentInput, location: str, pages: list[dict[str, str]]) -> str:
    body = "\n\n".join(f"### {p['title']} ({p['url']})\n{p['content'][:2000]}" for p in pages)
    return (
        f"Prospect: {assessment.company_name} ({assessment.trade}, {location or 'location unknown'})\n\n"
        f"CANDIDATE PAGES:\n{body}"
    )


def industry_prompt(assessment: AssessmentInput, pages: list[dict[str, str]]) -> str:
    body = "\n\n".join(f"### {p['title']} ({p['url']})\n{p['content'][:3000]}" for p in pages)
    return f"Trade: {assessment.trade}\nCompany size: {assessment.field_workers}\n\nRESEARCH:\n{body}"


def tools_prompt(assessment: AssessmentInput) -> str:
    return (
        f"{intake_block(assessment)}\n\n"
        f"Timesheet method: {assessment.timesheet_method or 'Unknown'}\n"
        f"Not currently doing: {', '.join(assessment.not_doing) or 'None stated'}"
    )


def knowledge_prompt(assessment: AssessmentInput, hits: dict[str, list[Any]]) -> str:
    return f"{intake_block(assessment)}\n\nKNOWLEDGE BASE HITS:\n{_dump(hits)}"


def sales_prompt(assessment: AssessmentInput, sections: dict[str, Any]) -> str:
    parts = [f"## Assessment (Source: Assessment)\n{intake_block(assessment)}"]
    for label, value in sections.items():
        if value:
            parts.append(f"## {label} (Source: {label})\n{_dump(value, 4000)}")
    return "\n\n".join(parts)
