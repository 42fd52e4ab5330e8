from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from mcp.server.fastmcp import FastMCP
from pydantic import ValidationError

from prospector import services
from prospector.config import get_settings
from prospector.db import init_db
from prospector.errors import AvailabilityError, ProspectorError
from prospector.knowledge import close_knowledge_client
from prospector.roi import estimate_roi as compute_roi
from prospector.schemas import AssessmentInput
from prospector.scorer import score

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def prospector_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield
    await close_knowledge_client()


mcp = FastMCP(
    "Prospector",
    instructions=(
        "Prospector turns a contractor's assessment answers into an opportunity score, "
        "an ROI estimate and researched sales intelligence. Use score_assessment() and "
        "estimate_roi() for instant deterministic results; research_prospect() runs the "
        "full web and knowledge-base research and takes a minute or more."
    ),
    lifespan=prospector_lifespan,
    json_response=True,
)


def _parse(assessment: dict[str, Any]) -> tuple[AssessmentInput | None, dict | None]:
    try:
        return AssessmentInput.model_validate(assessment), None
    except ValidationError as exc:
        return None, {"error": f"Invalid assessment: {exc.error_count()} problem(s)", "details": json.loads(exc.json())}


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("prospector://assessment-fields")
def assessment_fields() -> str:
    """JSON schema of the assessment accepted by every tool."""
    return json.dumps(AssessmentInput.model_json_schema(), indent=2)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool()
def score_assessment(assessment: dict) -> dict:
    """Score an assessment on seven weighted factors.

    Args:
        assessment: Assessment answers (see prospector://assessment-fields).

    Returns the total score, grade, priority, per-factor breakdown and
    recommendations. Uses the stored scoring config when one exists.
    """
    parsed, error = _parse(assessment)
    if error:
        return error
    return score(parsed, services.resolve_scoring_config()).model_dump(mode="json")


@mcp.tool()
def estimate_roi(assessment: dict) -> dict:
    """Estimate annual cost, investment, savings, ROI % and payback months."""
    parsed, error = _parse(assessment)
    if error:
        return error
    return compute_roi(parsed, get_settings().load_roi_assumptions()).model_dump(mode="json")


@mcp.tool()
async def research_prospect(assessment: dict, include_admin_report: bool = True) -> dict:
    """Run the full research pipeline and return the reports.

    Args:
        assessment: Assessment answers (see prospector://assessment-fields).
        include_admin_report: Include the internal sales report and audit summary.
    """
    parsed, error = _parse(assessment)
    if error:
        return error
    try:
        result = await services.registry.start(services.run_key(parsed), services.run_pipeline(parsed))
    except AvailabilityError as exc:
        return {"error": str(exc), "kind": "availability"}
    except ProspectorError as exc:
        return {"error": str(exc)}
    payload: dict[str, Any] = {
        "run_id": result.run_id,
        "score": result.score.model_dump(mode="json"),
        "customer_report": result.customer_report.model_dump(mode="json"),
    }
    if include_admin_report:
        payload["admin_report"] = result.admin_report.model_dump(mode="json")
        payload["audit_summary"] = result.audit.summary.model_dump(mode="json")
    return payload


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Prospector MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
