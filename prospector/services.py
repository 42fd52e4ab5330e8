"""Shared business logic for the Prospector API and MCP server."""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Coroutine

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from prospector.audit import AuditTrail
from prospector.citations import CitationTracker
from prospector.config import Settings, get_settings
from prospector.db import session_scope
from prospector.errors import AvailabilityError, ConfigurationError
from prospector.knowledge import KnowledgeClient, get_knowledge_client
from prospector.llm import LLMClient
from prospector.models import ResearchRun, ScoringConfigRecord
from prospector.reports import compose_admin_report, compose_customer_report, explain
from prospector.research import ProgressCallback, ResearchOrchestrator
from prospector.roi import estimate_roi
from prospector.schemas import (
    AdminReport,
    AssessmentInput,
    CompanyResearch,
    CustomerReport,
    DerivationTrace,
    OpportunityScore,
    ROICalculation,
    ScoringConfig,
)
from prospector.scorer import DEFAULT_SCORING_CONFIG, score, validate_scoring_config
from prospector.utils import json_parse
from prospector.web import WebResearchClient, build_web_client

log = logging.getLogger(__name__)

SCORING_CONFIG_KEY = "scoring"

# ---------------------------------------------------------------------------
# Scoring configuration store
# ---------------------------------------------------------------------------


def _merge_over_defaults(stored: dict[str, Any]) -> dict[str, Any]:
    merged = DEFAULT_SCORING_CONFIG.model_dump()
    for key, value in stored.items():
        if key == "weights" and isinstance(value, dict):
            merged["weights"] = {**merged["weights"], **value}
        elif key in merged:
            merged[key] = value
    return merged


def load_scoring_config(session: Session) -> ScoringConfig | None:
    """Stored config merged over the defaults, or ``None`` if nothing usable is stored."""
    record = session.execute(
        select(ScoringConfigRecord).where(ScoringConfigRecord.key == SCORING_CONFIG_KEY)
    ).scalars().first()
    if record is None:
        return None
    stored = json_parse(record.config_json, None)
    if not isinstance(stored, dict):
        log.warning("Stored scoring config is not a JSON object, ignoring it")
        return None
    try:
        return ScoringConfig.model_validate(_merge_over_defaults(stored))
    except ValidationError as exc:
        log.warning("Stored scoring config does not match the schema, ignoring it: %s", exc)
        return None


def save_scoring_config(session: Session, config: ScoringConfig) -> ScoringConfigRecord:
    """Validate and upsert the scoring config (caller must commit).

    Raises ConfigurationError before anything is written.
    """
    validate_scoring_config(config)
    record = session.execute(
        select(ScoringConfigRecord).where(ScoringConfigRecord.key == SCORING_CONFIG_KEY)
    ).scalars().first()
    if record is None:
        record = ScoringConfigRecord(key=SCORING_CONFIG_KEY, config_json="{}")
        session.add(record)
    record.config_json = config.model_dump_json()
    record.updated_at = datetime.now(UTC)
    return record


def resolve_scoring_config(session: Session | None = None) -> ScoringConfig:
    """Config for scoring; the defaults whenever the store is unavailable, empty or invalid.

    Uses *session* when given, otherwise opens one on the module engine.
    """
    if session is not None:
        return _usable_or_default(load_scoring_config(session))
    try:
        with session_scope() as scoped:
            config = load_scoring_config(scoped)
    except (RuntimeError, SQLAlchemyError) as exc:
        log.warning("Scoring config store unavailable, using defaults: %s", exc)
        return DEFAULT_SCORING_CONFIG
    return _usable_or_default(config)


def _usable_or_default(config: ScoringConfig | None) -> ScoringConfig:
    if config is None:
        return DEFAULT_SCORING_CONFIG
    try:
        validate_scoring_config(config)
    except ConfigurationError as exc:
        log.warning("Stored scoring config rejected, using defaults: %s", exc)
        return DEFAULT_SCORING_CONFIG
    return config


# ---------------------------------------------------------------------------
# In-flight run registry
# ---------------------------------------------------------------------------


class RunRegistry:
    """Tracks in-flight pipeline runs by key; a newer run cancels the older one."""

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task] = {}

    def start(self, key: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        previous = self._tasks.get(key)
        if previous is not None and not previous.done():
            log.info("Cancelling superseded run for %s", key)
            previous.cancel()
        task = asyncio.create_task(coro)
        self._tasks[key] = task
        task.add_done_callback(lambda t: self._discard(key, t))
        return task

    def _discard(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]

    def cancel(self, key: str) -> bool:
        task = self._tasks.get(key)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def active(self) -> list[str]:
        return [key for key, task in self._tasks.items() if not task.done()]


registry = RunRegistry()


def run_key(assessment: AssessmentInput) -> str:
    return assessment.submission_id or assessment.company_name.strip().lower() or "anonymous"


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


@dataclass
class PipelineResult:
    score: OpportunityScore
    roi: ROICalculation
    research: CompanyResearch
    customer_report: CustomerReport
    admin_report: AdminReport
    derivations: dict[str, DerivationTrace]
    audit: AuditTrail
    citations: CitationTracker
    run_id: int | None = None


def _create_run(assessment: AssessmentInput) -> int:
    with session_scope() as session:
        run = ResearchRun(submission_id=assessment.submission_id,
                          company_name=assessment.company_name, status="running")
        session.add(run)
        session.commit()
        return run.id


def _finish_run(run_id: int, status: str, **payload: Any) -> None:
    with session_scope() as session:
        run = session.get(ResearchRun, run_id)
        if run is None:
            return
        run.status = status
        run.completed_at = datetime.now(UTC)
        for column, value in payload.items():
            setattr(run, column, value)
        session.commit()


async def run_pipeline(
    assessment: AssessmentInput,
    *,
    settings: Settings | None = None,
    llm: LLMClient | None = None,
    web: WebResearchClient | None = None,
    knowledge: KnowledgeClient | None = None,
    config: ScoringConfig | None = None,
    progress: ProgressCallback | None = None,
    persist: bool = True,
) -> PipelineResult:
    """Score, estimate ROI, research and report on one assessment.

    With ``persist`` the run is recorded as a ``ResearchRun`` that ends up
    ``completed``, ``failed`` or ``cancelled``. AvailabilityError and
    cancellation are re-raised after the run row is updated.
    """
    settings = settings or get_settings()
    llm = llm or LLMClient.from_settings(settings)
    owns_web = web is None
    web = web or build_web_client(settings)
    knowledge = knowledge or get_knowledge_client(settings)
    config = config or resolve_scoring_config()
    assumptions = settings.load_roi_assumptions()

    run_id = _create_run(assessment) if persist else None
    audit = AuditTrail()
    citations = CitationTracker()
    try:
        opportunity = score(assessment, config)
        roi = estimate_roi(assessment, assumptions)
        audit.record("Opportunity score and ROI", "calculation",
                     data_used={"total_score": opportunity.total_score,
                                "roi_percentage": roi.roi_percentage})

        orchestrator = ResearchOrchestrator(llm, web, knowledge, citations, config.custom_prompts)
        research = await orchestrator.research(assessment, audit, progress)

        customer = compose_customer_report(opportunity, roi, research, assessment)
        admin = compose_admin_report(assessment, opportunity, roi, research, citations)
        derivations = {
            "customer": explain(customer, opportunity, roi, research, audit, assumptions),
            "admin": explain(admin, opportunity, roi, research, audit, assumptions),
        }
        audit.finalize()
    except AvailabilityError as exc:
        audit.finalize()
        if run_id is not None:
            _finish_run(run_id, "failed", error=str(exc), audit_json=json.dumps(audit.to_dict()),
                        research_json=exc.research.model_dump_json() if exc.research else None)
        raise
    except asyncio.CancelledError:
        if run_id is not None:
            _finish_run(run_id, "cancelled", error="Superseded or cancelled")
        raise
    except Exception as exc:
        if run_id is not None:
            _finish_run(run_id, "failed", error=str(exc))
        raise
    finally:
        if owns_web:
            await web.aclose()

    if run_id is not None:
        _finish_run(
            run_id, "completed",
            score_json=opportunity.model_dump_json(),
            roi_json=roi.model_dump_json(),
            research_json=research.model_dump_json(),
            customer_report_json=customer.model_dump_json(),
            admin_report_json=admin.model_dump_json(),
            derivations_json=json.dumps({k: v.model_dump(mode="json") for k, v in derivations.items()}),
            audit_json=json.dumps(audit.to_dict()),
        )
    log.info("Pipeline finished for %s (score %d, grade %s)",
             assessment.company_name, opportunity.total_score, opportunity.grade)
    return PipelineResult(
        score=opportunity, roi=roi, research=research, customer_report=customer,
        admin_report=admin, derivations=derivations, audit=audit,
        citations=citations, run_id=run_id,
    )


# ---------------------------------------------------------------------------
# Run serialization
# ---------------------------------------------------------------------------


def run_summary(run: ResearchRun) -> dict[str, Any]:
    return {
        "id": run.id, "submission_id": run.submission_id, "company_name": run.company_name,
        "status": run.status, "error": run.error,
        "created_at": run.created_at.isoformat() if run.created_at else "",
        "completed_at": run.completed_at.isoformat() if run.completed_at else None,
    }


def run_detail(run: ResearchRun) -> dict[str, Any]:
    base = run_summary(run)
    for field in ("score", "roi", "research", "customer_report", "admin_report", "derivations", "audit"):
        raw = getattr(run, f"{field}_json")
        base[field] = json_parse(raw, None) if raw else None
    return base


def list_runs(session: Session, limit: int = 50) -> list[dict[str, Any]]:
    runs = session.execute(
        select(ResearchRun).order_by(ResearchRun.id.desc()).limit(limit)
    ).scalars().all()
    return [run_summary(r) for r in runs]
