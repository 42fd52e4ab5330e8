from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Generator

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from prospector import services
from prospector.config import get_settings
from prospector.db import get_session, init_db
from prospector.errors import AvailabilityError, ConfigurationError
from prospector.knowledge import close_knowledge_client, get_knowledge_client
from prospector.models import ResearchRun
from prospector.roi import estimate_roi
from prospector.schemas import (
    AssessmentInput,
    OpportunityScore,
    ROICalculation,
    RunDetail,
    RunOut,
    ScoringConfig,
)
from prospector.scorer import score

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield
    await close_knowledge_client()


app = FastAPI(
    title="Prospector",
    version="0.1.0",
    description=(
        "Sales research and intelligence API for contractor assessments. "
        "Scores opportunities, estimates ROI, researches prospects and composes "
        "customer and admin reports. All endpoints return JSON."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Scoring", "description": "Deterministic opportunity scoring and its configuration."},
        {"name": "ROI", "description": "Annual cost, investment and savings estimates."},
        {"name": "Pipeline", "description": "Full research pipeline. Requires an LLM API key."},
        {"name": "Runs", "description": "Saved pipeline results."},
        {"name": "Knowledge", "description": "Knowledge-base connection status."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _event(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


# ---------------------------------------------------------------------------
# Routes: Scoring & ROI
# ---------------------------------------------------------------------------


@app.post("/api/score", response_model=OpportunityScore,
          tags=["Scoring"], summary="Score an assessment with the stored scoring config")
async def score_assessment(body: AssessmentInput, session: Session = Depends(db_session)):
    return score(body, services.resolve_scoring_config(session))


@app.post("/api/roi", response_model=ROICalculation,
          tags=["ROI"], summary="Estimate ROI for an assessment")
async def roi_preview(body: AssessmentInput):
    return estimate_roi(body, get_settings().load_roi_assumptions())


@app.get("/api/scoring-config", response_model=ScoringConfig,
         tags=["Scoring"], summary="Get the scoring config (defaults if none stored)")
async def get_scoring_config(session: Session = Depends(db_session)):
    return services.resolve_scoring_config(session)


@app.put("/api/scoring-config", response_model=ScoringConfig,
         tags=["Scoring"], summary="Replace the scoring config; weights must total 100")
async def put_scoring_config(body: ScoringConfig, session: Session = Depends(db_session)):
    try:
        services.save_scoring_config(session, body)
    except ConfigurationError as exc:
        raise HTTPException(400, str(exc)) from exc
    session.commit()
    return body


# ---------------------------------------------------------------------------
# Routes: Pipeline
# ---------------------------------------------------------------------------


@app.post("/api/pipeline/run", tags=["Pipeline"],
          summary="Run the full research pipeline (SSE progress stream)")
async def run_pipeline_stream(body: AssessmentInput):
    key = services.run_key(body)

    async def stream():
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

        def progress(message: str, level: str) -> None:
            queue.put_nowait({"type": "progress", "message": message, "level": level})

        task = services.registry.start(key, services.run_pipeline(body, progress=progress))
        while not (task.done() and queue.empty()):
            try:
                item = await asyncio.wait_for(queue.get(), timeout=0.25)
            except asyncio.TimeoutError:
                continue
            yield _event(item)

        if task.cancelled():
            yield _event({"type": "cancelled", "key": key})
            return
        exc = task.exception()
        if isinstance(exc, AvailabilityError):
            yield _event({"type": "error", "error": str(exc), "kind": "availability"})
        elif exc is not None:
            log.warning("Pipeline failed for %s: %s", key, exc)
            yield _event({"type": "error", "error": str(exc)})
        else:
            result = task.result()
            yield _event({
                "type": "complete",
                "run_id": result.run_id,
                "score": result.score.model_dump(mode="json"),
                "customer_report": result.customer_report.model_dump(mode="json"),
            })

    return StreamingResponse(stream(), media_type="text/event-stream")


@app.post("/api/pipeline/{key}/cancel", tags=["Pipeline"], summary="Cancel an in-flight run")
async def cancel_pipeline(key: str):
    if not services.registry.cancel(key):
        raise HTTPException(404, f"No in-flight run for '{key}'")
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Runs
# ---------------------------------------------------------------------------


@app.get("/api/runs", response_model=list[RunOut], tags=["Runs"], summary="List saved runs, newest first")
async def list_runs(limit: int = Query(50, ge=1, le=500), session: Session = Depends(db_session)):
    return services.list_runs(session, limit)


@app.get("/api/runs/{run_id}", response_model=RunDetail, tags=["Runs"], summary="Get one run with its reports")
async def get_run(run_id: int, session: Session = Depends(db_session)):
    run = session.get(ResearchRun, run_id)
    if run is None:
        raise HTTPException(404, "Run not found")
    return services.run_detail(run)


# ---------------------------------------------------------------------------
# Routes: Knowledge
# ---------------------------------------------------------------------------


@app.get("/api/knowledge/status", tags=["Knowledge"], summary="Knowledge-base connection status")
async def knowledge_status():
    return get_knowledge_client().status()


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("prospector.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
