"""Integration tests for the FastAPI endpoints.

Uses TestClient against an in-memory database; the research pipeline runs
with in-process fakes so no network or API key is needed.
"""
from __future__ import annotations

import functools
import json
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from prospector import services
from prospector.config import Settings
from prospector.knowledge import KnowledgeClient
from prospector.llm import LLMCallError
from prospector.models import ResearchRun, ScoringConfigRecord
from prospector.scorer import DEFAULT_SCORING_CONFIG
from prospector.tests.factories import BASE_ASSESSMENT
from prospector.tests.fakes import GOOD_RESPONSES, KB_RESULTS, SITE_TEXT, FakeLLM, FakeWeb, fake_knowledge


@pytest.fixture()
def client(test_db):
    """FastAPI TestClient using the in-memory database."""
    engine, TestSession = test_db
    from prospector.app import app, db_session

    def override_db_session():
        session = TestSession()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    with patch("prospector.app.init_db"), TestClient(app, raise_server_exceptions=True) as c:
        yield c, TestSession
    app.dependency_overrides.clear()


def _events(body: str) -> list[dict]:
    return [json.loads(chunk[len("data: "):]) for chunk in body.split("\n\n") if chunk.startswith("data: ")]


def _fake_pipeline(tmp_path, llm: FakeLLM):
    return functools.partial(
        services.run_pipeline,
        settings=Settings(data_dir=tmp_path, database_path=tmp_path / "x.db", roi_assumptions_file=None),
        llm=llm, web=FakeWeb(main_content=SITE_TEXT), knowledge=fake_knowledge(KB_RESULTS),
        config=DEFAULT_SCORING_CONFIG, persist=False,
    )


class TestScoringEndpoints:
    def test_score_with_defaults(self, client):
        c, _ = client
        resp = c.post("/api/score", json=BASE_ASSESSMENT)
        assert resp.status_code == 200
        data = resp.json()
        assert data["total_score"] == 90
        assert data["grade"] == "A+"
        assert data["priority"] == "High"
        assert data["breakdown"]["urgency"] == 20

    def test_out_of_range_urgency_is_422(self, client):
        c, _ = client
        resp = c.post("/api/score", json={**BASE_ASSESSMENT, "urgency": 11})
        assert resp.status_code == 422

    def test_get_default_config(self, client):
        c, _ = client
        resp = c.get("/api/scoring-config")
        assert resp.status_code == 200
        assert resp.json()["weights"] == DEFAULT_SCORING_CONFIG.weights.model_dump()

    def test_put_config_changes_scores(self, client):
        c, _ = client
        weights = {**DEFAULT_SCORING_CONFIG.weights.model_dump(), "urgency": 25, "pain_severity": 15}
        resp = c.put("/api/scoring-config", json={"weights": weights})
        assert resp.status_code == 200
        assert c.get("/api/scoring-config").json()["weights"] == weights

        data = c.post("/api/score", json=BASE_ASSESSMENT).json()
        assert data["breakdown"]["urgency"] == 25
        assert data["breakdown"]["pain_severity"] == 10
        assert data["total_score"] == 92

    def test_corrupt_stored_config_falls_back_to_defaults(self, client):
        c, TestSession = client
        with TestSession() as session:
            session.add(ScoringConfigRecord(key="scoring", config_json='{"weights": {"urgency": "high"}}'))
            session.commit()
        assert c.get("/api/scoring-config").json()["weights"] == DEFAULT_SCORING_CONFIG.weights.model_dump()
        resp = c.post("/api/score", json=BASE_ASSESSMENT)
        assert resp.status_code == 200
        assert resp.json()["total_score"] == 90

    def test_put_rejects_weights_not_totalling_100(self, client):
        c, _ = client
        weights = {**DEFAULT_SCORING_CONFIG.weights.model_dump(), "urgency": 19}
        resp = c.put("/api/scoring-config", json={"weights": weights})
        assert resp.status_code == 400
        assert "total 100" in resp.json()["detail"]
        assert c.get("/api/scoring-config").json()["weights"]["urgency"] == 20


class TestROIEndpoint:
    def test_roi(self, client):
        c, _ = client
        resp = c.post("/api/roi", json=BASE_ASSESSMENT)
        assert resp.status_code == 200
        data = resp.json()
        assert data["time_cost_per_year"] == 27_300
        assert data["seat_count"] == 153
        assert data["investment"]["total"] == 25_060


class TestRunEndpoints:
    def test_list_and_get(self, client):
        c, TestSession = client
        session = TestSession()
        run = ResearchRun(submission_id="sub-001", company_name="Acme Electric", status="completed",
                          score_json=json.dumps({"total_score": 89}))
        session.add(run)
        session.commit()
        run_id = run.id
        session.close()

        listed = c.get("/api/runs").json()
        assert [r["id"] for r in listed] == [run_id]
        assert listed[0]["status"] == "completed"

        detail = c.get(f"/api/runs/{run_id}").json()
        assert detail["score"] == {"total_score": 89}
        assert detail["customer_report"] is None

    def test_missing_run_is_404(self, client):
        c, _ = client
        assert c.get("/api/runs/999").status_code == 404

    def test_limit_is_validated(self, client):
        c, _ = client
        assert c.get("/api/runs?limit=0").status_code == 422


class TestPipelineEndpoints:
    def test_stream_reports_progress_then_result(self, client, tmp_path):
        c, _ = client
        with patch.object(services, "run_pipeline", _fake_pipeline(tmp_path, FakeLLM(GOOD_RESPONSES))):
            resp = c.post("/api/pipeline/run", json=BASE_ASSESSMENT)
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")

        events = _events(resp.text)
        assert events[0] == {"type": "progress", "message": "Researching Acme Electric", "level": "info"}
        final = events[-1]
        assert final["type"] == "complete"
        assert final["run_id"] is None
        assert final["score"]["total_score"] == 90
        assert final["customer_report"]["company_name"] == "Acme Electric"

    def test_stream_reports_llm_outage(self, client, tmp_path):
        c, _ = client
        llm = FakeLLM(default=LLMCallError("connection refused", retryable=True))
        with patch.object(services, "run_pipeline", _fake_pipeline(tmp_path, llm)):
            resp = c.post("/api/pipeline/run", json=BASE_ASSESSMENT)

        final = _events(resp.text)[-1]
        assert final["type"] == "error"
        assert final["kind"] == "availability"

    def test_cancel_unknown_run_is_404(self, client):
        c, _ = client
        assert c.post("/api/pipeline/nobody/cancel").status_code == 404


class TestKnowledgeEndpoint:
    def test_status_when_unconfigured(self, client):
        c, _ = client
        with patch("prospector.app.get_knowledge_client", return_value=KnowledgeClient()):
            resp = c.get("/api/knowledge/status")
        assert resp.status_code == 200
        assert resp.json() == {"mcp": None, "http_endpoint": None}
