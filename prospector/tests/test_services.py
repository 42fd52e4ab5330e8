from __future__ import annotations

import asyncio
import json

import pytest
from sqlalchemy import select

from prospector import db
from prospector.config import Settings
from prospector.errors import AvailabilityError, ConfigurationError
from prospector.llm import LLMCallError
from prospector.models import ResearchRun, ScoringConfigRecord
from prospector.schemas import ScoringConfig, ScoringWeights
from prospector.scorer import DEFAULT_SCORING_CONFIG
from prospector.services import (
    RunRegistry,
    list_runs,
    load_scoring_config,
    resolve_scoring_config,
    run_detail,
    run_key,
    run_pipeline,
    save_scoring_config,
)
from prospector.tests.factories import make_assessment
from prospector.tests.fakes import GOOD_RESPONSES, KB_RESULTS, SITE_TEXT, FakeLLM, FakeWeb, fake_knowledge


@pytest.fixture()
def file_db(tmp_path, monkeypatch):
    """Module-level engine pointed at a throwaway SQLite file."""
    monkeypatch.setattr(db, "_engine", None)
    monkeypatch.setattr(db, "_SessionLocal", None)
    db.init_db(tmp_path / "prospector.db")
    yield
    db._engine.dispose()


def _settings(tmp_path) -> Settings:
    return Settings(data_dir=tmp_path, database_path=tmp_path / "prospector.db", roi_assumptions_file=None)


def _load_run(run_id: int) -> ResearchRun:
    with db.session_scope() as session:
        return session.get(ResearchRun, run_id)


# ---------------------------------------------------------------------------
# Scoring config store
# ---------------------------------------------------------------------------


class TestScoringConfigStore:
    def test_round_trip(self, session):
        config = ScoringConfig(weights=ScoringWeights(urgency=25, pain_severity=15))
        save_scoring_config(session, config)
        session.commit()

        loaded = load_scoring_config(session)
        assert loaded.weights == config.weights
        assert loaded.grade_thresholds == config.grade_thresholds

    def test_save_twice_updates_single_row(self, session):
        save_scoring_config(session, DEFAULT_SCORING_CONFIG)
        save_scoring_config(session, ScoringConfig(weights=ScoringWeights(urgency=25, pain_severity=15)))
        session.commit()
        rows = session.execute(select(ScoringConfigRecord)).scalars().all()
        assert len(rows) == 1
        assert load_scoring_config(session).weights.urgency == 25

    def test_invalid_weights_rejected_before_write(self, session):
        with pytest.raises(ConfigurationError, match="total 100"):
            save_scoring_config(session, ScoringConfig(weights=ScoringWeights(urgency=19)))
        session.commit()
        assert session.execute(select(ScoringConfigRecord)).scalars().all() == []

    def test_partial_stored_config_merges_over_defaults(self, session):
        session.add(ScoringConfigRecord(key="scoring", config_json='{"weights": {"urgency": 25, "pain_severity": 15}}'))
        session.commit()
        loaded = load_scoring_config(session)
        assert loaded.weights.urgency == 25
        assert loaded.weights.company_size == 15
        assert loaded.priority_thresholds == DEFAULT_SCORING_CONFIG.priority_thresholds

    def test_non_object_is_ignored(self, session):
        session.add(ScoringConfigRecord(key="scoring", config_json="[1, 2]"))
        session.commit()
        assert load_scoring_config(session) is None

    def test_nothing_stored(self, session):
        assert load_scoring_config(session) is None

    def test_wrong_typed_field_is_ignored(self, session):
        session.add(ScoringConfigRecord(key="scoring", config_json='{"weights": {"urgency": "high"}}'))
        session.commit()
        assert load_scoring_config(session) is None


class TestResolveScoringConfig:
    def test_uninitialized_store_uses_defaults(self, monkeypatch):
        monkeypatch.setattr(db, "_SessionLocal", None)
        assert resolve_scoring_config() == DEFAULT_SCORING_CONFIG

    def test_stored_config_is_used(self, file_db):
        custom = ScoringConfig(weights=ScoringWeights(urgency=25, pain_severity=15))
        with db.session_scope() as session:
            save_scoring_config(session, custom)
            session.commit()
        assert resolve_scoring_config().weights.urgency == 25

    def test_invalid_stored_config_uses_defaults(self, file_db):
        with db.session_scope() as session:
            session.add(ScoringConfigRecord(key="scoring", config_json='{"weights": {"urgency": 19}}'))
            session.commit()
        assert resolve_scoring_config() == DEFAULT_SCORING_CONFIG

    def test_wrong_typed_stored_config_uses_defaults(self, file_db):
        with db.session_scope() as session:
            session.add(ScoringConfigRecord(key="scoring", config_json='{"weights": {"urgency": "high"}}'))
            session.commit()
        assert resolve_scoring_config() == DEFAULT_SCORING_CONFIG

    def test_given_session_is_used(self, session):
        save_scoring_config(session, ScoringConfig(weights=ScoringWeights(urgency=25, pain_severity=15)))
        session.commit()
        assert resolve_scoring_config(session).weights.urgency == 25


# ---------------------------------------------------------------------------
# Run registry
# ---------------------------------------------------------------------------


class TestRunRegistry:
    def test_run_key(self):
        assert run_key(make_assessment()) == "sub-001"
        assert run_key(make_assessment(submission_id="", company_name=" Acme Electric ")) == "acme electric"
        assert run_key(make_assessment(submission_id="", company_name="")) == "anonymous"

    @pytest.mark.asyncio
    async def test_newer_run_cancels_older(self):
        registry = RunRegistry()
        first = registry.start("acme", asyncio.sleep(10))
        second = registry.start("acme", asyncio.sleep(0, result="done"))

        assert await second == "done"
        with pytest.raises(asyncio.CancelledError):
            await first
        assert first.cancelled()
        await asyncio.sleep(0)
        assert registry.active() == []

    @pytest.mark.asyncio
    async def test_cancel(self):
        registry = RunRegistry()
        assert registry.cancel("acme") is False
        task = registry.start("acme", asyncio.sleep(10))
        assert registry.active() == ["acme"]
        assert registry.cancel("acme") is True
        with pytest.raises(asyncio.CancelledError):
            await task

    @pytest.mark.asyncio
    async def test_different_keys_run_side_by_side(self):
        registry = RunRegistry()
        a = registry.start("a", asyncio.sleep(0, result=1))
        b = registry.start("b", asyncio.sleep(0, result=2))
        assert await asyncio.gather(a, b) == [1, 2]


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class SlowWeb(FakeWeb):
    async def _search(self, query, limit):
        await asyncio.sleep(10)
        return []


class TestRunPipeline:
    @pytest.mark.asyncio
    async def test_completed_run_is_persisted(self, file_db, tmp_path):
        result = await run_pipeline(
            make_assessment(), settings=_settings(tmp_path), llm=FakeLLM(GOOD_RESPONSES),
            web=FakeWeb(main_content=SITE_TEXT), knowledge=fake_knowledge(KB_RESULTS),
            config=DEFAULT_SCORING_CONFIG,
        )

        assert result.score.total_score == 90
        assert result.customer_report.company_name == "Acme Electric"
        assert set(result.derivations) == {"customer", "admin"}
        assert result.derivations["admin"].report_type == "admin"
        assert result.audit.entries[0].type == "calculation"
        assert result.audit.finalized
        assert len(result.citations) > 0

        run = _load_run(result.run_id)
        assert run.status == "completed"
        assert run.completed_at is not None
        assert json.loads(run.score_json)["grade"] == "A+"
        detail = run_detail(run)
        assert detail["admin_report"]["assessment_id"] == "sub-001"
        assert detail["audit"]["summary"]["total_web_actions"] > 0

    @pytest.mark.asyncio
    async def test_without_persistence(self, tmp_path, monkeypatch):
        monkeypatch.setattr(db, "_SessionLocal", None)
        result = await run_pipeline(
            make_assessment(), settings=_settings(tmp_path), llm=FakeLLM(GOOD_RESPONSES),
            web=FakeWeb(main_content=SITE_TEXT), knowledge=fake_knowledge(KB_RESULTS),
            config=DEFAULT_SCORING_CONFIG, persist=False,
        )
        assert result.run_id is None
        assert result.research.sales_intelligence.talking_points

    @pytest.mark.asyncio
    async def test_progress_reaches_callback(self, tmp_path):
        events = []
        await run_pipeline(
            make_assessment(), settings=_settings(tmp_path), llm=FakeLLM(GOOD_RESPONSES),
            web=FakeWeb(main_content=SITE_TEXT), knowledge=fake_knowledge(KB_RESULTS),
            config=DEFAULT_SCORING_CONFIG, persist=False,
            progress=lambda msg, level: events.append(level),
        )
        assert events[-1] == "success"

    @pytest.mark.asyncio
    async def test_llm_outage_marks_run_failed(self, file_db, tmp_path):
        with pytest.raises(AvailabilityError):
            await run_pipeline(
                make_assessment(), settings=_settings(tmp_path),
                llm=FakeLLM(default=LLMCallError("connection refused", retryable=True)),
                web=FakeWeb(main_content=SITE_TEXT), knowledge=fake_knowledge(KB_RESULTS),
                config=DEFAULT_SCORING_CONFIG,
            )

        with db.session_scope() as session:
            (row,) = list_runs(session)
            run = session.get(ResearchRun, row["id"])
            assert run.status == "failed"
            assert "LLM unavailable" in run.error
            assert json.loads(run.audit_json)["summary"]["errors"] > 0
            assert json.loads(run.research_json)["company_name"] == "Acme Electric"

    @pytest.mark.asyncio
    async def test_invalid_config_fails_before_research(self, file_db, tmp_path):
        llm = FakeLLM(GOOD_RESPONSES)
        with pytest.raises(ConfigurationError):
            await run_pipeline(
                make_assessment(), settings=_settings(tmp_path), llm=llm,
                web=FakeWeb(main_content=SITE_TEXT), knowledge=fake_knowledge(KB_RESULTS),
                config=ScoringConfig(weights=ScoringWeights(urgency=19)),
            )
        assert llm.actions == []
        with db.session_scope() as session:
            (row,) = list_runs(session)
            assert row["status"] == "failed"

    @pytest.mark.asyncio
    async def test_cancelled_run_is_marked(self, file_db, tmp_path):
        registry = RunRegistry()
        task = registry.start("sub-001", run_pipeline(
            make_assessment(), settings=_settings(tmp_path), llm=FakeLLM(GOOD_RESPONSES),
            web=SlowWeb(), knowledge=fake_knowledge(KB_RESULTS), config=DEFAULT_SCORING_CONFIG,
        ))
        await asyncio.sleep(0.05)
        assert registry.cancel("sub-001")
        with pytest.raises(asyncio.CancelledError):
            await task

        with db.session_scope() as session:
            (row,) = list_runs(session)
            assert row["status"] == "cancelled"


class TestListRuns:
    def test_newest_first_with_limit(self, session):
        for name in ("Alpha", "Bravo", "Charlie"):
            session.add(ResearchRun(submission_id=name.lower(), company_name=name))
        session.commit()

        rows = list_runs(session, limit=2)
        assert [r["company_name"] for r in rows] == ["Charlie", "Bravo"]
        assert rows[0]["status"] == "running"
        assert rows[0]["completed_at"] is None
