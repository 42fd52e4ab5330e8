from __future__ import annotations

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

import prospector.db as db_mod
from prospector.models import ResearchRun


@pytest.fixture()
def wired(test_db, monkeypatch):
    engine, TestSession = test_db
    monkeypatch.setattr(db_mod, "_engine", engine)
    monkeypatch.setattr(db_mod, "_SessionLocal", TestSession)
    return TestSession


class TestSessionManagement:
    def test_get_session_requires_init(self, monkeypatch):
        monkeypatch.setattr(db_mod, "_SessionLocal", None)
        with pytest.raises(RuntimeError, match="init_db"):
            db_mod.get_session()

    def test_session_scope(self, wired):
        with db_mod.session_scope() as sess:
            assert isinstance(sess, Session)
            run = ResearchRun(submission_id="s1", company_name="ScopeTest")
            sess.add(run)
            sess.commit()
            assert run.id is not None

    def test_session_scope_rollback(self, wired):
        with pytest.raises(ValueError):
            with db_mod.session_scope() as sess:
                sess.add(ResearchRun(submission_id="s2", company_name="WillFail"))
                sess.flush()
                raise ValueError("boom")
        with db_mod.session_scope() as sess:
            assert sess.execute(select(ResearchRun)).scalars().all() == []

    def test_init_db_creates_file_and_tables(self, tmp_path, monkeypatch):
        monkeypatch.setattr(db_mod, "_engine", None)
        monkeypatch.setattr(db_mod, "_SessionLocal", None)
        path = tmp_path / "nested" / "prospector.db"
        db_mod.init_db(path)
        try:
            assert path.exists()
            with db_mod.session_scope() as sess:
                assert sess.execute(select(ResearchRun)).scalars().all() == []
        finally:
            db_mod._engine.dispose()
