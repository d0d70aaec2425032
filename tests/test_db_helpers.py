import datetime
import logging

import pytest
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from church_cms.db_helpers import get_live, session_scope
from church_cms.models import Blog, Sermon


def _sermon(**kwargs) -> Sermon:
    fields = {"title": "Grace", "speaker": "Pastor Ada", "sermon_date": datetime.date(2024, 3, 10), **kwargs}
    return Sermon(**fields)


def test_session_scope_logs_open_and_close(caplog, in_memory_engine):
    caplog.set_level(logging.DEBUG)

    with session_scope(in_memory_engine) as sess:
        assert sess is not None

    messages = "\n".join(r.getMessage() for r in caplog.records)
    assert "Opening DB session" in messages
    assert "Closed DB session" in messages


def test_session_scope_closes_even_on_error(caplog, in_memory_engine):
    caplog.set_level(logging.DEBUG)

    with pytest.raises(RuntimeError):
        with session_scope(in_memory_engine):
            raise RuntimeError("boom")

    messages = "\n".join(r.getMessage() for r in caplog.records)
    assert "Opening DB session" in messages
    assert "Closed DB session" in messages


def test_session_scope_commit_persists(tmp_path):
    from sqlmodel import SQLModel, create_engine
    engine = create_engine(f"sqlite:///{tmp_path / 'test.db'}")
    SQLModel.metadata.create_all(engine)

    with session_scope(engine, commit=True) as sess:
        sess.add(_sermon())

    with Session(engine) as s:
        assert len(s.exec(select(Sermon)).all()) == 1
    engine.dispose()


def test_session_scope_does_not_persist_without_commit(tmp_path):
    from sqlmodel import SQLModel, create_engine
    engine = create_engine(f"sqlite:///{tmp_path / 'test2.db'}")
    SQLModel.metadata.create_all(engine)

    with session_scope(engine) as sess:
        sess.add(_sermon())

    with pytest.raises(RuntimeError):
        with session_scope(engine, commit=True) as sess:
            sess.add(_sermon(title="Other"))
            raise RuntimeError("boom")

    with Session(engine) as s:
        assert s.exec(select(Sermon)).all() == []
    engine.dispose()


def test_session_scope_logs_database_errors(caplog, in_memory_engine):
    caplog.set_level(logging.ERROR)

    with pytest.raises(IntegrityError):
        with session_scope(in_memory_engine, commit=True) as sess:
            sess.add(Blog(title="One", slug="same", content="x"))
            sess.add(Blog(title="Two", slug="same", content="y"))

    assert any("DB session error, rolling back" in r.getMessage() for r in caplog.records)


def test_get_live_hides_soft_deleted(in_memory_session):
    s = in_memory_session
    live = _sermon()
    gone = _sermon(title="Gone", deleted_at=datetime.datetime(2024, 1, 1))
    s.add(live)
    s.add(gone)
    s.commit()

    assert get_live(s, Sermon, live.id) is live
    assert get_live(s, Sermon, gone.id) is None
    assert get_live(s, Sermon, "missing") is None
