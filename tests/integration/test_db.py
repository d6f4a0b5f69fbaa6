from __future__ import annotations

from sqlalchemy import inspect
from sqlalchemy.orm import sessionmaker

from sigcorr import db as dbmod
from sigcorr.models.incident import Workspace


def test_file_database_is_created_with_tables(tmp_path):
    engine = dbmod.make_engine(f"sqlite:///{tmp_path}/nested/dir/sigcorr.db")
    dbmod.init_db(engine)
    assert (tmp_path / "nested" / "dir" / "sigcorr.db").exists()
    assert {"alert_groups", "alert_events", "correlation_rules", "audit_logs"} <= set(inspect(engine).get_table_names())
    engine.dispose()


def test_savepoint_rollback_keeps_outer_work(db):
    db.add(Workspace(id="ws-keep", name="kept"))
    try:
        with db.begin_nested():
            db.add(Workspace(id="ws-drop", name="dropped"))
            db.flush()
            raise RuntimeError("abort inner")
    except RuntimeError:
        pass
    db.commit()
    assert [w.id for w in db.query(Workspace).all()] == ["ws-keep"]


def test_get_db_closes_session(engine, monkeypatch):
    closed = []
    factory = sessionmaker(bind=engine)

    class Tracking(factory.class_):
        def close(self):
            closed.append(True)
            super().close()

    monkeypatch.setattr(dbmod, "SessionLocal", sessionmaker(bind=engine, class_=Tracking))
    gen = dbmod.get_db()
    session = next(gen)
    assert isinstance(session, Tracking)
    gen.close()
    assert closed == [True]


def test_caller_connect_args_are_merged(tmp_path):
    engine = dbmod.make_engine(f"sqlite:///{tmp_path}/args.db", connect_args={"timeout": 1.5})
    dbmod.init_db(engine)
    assert "workspaces" in inspect(engine).get_table_names()
    engine.dispose()
