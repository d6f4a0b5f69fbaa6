"""
Grouping engine against an in-memory database
"""
from __future__ import annotations

import threading
from datetime import timedelta

import pytest
from sqlalchemy.orm import sessionmaker

from sigcorr.config import Settings
from sigcorr.db import make_engine
from sigcorr.grouping.engine import GroupingEngine
from sigcorr.models.incident import Base, IncidentGroup


@pytest.fixture
def grouping(clock):
    return GroupingEngine(Settings(grouping_window_minutes=60), clock=clock)


def test_two_alerts_within_window_share_one_group(db, workspace, clock, grouping, make_alert):
    first = grouping.upsert_group(db, workspace, make_alert(occurred_at=clock()))
    clock.advance(minutes=1)
    second = grouping.upsert_group(db, workspace, make_alert(occurred_at=clock()))

    assert first.id == second.id
    assert db.query(IncidentGroup).count() == 1
    assert second.count == 2
    assert second.status == "OPEN"


def test_new_group_fields(db, workspace, clock, grouping, make_alert):
    group = grouping.upsert_group(db, workspace, make_alert(severity="error", user_count=7, occurred_at=clock()))
    assert group.count == 1
    assert group.severity == "HIGH"
    assert group.first_seen_at == group.last_seen_at == clock()
    assert group.velocity_per_hour is None
    assert group.user_count == 7


def test_window_expiry_starts_new_group(db, workspace, clock, grouping, make_alert):
    first = grouping.upsert_group(db, workspace, make_alert(occurred_at=clock()))
    clock.advance(minutes=1)
    grouping.upsert_group(db, workspace, make_alert(occurred_at=clock()))
    clock.advance(minutes=61)
    third = grouping.upsert_group(db, workspace, make_alert(occurred_at=clock()))

    assert third.id != first.id
    assert third.count == 1
    assert db.query(IncidentGroup).count() == 2


def test_resolved_group_is_not_reused(db, workspace, clock, grouping, make_alert):
    first = grouping.upsert_group(db, workspace, make_alert(occurred_at=clock()))
    first.status = "RESOLVED"
    db.commit()
    clock.advance(minutes=1)
    second = grouping.upsert_group(db, workspace, make_alert(occurred_at=clock()))
    assert second.id != first.id


def test_workspaces_are_isolated(db, workspace, clock, grouping, make_alert):
    a = grouping.upsert_group(db, "ws-1", make_alert(occurred_at=clock()))
    b = grouping.upsert_group(db, "ws-2", make_alert(occurred_at=clock()))
    assert a.id != b.id


def test_severity_never_downgrades(db, workspace, clock, grouping, make_alert):
    grouping.upsert_group(db, workspace, make_alert(severity="MEDIUM", occurred_at=clock()))
    clock.advance(minutes=1)
    group = grouping.upsert_group(db, workspace, make_alert(severity="HIGH", occurred_at=clock()))
    assert group.severity == "HIGH"
    clock.advance(minutes=1)
    group = grouping.upsert_group(db, workspace, make_alert(severity="LOW", occurred_at=clock()))
    assert group.severity == "HIGH"


def test_velocity_and_user_count(db, workspace, clock, grouping, make_alert):
    grouping.upsert_group(db, workspace, make_alert(user_count=3, occurred_at=clock()))
    clock.advance(minutes=30)
    group = grouping.upsert_group(db, workspace, make_alert(occurred_at=clock()))
    assert group.velocity_per_hour == pytest.approx(2 / 0.5)
    assert group.user_count == 3


def test_zero_user_count_is_stored_as_null(db, workspace, clock, grouping, make_alert):
    grouping.upsert_group(db, workspace, make_alert(occurred_at=clock()))
    clock.advance(minutes=1)
    group = grouping.upsert_group(db, workspace, make_alert(user_count=0, occurred_at=clock()))
    assert group.user_count is None


def test_spike_escalates_to_high(db, workspace, clock, make_alert):
    calls = []

    def spike(db_, ws, group_id, velocity):
        calls.append((ws, group_id, velocity))
        return True

    grouping = GroupingEngine(Settings(), spike_check=spike, clock=clock)
    grouping.upsert_group(db, workspace, make_alert(severity="LOW", occurred_at=clock()))
    clock.advance(minutes=1)
    result = grouping.upsert(db, workspace, make_alert(severity="LOW", occurred_at=clock()))

    assert result.group.severity == "HIGH"
    assert result.anomalous
    assert result.escalated
    # 2 events, elapsed floored at 0.1h
    assert calls[0][2] == pytest.approx(20.0)


def test_spike_does_not_lower_critical(db, workspace, clock, make_alert):
    grouping = GroupingEngine(Settings(), spike_check=lambda *a: True, clock=clock)
    grouping.upsert_group(db, workspace, make_alert(severity="CRITICAL", occurred_at=clock()))
    clock.advance(minutes=1)
    group = grouping.upsert_group(db, workspace, make_alert(severity="LOW", occurred_at=clock()))
    assert group.severity == "CRITICAL"


def test_failing_spike_check_fails_open(db, workspace, clock, make_alert):
    def broken(*_args):
        raise RuntimeError("baseline store unavailable")

    grouping = GroupingEngine(Settings(), spike_check=broken, clock=clock)
    grouping.upsert_group(db, workspace, make_alert(severity="LOW", occurred_at=clock()))
    clock.advance(minutes=1)
    result = grouping.upsert(db, workspace, make_alert(severity="LOW", occurred_at=clock()))

    assert not result.anomalous
    assert result.group.count == 2
    assert result.group.severity == "LOW"


def test_out_of_window_lookup_uses_last_seen(db, workspace, clock, grouping, make_alert):
    first = grouping.upsert_group(db, workspace, make_alert(occurred_at=clock()))
    for _ in range(3):
        clock.advance(minutes=45)
        group = grouping.upsert_group(db, workspace, make_alert(occurred_at=clock()))
    # each event kept the group inside the rolling window
    assert group.id == first.id
    assert group.count == 4
    assert group.last_seen_at == clock()
    assert group.first_seen_at == clock() - timedelta(minutes=135)


def test_concurrent_ingestion_keeps_one_active_group(tmp_path, clock, make_alert):
    engine = make_engine(f"sqlite:///{tmp_path}/grouping.db")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    grouping = GroupingEngine(Settings(), clock=clock)
    workers = 8
    alerts = [make_alert(occurred_at=clock()) for _ in range(workers)]
    start = threading.Barrier(workers)
    errors = []

    def ingest(alert):
        db = factory()
        try:
            start.wait()
            grouping.upsert_group(db, "ws-1", alert)
        except Exception as e:  # surfaced through the assertion below
            errors.append(e)
        finally:
            db.close()

    threads = [threading.Thread(target=ingest, args=(a,)) for a in alerts]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    check = factory()
    try:
        assert errors == []
        groups = check.query(IncidentGroup).all()
        assert len(groups) == 1
        assert groups[0].count == workers
    finally:
        check.close()
        engine.dispose()
