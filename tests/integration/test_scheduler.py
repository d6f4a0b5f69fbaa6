from __future__ import annotations

import threading

from sigcorr.anomaly.engine import AnomalyEngine
from sigcorr.config import Settings
from sigcorr.correlation.mining import PairMiner
from sigcorr.jobs.scheduler import Scheduler, db_tenant_lister
from sigcorr.models.incident import Workspace


class FakeMiner:
    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []
        self._lock = threading.Lock()

    def analyze_correlations(self, db, workspace_id):
        with self._lock:
            self.calls.append(workspace_id)
        if workspace_id in self.failing:
            raise RuntimeError("lock timeout")
        return ["rule"] * 2


class FakeAnomaly:
    def __init__(self):
        self.calls = []
        self._lock = threading.Lock()

    def detect_and_record_anomalies(self, db, workspace_id):
        with self._lock:
            self.calls.append(workspace_id)
        return ["anomaly"]


def _scheduler(session_factory, tenants, miner=None, anomaly=None, jobs=("correlations", "anomalies")):
    return Scheduler(
        session_factory=session_factory,
        tenant_lister=lambda: list(tenants),
        miner=miner or FakeMiner(),
        anomaly=anomaly or FakeAnomaly(),
        settings=Settings(job_max_workers=2),
        jobs=jobs,
    )


def test_cycle_covers_every_workspace(session_factory):
    miner, anomaly = FakeMiner(), FakeAnomaly()
    report = _scheduler(session_factory, ["ws-a", "ws-b", "ws-c"], miner, anomaly).run_once()

    assert sorted(miner.calls) == ["ws-a", "ws-b", "ws-c"]
    assert sorted(anomaly.calls) == ["ws-a", "ws-b", "ws-c"]
    assert report.rules == {"ws-a": 2, "ws-b": 2, "ws-c": 2}
    assert report.anomalies == {"ws-a": 1, "ws-b": 1, "ws-c": 1}
    assert report.failures == {}


def test_failing_workspace_does_not_stop_others(session_factory):
    anomaly = FakeAnomaly()
    report = _scheduler(session_factory, ["ws-a", "ws-bad"], FakeMiner(failing=["ws-bad"]), anomaly).run_once()

    assert report.failures == {"ws-bad": "lock timeout"}
    assert report.rules == {"ws-a": 2}
    assert anomaly.calls == ["ws-a"]


def test_job_subset(session_factory):
    miner, anomaly = FakeMiner(), FakeAnomaly()
    report = _scheduler(session_factory, ["ws-a"], miner, anomaly, jobs=["anomalies"]).run_once()
    assert miner.calls == []
    assert report.anomalies == {"ws-a": 1}


def test_no_workspaces(session_factory):
    report = _scheduler(session_factory, []).run_once()
    assert report.rules == {} and report.anomalies == {}


def test_continuous_runs_bounded_cycles_and_survives_errors(session_factory):
    calls = {"n": 0}

    def flaky_tenants():
        calls["n"] += 1
        if calls["n"] == 2:
            raise RuntimeError("tenant directory unavailable")
        return ["ws-a"]

    naps = []
    scheduler = _scheduler(session_factory, [])
    scheduler.tenant_lister = flaky_tenants
    scheduler.run_continuous(interval_seconds=30, max_cycles=3, sleep=naps.append)

    assert calls["n"] == 3
    assert naps == [30, 30]


def test_real_engines_over_database_tenants(db, session_factory, clock):
    db.add_all([Workspace(id="ws-1", name="Payments"), Workspace(id="ws-2", name="Search")])
    db.commit()
    lister = db_tenant_lister(session_factory)
    assert lister() == ["ws-1", "ws-2"]

    settings = Settings(job_max_workers=1)
    scheduler = Scheduler(
        session_factory=session_factory,
        tenant_lister=lister,
        miner=PairMiner(settings, clock=clock),
        anomaly=AnomalyEngine(settings, clock=clock),
        settings=settings,
    )
    report = scheduler.run_once()
    assert report.rules == {"ws-1": 0, "ws-2": 0}
    assert report.anomalies == {"ws-1": 0, "ws-2": 0}
    assert report.failures == {}
