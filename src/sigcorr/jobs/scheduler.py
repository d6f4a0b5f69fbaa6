"""
Scheduled correlation mining and anomaly scans
Runs pair mining and the anomaly batch scan for every workspace
"""
from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from sqlalchemy.orm import Session

from sigcorr.anomaly.engine import AnomalyEngine
from sigcorr.config import Settings, load_settings
from sigcorr.correlation.mining import PairMiner
from sigcorr.metrics.engine_metrics import job_duration
from sigcorr.models.incident import Workspace

logger = logging.getLogger(__name__)

JOBS = ("correlations", "anomalies")

TenantLister = Callable[[], Iterable[str]]
SessionFactory = Callable[[], Session]


def db_tenant_lister(session_factory: SessionFactory) -> TenantLister:
    """Workspace ids read from the workspaces table."""
    def _list() -> List[str]:
        db = session_factory()
        try:
            return [row[0] for row in db.query(Workspace.id).order_by(Workspace.id).all()]
        finally:
            db.close()
    return _list


@dataclass
class CycleReport:
    rules: Dict[str, int] = field(default_factory=dict)
    anomalies: Dict[str, int] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)


class Scheduler:
    def __init__(
        self,
        session_factory: SessionFactory,
        tenant_lister: TenantLister,
        miner: PairMiner,
        anomaly: AnomalyEngine,
        settings: Optional[Settings] = None,
        jobs: Sequence[str] = JOBS,
    ) -> None:
        self.session_factory = session_factory
        self.tenant_lister = tenant_lister
        self.miner = miner
        self.anomaly = anomaly
        self.settings = settings or Settings()
        self.jobs = tuple(jobs)

    def _run_workspace(self, workspace_id: str, report: CycleReport) -> None:
        db = self.session_factory()
        try:
            if "correlations" in self.jobs:
                with job_duration.labels(job="correlations").time():
                    report.rules[workspace_id] = len(self.miner.analyze_correlations(db, workspace_id))
            if "anomalies" in self.jobs:
                with job_duration.labels(job="anomalies").time():
                    found = self.anomaly.detect_and_record_anomalies(db, workspace_id)
                report.anomalies[workspace_id] = len(found)
        except Exception as e:
            # One failing workspace must not stop the others
            db.rollback()
            report.failures[workspace_id] = str(e)
            logger.error("Scheduled jobs failed for workspace %s: %s", workspace_id, e)
        finally:
            db.close()

    def run_once(self) -> CycleReport:
        """Run one cycle across all workspaces"""
        workspaces = list(self.tenant_lister())
        logger.info("Starting scheduled cycle for %d workspaces (jobs: %s)", len(workspaces), ",".join(self.jobs))
        report = CycleReport()
        workers = max(1, min(self.settings.job_max_workers, len(workspaces)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            list(pool.map(lambda ws: self._run_workspace(ws, report), workspaces))
        logger.info(
            "Cycle complete: %d rules, %d anomalies, %d failures",
            sum(report.rules.values()), sum(report.anomalies.values()), len(report.failures),
        )
        return report

    def run_continuous(self, interval_seconds: Optional[int] = None, max_cycles: Optional[int] = None,
                       sleep: Callable[[float], None] = time.sleep) -> None:
        """Run cycles forever (or ``max_cycles`` times) at a fixed interval"""
        interval = interval_seconds or self.settings.job_interval_seconds
        logger.info("Starting continuous scheduling (interval: %ss)", interval)
        cycles = 0
        while max_cycles is None or cycles < max_cycles:
            try:
                self.run_once()
            except Exception as e:
                logger.error("Scheduled cycle failed: %s", e)
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            sleep(interval)


def build_scheduler(settings: Optional[Settings] = None, jobs: Sequence[str] = JOBS) -> Scheduler:
    from sigcorr.db import SessionLocal

    settings = settings or load_settings()
    return Scheduler(
        session_factory=SessionLocal,
        tenant_lister=db_tenant_lister(SessionLocal),
        miner=PairMiner(settings),
        anomaly=AnomalyEngine(settings),
        settings=settings,
        jobs=jobs,
    )


if __name__ == "__main__":
    import argparse
    from pathlib import Path

    from sigcorr.logging_setup import setup_json_logging

    parser = argparse.ArgumentParser(description="Correlation mining and anomaly scan scheduler")
    parser.add_argument("--once", action="store_true", help="Run once and exit")
    parser.add_argument("--interval", type=int, default=None, help="Interval in seconds for continuous mode")
    parser.add_argument("--jobs", default=",".join(JOBS), help="Comma separated subset of: correlations,anomalies")
    parser.add_argument("--config", type=Path, default=None, help="YAML settings file")
    args = parser.parse_args()

    setup_json_logging()
    selected = [j.strip() for j in args.jobs.split(",") if j.strip()]
    unknown = sorted(set(selected) - set(JOBS))
    if unknown:
        parser.error(f"unknown jobs: {', '.join(unknown)}")
    scheduler = build_scheduler(load_settings(args.config), jobs=selected)
    if args.once:
        scheduler.run_once()
    else:
        scheduler.run_continuous(args.interval)
