"""
Anomaly Engine: velocity spike check, rolling/seasonal baselines and the
batch workspace scan that records synthetic velocity incidents.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterator, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sigcorr.audit.store import AuditSink
from sigcorr.config import Settings
from sigcorr.core.clock import Clock, utcnow
from sigcorr.core.group_key import generate_group_key
from sigcorr.core.severity import Severity
from sigcorr.core.stats import (
    BaselineStats, compute_baseline, hours_between, percentage_increase, spike_threshold, z_score
)
from sigcorr.grouping.engine import ACTIVE_STATUSES, DEFAULT_LOCKS, KeyLocks, find_active_group
from sigcorr.metrics import engine_metrics as metrics
from sigcorr.models.incident import AlertEvent, AnomalyBaseline, IncidentGroup

logger = logging.getLogger(__name__)

ANOMALY_SOURCE = "anomaly-detector"
METRIC_PREFIX = "alert_events:"
TITLE_PREFIX = "High Error Velocity Detected: "


def metric_key_for(group_id: str) -> str:
    return f"{METRIC_PREFIX}{group_id}"


@dataclass
class GroupStats:
    group_id: str
    mean: float
    std_dev: float
    current_count: int
    baseline: BaselineStats


@dataclass
class AnomalyReport:
    alert_group_id: str
    title: str
    severity: str
    current_velocity: float
    baseline_velocity: float
    percentage_increase: float
    z_score: float
    detected_at: datetime
    recorded_group_id: Optional[str] = None
    details: dict = field(default_factory=dict)


class AnomalyEngine:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
        audit: Optional[AuditSink] = None,
        locks: Optional[KeyLocks] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.clock = clock
        self.audit = audit or AuditSink(clock=clock)
        self.locks = locks or DEFAULT_LOCKS

    # ------------------------------------------------------------------
    # Synchronous spike check (ingestion hot path)
    # ------------------------------------------------------------------

    def check_velocity_anomaly(self, db: Session, workspace_id: str, group_id: str, current_velocity: float) -> bool:
        """One group read and arithmetic; errors are logged and mean 'not anomalous'."""
        try:
            group = db.get(IncidentGroup, group_id)
            if group is None or group.workspace_id != workspace_id:
                return False
            threshold = spike_threshold(
                group.count,
                group.first_seen_at,
                self.clock(),
                multiplier=self.settings.spike_multiplier,
                floor_per_hour=self.settings.spike_floor_per_hour,
            )
            if current_velocity > threshold:
                logger.warning(
                    "Anomaly detected for group %s: velocity %.1f > threshold %.1f",
                    group.id, current_velocity, threshold,
                )
                return True
            return False
        except Exception as e:
            logger.error("Error checking anomaly for group %s: %s", group_id, e)
            return False

    def __call__(self, db: Session, workspace_id: str, group_id: str, current_velocity: float) -> bool:
        return self.check_velocity_anomaly(db, workspace_id, group_id, current_velocity)

    def is_anomaly_active(self, db: Session, workspace_id: str, group_id: str) -> bool:
        """Stored velocity above the minimum and more than 3x the long-term rate."""
        group = db.get(IncidentGroup, group_id)
        if group is None or group.workspace_id != workspace_id or not group.velocity_per_hour:
            return False
        hours_active = max(hours_between(self.clock(), group.first_seen_at), 1.0)
        baseline = group.count / hours_active
        ratio = group.velocity_per_hour / baseline if baseline > 0 else 0.0
        return ratio > self.settings.spike_multiplier and group.velocity_per_hour > self.settings.min_velocity

    # ------------------------------------------------------------------
    # Baselines
    # ------------------------------------------------------------------

    def compute_group_stats(self, db: Session, workspace_id: str, group_id: str) -> Optional[GroupStats]:
        """Hourly baseline for one group; the baseline row is upserted and committed."""
        stats = self._group_stats(db, workspace_id, group_id)
        db.commit()
        return stats

    def _group_stats(self, db: Session, workspace_id: str, group_id: str) -> Optional[GroupStats]:
        group = db.get(IncidentGroup, group_id)
        if group is None or group.workspace_id != workspace_id:
            return None

        now = self.clock()
        window_hours = self.settings.anomaly_window_hours
        lookback_days = self.settings.seasonal_lookback_days
        # The oldest seasonal slot starts at the top of the hour, lookback_days ago
        hour_start = now.replace(minute=0, second=0, microsecond=0)
        since = min(now - timedelta(hours=window_hours), hour_start - timedelta(days=lookback_days))
        rows = (
            db.query(AlertEvent.occurred_at)
            .filter(
                AlertEvent.workspace_id == workspace_id,
                AlertEvent.alert_group_id == group_id,
                AlertEvent.occurred_at >= since,
            )
            .all()
        )
        baseline = compute_baseline([r[0] for r in rows], now, window_hours, lookback_days)
        self._upsert_baseline(db, workspace_id, group_id, baseline, now)
        return GroupStats(
            group_id=group_id,
            mean=baseline.mean,
            std_dev=baseline.std_dev,
            current_count=baseline.current_count,
            baseline=baseline,
        )

    def _upsert_baseline(self, db: Session, workspace_id: str, group_id: str, stats: BaselineStats, now: datetime) -> None:
        metric_key = metric_key_for(group_id)
        try:
            with db.begin_nested():
                row = db.query(AnomalyBaseline).filter(
                    AnomalyBaseline.workspace_id == workspace_id,
                    AnomalyBaseline.metric_key == metric_key,
                ).first()
                if row is None:
                    row = AnomalyBaseline(workspace_id=workspace_id, metric_key=metric_key)
                    db.add(row)
                row.mean = stats.mean
                row.std_dev = stats.std_dev
                row.seasonal_mean = stats.seasonal_mean
                row.seasonal_std_dev = stats.seasonal_std_dev
                row.seasonal_hour = stats.seasonal_hour
                row.sample_count = stats.sample_count
                row.window_hours = stats.window_hours
                row.last_updated = now
                db.flush()
        except SQLAlchemyError as e:
            logger.warning("Failed to persist baseline %s: %s", metric_key, e)
            metrics.record_side_effect_failure("baseline")

    # ------------------------------------------------------------------
    # Batch workspace scan
    # ------------------------------------------------------------------

    def _candidate_groups(self, db: Session, workspace_id: str) -> Iterator[IncidentGroup]:
        """Most recently seen active groups, paged, capped at ``scan_limit``."""
        limit = self.settings.scan_limit
        page = self.settings.scan_page_size
        offset = 0
        while offset < limit:
            batch = (
                db.query(IncidentGroup)
                .filter(
                    IncidentGroup.workspace_id == workspace_id,
                    IncidentGroup.status.in_(ACTIVE_STATUSES),
                    IncidentGroup.count >= self.settings.scan_min_count,
                )
                .order_by(IncidentGroup.last_seen_at.desc(), IncidentGroup.id.asc())
                .offset(offset)
                .limit(min(page, limit - offset))
                .all()
            )
            if not batch:
                return
            yield from batch
            offset += len(batch)

    def detect_workspace_anomalies(self, db: Session, workspace_id: str) -> List[AnomalyReport]:
        anomalies: List[AnomalyReport] = []
        detected_at = self.clock()
        for group in self._candidate_groups(db, workspace_id):
            stats = self._group_stats(db, workspace_id, group.id)
            if stats is None:
                continue
            if stats.current_count < self.settings.min_velocity:
                continue
            z = z_score(stats.current_count, stats.mean, stats.std_dev)
            if z < self.settings.z_score_threshold:
                continue
            anomalies.append(
                AnomalyReport(
                    alert_group_id=group.id,
                    title=group.title,
                    severity=group.severity,
                    current_velocity=float(stats.current_count),
                    baseline_velocity=stats.mean,
                    percentage_increase=percentage_increase(stats.current_count, stats.mean),
                    z_score=z,
                    detected_at=detected_at,
                    details={"std_dev": stats.std_dev, "seasonal": stats.baseline.seasonal},
                )
            )

        db.commit()
        if anomalies:
            logger.warning("Detected %d anomalies in workspace %s", len(anomalies), workspace_id)
        metrics.anomalies_detected_total.labels(recorded="false").inc(len(anomalies))
        return anomalies

    def detect_and_record_anomalies(self, db: Session, workspace_id: str) -> List[AnomalyReport]:
        anomalies = self.detect_workspace_anomalies(db, workspace_id)
        for anomaly in anomalies:
            source = db.get(IncidentGroup, anomaly.alert_group_id)
            if source is None:
                continue
            group = self._record(db, workspace_id, source, anomaly)
            anomaly.recorded_group_id = group.id
        db.commit()
        metrics.anomalies_detected_total.labels(recorded="true").inc(len(anomalies))
        return anomalies

    def _velocity_key(self, source: IncidentGroup) -> str:
        return generate_group_key(ANOMALY_SOURCE, source.project, source.environment, f"velocity:{source.id}")

    def _record(self, db: Session, workspace_id: str, source: IncidentGroup, anomaly: AnomalyReport) -> IncidentGroup:
        """Create or refresh the synthetic LOW incident for a velocity anomaly."""
        group_key = self._velocity_key(source)
        now = anomaly.detected_at
        message = (
            f"Current velocity {anomaly.current_velocity:.1f}/h against a baseline of "
            f"{anomaly.baseline_velocity:.1f}/h (z-score {anomaly.z_score:.2f})."
        )
        with self.locks.for_key(workspace_id, group_key):
            existing = find_active_group(db, workspace_id, group_key, for_update=True)
            if existing is not None:
                existing.count += 1
                existing.last_seen_at = now
                existing.message = message
                db.flush()
                return existing

            group = IncidentGroup(
                workspace_id=workspace_id,
                group_key=group_key,
                title=f"{TITLE_PREFIX}{source.title}",
                message=message,
                project=source.project,
                environment=source.environment,
                status="OPEN",
                severity=Severity.LOW.name,
                first_seen_at=now,
                last_seen_at=now,
                count=1,
            )
            db.add(group)
            db.flush()

        logger.info("Recorded velocity anomaly group %s for group %s", group.id, source.id)
        self.audit.emit(
            db,
            workspace_id,
            action="anomaly.group_created",
            resource_type="alert_group",
            resource_id=group.id,
            metadata={
                "source_group_id": source.id,
                "current_velocity": anomaly.current_velocity,
                "baseline_velocity": anomaly.baseline_velocity,
                "z_score": anomaly.z_score,
            },
        )
        return group
