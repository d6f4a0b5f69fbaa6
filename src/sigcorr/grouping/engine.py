"""
Grouping Engine: find-or-create-or-update of the active incident group
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from sigcorr.config import Settings
from sigcorr.core.clock import Clock, utcnow
from sigcorr.core.group_key import group_key_for
from sigcorr.core.severity import Severity, normalize_severity, resolve_severity
from sigcorr.core.stats import grouping_velocity
from sigcorr.metrics import engine_metrics as metrics
from sigcorr.models.alert import NormalizedAlert
from sigcorr.models.incident import IncidentGroup

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("OPEN", "ACK")

# (db, workspace_id, group_id, velocity) -> anomalous
SpikeCheck = Callable[[Session, str, str, float], bool]


class KeyLocks:
    """Striped in-process locks keyed by (workspace_id, group_key)."""

    def __init__(self, stripes: int = 64) -> None:
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(stripes)]

    def for_key(self, workspace_id: str, group_key: str) -> threading.Lock:
        return self._locks[hash((workspace_id, group_key)) % len(self._locks)]


DEFAULT_LOCKS = KeyLocks()


def find_active_group(
    db: Session,
    workspace_id: str,
    group_key: str,
    since: Optional[datetime] = None,
    for_update: bool = False,
) -> Optional[IncidentGroup]:
    """OPEN/ACK group for the key, optionally only if seen at or after ``since``."""
    q = db.query(IncidentGroup).filter(
        IncidentGroup.workspace_id == workspace_id,
        IncidentGroup.group_key == group_key,
        IncidentGroup.status.in_(ACTIVE_STATUSES),
    )
    if since is not None:
        q = q.filter(IncidentGroup.last_seen_at >= since)
    q = q.order_by(IncidentGroup.last_seen_at.desc())
    if for_update:
        q = q.with_for_update()
    return q.first()


@dataclass
class UpsertResult:
    group: IncidentGroup
    created: bool
    anomalous: bool = False
    previous_severity: Optional[str] = None

    @property
    def escalated(self) -> bool:
        if self.previous_severity is None:
            return False
        return normalize_severity(self.group.severity) > normalize_severity(self.previous_severity)


class GroupingEngine:
    """Deduplicates alerts into incident groups inside a grouping window.

    The lookup, create and update run as one unit of work: a per-key
    in-process lock plus a single database transaction (with row locks on
    backends that support SELECT ... FOR UPDATE).
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        spike_check: Optional[SpikeCheck] = None,
        clock: Clock = utcnow,
        locks: Optional[KeyLocks] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.spike_check = spike_check
        self.clock = clock
        self.locks = locks or DEFAULT_LOCKS

    @property
    def window(self) -> timedelta:
        return timedelta(minutes=self.settings.grouping_window_minutes)

    def upsert_group(self, db: Session, workspace_id: str, alert: NormalizedAlert) -> IncidentGroup:
        return self.upsert(db, workspace_id, alert).group

    @metrics.observe_duration(metrics.upsert_latency)
    def upsert(self, db: Session, workspace_id: str, alert: NormalizedAlert) -> UpsertResult:
        group_key = group_key_for(alert)
        with self.locks.for_key(workspace_id, group_key):
            try:
                window_start = self.clock() - self.window
                existing = find_active_group(db, workspace_id, group_key, since=window_start, for_update=True)
                if existing is None:
                    result = UpsertResult(group=self._create(db, workspace_id, group_key, alert), created=True)
                else:
                    result = self._update(db, workspace_id, existing, alert)
                db.commit()
            except Exception:
                db.rollback()
                raise

        if result.created:
            metrics.groups_total.labels(change="created").inc()
        else:
            metrics.groups_total.labels(change="updated").inc()
        return result

    def _create(self, db: Session, workspace_id: str, group_key: str, alert: NormalizedAlert) -> IncidentGroup:
        group = IncidentGroup(
            workspace_id=workspace_id,
            group_key=group_key,
            title=alert.title,
            message=alert.message or None,
            project=alert.project,
            environment=alert.environment,
            status="OPEN",
            severity=normalize_severity(alert.severity).name,
            first_seen_at=alert.occurred_at,
            last_seen_at=alert.occurred_at,
            count=1,
            user_count=alert.user_count,
            velocity_per_hour=None,
        )
        db.add(group)
        db.flush()
        logger.debug("Opened group %s in workspace %s", group.id, workspace_id)
        return group

    def _update(self, db: Session, workspace_id: str, group: IncidentGroup, alert: NormalizedAlert) -> UpsertResult:
        previous = group.severity
        count_after = group.count + 1
        velocity = grouping_velocity(count_after, group.first_seen_at, alert.occurred_at)

        anomalous = self._check_spike(db, workspace_id, group.id, velocity)
        resolved = resolve_severity(previous, alert.severity, anomalous)
        if anomalous and resolved == Severity.HIGH and max(
            normalize_severity(previous), normalize_severity(alert.severity)
        ) < Severity.HIGH:
            metrics.severity_escalations_total.inc()
            logger.info("Group %s escalated to HIGH on velocity %.1f/h", group.id, velocity)

        user_count = max(group.user_count or 0, alert.user_count or 0)

        group.count = count_after
        group.last_seen_at = alert.occurred_at
        group.severity = resolved.name
        group.user_count = user_count or None
        group.velocity_per_hour = velocity
        db.flush()
        return UpsertResult(group=group, created=False, anomalous=anomalous, previous_severity=previous)

    def _check_spike(self, db: Session, workspace_id: str, group_id: str, velocity: float) -> bool:
        """Run the spike check in a savepoint; any failure means 'not anomalous'."""
        if self.spike_check is None:
            return False
        try:
            with db.begin_nested():
                return bool(self.spike_check(db, workspace_id, group_id, velocity))
        except Exception as e:
            metrics.spike_check_errors_total.inc()
            logger.error("Spike check failed for group %s, continuing: %s", group_id, e)
            return False
