"""
Alert ingestion: duplicate check, grouping, event recording and
group-changed facts for downstream notification layers.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from sigcorr.anomaly.engine import AnomalyEngine
from sigcorr.config import Settings
from sigcorr.core.clock import Clock, utcnow
from sigcorr.core.severity import normalize_severity
from sigcorr.grouping.engine import GroupingEngine, UpsertResult
from sigcorr.metrics import engine_metrics as metrics
from sigcorr.models.alert import NormalizedAlert
from sigcorr.models.incident import AlertEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GroupChange:
    """Fact published after every accepted alert."""
    workspace_id: str
    group_id: str
    change: str          # created|updated|escalated|resolved
    severity: str
    previous_severity: Optional[str]
    anomalous: bool
    count: int


@dataclass
class ProcessingResult:
    duplicate: bool
    group_id: Optional[str] = None
    event_id: Optional[str] = None
    change: Optional[GroupChange] = None


Listener = Callable[[GroupChange], None]


class AlertProcessor:
    def __init__(self, grouping: GroupingEngine) -> None:
        self.grouping = grouping
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def is_duplicate(self, db: Session, workspace_id: str, source_event_id: str) -> bool:
        existing = db.query(AlertEvent.id).filter(
            AlertEvent.workspace_id == workspace_id,
            AlertEvent.source_event_id == source_event_id,
        ).first()
        return existing is not None

    def process(self, db: Session, workspace_id: str, alert: NormalizedAlert) -> ProcessingResult:
        if self.is_duplicate(db, workspace_id, alert.source_event_id):
            logger.info("Duplicate %s alert ignored: %s", alert.source, alert.source_event_id)
            metrics.duplicate_events_total.inc()
            return ProcessingResult(duplicate=True)

        result = self.grouping.upsert(db, workspace_id, alert)
        event = self._save_event(db, workspace_id, alert, result.group.id)
        change = self._change_for(workspace_id, result)
        self._publish(change)
        return ProcessingResult(duplicate=False, group_id=result.group.id, event_id=event.id, change=change)

    def resolve(self, db: Session, workspace_id: str, source_event_id: str) -> Optional[GroupChange]:
        """Mark the group of a previously ingested source event RESOLVED.

        Returns None when the event is unknown in the workspace. The next
        matching alert opens a new group.
        """
        event = db.query(AlertEvent).filter(
            AlertEvent.workspace_id == workspace_id,
            AlertEvent.source_event_id == source_event_id,
        ).first()
        if event is None or event.group is None:
            logger.info("Resolution for unknown event %s in workspace %s ignored", source_event_id, workspace_id)
            return None

        group = event.group
        group.status = "RESOLVED"
        db.commit()
        metrics.groups_total.labels(change="resolved").inc()
        logger.info("Group %s resolved by source event %s", group.id, source_event_id)
        change = GroupChange(
            workspace_id=workspace_id,
            group_id=group.id,
            change="resolved",
            severity=group.severity,
            previous_severity=group.severity,
            anomalous=False,
            count=group.count,
        )
        self._publish(change)
        return change

    def _save_event(self, db: Session, workspace_id: str, alert: NormalizedAlert, group_id: str) -> AlertEvent:
        event = AlertEvent(
            workspace_id=workspace_id,
            alert_group_id=group_id,
            source=alert.source,
            source_event_id=alert.source_event_id,
            project=alert.project,
            environment=alert.environment,
            severity=normalize_severity(alert.severity).name,
            fingerprint=alert.fingerprint,
            title=alert.title,
            message=alert.message,
            tags=dict(alert.tags),
            occurred_at=alert.occurred_at,
        )
        db.add(event)
        db.commit()
        return event

    def _change_for(self, workspace_id: str, result: UpsertResult) -> GroupChange:
        if result.created:
            kind = "created"
        elif result.escalated:
            kind = "escalated"
        else:
            kind = "updated"
        group = result.group
        return GroupChange(
            workspace_id=workspace_id,
            group_id=group.id,
            change=kind,
            severity=group.severity,
            previous_severity=result.previous_severity,
            anomalous=result.anomalous,
            count=group.count,
        )

    def _publish(self, change: GroupChange) -> None:
        for listener in self._listeners:
            try:
                listener(change)
            except Exception as e:
                logger.error("Group change listener failed for %s: %s", change.group_id, e)


def build_processor(settings: Optional[Settings] = None, clock: Clock = utcnow) -> AlertProcessor:
    """Processor whose grouping engine consults the anomaly spike check."""
    anomaly = AnomalyEngine(settings, clock=clock)
    return AlertProcessor(GroupingEngine(settings, spike_check=anomaly.check_velocity_anomaly, clock=clock))
