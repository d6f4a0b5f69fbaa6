"""
Real-time correlation scorer: ranks incidents related to one specific
incident and suggests a probable root cause.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sigcorr.config import Settings
from sigcorr.core.clock import Clock, utcnow
from sigcorr.core.scoring import (
    NO_CORRELATION, RootCauseSuggestion, correlation_reason, correlation_score, pick_root_cause
)
from sigcorr.metrics import engine_metrics as metrics
from sigcorr.models.incident import AlertCorrelation, IncidentGroup

logger = logging.getLogger(__name__)


@dataclass
class CorrelatedIncident:
    group: IncidentGroup
    score: float
    reason: str


class CorrelationScorer:
    def __init__(self, settings: Optional[Settings] = None, clock: Clock = utcnow) -> None:
        self.settings = settings or Settings()
        self.clock = clock

    @property
    def window(self) -> timedelta:
        return timedelta(minutes=self.settings.scorer_window_minutes)

    def find_correlated_alerts(self, db: Session, group_id: str) -> List[CorrelatedIncident]:
        """Every qualifying incident, best first; the top N are also persisted."""
        target = db.get(IncidentGroup, group_id)
        if target is None:
            return []

        candidates = (
            db.query(IncidentGroup)
            .filter(
                IncidentGroup.workspace_id == target.workspace_id,
                IncidentGroup.id != target.id,
                IncidentGroup.first_seen_at >= target.first_seen_at - self.window,
                IncidentGroup.first_seen_at <= target.first_seen_at + self.window,
            )
            .all()
        )

        correlations: List[CorrelatedIncident] = []
        for candidate in candidates:
            score = correlation_score(target, candidate, self.window)
            if score < self.settings.scorer_minimum_score:
                continue
            correlations.append(
                CorrelatedIncident(group=candidate, score=score, reason=correlation_reason(target, candidate, score))
            )
        correlations.sort(key=lambda c: (-c.score, c.group.first_seen_at, c.group.id))

        self._persist(db, target.id, correlations[: self.settings.scorer_persist_top])
        return correlations

    def _persist(self, db: Session, primary_id: str, correlations: List[CorrelatedIncident]) -> None:
        """Write-behind of scored edges; a failure never fails the read."""
        if not correlations:
            return
        now = self.clock()
        stored = 0
        for c in correlations:
            try:
                with db.begin_nested():
                    row = db.query(AlertCorrelation).filter(
                        AlertCorrelation.primary_alert_id == primary_id,
                        AlertCorrelation.related_alert_id == c.group.id,
                    ).first()
                    if row is None:
                        row = AlertCorrelation(
                            primary_alert_id=primary_id,
                            related_alert_id=c.group.id,
                            created_at=now,
                        )
                        db.add(row)
                    row.score = c.score
                    row.reason = c.reason
                    row.updated_at = now
                    db.flush()
                stored += 1
            except SQLAlchemyError as e:
                logger.warning("Failed to store correlation %s -> %s: %s", primary_id, c.group.id, e)
                metrics.record_side_effect_failure("correlation")
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning("Failed to commit correlations for %s: %s", primary_id, e)
            metrics.record_side_effect_failure("correlation")
            return
        metrics.correlations_persisted_total.inc(stored)

    def suggest_root_cause(self, db: Session, group_id: str) -> RootCauseSuggestion:
        target = db.get(IncidentGroup, group_id)
        if target is None:
            return RootCauseSuggestion(None, 0.0, "Alert not found")
        correlations = self.find_correlated_alerts(db, group_id)
        if not correlations:
            return RootCauseSuggestion(None, 0.0, NO_CORRELATION)
        return pick_root_cause(target, correlations)

    def get_stored_correlations(self, db: Session, group_id: str) -> List[AlertCorrelation]:
        return (
            db.query(AlertCorrelation)
            .filter(
                or_(
                    AlertCorrelation.primary_alert_id == group_id,
                    AlertCorrelation.related_alert_id == group_id,
                )
            )
            .order_by(AlertCorrelation.score.desc())
            .all()
        )
