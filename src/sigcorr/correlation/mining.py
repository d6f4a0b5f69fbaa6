"""
Historical pair mining: directional 'A tends to precede B' rules between
group keys, learned from the recent event window of one workspace.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from sigcorr.config import Settings
from sigcorr.core.clock import Clock, utcnow
from sigcorr.core.pairs import RuleStats, mine_pair_rules
from sigcorr.metrics import engine_metrics as metrics
from sigcorr.models.incident import AlertEvent, CorrelationRule, IncidentGroup

logger = logging.getLogger(__name__)

RELATED_LIMIT = 5


class PairMiner:
    def __init__(self, settings: Optional[Settings] = None, clock: Clock = utcnow) -> None:
        self.settings = settings or Settings()
        self.clock = clock

    def analyze_correlations(self, db: Session, workspace_id: str) -> List[RuleStats]:
        """Mine the last ``pair_lookback_hours`` of events and upsert the rules found."""
        s = self.settings
        logger.info("Starting correlation analysis for workspace %s", workspace_id)
        now = self.clock()
        since = now - timedelta(hours=s.pair_lookback_hours)

        # Outer join so events whose group vanished surface with a NULL key and are skipped
        rows = (
            db.query(IncidentGroup.group_key, AlertEvent.occurred_at)
            .select_from(AlertEvent)
            .outerjoin(IncidentGroup, AlertEvent.alert_group_id == IncidentGroup.id)
            .filter(AlertEvent.workspace_id == workspace_id, AlertEvent.occurred_at >= since)
            .order_by(AlertEvent.occurred_at.asc(), AlertEvent.id.asc())
            .all()
        )
        if len(rows) < s.pair_min_events:
            logger.info(
                "Skipping correlation analysis for workspace %s: %d events (< %d)",
                workspace_id, len(rows), s.pair_min_events,
            )
            return []

        rules = mine_pair_rules(
            [(key, ts) for key, ts in rows],
            window=timedelta(minutes=s.pair_window_minutes),
            min_support=s.pair_min_support,
            min_confidence=s.pair_min_confidence,
        )

        for rule in rules:
            self._upsert_rule(db, workspace_id, rule, now)
            logger.debug("Upserted rule: %s -> %s (conf: %.2f)", rule.src, rule.dst, rule.confidence)
        db.commit()
        metrics.rules_upserted_total.inc(len(rules))
        logger.info("Correlation analysis complete for workspace %s: %d rules", workspace_id, len(rules))
        return rules

    def _upsert_rule(self, db: Session, workspace_id: str, rule: RuleStats, now) -> CorrelationRule:
        existing = db.query(CorrelationRule).filter(
            CorrelationRule.workspace_id == workspace_id,
            CorrelationRule.source_group_key == rule.src,
            CorrelationRule.target_group_key == rule.dst,
        ).first()
        if existing is None:
            existing = CorrelationRule(
                workspace_id=workspace_id,
                source_group_key=rule.src,
                target_group_key=rule.dst,
            )
            db.add(existing)
        existing.confidence = rule.confidence
        existing.support = rule.support
        existing.last_updated_at = now
        db.flush()
        return existing

    def get_correlated_groups(self, db: Session, workspace_id: str, group_id: str) -> List[IncidentGroup]:
        """Groups whose keys share a confident rule with this group's key, in either direction."""
        group = db.get(IncidentGroup, group_id)
        if group is None or group.workspace_id != workspace_id:
            return []

        rules = (
            db.query(CorrelationRule)
            .filter(
                CorrelationRule.workspace_id == workspace_id,
                or_(
                    CorrelationRule.source_group_key == group.group_key,
                    CorrelationRule.target_group_key == group.group_key,
                ),
                CorrelationRule.confidence >= self.settings.pair_min_confidence,
            )
            .order_by(CorrelationRule.confidence.desc())
            .limit(RELATED_LIMIT)
            .all()
        )
        if not rules:
            return []

        related_keys = [
            r.target_group_key if r.source_group_key == group.group_key else r.source_group_key
            for r in rules
        ]
        rank = {key: i for i, key in reversed(list(enumerate(related_keys)))}
        groups = (
            db.query(IncidentGroup)
            .filter(IncidentGroup.workspace_id == workspace_id, IncidentGroup.group_key.in_(related_keys))
            .order_by(IncidentGroup.last_seen_at.desc())
            .all()
        )
        groups.sort(key=lambda g: rank[g.group_key])
        return groups[:RELATED_LIMIT]
