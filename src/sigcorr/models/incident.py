"""
Incident grouping, baseline and correlation data models
"""
import uuid
from datetime import datetime

from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    Column, String, Integer, DateTime, JSON, ForeignKey, UniqueConstraint, Float, Text, Index
)

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


class Workspace(Base):
    """Tenant partition"""
    __tablename__ = "workspaces"

    id = Column(String, primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class User(Base):
    """Workspace member; only used to resolve an audit actor"""
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=_uuid)
    workspace_id = Column(String, ForeignKey("workspaces.id"), index=True, nullable=False)
    email = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class IncidentGroup(Base):
    """Deduplicated incident operators act on"""
    __tablename__ = "alert_groups"

    id = Column(String, primary_key=True, default=_uuid)
    workspace_id = Column(String, index=True, nullable=False)
    group_key = Column(String(64), index=True, nullable=False)   # sha256 hex
    title = Column(String, nullable=False)
    message = Column(Text, nullable=True)
    project = Column(String, nullable=False)
    environment = Column(String, nullable=False)
    status = Column(String, index=True, nullable=False, default="OPEN")    # OPEN|ACK|RESOLVED
    severity = Column(String, index=True, nullable=False, default="INFO")  # INFO..CRITICAL
    first_seen_at = Column(DateTime, index=True, nullable=False)
    last_seen_at = Column(DateTime, index=True, nullable=False)
    count = Column(Integer, nullable=False, default=1)
    velocity_per_hour = Column(Float, nullable=True)
    user_count = Column(Integer, nullable=True)

    events = relationship("AlertEvent", back_populates="group")

    __table_args__ = (
        Index("ix_alert_groups_active_lookup", "workspace_id", "group_key", "status", "last_seen_at"),
    )


class AlertEvent(Base):
    """One ingested alert occurrence"""
    __tablename__ = "alert_events"

    id = Column(String, primary_key=True, default=_uuid)
    workspace_id = Column(String, index=True, nullable=False)
    alert_group_id = Column(String, ForeignKey("alert_groups.id"), index=True, nullable=True)
    source = Column(String, nullable=False)
    source_event_id = Column(String, index=True, nullable=False)
    project = Column(String, nullable=False)
    environment = Column(String, nullable=False)
    severity = Column(String, nullable=False)
    fingerprint = Column(String, nullable=False)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=True)
    tags = Column(JSON, nullable=True)
    occurred_at = Column(DateTime, index=True, nullable=False)

    group = relationship("IncidentGroup", back_populates="events")

    __table_args__ = (
        Index("ix_alert_events_workspace_time", "workspace_id", "occurred_at"),
    )


class AnomalyBaseline(Base):
    """Rolling and seasonal velocity statistics per metric"""
    __tablename__ = "anomaly_baselines"

    id = Column(Integer, primary_key=True, autoincrement=True)
    workspace_id = Column(String, index=True, nullable=False)
    metric_key = Column(String, nullable=False)   # alert_events:<group id>
    mean = Column(Float, nullable=False, default=0.0)
    std_dev = Column(Float, nullable=False, default=0.0)
    seasonal_mean = Column(Float, nullable=True)
    seasonal_std_dev = Column(Float, nullable=True)
    seasonal_hour = Column(Integer, nullable=True)
    sample_count = Column(Integer, nullable=False, default=0)
    window_hours = Column(Integer, nullable=False, default=24)
    last_updated = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("workspace_id", "metric_key"),
    )


class CorrelationRule(Base):
    """Directional 'source tends to precede target' rule between group keys"""
    __tablename__ = "correlation_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    workspace_id = Column(String, index=True, nullable=False)
    source_group_key = Column(String(64), index=True, nullable=False)
    target_group_key = Column(String(64), index=True, nullable=False)
    confidence = Column(Float, nullable=False)
    support = Column(Integer, nullable=False, default=0)
    last_updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("workspace_id", "source_group_key", "target_group_key"),
    )


class AlertCorrelation(Base):
    """Scored edge between two specific incident groups"""
    __tablename__ = "alert_correlations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    primary_alert_id = Column(String, ForeignKey("alert_groups.id"), index=True, nullable=False)
    related_alert_id = Column(String, ForeignKey("alert_groups.id"), index=True, nullable=False)
    score = Column(Float, nullable=False)
    reason = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    primary_alert = relationship("IncidentGroup", foreign_keys=[primary_alert_id])
    related_alert = relationship("IncidentGroup", foreign_keys=[related_alert_id])

    __table_args__ = (
        UniqueConstraint("primary_alert_id", "related_alert_id"),
    )


class AuditLog(Base):
    """Audit facts emitted by the engines, hash-chained per table"""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ts = Column(DateTime, default=datetime.utcnow, index=True, nullable=False)
    workspace_id = Column(String, index=True, nullable=False)
    actor_user_id = Column(String, nullable=False)
    action = Column(String, index=True, nullable=False)
    resource_type = Column(String, nullable=False)
    resource_id = Column(String, nullable=False)
    meta = Column("metadata", JSON, nullable=True)
    hash = Column(String(64), nullable=False)
