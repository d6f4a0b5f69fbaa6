"""
Normalized alert input model
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class NormalizedAlert(BaseModel):
    """Alert produced by the external normalization step"""
    model_config = ConfigDict(frozen=True)

    source: str = Field(..., description="Monitoring tool the alert came from")
    source_event_id: str = Field(..., description="Event identifier in the source tool")
    project: str
    environment: str
    fingerprint: str = Field(..., description="Opaque condition identifier")
    title: str
    message: str = ""
    severity: str = Field("INFO", description="Free-form severity, normalized by the core")
    tags: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime
    user_count: Optional[int] = Field(None, ge=0)
    link: Optional[str] = None

    @field_validator("occurred_at")
    @classmethod
    def _naive_utc(cls, value: datetime) -> datetime:
        # Stored timestamps are naive UTC
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
