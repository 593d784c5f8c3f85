"""
Pydantic models for the monitoring tables.

Field names follow the monitoring schema (monitoring_records, alerts,
alert_rules). JSONB columns arrive from asyncpg as strings and are decoded
by validators so repositories can build models straight from rows.

Durations are seconds. Timestamps are timezone-aware UTC.
"""
from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Severity(str, Enum):
    """Alert severity, ordered info < warning < error < critical."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    @classmethod
    def highest(cls, levels) -> "Severity":
        """Highest severity among levels (INFO when empty)."""
        return max((cls(level) for level in levels), key=lambda s: s.rank, default=cls.INFO)


_SEVERITY_ORDER = [Severity.INFO, Severity.WARNING, Severity.ERROR, Severity.CRITICAL]


def _decode_json(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


# =============================================================================
# TELEMETRY
# =============================================================================


class MonitoringRecord(BaseModel):
    """One telemetry sample for a source. Append-only."""

    id: Optional[str] = None
    source: str
    timestamp: datetime
    status: Optional[str] = None  # 'healthy', 'degraded', 'unhealthy'
    response_time: Optional[float] = None  # milliseconds
    error: Optional[str] = None
    metrics: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("metrics", "metadata", mode="before")
    @classmethod
    def _decode_maps(cls, v: Any) -> Any:
        return _decode_json(v) or {}

    def value_of(self, metric: str) -> Any:
        """Metric value by name, falling back to the record's own columns."""
        value = self.metrics.get(metric)
        if value is not None:
            return value
        column = RECORD_COLUMNS.get(metric)
        return getattr(self, column) if column else None


# Metric names that may refer to record columns instead of the metrics map
RECORD_COLUMNS = {
    "responseTime": "response_time",
    "response_time": "response_time",
    "status": "status",
    "error": "error",
}


# =============================================================================
# ALERTS
# =============================================================================


class Alert(BaseModel):
    """
    A raised alert.

    Never edited after creation except by resolution; corrections and
    escalations are new alerts. Use model_copy(update=...) to derive one.
    """

    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    level: Severity
    title: str
    message: str
    source: str
    timestamp: datetime
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def _decode_metadata(cls, v: Any) -> Any:
        return _decode_json(v) or {}

    @property
    def rule_id(self) -> Optional[str]:
        return self.metadata.get("rule_id")


class AlertRule(BaseModel):
    """
    Declarative alert rule.

    condition is the serialized JSON condition as stored; it is parsed at
    evaluation time so one malformed rule cannot break the others.
    """

    id: str
    name: str
    source: str
    condition: str
    threshold: float
    duration: float = 0.0  # seconds the condition must have been alerting
    severity: Severity = Severity.WARNING
    enabled: bool = True
    notifications: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("condition", mode="before")
    @classmethod
    def _serialize_condition(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return json.dumps(v)
        return v

    @field_validator("notifications", mode="before")
    @classmethod
    def _decode_notifications(cls, v: Any) -> Any:
        return _decode_json(v) or []
