"""
Alerting models.

Conditions are a tagged union on `operator`: each variant carries only the
fields its operator uses. Inputs (health snapshot, trends) and results are
plain dataclasses; operator-managed configuration (silences, escalations)
is validated with pydantic.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from health_alerts.storage.models import Severity


class Aggregation(str, Enum):
    """Reduction applied to a window of samples before comparison."""

    AVG = "avg"
    MAX = "max"
    MIN = "min"
    SUM = "sum"
    COUNT = "count"
    LATEST = "latest"


class AnomalyType(str, Enum):
    SPIKE = "spike"
    DROP = "drop"
    TREND_CHANGE = "trend_change"
    PATTERN_BREAK = "pattern_break"


# =============================================================================
# CONDITIONS
# =============================================================================


class _Condition(BaseModel):
    model_config = ConfigDict(frozen=True)

    metric: str


class ComparisonCondition(_Condition):
    """Numeric comparison of an (aggregated) metric against a threshold."""

    operator: Literal["gt", "gte", "lt", "lte"]
    aggregation: Aggregation = Aggregation.LATEST
    time_window: float = Field(default=60.0, gt=0)  # seconds
    threshold: Optional[float] = None  # overrides the rule threshold when set

    def compare(self, value: float, threshold: float) -> bool:
        if self.operator == "gt":
            return value > threshold
        if self.operator == "gte":
            return value >= threshold
        if self.operator == "lt":
            return value < threshold
        return value <= threshold


class EqualityCondition(_Condition):
    """Structural (in)equality against an expected value."""

    operator: Literal["eq", "ne"]
    value: Any = None
    time_window: float = Field(default=60.0, gt=0)


class ContainsCondition(_Condition):
    """Substring match on the stringified metric value."""

    operator: Literal["contains"]
    pattern: str
    time_window: float = Field(default=60.0, gt=0)


class TrendCondition(_Condition):
    """Signed slope from the source's trend analysis against a threshold."""

    operator: Literal["trend_up", "trend_down"]
    threshold: Optional[float] = None


AlertCondition = Annotated[
    Union[ComparisonCondition, EqualityCondition, ContainsCondition, TrendCondition],
    Field(discriminator="operator"),
]


# =============================================================================
# ENGINE INPUTS
# =============================================================================


@dataclass
class ServiceHealth:
    """Live health of one service."""

    status: str
    response_time: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class SystemHealth:
    """Point-in-time health snapshot of all services."""

    services: Dict[str, ServiceHealth] = field(default_factory=dict)
    status: str = "healthy"
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class MetricTrend:
    current: float = 0.0
    trend: float = 0.0  # signed slope per sample
    prediction: float = 0.0


@dataclass
class TrendAnalysis:
    """Per-source trend summary."""

    direction: str = "stable"  # 'improving', 'stable', 'degrading'
    confidence: float = 0.0
    response_time: MetricTrend = field(default_factory=MetricTrend)
    error_rate: MetricTrend = field(default_factory=MetricTrend)
    availability: MetricTrend = field(default_factory=lambda: MetricTrend(100.0, 0.0, 100.0))

    _METRIC_FIELDS = {
        "responseTime": "response_time",
        "response_time": "response_time",
        "errorRate": "error_rate",
        "error_rate": "error_rate",
        "availability": "availability",
    }

    def slope(self, metric: str) -> Optional[float]:
        """Slope for a trend metric name, or None if the name is unknown."""
        attr = self._METRIC_FIELDS.get(metric)
        if attr is None:
            return None
        return getattr(self, attr).trend


# =============================================================================
# OPERATOR-MANAGED CONFIGURATION
# =============================================================================


class SilenceConfig(BaseModel):
    """Time-boxed suppression of matching alerts."""

    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    source: Optional[str] = None
    level: Optional[Severity] = None
    pattern: Optional[str] = None  # case-insensitive regex on message or title
    start_time: datetime
    end_time: datetime
    reason: str = ""
    created_by: str = ""
    enabled: bool = True

    @model_validator(mode="after")
    def _check_window(self) -> "SilenceConfig":
        if self.end_time < self.start_time:
            raise ValueError("end_time must not be before start_time")
        return self

    def is_active(self, now: datetime) -> bool:
        return self.enabled and self.start_time <= now <= self.end_time


class EscalationLevel(BaseModel):
    model_config = ConfigDict(frozen=True)

    level: Severity
    delay: float = Field(default=0.0, ge=0)  # seconds after the previous level fired
    notifications: List[str] = Field(default_factory=list)


class EscalationConfig(BaseModel):
    """Ordered severity ladder for alerts raised by one rule."""

    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    rule_id: str
    levels: List[EscalationLevel]
    enabled: bool = True

    def index_of(self, level: Severity) -> Optional[int]:
        for i, step in enumerate(self.levels):
            if step.level == level:
                return i
        return None


@dataclass
class AggregationConfig:
    """How a burst of alerts in one tick is collapsed."""

    enabled: bool = True
    time_window: float = 300.0  # seconds
    max_alerts: int = 10
    group_by: List[str] = field(default_factory=lambda: ["source", "level"])
    strategy: str = "severity"


# =============================================================================
# RESULTS
# =============================================================================


@dataclass
class EvaluationResult:
    """Verdict of one rule for one tick."""

    rule_id: str
    rule_name: str
    triggered: bool
    severity: Severity
    message: str
    value: Any
    threshold: float
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class AnomalyDetectionResult:
    """Outcome of a statistical check on the newest sample of a series."""

    is_anomaly: bool
    confidence: float
    expected_value: float
    actual_value: float
    deviation: float
    z_score: float
    type: AnomalyType
