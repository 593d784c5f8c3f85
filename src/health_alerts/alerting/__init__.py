"""
Alerting layer.

Rule evaluation, anomaly detection, aggregation, silences, escalation and
notification dispatch, orchestrated by AlertEngine.
"""
from health_alerts.alerting.aggregator import AlertAggregator
from health_alerts.alerting.anomaly import AnomalyDetector
from health_alerts.alerting.clock import AsyncioClock, Clock
from health_alerts.alerting.config_store import ConfigStore
from health_alerts.alerting.engine import AlertEngine, RepositoryUnavailableError
from health_alerts.alerting.escalation import EscalationScheduler
from health_alerts.alerting.evaluator import (
    ConditionParseError,
    RuleEvaluationError,
    RuleEvaluator,
    parse_condition,
)
from health_alerts.alerting.models import (
    Aggregation,
    AggregationConfig,
    AnomalyDetectionResult,
    AnomalyType,
    EscalationConfig,
    EscalationLevel,
    EvaluationResult,
    MetricTrend,
    ServiceHealth,
    SilenceConfig,
    SystemHealth,
    TrendAnalysis,
)
from health_alerts.alerting.notifications import (
    DispatchError,
    DispatchResult,
    NotificationDispatcher,
    TelegramChannel,
)
from health_alerts.alerting.repository import MonitoringRepository
from health_alerts.alerting.silence import SilenceFilter

__all__ = [
    "Aggregation",
    "AggregationConfig",
    "AlertAggregator",
    "AlertEngine",
    "AnomalyDetectionResult",
    "AnomalyDetector",
    "AnomalyType",
    "AsyncioClock",
    "Clock",
    "ConditionParseError",
    "ConfigStore",
    "DispatchError",
    "DispatchResult",
    "EscalationConfig",
    "EscalationLevel",
    "EscalationScheduler",
    "EvaluationResult",
    "MetricTrend",
    "MonitoringRepository",
    "NotificationDispatcher",
    "RepositoryUnavailableError",
    "RuleEvaluationError",
    "RuleEvaluator",
    "ServiceHealth",
    "SilenceConfig",
    "SilenceFilter",
    "SystemHealth",
    "TelegramChannel",
    "TrendAnalysis",
    "parse_condition",
]
