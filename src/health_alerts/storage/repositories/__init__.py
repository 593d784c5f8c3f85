"""
Repository exports.
"""
from health_alerts.storage.repositories.alert_repo import AlertQuery, AlertRepository
from health_alerts.storage.repositories.record_repo import (
    MonitoringRecordRepository,
    RecordQuery,
)
from health_alerts.storage.repositories.rule_repo import AlertRuleRepository

__all__ = [
    # Telemetry
    "MonitoringRecordRepository",
    "RecordQuery",
    # Alerts
    "AlertRepository",
    "AlertQuery",
    # Rules
    "AlertRuleRepository",
]
