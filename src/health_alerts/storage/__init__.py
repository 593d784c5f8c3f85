"""
Storage Layer - Async PostgreSQL access for monitoring data.

Built on asyncpg with pydantic row models.

Public API:
    Database, DatabaseConfig - Connection pool management and schema bootstrap

    Models:
        Severity - Ordered alert severity
        MonitoringRecord - Telemetry sample (monitoring_records)
        Alert - Raised alert (alerts)
        AlertRule - Declarative rule (alert_rules)

    Repositories:
        MonitoringRecordRepository, RecordQuery
        AlertRepository, AlertQuery
        AlertRuleRepository

    PostgresMonitoringStore - The repositories bundled for the alert engine
"""
from health_alerts.storage.database import Database, DatabaseConfig
from health_alerts.storage.models import Alert, AlertRule, MonitoringRecord, Severity
from health_alerts.storage.repositories import (
    AlertQuery,
    AlertRepository,
    AlertRuleRepository,
    MonitoringRecordRepository,
    RecordQuery,
)
from health_alerts.storage.store import PostgresMonitoringStore

__all__ = [
    # Database
    "Database",
    "DatabaseConfig",
    # Models
    "Severity",
    "MonitoringRecord",
    "Alert",
    "AlertRule",
    # Repositories
    "MonitoringRecordRepository",
    "RecordQuery",
    "AlertRepository",
    "AlertQuery",
    "AlertRuleRepository",
    "PostgresMonitoringStore",
]
