"""
Storage contract of the alert engine.

The engine only depends on this narrow protocol. PostgresMonitoringStore
implements it on asyncpg; tests use an in-memory fake.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol, runtime_checkable

from health_alerts.storage.models import Alert, AlertRule, MonitoringRecord
from health_alerts.storage.repositories import AlertQuery, RecordQuery


@runtime_checkable
class MonitoringRepository(Protocol):
    """Everything the engine reads and writes."""

    async def query_records(self, q: RecordQuery) -> list[MonitoringRecord]:
        """Records matching the filter, oldest first."""
        ...

    async def query_alerts(self, q: AlertQuery) -> list[Alert]:
        """Alerts matching the filter, newest first."""
        ...

    async def save_alert(self, alert: Alert) -> str:
        """Persist a new alert and return its id."""
        ...

    async def resolve_alert(self, alert_id: str, resolved_at: Optional[datetime] = None) -> bool:
        """Resolve an alert. False if it was already resolved or unknown."""
        ...

    async def list_rules(self) -> list[AlertRule]:
        ...

    async def save_rule(self, rule: AlertRule) -> AlertRule:
        ...

    async def set_rule_enabled(self, rule_id: str, enabled: bool) -> bool:
        ...

    async def delete_rule(self, rule_id: str) -> bool:
        ...
