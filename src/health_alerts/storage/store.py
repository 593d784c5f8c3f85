"""
PostgreSQL-backed monitoring store.

Bundles the record, alert and rule repositories behind the single object
the alert engine talks to.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from health_alerts.storage.database import Database
from health_alerts.storage.models import Alert, AlertRule, MonitoringRecord
from health_alerts.storage.repositories import (
    AlertQuery,
    AlertRepository,
    AlertRuleRepository,
    MonitoringRecordRepository,
    RecordQuery,
)

logger = logging.getLogger(__name__)


class PostgresMonitoringStore:
    """
    Monitoring storage on PostgreSQL.

    Usage:
        db = Database(DatabaseConfig())
        await db.initialize()
        store = PostgresMonitoringStore(db)

        rules = await store.list_rules()
        alert_id = await store.save_alert(alert)
        await store.resolve_alert(alert_id)
    """

    def __init__(self, db: Database) -> None:
        self.db = db
        self.records = MonitoringRecordRepository(db)
        self.alerts = AlertRepository(db)
        self.rules = AlertRuleRepository(db)

    async def query_records(self, q: RecordQuery) -> list[MonitoringRecord]:
        return await self.records.query(q)

    async def save_record(self, record: MonitoringRecord) -> MonitoringRecord:
        return await self.records.create(record)

    async def latest_records(self) -> list[MonitoringRecord]:
        return await self.records.get_latest_per_source()

    async def query_alerts(self, q: AlertQuery) -> list[Alert]:
        return await self.alerts.query(q)

    async def save_alert(self, alert: Alert) -> str:
        return await self.alerts.create(alert)

    async def resolve_alert(self, alert_id: str, resolved_at: Optional[datetime] = None) -> bool:
        return await self.alerts.resolve(alert_id, resolved_at)

    async def list_rules(self) -> list[AlertRule]:
        return await self.rules.list_all()

    async def save_rule(self, rule: AlertRule) -> AlertRule:
        return await self.rules.upsert(rule)

    async def set_rule_enabled(self, rule_id: str, enabled: bool) -> bool:
        return await self.rules.set_enabled(rule_id, enabled)

    async def delete_rule(self, rule_id: str) -> bool:
        return await self.rules.delete(rule_id)
