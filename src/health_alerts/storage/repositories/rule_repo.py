"""
Alert rule repository.

The alert_rules.duration column holds milliseconds; models carry seconds.
"""
from __future__ import annotations

import logging
from typing import Optional

from health_alerts.storage.models import AlertRule
from health_alerts.storage.repositories.base import BaseRepository

logger = logging.getLogger(__name__)


class AlertRuleRepository(BaseRepository[AlertRule]):
    """Repository for the alert_rules table."""

    table_name = "alert_rules"
    model_class = AlertRule

    def _record_to_model(self, record) -> Optional[AlertRule]:
        if record is None:
            return None
        data = dict(record)
        data["duration"] = (data.get("duration") or 0) / 1000.0
        return AlertRule(**data)

    async def list_all(self, enabled_only: bool = False) -> list[AlertRule]:
        """All rules, oldest first."""
        where_clause = "WHERE enabled = TRUE" if enabled_only else ""
        rows = await self.db.fetch(
            f"SELECT * FROM alert_rules {where_clause} ORDER BY created_at, id"
        )
        return self._records_to_models(rows)

    async def upsert(self, rule: AlertRule) -> AlertRule:
        """Insert a rule, or replace the stored definition with the same id."""
        query = """
            INSERT INTO alert_rules
            (id, name, source, condition, threshold, duration, severity, enabled, notifications)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            ON CONFLICT (id) DO UPDATE SET
                name = EXCLUDED.name,
                source = EXCLUDED.source,
                condition = EXCLUDED.condition,
                threshold = EXCLUDED.threshold,
                duration = EXCLUDED.duration,
                severity = EXCLUDED.severity,
                enabled = EXCLUDED.enabled,
                notifications = EXCLUDED.notifications,
                updated_at = CURRENT_TIMESTAMP
            RETURNING *
        """
        row = await self.db.fetchrow(
            query,
            rule.id,
            rule.name,
            rule.source,
            rule.condition,
            rule.threshold,
            int(rule.duration * 1000),
            rule.severity.value,
            rule.enabled,
            self._to_json(rule.notifications),
        )
        return self._record_to_model(row) if row else rule

    async def set_enabled(self, rule_id: str, enabled: bool) -> bool:
        """Enable or disable a rule. Returns False if the rule does not exist."""
        result = await self.db.execute(
            """
            UPDATE alert_rules SET enabled = $2, updated_at = CURRENT_TIMESTAMP
            WHERE id = $1
            """,
            rule_id,
            enabled,
        )
        return result != "UPDATE 0"
