"""
Alert repository.

Alerts are inserted once and afterwards only resolved. Resolution is
idempotent: resolving an already resolved alert leaves resolved_at alone.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from health_alerts.storage.models import Alert, Severity
from health_alerts.storage.repositories.base import BaseRepository

logger = logging.getLogger(__name__)


@dataclass
class AlertQuery:
    """Filter for alert queries."""

    source: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    resolved: Optional[bool] = None
    level: Optional[Severity] = None
    alert_ids: list[str] = field(default_factory=list)
    limit: int = 1000


class AlertRepository(BaseRepository[Alert]):
    """Repository for the alerts table."""

    table_name = "alerts"
    model_class = Alert

    async def create(self, alert: Alert) -> str:
        """Persist a new alert and return its id."""
        alert_id = alert.id or f"alert-{uuid.uuid4().hex}"
        query = """
            INSERT INTO alerts
            (id, level, title, message, source, timestamp, resolved, resolved_at, metadata)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
        """
        await self.db.execute(
            query,
            alert_id,
            alert.level.value,
            alert.title,
            alert.message,
            alert.source,
            alert.timestamp,
            alert.resolved,
            alert.resolved_at,
            self._to_json(alert.metadata),
        )
        logger.debug(f"Saved alert {alert_id}: {alert.title}")
        return alert_id

    async def resolve(self, alert_id: str, resolved_at: Optional[datetime] = None) -> bool:
        """
        Mark an alert resolved.

        Returns True if this call resolved it, False if it was already
        resolved or does not exist.
        """
        resolved_at = resolved_at or datetime.now(timezone.utc)
        result = await self.db.execute(
            """
            UPDATE alerts SET resolved = TRUE, resolved_at = $2
            WHERE id = $1 AND resolved = FALSE
            """,
            alert_id,
            resolved_at,
        )
        return result != "UPDATE 0"

    async def query(self, q: AlertQuery) -> list[Alert]:
        """Alerts matching the filter, newest first."""
        conditions = []
        params: list = []

        if q.source is not None:
            params.append(q.source)
            conditions.append(f"source = ${len(params)}")
        if q.start_time is not None:
            params.append(q.start_time)
            conditions.append(f"timestamp >= ${len(params)}")
        if q.end_time is not None:
            params.append(q.end_time)
            conditions.append(f"timestamp <= ${len(params)}")
        if q.resolved is not None:
            params.append(q.resolved)
            conditions.append(f"resolved = ${len(params)}")
        if q.level is not None:
            params.append(Severity(q.level).value)
            conditions.append(f"level = ${len(params)}")
        if q.alert_ids:
            params.append(list(q.alert_ids))
            conditions.append(f"id = ANY(${len(params)})")

        where_clause = " AND ".join(conditions) if conditions else "TRUE"
        params.append(q.limit)
        query = f"""
            SELECT * FROM alerts
            WHERE {where_clause}
            ORDER BY timestamp DESC
            LIMIT ${len(params)}
        """
        rows = await self.db.fetch(query, *params)
        return self._records_to_models(rows)
