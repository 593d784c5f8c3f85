"""
Monitoring record repository.

Append-only telemetry samples. Window queries return samples oldest first
so trend and statistics code can rely on timestamp order.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from health_alerts.storage.models import MonitoringRecord
from health_alerts.storage.repositories.base import BaseRepository

logger = logging.getLogger(__name__)


@dataclass
class RecordQuery:
    """Filter for monitoring record range queries."""

    source: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    limit: int = 1000


class MonitoringRecordRepository(BaseRepository[MonitoringRecord]):
    """Repository for the monitoring_records table."""

    table_name = "monitoring_records"
    model_class = MonitoringRecord

    async def create(self, record: MonitoringRecord) -> MonitoringRecord:
        """Append a telemetry sample, assigning an id if it has none."""
        record_id = record.id or f"rec-{uuid.uuid4().hex}"
        query = """
            INSERT INTO monitoring_records
            (id, timestamp, source, status, metrics, metadata, response_time, error)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            RETURNING *
        """
        row = await self.db.fetchrow(
            query,
            record_id,
            record.timestamp,
            record.source,
            record.status,
            self._to_json(record.metrics),
            self._to_json(record.metadata),
            record.response_time,
            record.error,
        )
        return self._record_to_model(row) if row else record.model_copy(update={"id": record_id})

    async def query(self, q: RecordQuery) -> list[MonitoringRecord]:
        """
        Most recent records matching the filter, returned oldest first.

        The limit applies to the newest end of the window.
        """
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

        where_clause = " AND ".join(conditions) if conditions else "TRUE"
        params.append(q.limit)
        query = f"""
            SELECT * FROM (
                SELECT * FROM monitoring_records
                WHERE {where_clause}
                ORDER BY timestamp DESC
                LIMIT ${len(params)}
            ) recent
            ORDER BY timestamp ASC
        """
        rows = await self.db.fetch(query, *params)
        return self._records_to_models(rows)

    async def get_latest_per_source(self) -> list[MonitoringRecord]:
        """Newest record of every source."""
        rows = await self.db.fetch(
            """
            SELECT DISTINCT ON (source) *
            FROM monitoring_records
            ORDER BY source, timestamp DESC
            """
        )
        return self._records_to_models(rows)
