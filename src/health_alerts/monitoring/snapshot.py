"""
Health snapshot from the latest record of each source.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional, Protocol

from health_alerts.alerting.models import ServiceHealth, SystemHealth
from health_alerts.storage.models import MonitoringRecord

logger = logging.getLogger(__name__)

# Worst status wins
_STATUS_ORDER = ("healthy", "degraded", "unhealthy")


class LatestRecordSource(Protocol):
    async def latest_records(self) -> list[MonitoringRecord]:
        ...


def overall_status(statuses: Iterable[Optional[str]]) -> str:
    worst = 0
    for status in statuses:
        if status in _STATUS_ORDER:
            worst = max(worst, _STATUS_ORDER.index(status))
    return _STATUS_ORDER[worst]


def build_snapshot(records: Iterable[MonitoringRecord], now: Optional[datetime] = None) -> SystemHealth:
    services = {}
    for record in records:
        metadata = {**record.metadata, **record.metrics}
        services[record.source] = ServiceHealth(
            status=record.status or "unknown",
            response_time=record.response_time,
            metadata=metadata,
            error=record.error,
        )
    return SystemHealth(
        services=services,
        status=overall_status(s.status for s in services.values()),
        timestamp=now or datetime.now(timezone.utc),
    )


class HealthSnapshotBuilder:
    """
    Builds the SystemHealth input for an evaluation tick.

    Usage:
        builder = HealthSnapshotBuilder(store)
        health = await builder.build()
    """

    def __init__(self, store: LatestRecordSource) -> None:
        self.store = store

    async def build(self, now: Optional[datetime] = None) -> SystemHealth:
        records = await self.store.latest_records()
        health = build_snapshot(records, now)
        logger.debug(f"Health snapshot: {len(health.services)} services, overall {health.status}")
        return health
