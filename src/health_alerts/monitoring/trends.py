"""
Per-source trend analysis from stored monitoring records.

Looks at the most recent 50 records of a source and fits least-squares
slopes to response time, running error rate and running availability.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence

from health_alerts.alerting.anomaly import linear_trend
from health_alerts.alerting.models import MetricTrend, TrendAnalysis
from health_alerts.alerting.repository import MonitoringRepository
from health_alerts.storage.models import MonitoringRecord
from health_alerts.storage.repositories import RecordQuery

logger = logging.getLogger(__name__)

HISTORY_SIZE = 50
MIN_HISTORY = 10


def _sign(value: float) -> int:
    return (value > 0) - (value < 0)


def _running_percent(flags: Sequence[bool]) -> List[float]:
    """Percentage of True flags among the first i+1 entries, for each i."""
    result = []
    hits = 0
    for i, flag in enumerate(flags, start=1):
        hits += flag
        result.append(hits / i * 100)
    return result


def _clamp_percent(value: float) -> float:
    return max(0.0, min(100.0, value))


def summarize(records: Sequence[MonitoringRecord]) -> TrendAnalysis:
    """Trend summary of records ordered oldest first. Stable when fewer than 10."""
    if len(records) < MIN_HISTORY:
        return TrendAnalysis()

    recent = records[-HISTORY_SIZE:]
    response_times = [r.response_time or 0.0 for r in recent]
    errors = [bool(r.error) for r in recent]
    healthy = [r.status == "healthy" for r in recent]

    current_response = response_times[-1]
    current_error_rate = sum(errors) / len(recent) * 100
    current_availability = sum(healthy) / len(recent) * 100

    response_trend = linear_trend(response_times)
    error_trend = linear_trend(_running_percent(errors))
    availability_trend = linear_trend(_running_percent(healthy))

    # Lower response time and error rate are better, higher availability is better
    score = -_sign(response_trend) - _sign(error_trend) + _sign(availability_trend)
    if score > 0:
        direction = "improving"
    elif score < 0:
        direction = "degrading"
    else:
        direction = "stable"

    return TrendAnalysis(
        direction=direction,
        confidence=min(1.0, abs(score) / 3),
        response_time=MetricTrend(current_response, response_trend, current_response + response_trend),
        error_rate=MetricTrend(
            current_error_rate, error_trend, _clamp_percent(current_error_rate + error_trend)
        ),
        availability=MetricTrend(
            current_availability,
            availability_trend,
            _clamp_percent(current_availability + availability_trend),
        ),
    )


class TrendAnalyzer:
    """
    Builds TrendAnalysis inputs for the alert engine.

    Usage:
        analyzer = TrendAnalyzer(store)
        trends = await analyzer.analyze_all(["api", "database"])
    """

    def __init__(self, repository: MonitoringRepository) -> None:
        self.repository = repository

    async def analyze(self, source: str, now: Optional[datetime] = None) -> TrendAnalysis:
        now = now or datetime.now(timezone.utc)
        records = await self.repository.query_records(
            RecordQuery(source=source, end_time=now, limit=HISTORY_SIZE)
        )
        trend = summarize(records)
        if trend.direction == "degrading":
            logger.debug(f"{source} is degrading (confidence {trend.confidence:.2f})")
        return trend

    async def analyze_all(
        self,
        sources: Iterable[str],
        now: Optional[datetime] = None,
    ) -> Dict[str, TrendAnalysis]:
        return {source: await self.analyze(source, now) for source in sources}
