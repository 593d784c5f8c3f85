"""
Threshold-free anomaly detection.

Scores the newest sample of a metric against the whole window (z-score over
population standard deviation) and classifies what kind of anomaly it looks
like: drop, trend change, broken seasonal pattern, or spike.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from statistics import fmean, pstdev
from typing import Any, Optional, Sequence

from health_alerts.alerting.models import AnomalyDetectionResult, AnomalyType
from health_alerts.alerting.repository import MonitoringRepository
from health_alerts.storage.repositories import RecordQuery

logger = logging.getLogger(__name__)

MIN_SAMPLES = 10
MAX_SAMPLES = 1000
Z_THRESHOLD = 2.5
DEFAULT_WINDOW = 24 * 60 * 60.0  # seconds

TREND_MIN_SAMPLES = 20
TREND_SLOPE_DELTA = 0.5
PATTERN_MIN_SAMPLES = 50
PATTERN_PERIODS = (7, 24, 12)  # weekly, daily, half-daily in sample units
PATTERN_AUTOCORRELATION = 0.7
PATTERN_DEVIATION = 2.0


def linear_trend(values: Sequence[float]) -> float:
    """Least-squares slope of values against their index."""
    n = len(values)
    if n < 2:
        return 0.0
    sum_x = n * (n - 1) / 2
    sum_x2 = (n - 1) * n * (2 * n - 1) / 6
    sum_y = sum(values)
    sum_xy = sum(i * y for i, y in enumerate(values))
    denominator = n * sum_x2 - sum_x * sum_x
    if denominator == 0:
        return 0.0
    return (n * sum_xy - sum_x * sum_y) / denominator


def autocorrelation(values: Sequence[float], lag: int) -> float:
    n = len(values)
    if n <= lag:
        return 0.0
    mean = fmean(values)
    variance = sum((v - mean) ** 2 for v in values)
    if variance == 0:
        return 0.0
    covariance = sum((values[i] - mean) * (values[i + lag] - mean) for i in range(n - lag))
    return covariance / variance


def pattern_deviation(values: Sequence[float], period: int) -> float:
    """
    RMS difference in shape between the last period and the one before.

    Each period is centered on its own mean first, so a level shift alone
    does not count as a deviation.
    """
    if len(values) < 2 * period:
        return 0.0
    recent = values[-period:]
    previous = values[-2 * period:-period]
    recent_mean = fmean(recent)
    previous_mean = fmean(previous)
    squared = sum(
        ((a - recent_mean) - (b - previous_mean)) ** 2 for a, b in zip(recent, previous)
    )
    return math.sqrt(squared / period)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


class AnomalyDetector:
    """
    Statistical anomaly detector over stored monitoring records.

    Read-only: never writes alerts. Callers wrap a positive result into an
    Alert if they want one.

    Usage:
        detector = AnomalyDetector(repository)
        result = await detector.detect("api", "responseTime")
        if result and result.is_anomaly:
            ...
    """

    def __init__(self, repository: MonitoringRepository) -> None:
        self.repository = repository

    async def detect(
        self,
        source: str,
        metric: str,
        window: float = DEFAULT_WINDOW,
        now: Optional[datetime] = None,
    ) -> Optional[AnomalyDetectionResult]:
        """Check the newest sample of source/metric. None if fewer than 10 samples."""
        now = now or datetime.now(timezone.utc)
        records = await self.repository.query_records(
            RecordQuery(
                source=source,
                start_time=now - timedelta(seconds=window),
                end_time=now,
                limit=MAX_SAMPLES,
            )
        )
        values = [float(v) for v in (r.value_of(metric) for r in records) if _is_number(v)]
        result = self.analyze(values)
        if result is not None and result.is_anomaly:
            logger.info(
                f"Anomaly in {source}.{metric}: {result.type.value} "
                f"(z={result.z_score:.2f}, value={result.actual_value})"
            )
        return result

    def analyze(self, values: Sequence[float]) -> Optional[AnomalyDetectionResult]:
        """Score the last value of an ordered series."""
        if len(values) < MIN_SAMPLES:
            return None

        mean = fmean(values)
        std = pstdev(values, mu=mean)
        current = values[-1]
        z_score = abs(current - mean) / std if std > 0 else 0.0

        return AnomalyDetectionResult(
            is_anomaly=z_score > Z_THRESHOLD,
            confidence=min(1.0, z_score / 3),
            expected_value=mean,
            actual_value=current,
            deviation=abs(current - mean),
            z_score=z_score,
            type=self._classify(values, mean, std),
        )

    def _classify(self, values: Sequence[float], mean: float, std: float) -> AnomalyType:
        if values[-1] < mean - 2 * std:
            return AnomalyType.DROP
        if self._trend_changed(values):
            return AnomalyType.TREND_CHANGE
        if self._pattern_broken(values):
            return AnomalyType.PATTERN_BREAK
        return AnomalyType.SPIKE

    def _trend_changed(self, values: Sequence[float]) -> bool:
        if len(values) < TREND_MIN_SAMPLES:
            return False
        half = len(values) // 2
        first = linear_trend(values[:half])
        second = linear_trend(values[half:])
        return first * second < 0 and abs(first - second) > TREND_SLOPE_DELTA

    def _pattern_broken(self, values: Sequence[float]) -> bool:
        if len(values) < PATTERN_MIN_SAMPLES:
            return False
        for period in PATTERN_PERIODS:
            if len(values) < period * 3:
                continue
            if autocorrelation(values, period) > PATTERN_AUTOCORRELATION:
                return pattern_deviation(values, period) > PATTERN_DEVIATION
        return False
