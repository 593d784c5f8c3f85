"""
Rule evaluation.

Turns one AlertRule plus the current health snapshot, trend summaries and
stored records into an EvaluationResult. Conditions are stored as JSON
(camelCase keys, durations in milliseconds) and parsed per evaluation so a
malformed rule fails alone.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from statistics import fmean
from typing import Any, Dict, Iterable, Mapping, Optional, Union

from pydantic import TypeAdapter, ValidationError

from health_alerts.alerting.models import (
    Aggregation,
    AlertCondition,
    ComparisonCondition,
    ContainsCondition,
    EqualityCondition,
    EvaluationResult,
    SystemHealth,
    TrendAnalysis,
    TrendCondition,
)
from health_alerts.alerting.repository import MonitoringRepository
from health_alerts.storage.models import AlertRule
from health_alerts.storage.repositories import AlertQuery, RecordQuery

logger = logging.getLogger(__name__)

DURATION_NOT_MET = " (duration condition not met)"

_condition_adapter: TypeAdapter = TypeAdapter(AlertCondition)

# Service fields addressable by metric name on a ServiceHealth
_SERVICE_FIELDS = {
    "responseTime": "response_time",
    "response_time": "response_time",
    "status": "status",
    "error": "error",
}


class RuleEvaluationError(Exception):
    """A rule could not be evaluated this tick."""

    def __init__(self, rule_id: str, reason: str) -> None:
        self.rule_id = rule_id
        self.reason = reason
        super().__init__(f"Rule {rule_id}: {reason}")


class ConditionParseError(RuleEvaluationError):
    """Stored condition is not valid JSON or not a known condition shape."""


def parse_condition(raw: Union[str, Mapping[str, Any]], rule_id: str = "?") -> AlertCondition:
    """
    Parse a stored condition into its typed variant.

    Accepts `timeWindow` or `time_window` in milliseconds. For `contains`
    the substring may be given as `pattern` or `value`.
    """
    if isinstance(raw, str):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConditionParseError(rule_id, f"invalid condition JSON: {e}") from e
    else:
        data = dict(raw)

    if not isinstance(data, dict):
        raise ConditionParseError(rule_id, "condition must be a JSON object")

    window_ms = data.pop("timeWindow", None)
    if window_ms is None:
        window_ms = data.pop("time_window", None)
    if window_ms is not None:
        if not isinstance(window_ms, (int, float)) or isinstance(window_ms, bool):
            raise ConditionParseError(rule_id, f"timeWindow must be a number, got {window_ms!r}")
        data["time_window"] = window_ms / 1000.0

    if data.get("operator") == "contains" and "pattern" not in data and data.get("value") is not None:
        data["pattern"] = str(data["value"])

    try:
        return _condition_adapter.validate_python(data)
    except ValidationError as e:
        raise ConditionParseError(rule_id, f"invalid condition: {e.errors()[0]['msg']}") from e


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def aggregate(values: Iterable[Any], aggregation: Aggregation) -> Any:
    """
    Reduce window samples.

    None samples are ignored. Numeric reductions drop non-numeric samples.
    Empty input gives None for everything except count, which gives 0.
    """
    present = [v for v in values if v is not None]
    if aggregation == Aggregation.COUNT:
        return len(present)
    if aggregation == Aggregation.LATEST:
        return present[-1] if present else None

    numbers = [float(v) for v in present if _is_number(v)]
    if not numbers:
        return None
    if aggregation == Aggregation.AVG:
        return fmean(numbers)
    if aggregation == Aggregation.SUM:
        return sum(numbers)
    if aggregation == Aggregation.MAX:
        return max(numbers)
    return min(numbers)


class RuleEvaluator:
    """
    Evaluates alert rules.

    Only reads from the repository: windowed records for metric values and
    recent alerts for duration gating.

    Usage:
        evaluator = RuleEvaluator(repository)
        result = await evaluator.evaluate(rule, health, trends)
        if result.triggered:
            ...
    """

    def __init__(self, repository: MonitoringRepository) -> None:
        self.repository = repository

    async def evaluate(
        self,
        rule: AlertRule,
        health: SystemHealth,
        trends: Optional[Dict[str, TrendAnalysis]] = None,
        now: Optional[datetime] = None,
    ) -> EvaluationResult:
        """
        Evaluate one rule.

        Raises:
            RuleEvaluationError: malformed condition or repository failure
        """
        now = now or datetime.now(timezone.utc)
        condition = parse_condition(rule.condition, rule.id)

        try:
            if isinstance(condition, TrendCondition):
                triggered, value, threshold, message = self._check_trend(
                    rule, condition, (trends or {}).get(rule.source)
                )
            else:
                value = await self.extract_metric(rule, condition, health, now)
                triggered, threshold, message = self._check_value(rule, condition, value)

            if triggered and rule.duration > 0 and not await self._held_for_duration(rule, now):
                triggered = False
                message += DURATION_NOT_MET
        except RuleEvaluationError:
            raise
        except Exception as e:
            raise RuleEvaluationError(rule.id, f"evaluation failed: {e}") from e

        return EvaluationResult(
            rule_id=rule.id,
            rule_name=rule.name,
            triggered=triggered,
            severity=rule.severity,
            message=message,
            value=value,
            threshold=threshold,
            metadata={
                "condition": condition.model_dump(mode="json"),
                "source": rule.source,
                "evaluation_time": now.isoformat(),
            },
            timestamp=now,
        )

    async def extract_metric(
        self,
        rule: AlertRule,
        condition: Union[ComparisonCondition, EqualityCondition, ContainsCondition],
        health: SystemHealth,
        now: datetime,
    ) -> Any:
        """
        Current value of the condition's metric.

        Looks at the live snapshot first (a service named like the metric,
        then, for latest-value conditions, a field of the rule's own
        service) and falls back to aggregating stored records in the
        condition's time window.
        """
        metric = condition.metric
        aggregation = getattr(condition, "aggregation", Aggregation.LATEST)

        service = health.services.get(metric)
        if service is not None:
            return service.response_time if service.response_time is not None else service.status

        if aggregation == Aggregation.LATEST:
            own = health.services.get(rule.source)
            if own is not None:
                attr = _SERVICE_FIELDS.get(metric)
                value = getattr(own, attr) if attr else own.metadata.get(metric)
                if value is not None:
                    return value

        records = await self.repository.query_records(
            RecordQuery(
                source=rule.source,
                start_time=now - timedelta(seconds=condition.time_window),
                end_time=now,
            )
        )
        return aggregate((r.value_of(metric) for r in records), aggregation)

    def _check_value(self, rule, condition, value):
        metric = condition.metric

        if isinstance(condition, ComparisonCondition):
            threshold = condition.threshold if condition.threshold is not None else rule.threshold
            if not _is_number(value):
                return False, threshold, f"{metric} has no numeric data"
            return (
                condition.compare(float(value), threshold),
                threshold,
                f"{metric} is {value} (threshold: {threshold})",
            )

        if isinstance(condition, EqualityCondition):
            equal = value == condition.value
            triggered = equal if condition.operator == "eq" else not equal
            return triggered, rule.threshold, f"{metric} is {value} (expected: {condition.value})"

        if value is None:
            return False, rule.threshold, f"{metric} has no data"
        return (
            condition.pattern in str(value),
            rule.threshold,
            f'{metric} contains "{condition.pattern}"',
        )

    def _check_trend(self, rule, condition, trend):
        threshold = condition.threshold if condition.threshold is not None else rule.threshold
        slope = trend.slope(condition.metric) if trend is not None else None
        if slope is None:
            return False, None, threshold, f"{condition.metric} has no trend data"

        if condition.operator == "trend_up":
            triggered = slope > threshold
        else:
            triggered = slope < -threshold
        return triggered, slope, threshold, f"{condition.metric} trend is {slope:.2f} (threshold: {threshold})"

    async def _held_for_duration(self, rule: AlertRule, now: datetime) -> bool:
        """True if this rule already has an unresolved alert within the duration."""
        recent = await self.repository.query_alerts(
            AlertQuery(
                source=rule.source,
                start_time=now - timedelta(seconds=rule.duration),
                end_time=now,
                resolved=False,
            )
        )
        held = any(a.rule_id == rule.id for a in recent)
        if not held:
            logger.debug(f"Rule {rule.id} triggered but duration {rule.duration}s not yet met")
        return held
