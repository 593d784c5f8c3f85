"""
Shared test fixtures.

Component-specific fixtures live in src/health_alerts/{component}/tests/conftest.py.
This file provides the in-memory repository and manual clock that every
layer above storage is tested against.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional

import pytest

from health_alerts.storage.models import Alert, AlertRule, MonitoringRecord, Severity
from health_alerts.storage.repositories import AlertQuery, RecordQuery


BASE_TIME = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# In-memory repository
# =============================================================================


class FakeRepository:
    """MonitoringRepository kept in memory."""

    def __init__(self) -> None:
        self.records: List[MonitoringRecord] = []
        self.alerts: Dict[str, Alert] = {}
        self.rules: Dict[str, AlertRule] = {}
        self.fail_list_rules = False
        self.fail_save_alert = False
        self._next_id = 0

    # Test helpers

    def add_series(
        self,
        source: str,
        metric: str,
        values: Iterable,
        end: datetime = BASE_TIME,
        step: timedelta = timedelta(seconds=1),
    ) -> None:
        """Append samples ending at `end`, one per step."""
        values = list(values)
        for i, value in enumerate(values):
            self.records.append(
                MonitoringRecord(
                    source=source,
                    timestamp=end - step * (len(values) - 1 - i),
                    metrics={metric: value},
                )
            )

    def alerts_where(self, **fields) -> List[Alert]:
        return [a for a in self.alerts.values() if all(getattr(a, k) == v for k, v in fields.items())]

    # MonitoringRepository

    async def query_records(self, q: RecordQuery) -> List[MonitoringRecord]:
        matched = [
            r
            for r in self.records
            if (q.source is None or r.source == q.source)
            and (q.start_time is None or r.timestamp >= q.start_time)
            and (q.end_time is None or r.timestamp <= q.end_time)
        ]
        matched.sort(key=lambda r: r.timestamp)
        return matched[-q.limit:]

    async def latest_records(self) -> List[MonitoringRecord]:
        latest: Dict[str, MonitoringRecord] = {}
        for record in sorted(self.records, key=lambda r: r.timestamp):
            latest[record.source] = record
        return list(latest.values())

    async def query_alerts(self, q: AlertQuery) -> List[Alert]:
        matched = [
            a
            for a in self.alerts.values()
            if (q.source is None or a.source == q.source)
            and (q.start_time is None or a.timestamp >= q.start_time)
            and (q.end_time is None or a.timestamp <= q.end_time)
            and (q.resolved is None or a.resolved == q.resolved)
            and (q.level is None or a.level == q.level)
            and (not q.alert_ids or a.id in q.alert_ids)
        ]
        matched.sort(key=lambda a: a.timestamp, reverse=True)
        return matched[: q.limit]

    async def save_alert(self, alert: Alert) -> str:
        if self.fail_save_alert:
            raise ConnectionError("database unavailable")
        self._next_id += 1
        alert_id = alert.id or f"alert-{self._next_id}"
        # Round-trip metadata through JSON like the JSONB column does
        metadata = json.loads(json.dumps(alert.metadata, default=str))
        self.alerts[alert_id] = alert.model_copy(update={"id": alert_id, "metadata": metadata})
        return alert_id

    async def resolve_alert(self, alert_id: str, resolved_at: Optional[datetime] = None) -> bool:
        alert = self.alerts.get(alert_id)
        if alert is None or alert.resolved:
            return False
        self.alerts[alert_id] = alert.model_copy(
            update={"resolved": True, "resolved_at": resolved_at or BASE_TIME}
        )
        return True

    async def list_rules(self) -> List[AlertRule]:
        if self.fail_list_rules:
            raise ConnectionError("database unavailable")
        return list(self.rules.values())

    async def save_rule(self, rule: AlertRule) -> AlertRule:
        self.rules[rule.id] = rule
        return rule

    async def set_rule_enabled(self, rule_id: str, enabled: bool) -> bool:
        rule = self.rules.get(rule_id)
        if rule is None:
            return False
        self.rules[rule_id] = rule.model_copy(update={"enabled": enabled})
        return True

    async def delete_rule(self, rule_id: str) -> bool:
        return self.rules.pop(rule_id, None) is not None


# =============================================================================
# Manual clock
# =============================================================================


@dataclass
class ManualTimer:
    due: datetime
    callback: Callable[[], None]
    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualClock:
    """Clock whose time only moves on advance(). Timers fire synchronously."""

    def __init__(self, start: datetime = BASE_TIME) -> None:
        self._now = start
        self.timers: List[ManualTimer] = []

    def now(self) -> datetime:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> ManualTimer:
        timer = ManualTimer(self._now + timedelta(seconds=delay), callback)
        self.timers.append(timer)
        return timer

    @property
    def pending(self) -> List[ManualTimer]:
        return [t for t in self.timers if not t.cancelled]

    def advance(self, seconds: float) -> None:
        target = self._now + timedelta(seconds=seconds)
        while True:
            due = sorted(
                (t for t in self.timers if not t.cancelled and t.due <= target),
                key=lambda t: t.due,
            )
            if not due:
                break
            timer = due[0]
            self.timers.remove(timer)
            self._now = timer.due
            timer.callback()
        self._now = target


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def base_time() -> datetime:
    return BASE_TIME


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def make_rule() -> Callable[..., AlertRule]:
    """Factory for rules with sensible defaults."""

    def _make(
        rule_id: str = "rule-1",
        condition: Optional[dict] = None,
        threshold: float = 100.0,
        source: str = "api",
        **overrides,
    ) -> AlertRule:
        return AlertRule(
            id=rule_id,
            name=overrides.pop("name", f"Rule {rule_id}"),
            source=source,
            condition=condition or {"metric": "cpu", "operator": "gt"},
            threshold=threshold,
            severity=overrides.pop("severity", Severity.WARNING),
            **overrides,
        )

    return _make


@pytest.fixture
def make_alert(base_time) -> Callable[..., Alert]:
    """Factory for alerts with sensible defaults."""

    def _make(source: str = "api", level: Severity = Severity.WARNING, **overrides) -> Alert:
        return Alert(
            level=level,
            title=overrides.pop("title", f"{source} alert"),
            message=overrides.pop("message", f"{source} is unhappy"),
            source=source,
            timestamp=overrides.pop("timestamp", base_time),
            **overrides,
        )

    return _make
