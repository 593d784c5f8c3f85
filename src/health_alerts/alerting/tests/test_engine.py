"""
Tests for AlertEngine.

End-to-end ticks against the in-memory repository and manual clock:
evaluation, silences, aggregation, persistence, escalation, notification.
"""
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from health_alerts.alerting.engine import AlertEngine, RepositoryUnavailableError
from health_alerts.alerting.evaluator import ConditionParseError
from health_alerts.alerting.models import (
    AggregationConfig,
    AnomalyDetectionResult,
    AnomalyType,
    EscalationConfig,
    EscalationLevel,
    ServiceHealth,
    SilenceConfig,
    SystemHealth,
)
from health_alerts.storage.models import Severity


@pytest.fixture
def mock_dispatcher():
    dispatcher = MagicMock()
    dispatcher.send = AsyncMock(return_value=[])
    return dispatcher


@pytest.fixture
def engine(repository, mock_dispatcher, clock):
    return AlertEngine(repository, mock_dispatcher, clock=clock)


@pytest.fixture
def slow_database():
    return SystemHealth(services={"database": ServiceHealth(status="degraded", response_time=1500)})


@pytest.fixture
def slow_rule(make_rule):
    return make_rule(
        rule_id="db-slow",
        name="Slow Database",
        source="database",
        condition={"metric": "responseTime", "operator": "gt"},
        threshold=1000,
    )


class TestEvaluateAlerts:
    """One tick end to end."""

    @pytest.mark.asyncio
    async def test_triggered_rule_is_saved_and_sent(
        self, engine, repository, mock_dispatcher, slow_rule, slow_database
    ):
        await repository.save_rule(slow_rule)

        alerts = await engine.evaluate_alerts(slow_database)

        assert len(alerts) == 1
        alert = alerts[0]
        assert alert.id in repository.alerts
        assert alert.title == "Slow Database Alert"
        assert alert.level == Severity.WARNING
        assert alert.source == "database"
        assert alert.metadata["rule_id"] == "db-slow"
        assert alert.metadata["value"] == 1500
        mock_dispatcher.send.assert_awaited_once_with(alert, None)

    @pytest.mark.asyncio
    async def test_rule_notifications_select_channels(
        self, engine, repository, mock_dispatcher, make_rule, slow_database
    ):
        await repository.save_rule(
            make_rule(
                source="database",
                condition={"metric": "responseTime", "operator": "gt"},
                threshold=1000,
                notifications=["ops"],
            )
        )

        alerts = await engine.evaluate_alerts(slow_database)

        mock_dispatcher.send.assert_awaited_once_with(alerts[0], ["ops"])

    @pytest.mark.asyncio
    async def test_disabled_and_untriggered_rules(self, engine, repository, make_rule, slow_rule, slow_database):
        await repository.save_rule(slow_rule.model_copy(update={"enabled": False}))
        await repository.save_rule(
            make_rule(
                rule_id="fast",
                source="database",
                condition={"metric": "responseTime", "operator": "gt"},
                threshold=5000,
            )
        )

        assert await engine.evaluate_alerts(slow_database) == []
        assert repository.alerts == {}

    @pytest.mark.asyncio
    async def test_malformed_rule_does_not_block_others(
        self, engine, repository, make_rule, slow_rule, slow_database
    ):
        broken = make_rule(rule_id="broken").model_copy(update={"condition": "{oops"})
        unknown = make_rule(rule_id="unknown", condition={"metric": "x", "operator": "between"})
        await repository.save_rule(broken)
        await repository.save_rule(unknown)
        await repository.save_rule(slow_rule)

        alerts = await engine.evaluate_alerts(slow_database)

        assert [a.rule_id for a in alerts] == ["db-slow"]

    @pytest.mark.asyncio
    async def test_rule_listing_failure_aborts_tick(self, engine, repository, slow_database):
        repository.fail_list_rules = True

        with pytest.raises(RepositoryUnavailableError):
            await engine.evaluate_alerts(slow_database)

    @pytest.mark.asyncio
    async def test_save_failure_is_contained(self, engine, repository, slow_rule, slow_database):
        await repository.save_rule(slow_rule)
        repository.fail_save_alert = True

        assert await engine.evaluate_alerts(slow_database) == []

    @pytest.mark.asyncio
    async def test_no_dispatcher(self, repository, clock, slow_rule, slow_database):
        engine = AlertEngine(repository, clock=clock)
        await repository.save_rule(slow_rule)

        alerts = await engine.evaluate_alerts(slow_database)

        assert len(alerts) == 1


class TestSilencesInTick:
    """Silenced alerts are neither saved nor sent."""

    @pytest.mark.asyncio
    async def test_active_silence(
        self, engine, repository, mock_dispatcher, clock, slow_rule, slow_database
    ):
        await repository.save_rule(slow_rule)
        engine.add_silence(
            SilenceConfig(
                source="database",
                start_time=clock.now() - timedelta(minutes=5),
                end_time=clock.now() + timedelta(minutes=5),
                reason="failover drill",
            )
        )

        assert await engine.evaluate_alerts(slow_database) == []
        mock_dispatcher.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_silence_management(self, engine, clock):
        silence = engine.add_silence(
            SilenceConfig(start_time=clock.now(), end_time=clock.now() + timedelta(hours=1))
        )
        expired = engine.add_silence(
            SilenceConfig(
                start_time=clock.now() - timedelta(hours=2),
                end_time=clock.now() - timedelta(hours=1),
            )
        )

        assert len(engine.get_silences()) == 2
        assert engine.get_silences(active_only=True) == [silence]
        assert engine.remove_silence(expired.id) is True
        assert engine.remove_silence(expired.id) is False


class TestAggregationInTick:
    """Bursts above the cap are grouped before saving."""

    @pytest.mark.asyncio
    async def test_fifteen_triggers_become_two_alerts(self, engine, repository, make_rule, base_time):
        for i in range(8):
            await repository.save_rule(make_rule(rule_id=f"api-{i}", source="api"))
        for i in range(7):
            await repository.save_rule(
                make_rule(rule_id=f"db-{i}", source="db", severity=Severity.ERROR)
            )
        repository.add_series("api", "cpu", [150])
        repository.add_series("db", "cpu", [150])

        alerts = await engine.evaluate_alerts(SystemHealth(), now=base_time)

        assert len(alerts) == 2
        assert sorted(a.metadata["alert_count"] for a in alerts) == [7, 8]
        assert len(repository.alerts) == 2

    @pytest.mark.asyncio
    async def test_saved_summary_keeps_constituents(self, engine, repository, make_rule, base_time):
        for i in range(11):
            await repository.save_rule(
                make_rule(rule_id=f"db-{i}", source="db", severity=Severity.ERROR)
            )
        repository.add_series("db", "cpu", [150])

        await engine.evaluate_alerts(SystemHealth(), now=base_time)

        (summary,) = repository.alerts.values()
        constituents = summary.metadata["original_alerts"]
        assert len(constituents) == 11
        assert {c["title"] for c in constituents} == {f"Rule db-{i} Alert" for i in range(11)}
        assert all(c["level"] == "error" and c["source"] == "db" for c in constituents)
        assert all("150" in c["message"] for c in constituents)

    def test_aggregation_config_update(self, engine):
        updated = engine.update_aggregation_config(max_alerts=3, group_by=["source"])

        assert updated.max_alerts == 3
        assert engine.get_aggregation_config().group_by == ["source"]
        assert engine.get_aggregation_config().time_window == AggregationConfig().time_window

    def test_unknown_aggregation_setting(self, engine):
        with pytest.raises(TypeError):
            engine.update_aggregation_config(bucket_size=5)


class TestEscalationInTick:
    """warning -> critical after 5 seconds unless resolved."""

    @pytest.fixture
    def ladder(self):
        return EscalationConfig(
            rule_id="db-slow",
            levels=[
                EscalationLevel(level=Severity.WARNING, delay=0),
                EscalationLevel(level=Severity.CRITICAL, delay=5),
            ],
        )

    @pytest.mark.asyncio
    async def test_unresolved_alert_escalates_once(
        self, engine, repository, clock, ladder, slow_rule, slow_database
    ):
        await repository.save_rule(slow_rule)
        engine.add_escalation(ladder)
        await engine.evaluate_alerts(slow_database)

        clock.advance(5)
        await engine.escalations.wait_idle()
        clock.advance(60)
        await engine.escalations.wait_idle()

        critical = repository.alerts_where(level=Severity.CRITICAL)
        assert len(critical) == 1
        assert critical[0].title == "ESCALATED: Slow Database Alert"

    @pytest.mark.asyncio
    async def test_resolve_before_delay_prevents_escalation(
        self, engine, repository, clock, ladder, slow_rule, slow_database
    ):
        await repository.save_rule(slow_rule)
        engine.add_escalation(ladder)
        [alert] = await engine.evaluate_alerts(slow_database)

        clock.advance(3)
        assert await engine.resolve_alert(alert.id) is True
        clock.advance(10)
        await engine.escalations.wait_idle()

        assert repository.alerts_where(level=Severity.CRITICAL) == []
        assert repository.alerts[alert.id].resolved is True

    @pytest.mark.asyncio
    async def test_resolve_is_idempotent(self, engine, repository, clock, ladder, slow_rule, slow_database):
        await repository.save_rule(slow_rule)
        engine.add_escalation(ladder)
        [alert] = await engine.evaluate_alerts(slow_database)

        assert await engine.resolve_alert(alert.id) is True
        assert await engine.resolve_alert(alert.id) is False
        clock.advance(10)
        await engine.escalations.wait_idle()

        assert len(repository.alerts) == 1

    @pytest.mark.asyncio
    async def test_remove_escalation_cancels_timers(
        self, engine, repository, clock, ladder, slow_rule, slow_database
    ):
        await repository.save_rule(slow_rule)
        added = engine.add_escalation(ladder)
        await engine.evaluate_alerts(slow_database)

        assert engine.remove_escalation(added.id) is True
        clock.advance(10)
        await engine.escalations.wait_idle()

        assert repository.alerts_where(level=Severity.CRITICAL) == []
        assert engine.get_escalations() == []

    @pytest.mark.asyncio
    async def test_shutdown_cancels_pending(self, engine, repository, ladder, slow_rule, slow_database):
        await repository.save_rule(slow_rule)
        engine.add_escalation(ladder)
        await engine.evaluate_alerts(slow_database)

        engine.shutdown()

        assert engine.escalations.pending == {}


class TestRuleManagement:
    """add/enable/disable/remove."""

    @pytest.mark.asyncio
    async def test_add_rule_validates_condition(self, engine, make_rule):
        bad = make_rule().model_copy(update={"condition": "nope"})

        with pytest.raises(ConditionParseError):
            await engine.add_rule(bad)

    @pytest.mark.asyncio
    async def test_enable_disable_remove(self, engine, repository, make_rule):
        await engine.add_rule(make_rule())

        assert await engine.disable_rule("rule-1") is True
        assert repository.rules["rule-1"].enabled is False
        assert await engine.enable_rule("rule-1") is True
        assert repository.rules["rule-1"].enabled is True
        assert await engine.remove_rule("rule-1") is True
        assert await engine.enable_rule("rule-1") is False


class TestAlertQueries:
    """Active alerts and history."""

    @pytest.mark.asyncio
    async def test_active_and_history(self, engine, repository, make_alert, base_time):
        open_id = await repository.save_alert(make_alert("api"))
        closed_id = await repository.save_alert(make_alert("db"))
        old_id = await repository.save_alert(make_alert("api", timestamp=base_time - timedelta(days=3)))
        await repository.resolve_alert(closed_id)

        active = await engine.get_active_alerts()
        history = await engine.get_alert_history(base_time - timedelta(days=1), base_time)

        assert {a.id for a in active} == {open_id, old_id}
        assert {a.id for a in history} == {open_id, closed_id}
        assert [a.id for a in await engine.get_active_alerts("db")] == []


class TestAnomalies:
    """Anomaly detection through the engine."""

    @pytest.mark.asyncio
    async def test_detect_and_raise(self, engine, repository, mock_dispatcher):
        repository.add_series("api", "responseTime", [100] * 12 + [2000])

        result = await engine.detect_anomalies("api", "responseTime")
        alert = await engine.raise_anomaly_alert("api", "responseTime", result)

        assert result.is_anomaly is True
        assert alert.title == "Anomaly detected: api.responseTime"
        assert alert.metadata["anomaly_type"] == "spike"
        assert alert.id in repository.alerts
        mock_dispatcher.send.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_normal_result_raises_nothing(self, engine, repository):
        result = AnomalyDetectionResult(
            is_anomaly=False,
            confidence=0.1,
            expected_value=100,
            actual_value=101,
            deviation=1,
            z_score=0.3,
            type=AnomalyType.SPIKE,
        )

        assert await engine.raise_anomaly_alert("api", "responseTime", result) is None
        assert repository.alerts == {}


class TestSendAlert:
    """send_alert never raises."""

    @pytest.mark.asyncio
    async def test_dispatcher_exception_is_contained(self, engine, mock_dispatcher, make_alert):
        mock_dispatcher.send.side_effect = RuntimeError("network down")

        assert await engine.send_alert(make_alert()) == []
