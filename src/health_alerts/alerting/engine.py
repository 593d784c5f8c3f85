"""
Alert engine.

Runs one evaluation tick end to end: evaluate every enabled rule
concurrently, drop silenced alerts, aggregate the burst, persist, arm
escalations and notify. Also the operator-facing surface for rules,
silences, escalation ladders and alert history.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from health_alerts.alerting.aggregator import AlertAggregator
from health_alerts.alerting.anomaly import DEFAULT_WINDOW, AnomalyDetector
from health_alerts.alerting.clock import AsyncioClock, Clock
from health_alerts.alerting.config_store import ConfigStore
from health_alerts.alerting.escalation import EscalationScheduler
from health_alerts.alerting.evaluator import RuleEvaluationError, RuleEvaluator, parse_condition
from health_alerts.alerting.models import (
    AggregationConfig,
    AnomalyDetectionResult,
    EscalationConfig,
    EvaluationResult,
    SilenceConfig,
    SystemHealth,
    TrendAnalysis,
)
from health_alerts.alerting.notifications import DispatchResult, NotificationDispatcher
from health_alerts.alerting.repository import MonitoringRepository
from health_alerts.alerting.silence import SilenceFilter
from health_alerts.storage.models import Alert, AlertRule, Severity
from health_alerts.storage.repositories import AlertQuery

logger = logging.getLogger(__name__)


class RepositoryUnavailableError(Exception):
    """Rules could not be loaded, so the tick cannot run."""


class AlertEngine:
    """
    Alerting orchestrator.

    Usage:
        engine = AlertEngine(store, dispatcher)
        alerts = await engine.evaluate_alerts(health, trends)

        await engine.resolve_alert(alert_id)
        engine.add_silence(SilenceConfig(source="db", start_time=..., end_time=...))

        engine.shutdown()
    """

    def __init__(
        self,
        repository: MonitoringRepository,
        dispatcher: Optional[NotificationDispatcher] = None,
        config_store: Optional[ConfigStore] = None,
        clock: Optional[Clock] = None,
        aggregation_config: Optional[AggregationConfig] = None,
    ) -> None:
        self.repository = repository
        self.dispatcher = dispatcher
        self.config_store = config_store or ConfigStore()
        self.clock = clock or AsyncioClock()
        self._aggregation_config = aggregation_config or AggregationConfig()

        self.evaluator = RuleEvaluator(repository)
        self.detector = AnomalyDetector(repository)
        self.aggregator = AlertAggregator()
        self.silence_filter = SilenceFilter()
        self.escalations = EscalationScheduler(repository, self.config_store, self.clock, dispatcher)

    # =========================================================================
    # Evaluation
    # =========================================================================

    async def evaluate_alerts(
        self,
        health: SystemHealth,
        trends: Optional[Dict[str, TrendAnalysis]] = None,
        now: Optional[datetime] = None,
    ) -> List[Alert]:
        """
        Run one tick and return the alerts it persisted.

        Raises:
            RepositoryUnavailableError: rules could not be listed
        """
        now = now or self.clock.now()
        trends = trends or {}

        try:
            rules = [r for r in await self.repository.list_rules() if r.enabled]
        except Exception as e:
            raise RepositoryUnavailableError(f"Could not load alert rules: {e}") from e

        evaluated = await asyncio.gather(
            *(self._evaluate_rule(rule, health, trends, now) for rule in rules)
        )
        triggered = [(rule, result) for rule, result in evaluated if result is not None and result.triggered]

        silences = self.config_store.silences()
        candidates = []
        for rule, result in triggered:
            alert = self._create_alert(rule, result, now)
            if not self.silence_filter.is_silenced(alert, silences, now):
                candidates.append(alert)

        aggregated = self.aggregator.aggregate(candidates, self._aggregation_config, now)
        channels = {rule.id: rule.notifications for rule, _ in triggered}

        saved = []
        for alert in aggregated:
            try:
                alert_id = await self.repository.save_alert(alert)
            except Exception as e:
                logger.error(f"Failed to save alert '{alert.title}': {e}")
                continue
            alert = alert.model_copy(update={"id": alert_id})
            saved.append(alert)

            self.escalations.arm(alert)
            await self.send_alert(alert, channels.get(alert.rule_id) or None)

        if rules:
            logger.info(
                f"Evaluated {len(rules)} rules: {len(triggered)} triggered, "
                f"{len(candidates)} after silences, {len(saved)} alerts saved"
            )
        return saved

    async def _evaluate_rule(
        self,
        rule: AlertRule,
        health: SystemHealth,
        trends: Dict[str, TrendAnalysis],
        now: datetime,
    ) -> Tuple[AlertRule, Optional[EvaluationResult]]:
        try:
            return rule, await self.evaluator.evaluate(rule, health, trends, now)
        except RuleEvaluationError as e:
            logger.error(str(e))
        except Exception as e:
            logger.error(f"Unexpected error evaluating rule {rule.id}: {e}")
        return rule, None

    def _create_alert(self, rule: AlertRule, result: EvaluationResult, now: datetime) -> Alert:
        return Alert(
            level=rule.severity,
            title=f"{rule.name} Alert",
            message=result.message,
            source=rule.source,
            timestamp=now,
            metadata={
                **result.metadata,
                "rule_id": rule.id,
                "rule_name": rule.name,
                "value": result.value,
                "threshold": result.threshold,
            },
        )

    async def detect_anomalies(
        self,
        source: str,
        metric: str,
        window: float = DEFAULT_WINDOW,
    ) -> Optional[AnomalyDetectionResult]:
        return await self.detector.detect(source, metric, window, self.clock.now())

    async def raise_anomaly_alert(
        self,
        source: str,
        metric: str,
        result: AnomalyDetectionResult,
    ) -> Optional[Alert]:
        """
        Persist and dispatch an alert for a detected anomaly.

        Returns None when the result is not an anomaly or a silence covers it.
        """
        if not result.is_anomaly:
            return None

        now = self.clock.now()
        alert = Alert(
            level=Severity.ERROR if result.confidence >= 1.0 else Severity.WARNING,
            title=f"Anomaly detected: {source}.{metric}",
            message=(
                f"{metric} {result.type.value} anomaly: {result.actual_value:.2f} "
                f"(expected {result.expected_value:.2f}, z-score {result.z_score:.2f})"
            ),
            source=source,
            timestamp=now,
            metadata={
                "anomaly": True,
                "anomaly_type": result.type.value,
                "metric": metric,
                "z_score": result.z_score,
                "confidence": result.confidence,
                "expected_value": result.expected_value,
                "actual_value": result.actual_value,
            },
        )
        if self.silence_filter.is_silenced(alert, self.config_store.silences(), now):
            return None

        alert = alert.model_copy(update={"id": await self.repository.save_alert(alert)})
        await self.send_alert(alert)
        return alert

    # =========================================================================
    # Alerts
    # =========================================================================

    async def resolve_alert(self, alert_id: str) -> bool:
        """
        Resolve an alert and cancel its pending escalation.

        Returns True if this call resolved it. Repeating is harmless.
        """
        await self.escalations.cancel(alert_id)
        resolved = await self.repository.resolve_alert(alert_id, self.clock.now())
        if resolved:
            logger.info(f"Resolved alert {alert_id}")
        return resolved

    async def get_active_alerts(self, source: Optional[str] = None) -> List[Alert]:
        return await self.repository.query_alerts(AlertQuery(source=source, resolved=False))

    async def get_alert_history(
        self,
        start_time: datetime,
        end_time: datetime,
        source: Optional[str] = None,
    ) -> List[Alert]:
        return await self.repository.query_alerts(
            AlertQuery(source=source, start_time=start_time, end_time=end_time)
        )

    async def send_alert(self, alert: Alert, channel_ids: Optional[List[str]] = None) -> List[DispatchResult]:
        """Dispatch an alert. Failures are logged, never raised."""
        if self.dispatcher is None:
            return []
        try:
            results = await self.dispatcher.send(alert, channel_ids)
        except Exception as e:
            logger.error(f"Notification dispatch failed for '{alert.title}': {e}")
            return []
        failed = [r.channel_id for r in results if not r.success]
        if failed:
            logger.warning(f"Alert '{alert.title}' not delivered to {', '.join(failed)}")
        return results

    # =========================================================================
    # Rules
    # =========================================================================

    async def add_rule(self, rule: AlertRule) -> AlertRule:
        """
        Validate and store a rule.

        Raises:
            ConditionParseError: the rule's condition is malformed
        """
        parse_condition(rule.condition, rule.id)
        saved = await self.repository.save_rule(rule)
        logger.info(f"Saved alert rule {saved.id} ({saved.name})")
        return saved

    async def enable_rule(self, rule_id: str) -> bool:
        return await self.repository.set_rule_enabled(rule_id, True)

    async def disable_rule(self, rule_id: str) -> bool:
        return await self.repository.set_rule_enabled(rule_id, False)

    async def remove_rule(self, rule_id: str) -> bool:
        self.escalations.cancel_for_rule(rule_id)
        return await self.repository.delete_rule(rule_id)

    # =========================================================================
    # Silences and escalations
    # =========================================================================

    def add_silence(self, silence: SilenceConfig) -> SilenceConfig:
        return self.config_store.add_silence(silence)

    def remove_silence(self, silence_id: str) -> bool:
        return self.config_store.remove_silence(silence_id) is not None

    def get_silences(self, active_only: bool = False) -> List[SilenceConfig]:
        silences = self.config_store.silences()
        if active_only:
            now = self.clock.now()
            return [s for s in silences if s.is_active(now)]
        return list(silences)

    def add_escalation(self, escalation: EscalationConfig) -> EscalationConfig:
        return self.config_store.add_escalation(escalation)

    def remove_escalation(self, escalation_id: str) -> bool:
        """Remove a ladder and cancel timers armed from it."""
        removed = self.config_store.remove_escalation(escalation_id)
        if removed is None:
            return False
        self.escalations.cancel_for_rule(removed.rule_id)
        return True

    def get_escalations(self) -> List[EscalationConfig]:
        return list(self.config_store.escalations())

    # =========================================================================
    # Aggregation
    # =========================================================================

    def get_aggregation_config(self) -> AggregationConfig:
        config = self._aggregation_config
        return replace(config, group_by=list(config.group_by))

    def update_aggregation_config(self, **changes: Any) -> AggregationConfig:
        """Change some aggregation settings. Unknown names raise TypeError."""
        unknown = set(changes) - set(asdict(self._aggregation_config))
        if unknown:
            raise TypeError(f"Unknown aggregation settings: {', '.join(sorted(unknown))}")
        self._aggregation_config = replace(self._aggregation_config, **changes)
        logger.info(f"Aggregation config updated: {changes}")
        return self.get_aggregation_config()

    def shutdown(self) -> None:
        self.escalations.cancel_all()
