"""
Escalation scheduling.

Each unresolved alert whose rule has an escalation ladder gets one pending
timer, keyed by alert id. When the timer fires and the alert is still
unresolved, a new alert is raised at the next ladder level and the timer is
re-armed from that alert.

Fire and cancel for the same alert id run under one asyncio.Lock, and every
armed timer carries a token: a timer whose token is no longer the pending
one is stale and does nothing. Together these make resolve-then-fire and
fire-then-resolve both yield at most one escalation.
"""
from __future__ import annotations

import asyncio
import functools
import logging
import weakref
from dataclasses import dataclass, field
from typing import Dict, Optional, Set

from health_alerts.alerting.clock import Clock, TimerHandle
from health_alerts.alerting.config_store import ConfigStore
from health_alerts.alerting.models import EscalationConfig
from health_alerts.alerting.notifications import NotificationDispatcher
from health_alerts.alerting.repository import MonitoringRepository
from health_alerts.storage.models import Alert
from health_alerts.storage.repositories import AlertQuery

logger = logging.getLogger(__name__)


@dataclass
class PendingEscalation:
    """An armed timer for one alert."""

    alert_id: str
    rule_id: Optional[str]
    config: EscalationConfig
    next_index: int
    handle: TimerHandle
    token: object = field(default_factory=object)


class EscalationScheduler:
    """
    Cancellable per-alert escalation timers.

    Usage:
        scheduler = EscalationScheduler(repository, config_store, AsyncioClock(), dispatcher)
        scheduler.arm(alert)               # after the alert is persisted
        await scheduler.cancel(alert.id)   # on resolve; safe to repeat
        scheduler.cancel_all()             # on shutdown
    """

    def __init__(
        self,
        repository: MonitoringRepository,
        config_store: ConfigStore,
        clock: Clock,
        dispatcher: Optional[NotificationDispatcher] = None,
    ) -> None:
        self.repository = repository
        self.config_store = config_store
        self.clock = clock
        self.dispatcher = dispatcher

        self._pending: Dict[str, PendingEscalation] = {}
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._inflight: Set[asyncio.Future] = set()

    @property
    def pending(self) -> Dict[str, str]:
        """Alert id -> severity it will escalate to next."""
        return {
            alert_id: p.config.levels[p.next_index].level.value
            for alert_id, p in self._pending.items()
        }

    def arm(
        self,
        alert: Alert,
        config: Optional[EscalationConfig] = None,
        level_index: Optional[int] = None,
    ) -> bool:
        """
        Start the timer for the alert's next ladder level.

        Uses the ladder of the alert's rule when config is not given.
        Returns False when there is nothing to escalate to.
        """
        if not alert.id:
            return False
        if config is None:
            if not alert.rule_id:
                return False
            config = self.config_store.escalation_for_rule(alert.rule_id)
        if config is None or not config.enabled:
            return False

        index = level_index if level_index is not None else config.index_of(alert.level)
        if index is None or index + 1 >= len(config.levels):
            return False

        next_index = index + 1
        self._disarm(alert.id)

        token = object()
        delay = config.levels[next_index].delay
        handle = self.clock.call_later(delay, functools.partial(self._on_timer, alert.id, token))
        self._pending[alert.id] = PendingEscalation(
            alert_id=alert.id,
            rule_id=alert.rule_id,
            config=config,
            next_index=next_index,
            handle=handle,
            token=token,
        )
        logger.debug(
            f"Armed escalation of {alert.id} to {config.levels[next_index].level.value} in {delay}s"
        )
        return True

    async def cancel(self, alert_id: str) -> bool:
        """Cancel the pending timer for alert_id. Idempotent."""
        async with self._lock_for(alert_id):
            return self._disarm(alert_id)

    def cancel_for_rule(self, rule_id: str) -> int:
        """Cancel every pending timer raised by rule_id."""
        alert_ids = [a for a, p in self._pending.items() if p.rule_id == rule_id]
        for alert_id in alert_ids:
            self._disarm(alert_id)
        return len(alert_ids)

    def cancel_all(self) -> int:
        count = len(self._pending)
        for alert_id in list(self._pending):
            self._disarm(alert_id)
        if count:
            logger.info(f"Cancelled {count} pending escalations")
        return count

    async def wait_idle(self) -> None:
        """Wait for escalations that already fired to finish."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def _disarm(self, alert_id: str) -> bool:
        pending = self._pending.pop(alert_id, None)
        if pending is None:
            return False
        pending.handle.cancel()
        return True

    def _lock_for(self, alert_id: str) -> asyncio.Lock:
        lock = self._locks.get(alert_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[alert_id] = lock
        return lock

    def _on_timer(self, alert_id: str, token: object) -> None:
        pending = self._pending.get(alert_id)
        if pending is None or pending.token is not token:
            return
        task = asyncio.ensure_future(self._fire(alert_id, token))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _fire(self, alert_id: str, token: object) -> None:
        try:
            async with self._lock_for(alert_id):
                pending = self._pending.get(alert_id)
                if pending is None or pending.token is not token:
                    return
                del self._pending[alert_id]
                escalated = await self._escalate(pending)

            if escalated is None:
                return
            step = pending.config.levels[pending.next_index]
            if self.dispatcher is not None and step.notifications:
                await self.dispatcher.send(escalated, step.notifications)
            self.arm(escalated, pending.config, pending.next_index)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Escalation of alert {alert_id} failed: {e}")

    async def _escalate(self, pending: PendingEscalation) -> Optional[Alert]:
        """Persist the next-level alert if the original is still open."""
        open_alerts = await self.repository.query_alerts(
            AlertQuery(alert_ids=[pending.alert_id], resolved=False, limit=1)
        )
        if not open_alerts:
            logger.debug(f"Alert {pending.alert_id} resolved or gone, not escalating")
            return None

        original = open_alerts[0]
        level = pending.config.levels[pending.next_index].level
        escalated = Alert(
            level=level,
            title=f"ESCALATED: {original.title}",
            message=f"Alert escalated to {level.value}: {original.message}",
            source=original.source,
            timestamp=self.clock.now(),
            metadata={
                **original.metadata,
                "escalated": True,
                "original_alert_id": original.id,
                "escalation_level": level.value,
            },
        )
        escalated_id = await self.repository.save_alert(escalated)
        logger.warning(f"Escalated alert {original.id} to {level.value} as {escalated_id}")
        return escalated.model_copy(update={"id": escalated_id})
