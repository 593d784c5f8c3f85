"""
In-memory registry for silences and escalation ladders.

Readers get immutable tuple snapshots; writers build a new tuple under a
lock and swap it in, so evaluation never waits on administrative changes.
"""
from __future__ import annotations

import logging
import threading
import uuid
from typing import Generic, Optional, Tuple, TypeVar

from pydantic import BaseModel

from health_alerts.alerting.models import EscalationConfig, SilenceConfig

logger = logging.getLogger(__name__)

C = TypeVar("C", bound=BaseModel)


class _Registry(Generic[C]):
    def __init__(self, id_prefix: str) -> None:
        self._id_prefix = id_prefix
        self._items: Tuple[C, ...] = ()
        self._lock = threading.Lock()

    def list(self) -> Tuple[C, ...]:
        return self._items

    def get(self, item_id: str) -> Optional[C]:
        for item in self._items:
            if item.id == item_id:
                return item
        return None

    def add(self, item: C) -> C:
        """Store item, assigning an id if it has none. Same id replaces."""
        if not item.id:
            item = item.model_copy(update={"id": f"{self._id_prefix}-{uuid.uuid4().hex[:12]}"})
        with self._lock:
            self._items = tuple(i for i in self._items if i.id != item.id) + (item,)
        return item

    def remove(self, item_id: str) -> Optional[C]:
        with self._lock:
            removed = self.get(item_id)
            if removed is not None:
                self._items = tuple(i for i in self._items if i.id != item_id)
        return removed


class ConfigStore:
    """
    Silence and escalation configuration.

    Usage:
        store = ConfigStore()
        silence = store.add_silence(SilenceConfig(source="db", ...))
        store.silences()  # tuple snapshot
        store.remove_silence(silence.id)
    """

    def __init__(self) -> None:
        self._silences: _Registry[SilenceConfig] = _Registry("silence")
        self._escalations: _Registry[EscalationConfig] = _Registry("escalation")

    # Silences

    def silences(self) -> Tuple[SilenceConfig, ...]:
        return self._silences.list()

    def get_silence(self, silence_id: str) -> Optional[SilenceConfig]:
        return self._silences.get(silence_id)

    def add_silence(self, silence: SilenceConfig) -> SilenceConfig:
        silence = self._silences.add(silence)
        logger.info(f"Silence {silence.id} added until {silence.end_time.isoformat()}")
        return silence

    def remove_silence(self, silence_id: str) -> Optional[SilenceConfig]:
        return self._silences.remove(silence_id)

    # Escalations

    def escalations(self) -> Tuple[EscalationConfig, ...]:
        return self._escalations.list()

    def get_escalation(self, escalation_id: str) -> Optional[EscalationConfig]:
        return self._escalations.get(escalation_id)

    def escalation_for_rule(self, rule_id: str) -> Optional[EscalationConfig]:
        """First enabled ladder attached to rule_id."""
        for config in self._escalations.list():
            if config.enabled and config.rule_id == rule_id:
                return config
        return None

    def add_escalation(self, escalation: EscalationConfig) -> EscalationConfig:
        escalation = self._escalations.add(escalation)
        logger.info(
            f"Escalation {escalation.id} added for rule {escalation.rule_id} "
            f"({len(escalation.levels)} levels)"
        )
        return escalation

    def remove_escalation(self, escalation_id: str) -> Optional[EscalationConfig]:
        return self._escalations.remove(escalation_id)
