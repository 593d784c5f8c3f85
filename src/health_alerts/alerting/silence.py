"""
Silence matching.
"""
from __future__ import annotations

import logging
import re
from datetime import datetime
from functools import lru_cache
from typing import Iterable, Optional

from health_alerts.alerting.models import SilenceConfig
from health_alerts.storage.models import Alert

logger = logging.getLogger(__name__)


@lru_cache(maxsize=256)
def _compile(pattern: str) -> Optional[re.Pattern]:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        logger.warning(f"Ignoring silence with invalid pattern {pattern!r}: {e}")
        return None


class SilenceFilter:
    """Decides whether an alert is covered by an active silence."""

    def matches(self, alert: Alert, silence: SilenceConfig, now: datetime) -> bool:
        if not silence.is_active(now):
            return False
        if silence.source and alert.source != silence.source:
            return False
        if silence.level and alert.level != silence.level:
            return False
        if silence.pattern:
            regex = _compile(silence.pattern)
            if regex is None:
                return False
            if not (regex.search(alert.message) or regex.search(alert.title)):
                return False
        return True

    def is_silenced(self, alert: Alert, silences: Iterable[SilenceConfig], now: datetime) -> bool:
        for silence in silences:
            if self.matches(alert, silence, now):
                logger.info(f"Alert '{alert.title}' silenced by {silence.id}: {silence.reason}")
                return True
        return False
