"""
Alert aggregation.

Collapses a burst of alerts from one tick into one summary alert per group
once the burst exceeds the configured cap.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from health_alerts.alerting.models import AggregationConfig
from health_alerts.storage.models import Alert, Severity

logger = logging.getLogger(__name__)


def group_key(alert: Alert, group_by: List[str]) -> str:
    """Join the alert's group_by field values with '|'. Missing values are 'unknown'."""
    parts = []
    for name in group_by:
        value = getattr(alert, name, None)
        if value is None:
            value = alert.metadata.get(name)
        if isinstance(value, Severity):
            value = value.value
        parts.append(str(value) if value not in (None, "") else "unknown")
    return "|".join(parts)


class AlertAggregator:
    """
    Groups and caps alerts.

    Aggregated alerts replace their constituents, so every input alert is
    represented exactly once in the output.
    """

    def aggregate(
        self,
        alerts: List[Alert],
        config: AggregationConfig,
        now: Optional[datetime] = None,
    ) -> List[Alert]:
        if not config.enabled or len(alerts) <= config.max_alerts:
            return list(alerts)

        now = now or datetime.now(timezone.utc)
        groups: Dict[str, List[Alert]] = {}
        for alert in alerts:
            groups.setdefault(group_key(alert, config.group_by), []).append(alert)

        result = []
        for key, members in groups.items():
            if len(members) == 1:
                result.append(members[0])
            else:
                result.append(self._summarize(key, members, now))

        logger.info(f"Aggregated {len(alerts)} alerts into {len(result)}")
        return result

    def _summarize(self, key: str, members: List[Alert], now: datetime) -> Alert:
        sources = list(dict.fromkeys(a.source for a in members))
        return Alert(
            level=Severity.highest(a.level for a in members),
            title=f"Multiple Alerts ({len(members)})",
            message=f"{len(members)} alerts triggered for {', '.join(sources)}",
            source=sources[0] if len(sources) == 1 else "multiple",
            timestamp=now,
            metadata={
                "aggregated": True,
                "group_key": key,
                "alert_count": len(members),
                "sources": sources,
                "original_alerts": [
                    {"title": a.title, "message": a.message, "level": a.level.value, "source": a.source}
                    for a in members
                ],
                "rule_ids": list(dict.fromkeys(a.rule_id for a in members if a.rule_id)),
            },
        )
