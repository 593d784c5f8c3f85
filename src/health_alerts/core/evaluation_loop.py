"""
EvaluationLoop - periodic driver of the alert engine.

Each tick:
- Builds the health snapshot from the latest records
- Builds trend summaries for every reporting source
- Runs AlertEngine.evaluate_alerts
- Optionally runs anomaly detection on configured metrics

Ticks never overlap: the next wait starts after the previous tick ends.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from health_alerts.alerting import AlertEngine
    from health_alerts.monitoring import HealthSnapshotBuilder, TrendAnalyzer

logger = logging.getLogger(__name__)


@dataclass
class EvaluationLoopConfig:
    """Configuration for the evaluation loop."""

    interval_seconds: float = 60.0
    error_backoff_seconds: float = 5.0

    # Metrics checked for anomalies on every source each tick
    anomaly_metrics: List[str] = field(default_factory=list)
    anomaly_window_seconds: float = 24 * 60 * 60.0


@dataclass
class TickStats:
    """Counters since start."""

    ticks: int = 0
    failed_ticks: int = 0
    alerts_raised: int = 0
    anomalies_raised: int = 0
    last_tick_at: Optional[datetime] = None


class EvaluationLoop:
    """
    Runs alert evaluation on an interval.

    Usage:
        loop = EvaluationLoop(engine, snapshot_builder, trend_analyzer)
        await loop.start()
        # ... service runs ...
        await loop.stop()

        # Or a single tick
        alerts = await loop.run_once()
    """

    def __init__(
        self,
        engine: "AlertEngine",
        snapshot_builder: "HealthSnapshotBuilder",
        trend_analyzer: "TrendAnalyzer",
        config: Optional[EvaluationLoopConfig] = None,
    ) -> None:
        self._engine = engine
        self._snapshot_builder = snapshot_builder
        self._trend_analyzer = trend_analyzer
        self._config = config or EvaluationLoopConfig()

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self.stats = TickStats()

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the loop as a background task."""
        if self._running:
            logger.warning("EvaluationLoop already running")
            return

        self._running = True
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop(), name="alert_evaluation")
        logger.info(f"Started alert evaluation (interval={self._config.interval_seconds}s)")

    async def stop(self) -> None:
        """Stop the loop, letting a tick in progress be cancelled."""
        if not self._running:
            return

        logger.info("Stopping alert evaluation...")
        self._running = False
        self._stop_event.set()

        if self._task is not None:
            if not self._task.done():
                self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

        logger.info("Alert evaluation stopped")

    async def run_once(self) -> list:
        """Run a single tick and return the alerts it raised."""
        now = datetime.now(timezone.utc)
        health = await self._snapshot_builder.build(now)
        trends = await self._trend_analyzer.analyze_all(health.services.keys(), now)

        alerts = list(await self._engine.evaluate_alerts(health, trends, now))

        for source in health.services:
            for metric in self._config.anomaly_metrics:
                try:
                    alert = await self._check_anomaly(source, metric)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"Anomaly check failed for {source}.{metric}: {e}")
                    continue
                if alert is not None:
                    alerts.append(alert)
                    self.stats.anomalies_raised += 1

        self.stats.ticks += 1
        self.stats.alerts_raised += len(alerts)
        self.stats.last_tick_at = now
        return alerts

    async def _check_anomaly(self, source: str, metric: str):
        result = await self._engine.detect_anomalies(
            source, metric, self._config.anomaly_window_seconds
        )
        if result is None or not result.is_anomaly:
            return None
        return await self._engine.raise_anomaly_alert(source, metric, result)

    async def _loop(self) -> None:
        interval = self._config.interval_seconds

        while self._running:
            try:
                alerts = await self.run_once()
                if alerts:
                    logger.info(f"Tick raised {len(alerts)} alerts")

                # Wait for interval or stop
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                    break  # Stop requested
                except asyncio.TimeoutError:
                    pass

            except asyncio.CancelledError:
                break
            except Exception as e:
                self.stats.failed_ticks += 1
                logger.error(f"Error in alert evaluation tick: {e}")
                await asyncio.sleep(self._config.error_backoff_seconds)
