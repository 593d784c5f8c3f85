"""
Health alerts service entry point.

Usage:
    health-alerts                  # evaluate on an interval until stopped
    health-alerts --once           # run a single evaluation tick and exit
    health-alerts --init-schema    # create monitoring tables first

Environment:
    DATABASE_URL                   PostgreSQL connection string (required)
    LOG_LEVEL                      DEBUG, INFO, WARNING, ERROR (default INFO)
    EVALUATION_INTERVAL_SECONDS    seconds between ticks (default 60)
    ANOMALY_METRICS                comma separated metrics checked for anomalies
    AGGREGATION_ENABLED            true/false (default true)
    AGGREGATION_MAX_ALERTS         alerts per tick before grouping (default 10)
    AGGREGATION_GROUP_BY           comma separated alert fields (default source,level)
    TELEGRAM_BOT_TOKEN             enables the Telegram channel with TELEGRAM_CHAT_ID
    TELEGRAM_CHAT_ID
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

# Configure logging before imports
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def _split(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass
class AppConfig:
    """Service configuration loaded from environment variables."""

    database_url: str = ""
    evaluation_interval_seconds: float = 60.0
    anomaly_metrics: List[str] = field(default_factory=list)

    aggregation_enabled: bool = True
    aggregation_max_alerts: int = 10
    aggregation_group_by: List[str] = field(default_factory=lambda: ["source", "level"])

    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Load configuration from environment variables."""
        return cls(
            database_url=os.environ.get("DATABASE_URL", ""),
            evaluation_interval_seconds=float(os.environ.get("EVALUATION_INTERVAL_SECONDS", "60")),
            anomaly_metrics=_split(os.environ.get("ANOMALY_METRICS", "")),
            aggregation_enabled=os.environ.get("AGGREGATION_ENABLED", "true").lower() == "true",
            aggregation_max_alerts=int(os.environ.get("AGGREGATION_MAX_ALERTS", "10")),
            aggregation_group_by=_split(os.environ.get("AGGREGATION_GROUP_BY", "source,level")),
            telegram_bot_token=os.environ.get("TELEGRAM_BOT_TOKEN"),
            telegram_chat_id=os.environ.get("TELEGRAM_CHAT_ID"),
        )


class AlertService:
    """
    Wires storage, engine and evaluation loop together.

    Manages the lifecycle of:
    - Database connection
    - Alert engine and notification channels
    - Evaluation loop
    """

    def __init__(self, config: AppConfig):
        self.config = config
        self._running = False
        self._shutdown_event = asyncio.Event()

        self._db = None
        self._engine = None
        self._loop = None

    async def setup(self, init_schema: bool = False) -> None:
        from health_alerts.alerting import (
            AggregationConfig,
            AlertEngine,
            NotificationDispatcher,
            TelegramChannel,
        )
        from health_alerts.core import EvaluationLoop, EvaluationLoopConfig
        from health_alerts.monitoring import HealthSnapshotBuilder, TrendAnalyzer
        from health_alerts.storage import Database, DatabaseConfig, PostgresMonitoringStore

        self._db = Database(DatabaseConfig(url=self.config.database_url))
        await self._db.initialize()
        if not await self._db.health_check():
            raise RuntimeError("Database health check failed")
        if init_schema:
            await self._db.ensure_schema()
        logger.info("Database: Connected")

        store = PostgresMonitoringStore(self._db)

        dispatcher = NotificationDispatcher()
        if self.config.telegram_bot_token and self.config.telegram_chat_id:
            dispatcher.register(
                TelegramChannel(
                    "telegram",
                    bot_token=self.config.telegram_bot_token,
                    chat_id=self.config.telegram_chat_id,
                )
            )
        else:
            logger.warning("Telegram not configured, alerts will only be stored")

        self._engine = AlertEngine(
            store,
            dispatcher,
            aggregation_config=AggregationConfig(
                enabled=self.config.aggregation_enabled,
                max_alerts=self.config.aggregation_max_alerts,
                group_by=self.config.aggregation_group_by,
            ),
        )
        self._loop = EvaluationLoop(
            self._engine,
            HealthSnapshotBuilder(store),
            TrendAnalyzer(store),
            EvaluationLoopConfig(
                interval_seconds=self.config.evaluation_interval_seconds,
                anomaly_metrics=self.config.anomaly_metrics,
            ),
        )

    async def run_once(self) -> int:
        alerts = await self._loop.run_once()
        for alert in alerts:
            logger.info(f"[{alert.level.value.upper()}] {alert.title}: {alert.message}")
        logger.info(f"Raised {len(alerts)} alerts")
        return len(alerts)

    async def run_forever(self) -> None:
        self._running = True
        self._setup_signal_handlers()
        await self._loop.start()

        logger.info("=" * 60)
        logger.info("Health alerts running. Press Ctrl+C to stop")
        logger.info("=" * 60)

        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop everything in reverse order."""
        self._running = False
        self._shutdown_event.set()

        if self._loop:
            try:
                await self._loop.stop()
            except Exception as e:
                logger.warning(f"Error stopping evaluation loop: {e}")

        if self._engine:
            self._engine.shutdown()

        if self._db:
            try:
                await self._db.close()
            except Exception as e:
                logger.warning(f"Error closing database: {e}")

        logger.info("Shutdown complete")

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def handle_signal(sig):
            logger.info(f"Received signal {sig}")
            self._shutdown_event.set()

        try:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass


def load_env_file(path: str = ".env") -> None:
    """Load environment variables from .env file if it exists."""
    env_path = Path(path)
    if env_path.exists():
        logger.info(f"Loading environment from {env_path}")
        with open(env_path) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, _, value = line.partition("=")
                    value = value.strip().strip('"').strip("'")
                    os.environ.setdefault(key.strip(), value)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Health alerting and anomaly detection service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single evaluation tick and exit",
    )
    parser.add_argument(
        "--init-schema",
        action="store_true",
        help="Create monitoring tables if missing",
    )
    parser.add_argument(
        "--interval",
        type=float,
        help="Override EVALUATION_INTERVAL_SECONDS",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override log level",
    )
    return parser.parse_args(argv)


async def main_async(args: argparse.Namespace) -> int:
    """Async main function."""
    config = AppConfig.from_env()
    if args.interval:
        config.evaluation_interval_seconds = args.interval

    if not config.database_url:
        logger.error("DATABASE_URL environment variable is required")
        return 1

    service = AlertService(config)
    try:
        await service.setup(init_schema=args.init_schema)
        if args.once:
            await service.run_once()
        else:
            await service.run_forever()
        return 0
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        return 1
    finally:
        await service.stop()


def main() -> int:
    """Main entry point."""
    load_env_file()
    args = parse_args()

    if args.log_level:
        logging.getLogger().setLevel(getattr(logging, args.log_level))

    try:
        return asyncio.run(main_async(args))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
