"""
Notification fan-out.

NotificationDispatcher sends an alert to registered channels concurrently.
A failing channel is logged and reported in its DispatchResult; it never
stops delivery to the others. TelegramChannel is the bundled channel.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

import requests

from health_alerts.storage.models import Alert, Severity

logger = logging.getLogger(__name__)


class DispatchError(Exception):
    """A channel failed to deliver an alert."""


@dataclass
class DispatchResult:
    """Outcome of delivering one alert to one channel."""

    channel_id: str
    success: bool
    delivered: bool = False  # False when skipped (filtered or deduplicated)
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class NotificationChannel(Protocol):
    channel_id: str

    async def send(self, alert: Alert) -> bool:
        """
        Deliver alert. Returns False when the channel chose not to send.

        Raises:
            DispatchError: delivery failed
        """
        ...


@dataclass
class _Registration:
    channel: NotificationChannel
    sources: Optional[Set[str]] = None
    levels: Optional[Set[Severity]] = None

    def accepts(self, alert: Alert) -> bool:
        if self.sources is not None and alert.source not in self.sources:
            return False
        if self.levels is not None and alert.level not in self.levels:
            return False
        return True


class NotificationDispatcher:
    """
    Routes alerts to notification channels.

    Usage:
        dispatcher = NotificationDispatcher()
        dispatcher.register(TelegramChannel("ops", bot_token, chat_id),
                            levels=[Severity.ERROR, Severity.CRITICAL])

        results = await dispatcher.send(alert)              # every channel
        results = await dispatcher.send(alert, ["ops"])     # named channels
    """

    def __init__(self) -> None:
        self._channels: Dict[str, _Registration] = {}

    @property
    def channel_ids(self) -> List[str]:
        return list(self._channels)

    def register(
        self,
        channel: NotificationChannel,
        sources: Optional[Iterable[str]] = None,
        levels: Optional[Iterable[Severity]] = None,
    ) -> None:
        """Add a channel, optionally limited to some sources and levels."""
        self._channels[channel.channel_id] = _Registration(
            channel=channel,
            sources=set(sources) if sources is not None else None,
            levels={Severity(level) for level in levels} if levels is not None else None,
        )
        logger.info(f"Registered notification channel {channel.channel_id}")

    def unregister(self, channel_id: str) -> bool:
        return self._channels.pop(channel_id, None) is not None

    async def send(self, alert: Alert, channel_ids: Optional[List[str]] = None) -> List[DispatchResult]:
        """Deliver alert to channel_ids (all channels when None). Never raises."""
        ids = list(self._channels) if channel_ids is None else list(dict.fromkeys(channel_ids))
        if not ids:
            return []
        return list(await asyncio.gather(*(self._deliver(alert, cid) for cid in ids)))

    async def _deliver(self, alert: Alert, channel_id: str) -> DispatchResult:
        registration = self._channels.get(channel_id)
        if registration is None:
            logger.warning(f"Alert '{alert.title}' addressed to unknown channel {channel_id}")
            return DispatchResult(channel_id, success=False, error="unknown channel")

        if not registration.accepts(alert):
            return DispatchResult(channel_id, success=True)

        try:
            delivered = await registration.channel.send(alert)
            return DispatchResult(channel_id, success=True, delivered=delivered)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Channel {channel_id} failed to send '{alert.title}': {e}")
            return DispatchResult(channel_id, success=False, error=str(e))


# =============================================================================
# TELEGRAM
# =============================================================================


@dataclass
class SentRecord:
    """Tracks when an alert key was last sent."""

    key: str
    last_sent: float  # Unix timestamp
    count: int = 1


class TelegramChannel:
    """
    Telegram Bot API channel with cooldown deduplication.

    The same (source, title, level) is sent at most once per cooldown.

    Usage:
        channel = TelegramChannel(
            "telegram",
            bot_token="...",
            chat_id="...",
        )
        await channel.send(alert)
    """

    DEFAULT_COOLDOWN = 300  # 5 minutes

    PRIORITY_MARKERS = {
        Severity.CRITICAL: "🚨🚨🚨",
        Severity.ERROR: "⚠️",
        Severity.WARNING: "",
        Severity.INFO: "ℹ️",
    }

    def __init__(
        self,
        channel_id: str,
        bot_token: Optional[str] = None,
        chat_id: Optional[str] = None,
        cooldown_seconds: int = DEFAULT_COOLDOWN,
        _telegram_api: Optional[Any] = None,  # For testing
    ) -> None:
        self.channel_id = channel_id
        self._bot_token = bot_token
        self._chat_id = chat_id
        self._cooldown = cooldown_seconds
        self._telegram_api = _telegram_api
        self._sent: Dict[str, SentRecord] = {}

    async def send(self, alert: Alert) -> bool:
        key = self.dedup_key(alert)
        if not self._should_send(key):
            logger.debug(f"Deduplicated alert: {key}")
            return False

        await asyncio.to_thread(self._send_telegram, self.format_message(alert))
        self._record_sent(key)
        return True

    @staticmethod
    def dedup_key(alert: Alert) -> str:
        return f"{alert.source}:{alert.level.value}:{alert.title}"

    def format_message(self, alert: Alert) -> str:
        """Format alert for Telegram Markdown."""
        marker = self.PRIORITY_MARKERS.get(alert.level, "")
        header = f"{marker} *{alert.title}*" if marker else f"*{alert.title}*"
        return (
            f"{header}\n\n{alert.message.strip()}\n\n"
            f"Source: {alert.source}\n"
            f"Level: {alert.level.value.upper()}\n"
            f"Time: {alert.timestamp.isoformat()}"
        )

    def _should_send(self, key: str) -> bool:
        record = self._sent.get(key)
        if record is None:
            return True
        return (time.time() - record.last_sent) >= self._cooldown

    def _record_sent(self, key: str) -> None:
        now = time.time()
        expired = [k for k, r in self._sent.items() if k != key and now - r.last_sent >= self._cooldown]
        for k in expired:
            del self._sent[k]
        if key in self._sent:
            self._sent[key].last_sent = now
            self._sent[key].count += 1
        else:
            self._sent[key] = SentRecord(key=key, last_sent=now)

    def _send_telegram(self, text: str) -> None:
        """Blocking send. Raises DispatchError on any failure."""
        if self._telegram_api:
            try:
                self._telegram_api.send_message(
                    chat_id=self._chat_id,
                    text=text,
                    parse_mode="Markdown",
                )
                return
            except Exception as e:
                raise DispatchError(f"Telegram API error: {e}") from e

        if not self._bot_token or not self._chat_id:
            raise DispatchError("Telegram credentials not configured")

        url = f"https://api.telegram.org/bot{self._bot_token}/sendMessage"
        payload = {
            "chat_id": self._chat_id,
            "text": text,
            "parse_mode": "Markdown",
        }
        try:
            response = requests.post(url, json=payload, timeout=10)
            response.raise_for_status()
        except requests.RequestException as e:
            raise DispatchError(f"Failed to send Telegram alert: {e}") from e

        logger.info(f"Sent Telegram alert: {text[:50]}...")

    def clear_dedup_cache(self) -> None:
        self._sent.clear()

    def get_stats(self) -> Dict[str, int]:
        return {
            "unique_alerts": len(self._sent),
            "total_sent": sum(r.count for r in self._sent.values()),
        }
