"""
Time source and one-shot timers for escalation.

Production uses the running asyncio loop; tests inject a manual clock that
only advances when told to.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class Clock(Protocol):
    def now(self) -> datetime:
        ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Run callback once after delay seconds."""
        ...


class AsyncioClock:
    """Wall clock with timers on the asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(max(0.0, delay), callback)
