"""
Clock Abstraction
PaperTrade Platform

Time source used by every time-dependent service (admission control,
daily counter reset, signal deduplication, simulated execution latency).
Services take a Clock instead of calling datetime.now() directly so the
daily rollover can be driven deterministically.
"""

import asyncio
import time as _time
from abc import ABC, abstractmethod
from datetime import datetime, time, timedelta, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo


IST = ZoneInfo("Asia/Kolkata")


def next_midnight(now: datetime) -> datetime:
    """Start of the next local day for an aware datetime."""
    tomorrow = now.date() + timedelta(days=1)
    return datetime.combine(tomorrow, time(0, 0), tzinfo=now.tzinfo)


class Clock(ABC):
    """Source of wall-clock time, monotonic time and sleeping."""

    @abstractmethod
    def now(self) -> datetime:
        """Current timezone-aware wall-clock time."""

    @abstractmethod
    def monotonic(self) -> float:
        """Seconds from an arbitrary origin, for measuring latency."""

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        """Suspend the calling coroutine."""

    @abstractmethod
    async def sleep_until(self, deadline: datetime) -> None:
        """Suspend until the wall clock reaches deadline."""


class SystemClock(Clock):
    """Clock backed by the system time and the asyncio event loop."""

    # Long waits are split so a suspended host or a clock jump is noticed.
    MAX_SLEEP_CHUNK = 3600.0

    def __init__(self, tz: Optional[tzinfo] = None):
        self.tz = tz or IST

    def now(self) -> datetime:
        return datetime.now(self.tz)

    def monotonic(self) -> float:
        return _time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    async def sleep_until(self, deadline: datetime) -> None:
        while True:
            remaining = (deadline - self.now()).total_seconds()
            if remaining <= 0:
                return
            await asyncio.sleep(min(remaining, self.MAX_SLEEP_CHUNK))
