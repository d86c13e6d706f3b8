"""
Price Broadcaster
PaperTrade Platform

Periodically pushes cached prices to WebSocket clients:
- one "price_update" per watched symbol to its subscribers
- one aggregate "prices" message to every client
"""

import asyncio
from typing import Any, Dict, Optional

from loguru import logger

from papertrade.core.clock import Clock, SystemClock
from papertrade.services.price_cache import PriceCache
from papertrade.services.realtime_hub import RealTimeHub


class PriceBroadcaster:
    """
    Usage:
        broadcaster = PriceBroadcaster(price_cache, hub, interval=2.0)
        await broadcaster.start()
        ...
        await broadcaster.stop()
    """

    def __init__(
        self,
        price_cache: PriceCache,
        hub: RealTimeHub,
        interval: float = 2.0,
        clock: Optional[Clock] = None,
    ):
        self.price_cache = price_cache
        self.hub = hub
        self.interval = interval
        self.clock = clock or SystemClock()

        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._stats = {"cycles": 0, "failed_cycles": 0, "messages": 0}

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"Price broadcaster started (interval {self.interval}s)")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Price broadcaster stopped")

    async def _run(self) -> None:
        while self._running:
            try:
                self.run_once()
            except Exception as e:
                self._stats["failed_cycles"] += 1
                logger.error(f"Price broadcast cycle failed: {e}")
            await self.clock.sleep(self.interval)

    def run_once(self) -> int:
        """Publish one round of updates. Returns the number of messages queued."""
        queued = 0
        snapshots = []
        for symbol in self.hub.watched_symbols():
            snapshot = self.price_cache.get(symbol)
            if snapshot is None:
                continue
            data = snapshot.to_dict()
            snapshots.append(data)
            queued += self.hub.publish(symbol, {"type": "price_update", "data": data})

        if snapshots:
            queued += self.hub.publish_all({
                "type": "prices",
                "data": snapshots,
                "timestamp": self.clock.now().isoformat(),
            })

        self._stats["cycles"] += 1
        self._stats["messages"] += queued
        return queued

    def get_status(self) -> Dict[str, Any]:
        return {"running": self._running, "interval": self.interval, **self._stats}
