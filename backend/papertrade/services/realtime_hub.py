"""
Real-Time Hub
PaperTrade Platform

WebSocket fan-out of price updates.

Each connected client owns a Subscription on a shared Channel and a
writer task that drains it to the socket. Publishing never waits on a
socket; a slow client only loses its own oldest messages.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol

from loguru import logger

from papertrade.core.channel import Channel, Subscription
from papertrade.core.clock import Clock, SystemClock
from papertrade.services.price_cache import PriceCache


class ClientSocket(Protocol):
    """The part of starlette's WebSocket the hub relies on."""

    async def send_json(self, data: Any, mode: str = "text") -> None:
        ...

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        ...


@dataclass
class ClientConnection:
    """WebSocket client connection info."""
    id: str
    websocket: ClientSocket
    subscription: Subscription
    connected_at: datetime
    writer: Optional[asyncio.Task] = None
    messages_sent: int = 0
    symbols: List[str] = field(default_factory=list)


class RealTimeHub:
    """
    Routes price messages to subscribed WebSocket clients.

    Usage:
        hub = RealTimeHub(price_cache)
        client_id = await hub.register_client(websocket)
        await hub.subscribe_client(client_id, ["RELIANCE", "TCS"])
        hub.publish("RELIANCE", {"type": "price_update", "data": {...}})
    """

    def __init__(
        self,
        price_cache: Optional[PriceCache] = None,
        clock: Optional[Clock] = None,
        queue_size: int = 100,
    ):
        self.price_cache = price_cache
        self.clock = clock or SystemClock()
        self._channel = Channel(maxsize=queue_size)

        self._clients: Dict[str, ClientConnection] = {}
        self._client_lock = asyncio.Lock()

        self._messages_received = 0

    # =========================================================================
    # WebSocket Client Management
    # =========================================================================

    async def register_client(self, websocket: ClientSocket) -> str:
        """
        Register an accepted WebSocket and start its writer task.

        Returns:
            Client ID for future reference.
        """
        subscription = Subscription(maxsize=self._channel.maxsize)
        client = ClientConnection(
            id=subscription.id,
            websocket=websocket,
            subscription=subscription,
            connected_at=self.clock.now(),
        )

        async with self._client_lock:
            self._channel.attach(subscription)
            self._clients[client.id] = client
            client.writer = asyncio.create_task(self._writer(client))

        subscription.offer({
            "type": "connected",
            "client_id": client.id,
            "timestamp": client.connected_at.isoformat(),
        })
        logger.info(f"Client {client.id} connected")
        return client.id

    async def unregister_client(self, client_id: str) -> None:
        async with self._client_lock:
            client = self._clients.pop(client_id, None)
            if client is None:
                return
            self._channel.unsubscribe(client.subscription)

        writer = client.writer
        if writer is not None and writer is not asyncio.current_task():
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass
        logger.info(f"Client {client_id} disconnected ({client.messages_sent} messages sent)")

    async def subscribe_client(self, client_id: str, symbols: Iterable[str]) -> bool:
        """
        Subscribe a client to symbols and push their current snapshots.

        Returns:
            False if the client is unknown.
        """
        wanted = [s.upper() for s in symbols if s]
        async with self._client_lock:
            client = self._clients.get(client_id)
            if client is None:
                return False
            self._channel.add_topics(client.subscription, wanted)
            client.symbols = sorted(client.subscription.topics)

        if self.price_cache is not None:
            for symbol in wanted:
                snapshot = self.price_cache.get(symbol)
                if snapshot is not None:
                    client.subscription.offer({"type": "price_update", "data": snapshot.to_dict()})

        client.subscription.offer({"type": "subscribed", "symbols": client.symbols})
        logger.info(f"Client {client_id} subscribed to {len(wanted)} symbols")
        return True

    async def unsubscribe_client(self, client_id: str, symbols: Iterable[str]) -> bool:
        dropped = [s.upper() for s in symbols if s]
        async with self._client_lock:
            client = self._clients.get(client_id)
            if client is None:
                return False
            self._channel.remove_topics(client.subscription, dropped)
            client.symbols = sorted(client.subscription.topics)

        client.subscription.offer({"type": "unsubscribed", "symbols": dropped})
        return True

    async def handle_client_message(self, client_id: str, message: Dict[str, Any]) -> None:
        """Apply a subscribe/unsubscribe/ping request from a client."""
        self._messages_received += 1
        action = message.get("action")
        symbols = message.get("symbols") or []

        if action == "subscribe":
            await self.subscribe_client(client_id, symbols)
        elif action == "unsubscribe":
            await self.unsubscribe_client(client_id, symbols)
        elif action == "ping":
            self.send_to_client(client_id, {"type": "pong", "timestamp": self.clock.now().isoformat()})
        else:
            self.send_to_client(client_id, {"type": "error", "message": f"Unknown action: {action}"})

    async def _writer(self, client: ClientConnection) -> None:
        """Drain the client's queue to its socket until it fails or is cancelled."""
        while True:
            message = await client.subscription.get()
            try:
                await client.websocket.send_json(message)
            except Exception as e:
                logger.warning(f"Send to client {client.id} failed: {e}")
                return
            client.messages_sent += 1

    # =========================================================================
    # Publishing
    # =========================================================================

    def send_to_client(self, client_id: str, message: Dict[str, Any]) -> bool:
        client = self._clients.get(client_id)
        if client is None:
            return False
        client.subscription.offer(message)
        return True

    def publish(self, symbol: str, message: Dict[str, Any]) -> int:
        """Queue message for every subscriber of symbol."""
        return self._channel.publish(symbol.upper(), message)

    def publish_all(self, message: Dict[str, Any]) -> int:
        """Queue message for every connected client."""
        return self._channel.broadcast(message)

    def watched_symbols(self) -> List[str]:
        return self._channel.topics()

    async def close(self) -> None:
        """Disconnect every client."""
        for client_id in list(self._clients):
            client = self._clients.get(client_id)
            await self.unregister_client(client_id)
            if client is not None:
                try:
                    await client.websocket.close()
                except RuntimeError as e:
                    logger.debug(f"Client {client_id} socket already closed: {e}")

    # =========================================================================
    # Status & Stats
    # =========================================================================

    def get_status(self) -> Dict[str, Any]:
        """Get hub status."""
        return {
            "connected_clients": len(self._clients),
            "watched_symbols": len(self._channel.topics()),
            "messages_sent": sum(c.messages_sent for c in self._clients.values()),
            "messages_received": self._messages_received,
            "dropped_messages": self._channel.dropped_total(),
        }
