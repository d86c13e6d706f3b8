"""
Publish/Subscribe Channel
PaperTrade Platform

Topic based fan-out with a bounded queue per subscriber.

Publishing never blocks: when a subscriber's queue is full the oldest
pending message is dropped and counted, so one slow consumer cannot stall
the price cache or the broadcast loop.

Usage:
    channel = Channel(maxsize=100)
    sub = channel.subscribe("RELIANCE")
    channel.publish("RELIANCE", {"ltp": 2500})
    message = await sub.get()
"""

import asyncio
import uuid
from typing import Any, Dict, Iterable, List, Optional, Set


class Subscription:
    """A single consumer with its own bounded queue."""

    def __init__(self, maxsize: int = 100, subscription_id: Optional[str] = None):
        self.id = subscription_id or uuid.uuid4().hex[:8]
        self.topics: Set[str] = set()
        self.delivered = 0
        self.dropped = 0
        self.closed = False
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue(maxsize=maxsize)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def offer(self, message: Any) -> bool:
        """
        Enqueue without blocking.

        Returns False if the oldest pending message had to be evicted.
        """
        if self.closed:
            return False
        evicted = False
        while True:
            try:
                self._queue.put_nowait(message)
                break
            except asyncio.QueueFull:
                self._queue.get_nowait()
                self.dropped += 1
                evicted = True
        self.delivered += 1
        return not evicted

    async def get(self) -> Any:
        return await self._queue.get()

    def get_nowait(self) -> Any:
        return self._queue.get_nowait()

    def drain(self) -> List[Any]:
        """Return every pending message."""
        items = []
        while not self._queue.empty():
            items.append(self._queue.get_nowait())
        return items

    def close(self) -> None:
        self.closed = True


class Channel:
    """Maps topics to subscriptions."""

    def __init__(self, maxsize: int = 100):
        self.maxsize = maxsize
        self._subscriptions: Dict[str, Subscription] = {}
        self._topic_subscribers: Dict[str, Set[str]] = {}

    def subscribe(self, topic: str, maxsize: Optional[int] = None) -> Subscription:
        return self.subscribe_many([topic], maxsize=maxsize)

    def subscribe_many(self, topics: Iterable[str], maxsize: Optional[int] = None) -> Subscription:
        """One queue receiving messages for all of topics."""
        subscription = Subscription(maxsize=maxsize or self.maxsize)
        self.attach(subscription)
        self.add_topics(subscription, topics)
        return subscription

    def attach(self, subscription: Subscription) -> None:
        """Register a subscription that has no topics yet."""
        self._subscriptions[subscription.id] = subscription

    def add_topics(self, subscription: Subscription, topics: Iterable[str]) -> None:
        for topic in topics:
            subscription.topics.add(topic)
            self._topic_subscribers.setdefault(topic, set()).add(subscription.id)

    def remove_topics(self, subscription: Subscription, topics: Iterable[str]) -> None:
        for topic in topics:
            subscription.topics.discard(topic)
            subscribers = self._topic_subscribers.get(topic)
            if subscribers is None:
                continue
            subscribers.discard(subscription.id)
            if not subscribers:
                del self._topic_subscribers[topic]

    def unsubscribe(self, subscription: Subscription) -> None:
        """Detach a subscription from every topic and close it."""
        self.remove_topics(subscription, list(subscription.topics))
        self._subscriptions.pop(subscription.id, None)
        subscription.close()

    def publish(self, topic: str, message: Any) -> int:
        """Deliver to every subscriber of topic. Returns the delivery count."""
        delivered = 0
        for subscription_id in list(self._topic_subscribers.get(topic, ())):
            subscription = self._subscriptions.get(subscription_id)
            if subscription is not None:
                subscription.offer(message)
                delivered += 1
        return delivered

    def broadcast(self, message: Any) -> int:
        """Deliver to every attached subscription regardless of topic."""
        for subscription in list(self._subscriptions.values()):
            subscription.offer(message)
        return len(self._subscriptions)

    def topics(self) -> List[str]:
        return sorted(self._topic_subscribers)

    def subscriber_count(self, topic: Optional[str] = None) -> int:
        if topic is None:
            return len(self._subscriptions)
        return len(self._topic_subscribers.get(topic, ()))

    def dropped_total(self) -> int:
        return sum(s.dropped for s in self._subscriptions.values())
