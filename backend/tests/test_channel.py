"""
Tests for the bounded publish/subscribe channel.
"""

import pytest

from papertrade.core.channel import Channel, Subscription


class TestSubscription:
    """Tests for a single bounded queue."""

    def test_offer_and_drain(self):
        sub = Subscription(maxsize=3)
        assert sub.offer(1)
        assert sub.offer(2)
        assert sub.pending == 2
        assert sub.drain() == [1, 2]
        assert sub.pending == 0

    def test_full_queue_drops_oldest(self):
        """A slow consumer loses its oldest messages, never the newest."""
        sub = Subscription(maxsize=2)
        sub.offer("a")
        sub.offer("b")
        assert sub.offer("c") is False

        assert sub.drain() == ["b", "c"]
        assert sub.dropped == 1
        assert sub.delivered == 3

    def test_closed_subscription_rejects(self):
        sub = Subscription()
        sub.close()
        assert sub.offer("x") is False
        assert sub.pending == 0

    @pytest.mark.asyncio
    async def test_get_waits_for_message(self):
        sub = Subscription()
        sub.offer({"ltp": 100})
        assert await sub.get() == {"ltp": 100}


class TestChannel:
    """Tests for topic routing."""

    def test_publish_reaches_topic_subscribers_only(self):
        channel = Channel(maxsize=10)
        reliance = channel.subscribe("RELIANCE")
        tcs = channel.subscribe("TCS")

        delivered = channel.publish("RELIANCE", "tick")

        assert delivered == 1
        assert reliance.drain() == ["tick"]
        assert tcs.drain() == []

    def test_subscribe_many_shares_one_queue(self):
        channel = Channel(maxsize=10)
        sub = channel.subscribe_many(["RELIANCE", "TCS"])

        channel.publish("RELIANCE", "r")
        channel.publish("TCS", "t")
        channel.publish("INFY", "i")

        assert sub.drain() == ["r", "t"]
        assert channel.topics() == ["RELIANCE", "TCS"]

    def test_broadcast_reaches_everyone(self):
        channel = Channel()
        subs = [channel.subscribe("A"), channel.subscribe("B")]
        untopical = Subscription()
        channel.attach(untopical)

        assert channel.broadcast("hello") == 3
        assert all(s.drain() == ["hello"] for s in subs + [untopical])

    def test_add_and_remove_topics(self):
        channel = Channel()
        sub = Subscription()
        channel.attach(sub)
        channel.add_topics(sub, ["A", "B"])

        assert channel.topics() == ["A", "B"]
        assert channel.subscriber_count("A") == 1

        channel.remove_topics(sub, ["A"])
        assert channel.topics() == ["B"]
        assert channel.publish("A", 1) == 0

    def test_unsubscribe_closes(self):
        channel = Channel()
        sub = channel.subscribe("A")
        channel.unsubscribe(sub)

        assert sub.closed
        assert channel.subscriber_count() == 0
        assert channel.topics() == []

    def test_dropped_total(self):
        channel = Channel(maxsize=1)
        sub = channel.subscribe("A")
        for i in range(4):
            channel.publish("A", i)

        assert channel.dropped_total() == 3
        assert sub.drain() == [3]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
