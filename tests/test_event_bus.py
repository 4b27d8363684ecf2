"""
Tests for the in-process event bus.
"""

import asyncio

from src.storage.event_bus import EventBus, Topic


def test_delivers_in_subscription_order():
    bus = EventBus()
    received = []
    bus.subscribe(Topic.CLAIMS_CHANGED, lambda detail: received.append(("first", detail)))
    bus.subscribe(Topic.CLAIMS_CHANGED, lambda detail: received.append(("second", detail)))

    delivered = bus.publish(Topic.CLAIMS_CHANGED, {"claim_id": "C1"})

    assert delivered == 2
    assert received == [("first", {"claim_id": "C1"}), ("second", {"claim_id": "C1"})]


def test_topics_are_isolated():
    bus = EventBus()
    received = []
    bus.subscribe(Topic.NOTIFICATION_CHANGED, received.append)

    bus.publish(Topic.CLAIMS_CHANGED, {"claim_id": "C1"})
    bus.publish("notification-changed")

    assert received == [None]


def test_unsubscribe_removes_listener():
    bus = EventBus()
    received = []
    subscription = bus.subscribe(Topic.DATA_SYNC, received.append)
    assert bus.listener_count(Topic.DATA_SYNC) == 1

    subscription.unsubscribe()

    assert bus.listener_count() == 0
    assert bus.unsubscribe(subscription) is False
    assert bus.publish(Topic.DATA_SYNC, {}) == 0
    assert received == []


def test_failing_subscriber_does_not_block_others():
    bus = EventBus()
    received = []

    def broken(detail):
        raise RuntimeError("render failed")

    bus.subscribe(Topic.CLAIMS_CHANGED, broken)
    bus.subscribe(Topic.CLAIMS_CHANGED, received.append)

    delivered = bus.publish(Topic.CLAIMS_CHANGED, {"claim_id": "C1"})

    assert delivered == 1
    assert received == [{"claim_id": "C1"}]


def test_unsubscribing_during_publish():
    bus = EventBus()
    received = []
    later = None

    def first(detail):
        later.unsubscribe()
        received.append("first")

    bus.subscribe(Topic.CLAIMS_CHANGED, first)
    later = bus.subscribe(Topic.CLAIMS_CHANGED, lambda detail: received.append("later"))

    bus.publish(Topic.CLAIMS_CHANGED)

    assert received == ["first"]


def test_async_subscribers_are_scheduled():
    async def scenario():
        bus = EventBus()
        received = []

        async def handler(detail):
            await asyncio.sleep(0)
            received.append(detail["claim_id"])

        bus.subscribe(Topic.CLAIMS_CHANGED, handler)
        bus.publish(Topic.CLAIMS_CHANGED, {"claim_id": "C1"})
        assert received == []

        await bus.drain()
        return received

    assert asyncio.run(scenario()) == ["C1"]


def test_history_is_bounded():
    bus = EventBus(history_size=3)
    for index in range(5):
        bus.publish(Topic.DATA_SYNC, {"n": index})
    bus.publish(Topic.CLAIMS_CHANGED, {"n": 99})

    assert [event.detail["n"] for event in bus.history()] == [3, 4, 99]
    assert [event.detail["n"] for event in bus.history(Topic.DATA_SYNC)] == [3, 4]
