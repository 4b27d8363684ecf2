"""
In-process publish/subscribe channel for invalidation signals.

Views subscribe to named topics when they mount and unsubscribe when they
unmount. Publishing is synchronous: subscribers registered at publish time
are called in subscription order before ``publish`` returns. Coroutine
callbacks are scheduled as tasks on the running loop.
"""

import asyncio
import inspect
import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

logger = logging.getLogger(__name__)


class Topic(str, Enum):
    """Named invalidation topics."""
    CLAIMS_CHANGED = "claims-changed"
    NOTIFICATION_CHANGED = "notification-changed"
    DATA_SYNC = "data-sync"


Callback = Callable[[Optional[Mapping[str, Any]]], Any]


@dataclass
class Subscription:
    """Handle returned by ``EventBus.subscribe``; call ``unsubscribe()`` on unmount."""
    bus: "EventBus"
    topic: Topic
    callback: Callback
    token: int
    active: bool = True

    def unsubscribe(self) -> None:
        self.bus.unsubscribe(self)


@dataclass
class PublishedEvent:
    """Record of one published event, kept for diagnostics."""
    topic: Topic
    detail: Optional[Mapping[str, Any]]
    delivered: int


class EventBus:
    """
    Publish/subscribe bus carrying invalidation events.

    Usage:
        bus = EventBus()
        sub = bus.subscribe(Topic.CLAIMS_CHANGED, lambda detail: refresh())
        bus.publish(Topic.CLAIMS_CHANGED, {"type": "claim_submitted", "claim_id": "CLM-1"})
        sub.unsubscribe()
    """

    def __init__(self, history_size: int = 100):
        self._subscribers: Dict[Topic, List[Subscription]] = {topic: [] for topic in Topic}
        self._tokens = itertools.count(1)
        self._history: List[PublishedEvent] = []
        self._history_size = history_size
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, topic, callback: Callback) -> Subscription:
        """Register ``callback`` for ``topic``."""
        topic = Topic(topic)
        subscription = Subscription(self, topic, callback, next(self._tokens))
        self._subscribers[topic].append(subscription)
        logger.debug(f"Subscribed #{subscription.token} to {topic.value}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        """Remove a subscription. Returns False if it was already removed."""
        listeners = self._subscribers[subscription.topic]
        subscription.active = False
        if subscription in listeners:
            listeners.remove(subscription)
            logger.debug(f"Unsubscribed #{subscription.token} from {subscription.topic.value}")
            return True
        return False

    def listener_count(self, topic=None) -> int:
        """Number of live subscriptions, for one topic or all of them."""
        if topic is not None:
            return len(self._subscribers[Topic(topic)])
        return sum(len(listeners) for listeners in self._subscribers.values())

    def publish(self, topic, detail: Optional[Mapping[str, Any]] = None) -> int:
        """
        Deliver an event to every current subscriber of ``topic``.

        A failing subscriber is logged and does not stop delivery to the
        others.

        Returns:
            Number of subscribers the event was delivered to
        """
        topic = Topic(topic)
        delivered = 0
        for subscription in list(self._subscribers[topic]):
            if not subscription.active:
                continue
            try:
                outcome = subscription.callback(detail)
                if inspect.isawaitable(outcome):
                    self._schedule(outcome, topic)
            except Exception:
                logger.exception(f"Subscriber #{subscription.token} failed handling {topic.value}")
                continue
            delivered += 1

        self._history.append(PublishedEvent(topic, detail, delivered))
        del self._history[: -self._history_size]
        logger.debug(f"Published {topic.value} to {delivered} subscriber(s): {detail}")
        return delivered

    def history(self, topic=None) -> List[PublishedEvent]:
        if topic is None:
            return list(self._history)
        topic = Topic(topic)
        return [event for event in self._history if event.topic == topic]

    async def drain(self) -> None:
        """Wait for scheduled coroutine callbacks to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _schedule(self, awaitable, topic: Topic) -> None:
        task = asyncio.ensure_future(awaitable)
        self._pending.add(task)

        def _done(finished: asyncio.Task) -> None:
            self._pending.discard(finished)
            if not finished.cancelled() and finished.exception() is not None:
                logger.error(
                    f"Async subscriber failed handling {topic.value}: {finished.exception()!r}"
                )

        task.add_done_callback(_done)
