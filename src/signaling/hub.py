"""In-process topic publish/subscribe used as the real-time transport."""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Callable
from typing import Any

LOGGER = logging.getLogger(__name__)

PayloadCallback = Callable[[dict[str, Any]], None]


class HubSubscription:
    def __init__(self, hub: SignalingHub, topic: str, callback: PayloadCallback) -> None:
        self.topic = topic
        self.callback = callback
        self._hub: SignalingHub | None = hub

    @property
    def active(self) -> bool:
        return self._hub is not None

    def cancel(self) -> None:
        if self._hub is not None:
            self._hub._remove(self)
            self._hub = None


class SignalingHub:
    """Topic-scoped broadcast with at-most-once, fire-and-forget delivery.

    Every subscriber of a topic receives every payload published on it,
    including the publisher's own subscriptions. Delivery happens on a later
    loop iteration; nothing is persisted or retried.
    """

    def __init__(self) -> None:
        self._topics: dict[str, list[HubSubscription]] = {}

    def subscribe(self, topic: str, callback: PayloadCallback) -> HubSubscription:
        subscription = HubSubscription(self, topic, callback)
        self._topics.setdefault(topic, []).append(subscription)
        return subscription

    def _remove(self, subscription: HubSubscription) -> None:
        subscribers = self._topics.get(subscription.topic)
        if not subscribers:
            return
        try:
            subscribers.remove(subscription)
        except ValueError:
            return
        if not subscribers:
            del self._topics[subscription.topic]

    async def publish(self, topic: str, payload: dict[str, Any]) -> int:
        """Broadcast `payload` on `topic`. Returns the number of deliveries scheduled."""

        loop = asyncio.get_running_loop()
        subscribers = list(self._topics.get(topic, ()))
        for subscription in subscribers:
            loop.call_soon(self._deliver, subscription, copy.deepcopy(payload))
        if not subscribers:
            LOGGER.debug("Published on topic=%s with no subscribers", topic)
        return len(subscribers)

    @staticmethod
    def _deliver(subscription: HubSubscription, payload: dict[str, Any]) -> None:
        if not subscription.active:
            return
        try:
            subscription.callback(payload)
        except Exception:
            LOGGER.exception("Subscriber for topic=%s failed", subscription.topic)

    def subscriber_count(self, topic: str) -> int:
        return len(self._topics.get(topic, ()))

    @property
    def topics(self) -> list[str]:
        return list(self._topics)
