"""Per-call signaling channel over a topic publish/subscribe transport."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from pydantic import ValidationError

from calls.schemas import SignalingMessage
from config.settings import get_settings

LOGGER = logging.getLogger(__name__)

MessageCallback = Callable[[SignalingMessage], None]


class Subscription(Protocol):
    def cancel(self) -> None: ...


class SignalingTransport(Protocol):
    async def publish(self, topic: str, payload: dict[str, Any]) -> Any: ...

    def subscribe(self, topic: str, callback: Callable[[dict[str, Any]], None]) -> Subscription: ...


@dataclass
class Topic:
    call_id: str
    name: str
    subscriptions: list[Subscription] = field(default_factory=list)


class SignalingChannel:
    """Delivers SignalingMessages between the two participants of a call.

    Sends are fire-and-forget: a transport failure is logged and the message
    is lost. Subscribers see every message on the topic, their own included,
    so they must filter on the recipient (pass `self_id` to do so here).
    """

    def __init__(self, transport: SignalingTransport, *, topic_prefix: str | None = None) -> None:
        self._transport = transport
        if topic_prefix is None:
            topic_prefix = get_settings().signaling_topic_prefix
        self._prefix = topic_prefix
        self._topics: dict[str, Topic] = {}

    def topic_name(self, call_id: str) -> str:
        return f"{self._prefix}{call_id}"

    def open_topic(self, call_id: str) -> Topic:
        topic = self._topics.get(call_id)
        if topic is None:
            topic = Topic(call_id=call_id, name=self.topic_name(call_id))
            self._topics[call_id] = topic
        return topic

    async def send(self, message: SignalingMessage) -> None:
        topic = self.open_topic(message.call_id)
        try:
            await self._transport.publish(topic.name, message.to_wire())
        except Exception:
            LOGGER.exception(
                "Signal %s for call=%s to %s lost",
                message.payload.type,
                message.call_id,
                message.recipient,
            )

    def subscribe(
        self,
        call_id: str,
        on_message: MessageCallback,
        *,
        self_id: str | None = None,
    ) -> Subscription:
        topic = self.open_topic(call_id)

        def _on_payload(payload: dict[str, Any]) -> None:
            try:
                message = SignalingMessage.from_wire(payload)
            except ValidationError as exc:
                LOGGER.warning("Dropping malformed signal on %s: %s", topic.name, exc)
                return
            if message.call_id != call_id:
                return
            if self_id is not None and message.recipient != self_id:
                return
            on_message(message)

        subscription = self._transport.subscribe(topic.name, _on_payload)
        topic.subscriptions.append(subscription)
        return subscription

    def close_topic(self, call_id: str) -> None:
        topic = self._topics.pop(call_id, None)
        if topic is None:
            return
        for subscription in topic.subscriptions:
            subscription.cancel()
        topic.subscriptions.clear()
        LOGGER.debug("Closed signaling topic %s", topic.name)

    @property
    def open_topics(self) -> list[str]:
        return [topic.name for topic in self._topics.values()]
