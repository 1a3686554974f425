"""Row change notifications for the call tables.

The repository publishes one `RowChange` per committed insert or update.
Subscribers register per table with an optional row predicate and are called
on the next event loop iteration, the same way a managed store pushes
notifications to its clients after the write has completed.

A feed only sees the writes of its own process until it is attached to a
topic transport (the signaling relay). Attached feeds forward every local
change on that topic and deliver the changes other clients forward.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Protocol

LOGGER = logging.getLogger(__name__)

Operation = Literal["INSERT", "UPDATE"]
RowPredicate = Callable[[dict[str, Any]], bool]
ChangeCallback = Callable[["RowChange"], None]

OPERATIONS: frozenset[str] = frozenset({"INSERT", "UPDATE"})


class ChangeTransport(Protocol):
    async def publish(self, topic: str, payload: dict[str, Any]) -> Any: ...

    def subscribe(self, topic: str, callback: Callable[[dict[str, Any]], None]) -> Any: ...


@dataclass(frozen=True, slots=True)
class RowChange:
    table: str
    operation: Operation
    row: dict[str, Any]

    def to_wire(self, origin: str) -> dict[str, Any]:
        row = {
            name: value.isoformat() if isinstance(value, datetime) else value
            for name, value in self.row.items()
        }
        return {"origin": origin, "table": self.table, "operation": self.operation, "row": row}

    @classmethod
    def from_wire(cls, payload: dict[str, Any]) -> RowChange | None:
        table = payload.get("table")
        operation = payload.get("operation")
        row = payload.get("row")
        if not isinstance(table, str) or operation not in OPERATIONS or not isinstance(row, dict):
            return None
        return cls(table, operation, row)


@dataclass(slots=True)
class ChangeSubscription:
    table: str
    callback: ChangeCallback
    predicate: RowPredicate | None = None
    _feed: ChangeFeed | None = field(default=None, repr=False)

    def matches(self, change: RowChange) -> bool:
        if change.table != self.table:
            return False
        if self.predicate is None:
            return True
        return bool(self.predicate(change.row))

    def cancel(self) -> None:
        if self._feed is not None:
            self._feed.unsubscribe(self)
            self._feed = None

    @property
    def active(self) -> bool:
        return self._feed is not None


class ChangeFeed:
    """Fan-out of row changes to filtered subscribers."""

    def __init__(self) -> None:
        self._subscriptions: list[ChangeSubscription] = []
        self.origin = uuid.uuid4().hex
        self._transport: ChangeTransport | None = None
        self._topic: str | None = None
        self._remote_subscription: Any = None
        self._outbox: asyncio.Queue[RowChange] | None = None
        self._forwarder: asyncio.Task | None = None

    def subscribe(
        self,
        table: str,
        callback: ChangeCallback,
        *,
        predicate: RowPredicate | None = None,
    ) -> ChangeSubscription:
        subscription = ChangeSubscription(table=table, callback=callback, predicate=predicate)
        subscription._feed = self
        self._subscriptions.append(subscription)
        LOGGER.debug("Change subscription added for table=%s", table)
        return subscription

    def unsubscribe(self, subscription: ChangeSubscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            return

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    @property
    def attached(self) -> bool:
        return self._transport is not None

    def attach(self, transport: ChangeTransport, topic: str) -> None:
        """Share changes with every other feed attached to `topic`."""

        if self._transport is not None:
            raise RuntimeError("ChangeFeed is already attached")
        self._transport = transport
        self._topic = topic
        self._remote_subscription = transport.subscribe(topic, self._on_remote)
        LOGGER.info("Change feed %s attached to topic=%s", self.origin[:8], topic)

    def detach(self) -> None:
        if self._remote_subscription is not None:
            self._remote_subscription.cancel()
            self._remote_subscription = None
        if self._forwarder is not None:
            self._forwarder.cancel()
            self._forwarder = None
        self._outbox = None
        self._transport = None
        self._topic = None

    def publish(self, change: RowChange) -> None:
        """Schedule delivery of `change` to every matching subscriber.

        Must be called from inside the running event loop.
        """

        self._dispatch(change)
        if self._transport is not None:
            self._forward(change)

    def _dispatch(self, change: RowChange) -> None:
        loop = asyncio.get_running_loop()
        for subscription in list(self._subscriptions):
            try:
                matched = subscription.matches(change)
            except Exception:
                LOGGER.exception("Change predicate failed for table=%s", change.table)
                continue
            if matched:
                loop.call_soon(self._deliver, subscription, RowChange(change.table, change.operation, dict(change.row)))

    def _forward(self, change: RowChange) -> None:
        # A single forwarder keeps the relay order equal to the commit order.
        if self._outbox is None:
            self._outbox = asyncio.Queue()
        self._outbox.put_nowait(change)
        if self._forwarder is None or self._forwarder.done():
            self._forwarder = asyncio.create_task(self._drain(self._outbox))

    async def _drain(self, outbox: asyncio.Queue[RowChange]) -> None:
        while True:
            change = await outbox.get()
            transport, topic = self._transport, self._topic
            if transport is None or topic is None:
                return
            try:
                await transport.publish(topic, change.to_wire(self.origin))
            except Exception:
                LOGGER.exception("Could not forward %s on table=%s", change.operation, change.table)

    def _on_remote(self, payload: dict[str, Any]) -> None:
        if payload.get("origin") == self.origin:
            return
        change = RowChange.from_wire(payload)
        if change is None:
            LOGGER.warning("Ignoring malformed row change from topic=%s", self._topic)
            return
        self._dispatch(change)

    @staticmethod
    def _deliver(subscription: ChangeSubscription, change: RowChange) -> None:
        # A subscription cancelled after scheduling must not see the change.
        if not subscription.active:
            return
        subscription.callback(change)
