"""WebSocket client transport for the signaling relay (`/api/signaling/ws`)."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from config.settings import get_settings

LOGGER = logging.getLogger(__name__)

PayloadCallback = Callable[[dict[str, Any]], None]


class WebSocketSubscription:
    def __init__(self, transport: WebSocketTransport, topic: str, callback: PayloadCallback) -> None:
        self.topic = topic
        self.callback = callback
        self._transport: WebSocketTransport | None = transport

    def cancel(self) -> None:
        if self._transport is not None:
            self._transport._remove(self)
            self._transport = None


class WebSocketTransport:
    """Topic pub/sub over a single relay connection.

    Subscriptions are tracked locally and replayed after every reconnect.
    Publishing while disconnected raises `ConnectionError`, which
    `SignalingChannel.send` logs as a lost message.
    """

    def __init__(
        self,
        url: str | None = None,
        *,
        reconnect_delay: float | None = None,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        settings = get_settings()
        self._url = url or settings.signaling_url
        self._reconnect_delay = (
            reconnect_delay if reconnect_delay is not None else settings.signaling_reconnect_seconds
        )
        self._connect = connect
        self._ws: Any = None
        self._subscriptions: dict[str, list[WebSocketSubscription]] = {}
        self._runner: asyncio.Task | None = None
        self._connected = asyncio.Event()
        self._pending_frames: set[asyncio.Task] = set()

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def start(self) -> None:
        if self._runner is None:
            self._runner = asyncio.create_task(self._run())

    async def wait_connected(self, timeout: float | None = None) -> None:
        await asyncio.wait_for(self._connected.wait(), timeout)

    async def close(self) -> None:
        runner, self._runner = self._runner, None
        if runner is not None:
            runner.cancel()
            try:
                await runner
            except asyncio.CancelledError:
                pass
        for task in list(self._pending_frames):
            task.cancel()
        self._subscriptions.clear()

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        ws = self._ws
        if ws is None:
            raise ConnectionError("Signaling relay is not connected")
        await ws.send(json.dumps({"action": "publish", "topic": topic, "payload": payload}))

    def subscribe(self, topic: str, callback: PayloadCallback) -> WebSocketSubscription:
        subscription = WebSocketSubscription(self, topic, callback)
        subscribers = self._subscriptions.setdefault(topic, [])
        subscribers.append(subscription)
        if len(subscribers) == 1:
            self._send_frame_soon({"action": "subscribe", "topic": topic})
        return subscription

    def _remove(self, subscription: WebSocketSubscription) -> None:
        subscribers = self._subscriptions.get(subscription.topic)
        if not subscribers or subscription not in subscribers:
            return
        subscribers.remove(subscription)
        if not subscribers:
            del self._subscriptions[subscription.topic]
            self._send_frame_soon({"action": "unsubscribe", "topic": subscription.topic})

    def _send_frame_soon(self, frame: dict[str, Any]) -> None:
        # Disconnected: the subscription set is replayed on reconnect.
        if self._ws is None:
            return
        task = asyncio.create_task(self._send_frame(self._ws, frame))
        self._pending_frames.add(task)
        task.add_done_callback(self._pending_frames.discard)

    @staticmethod
    async def _send_frame(ws: Any, frame: dict[str, Any]) -> None:
        try:
            await ws.send(json.dumps(frame))
        except ConnectionClosed:
            LOGGER.warning("Relay closed before %s frame for %s", frame["action"], frame["topic"])

    async def _run(self) -> None:
        async for ws in self._ws_connect_loop():
            try:
                for topic in list(self._subscriptions):
                    await ws.send(json.dumps({"action": "subscribe", "topic": topic}))
                self._ws = ws
                self._connected.set()
                LOGGER.info("Connected to signaling relay %s", self._url)
                await self._handle_frames(ws)
            except ConnectionClosed:
                LOGGER.warning("Signaling relay connection closed; reconnecting")
            finally:
                self._ws = None
                self._connected.clear()

    async def _handle_frames(self, ws: Any) -> None:
        async for raw in ws:
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if not isinstance(frame, dict):
                continue
            topic = str(frame.get("topic") or "")
            payload = frame.get("payload")
            if not topic or not isinstance(payload, dict):
                continue
            for subscription in list(self._subscriptions.get(topic, ())):
                try:
                    subscription.callback(payload)
                except Exception:
                    LOGGER.exception("Subscriber for topic=%s failed", topic)

    async def _ws_connect_loop(self):
        while True:
            try:
                async with self._connect(self._url, ping_interval=20, ping_timeout=20) as ws:
                    yield ws
            except (OSError, ConnectionClosed, InvalidHandshake):
                LOGGER.exception("Failed to connect to signaling relay; retrying")
            await asyncio.sleep(self._reconnect_delay)
