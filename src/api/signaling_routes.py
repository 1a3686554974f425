"""Signaling relay: topic pub/sub over a WebSocket for remote clients."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from api.dependencies import get_signaling_hub
from api.schemas import RelayFrame
from signaling.hub import HubSubscription, SignalingHub

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/signaling", tags=["signaling"])


async def _drain_outbox(websocket: WebSocket, outbox: asyncio.Queue[dict[str, Any]]) -> None:
    while True:
        frame = await outbox.get()
        await websocket.send_json(frame)


@router.websocket("/ws")
async def signaling_relay(
    websocket: WebSocket,
    hub: SignalingHub = Depends(get_signaling_hub),
) -> None:
    await websocket.accept()
    outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
    subscriptions: dict[str, HubSubscription] = {}

    def _forwarder(topic: str):
        def _forward(payload: dict[str, Any]) -> None:
            outbox.put_nowait({"topic": topic, "payload": payload})

        return _forward

    sender = asyncio.create_task(_drain_outbox(websocket, outbox))
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = RelayFrame.model_validate_json(raw)
            except ValidationError:
                LOGGER.debug("Ignoring malformed relay frame: %.200s", raw)
                continue

            if frame.action == "subscribe":
                if frame.topic not in subscriptions:
                    subscriptions[frame.topic] = hub.subscribe(frame.topic, _forwarder(frame.topic))
            elif frame.action == "unsubscribe":
                subscription = subscriptions.pop(frame.topic, None)
                if subscription is not None:
                    subscription.cancel()
            else:
                await hub.publish(frame.topic, frame.payload)
    except WebSocketDisconnect:
        LOGGER.debug("Relay client disconnected (%d topic(s))", len(subscriptions))
    finally:
        for subscription in subscriptions.values():
            subscription.cancel()
        sender.cancel()
