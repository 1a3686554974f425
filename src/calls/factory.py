"""Factory wiring a CallSessionManager to the configured store, relay and media backend."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from calls.manager import CallSessionManager
from config.settings import get_settings
from db.repository import CallRepository
from media.factory import build_media_backend
from signaling.channel import SignalingChannel
from signaling.websocket import WebSocketTransport

LOGGER = logging.getLogger(__name__)


@dataclass
class CallClient:
    manager: CallSessionManager
    transport: WebSocketTransport

    async def close(self) -> None:
        await self.manager.close()
        self.manager.repository.changes.detach()
        await self.transport.close()


async def connect_call_client(
    self_id: str,
    *,
    repository: CallRepository | None = None,
    transport: WebSocketTransport | None = None,
    connect_timeout: float | None = 10.0,
) -> CallClient:
    """Start the relay connection and a listening manager for `self_id`."""

    settings = get_settings()
    transport = transport or WebSocketTransport(settings.signaling_url)
    await transport.start()
    await transport.wait_connected(timeout=connect_timeout)

    repository = repository or CallRepository()
    # Other clients learn about this client's writes through the relay.
    repository.changes.attach(transport, settings.change_topic)
    manager = CallSessionManager(
        self_id,
        repository,
        SignalingChannel(transport),
        media=build_media_backend(),
    )
    try:
        await manager.start()
    except Exception:
        repository.changes.detach()
        await transport.close()
        raise
    LOGGER.info("Call client for %s connected (media backend: %s)", self_id, settings.media_backend)
    return CallClient(manager=manager, transport=transport)
