from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager

import pytest

from calls.errors import AuthRequiredError, MediaDeviceUnavailableError
from calls.factory import connect_call_client
from calls.schemas import IceCandidate, IncomingCall
from config.settings import get_settings
from media.factory import build_media_backend
from signaling.websocket import WebSocketTransport


class _IdleSocket:
    def __init__(self) -> None:
        self.sent: list[dict] = []
        self._closed = asyncio.Event()

    async def send(self, raw: str) -> None:
        self.sent.append(json.loads(raw))

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        await self._closed.wait()
        raise StopAsyncIteration


def _transport(sockets: list) -> WebSocketTransport:
    @asynccontextmanager
    async def _connect(url, **kwargs):
        socket = _IdleSocket()
        sockets.append(socket)
        yield socket

    return WebSocketTransport("ws://relay.test/ws", reconnect_delay=0.01, connect=_connect)


def test_build_media_backend_follows_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    settings = get_settings()
    assert settings.media_backend == "none"
    assert build_media_backend() is None

    monkeypatch.setattr(settings, "media_backend", "carrier-pigeon")
    with pytest.raises(ValueError):
        build_media_backend()


def test_connect_call_client_listens_for_incoming_calls(repository_factory) -> None:
    async def _run():
        repo = await repository_factory()
        sockets: list = []
        client = await connect_call_client("bob", repository=repo, transport=_transport(sockets))
        try:
            call = await repo.create_session(initiator_id="alice", recipient_id="bob", call_type="voice")
            await repo.transition_session(call.id, from_statuses=("initiating",), to_status="ringing")
            incoming = await asyncio.wait_for(client.manager.notifications.get(), 1.0)
            for _ in range(50):
                if sum(frame["action"] == "publish" for frame in sockets[0].sent) >= 2:
                    break
                await asyncio.sleep(0.01)
            connected = client.transport.connected
            controller = client.manager.controller(call.id)
        finally:
            await client.close()
        return call, incoming, connected, controller, repo.changes.attached, list(sockets[0].sent)

    call, incoming, connected, controller, still_attached, relayed = asyncio.run(_run())
    assert connected is True
    assert isinstance(incoming, IncomingCall)
    assert incoming.session.id == call.id
    # No media backend configured: the call can be answered without devices.
    assert controller.negotiator is None
    # Row changes are shared with other clients over the relay.
    assert {"action": "subscribe", "topic": "call_changes"} in relayed
    published = [frame["payload"] for frame in relayed if frame["action"] == "publish"]
    assert {frame["topic"] for frame in relayed if frame["action"] == "publish"} == {"call_changes"}
    assert [payload["row"]["status"] for payload in published] == ["initiating", "ringing"]
    assert still_attached is False


def test_connect_call_client_requires_identity(repository_factory) -> None:
    async def _run():
        repo = await repository_factory()
        sockets: list = []
        transport = _transport(sockets)
        with pytest.raises(AuthRequiredError):
            await connect_call_client("", repository=repo, transport=transport)
        return transport.connected

    assert asyncio.run(_run()) is False


def test_aiortc_connections_exchange_offer_and_answer() -> None:
    pytest.importorskip("aiortc")
    from aiortc.mediastreams import AudioStreamTrack

    from media.aiortc_backend import AiortcConnection, ToggleableTrack

    async def _run():
        caller, callee = AiortcConnection([]), AiortcConnection([])
        try:
            caller.add_track(ToggleableTrack(AudioStreamTrack()))
            callee.add_track(ToggleableTrack(AudioStreamTrack()))
            offer = await caller.create_offer()
            await callee.set_remote_description(offer)
            answer = await callee.create_answer()
            await caller.set_remote_description(answer)
            # End-of-candidates marker is accepted and ignored.
            await callee.add_ice_candidate(IceCandidate(candidate=""))
            return offer, answer
        finally:
            await caller.close()
            await callee.close()

    offer, answer = asyncio.run(_run())
    assert offer.type == "offer"
    assert answer.type == "answer"
    assert "m=audio" in offer.sdp


def test_aiortc_backend_maps_missing_devices(tmp_path) -> None:
    pytest.importorskip("aiortc")
    from media.aiortc_backend import AiortcBackend

    with pytest.raises(MediaDeviceUnavailableError):
        AiortcBackend._open(str(tmp_path / "no-such-device.wav"), None, {})


def test_only_audio_tracks_can_be_muted() -> None:
    pytest.importorskip("aiortc")
    from aiortc.mediastreams import AudioStreamTrack, VideoStreamTrack

    from media.aiortc_backend import ToggleableTrack

    with pytest.raises(ValueError):
        ToggleableTrack(VideoStreamTrack())
    track = ToggleableTrack(AudioStreamTrack())
    assert track.kind == "audio"
    assert track.enabled is True
