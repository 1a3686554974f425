"""aiortc implementation of the media and peer-connection collaborators.

Imported lazily by `media.factory` so the rest of the package does not need
aiortc/PyAV installed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaPlayer
from aiortc.sdp import candidate_from_sdp
from av.error import FFmpegError

from calls.errors import MediaDeviceUnavailableError, MediaPermissionDeniedError
from calls.schemas import IceCandidate
from config.settings import get_settings
from media.backends import ConnectionState, LocalMedia, SessionDescription

LOGGER = logging.getLogger(__name__)


class ToggleableTrack(MediaStreamTrack):
    """Relays a source audio track and silences it while `enabled` is False."""

    kind = "audio"

    def __init__(self, source: MediaStreamTrack) -> None:
        if source.kind != "audio":
            raise ValueError(f"Only audio tracks can be muted, got {source.kind}")
        super().__init__()
        self.enabled = True
        self._source = source

    async def recv(self):
        frame = await self._source.recv()
        if not self.enabled:
            for plane in frame.planes:
                plane.update(bytes(plane.buffer_size))
        return frame

    def stop(self) -> None:
        super().stop()
        self._source.stop()


class AiortcConnection:
    def __init__(self, ice_servers: list[str]) -> None:
        configuration = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])
        self._pc = RTCPeerConnection(configuration=configuration)
        self._state_callbacks: list[Callable[[ConnectionState], None]] = []
        self._track_callbacks: list[Callable[[Any], None]] = []

        @self._pc.on("connectionstatechange")
        async def _on_connection_state_change() -> None:
            for callback in list(self._state_callbacks):
                callback(self._pc.connectionState)

        @self._pc.on("track")
        def _on_track(track: MediaStreamTrack) -> None:
            for callback in list(self._track_callbacks):
                callback(track)

    @property
    def connection_state(self) -> ConnectionState:
        return self._pc.connectionState

    def on_state_change(self, callback: Callable[[ConnectionState], None]) -> None:
        self._state_callbacks.append(callback)

    def on_track(self, callback: Callable[[Any], None]) -> None:
        self._track_callbacks.append(callback)

    def on_ice_candidate(self, callback: Callable[[IceCandidate], None]) -> None:
        # aiortc gathers candidates before returning the local description and
        # embeds them in the SDP; it never trickles.
        return None

    def add_track(self, track: Any) -> None:
        self._pc.addTrack(track)

    async def create_offer(self) -> SessionDescription:
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        local = self._pc.localDescription
        return SessionDescription(local.type, local.sdp)

    async def create_answer(self) -> SessionDescription:
        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        local = self._pc.localDescription
        return SessionDescription(local.type, local.sdp)

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        sdp = candidate.candidate
        if sdp.startswith("candidate:"):
            sdp = sdp.split(":", 1)[1]
        if not sdp:
            # End-of-candidates marker.
            return
        ice = candidate_from_sdp(sdp)
        ice.sdpMid = candidate.sdp_mid
        ice.sdpMLineIndex = candidate.sdp_mline_index
        await self._pc.addIceCandidate(ice)

    async def close(self) -> None:
        await self._pc.close()


class AiortcBackend:
    """Captures local devices through FFmpeg (via PyAV) and builds aiortc connections."""

    def __init__(self) -> None:
        settings = get_settings()
        self._audio_device = settings.audio_device
        self._audio_format = settings.audio_format
        self._video_device = settings.video_device
        self._video_format = settings.video_format
        self._video_size = settings.video_size

    async def capture(self, *, audio: bool, video: bool) -> LocalMedia:
        media = LocalMedia()
        try:
            if audio:
                player = self._open(self._audio_device, self._audio_format, {})
                if player.audio is None:
                    raise MediaDeviceUnavailableError(f"No audio track on {self._audio_device}")
                media.audio_tracks.append(ToggleableTrack(player.audio))
            if video:
                player = self._open(
                    self._video_device, self._video_format, {"video_size": self._video_size}
                )
                if player.video is None:
                    raise MediaDeviceUnavailableError(f"No video track on {self._video_device}")
                media.video_tracks.append(player.video)
        except Exception:
            media.stop()
            raise
        return media

    @staticmethod
    def _open(device: str, fmt: str | None, options: dict[str, str]) -> MediaPlayer:
        try:
            return MediaPlayer(device, format=fmt, options=options)
        except PermissionError as exc:
            raise MediaPermissionDeniedError(f"Access to {device} denied") from exc
        except (OSError, FFmpegError) as exc:
            raise MediaDeviceUnavailableError(f"Cannot open {device}: {exc}") from exc

    def create_connection(self, ice_servers: list[str]) -> AiortcConnection:
        return AiortcConnection(ice_servers)
