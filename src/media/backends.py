"""Media/device and peer-connection collaborators used by PeerNegotiator."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from calls.schemas import IceCandidate

ConnectionState = Literal["new", "connecting", "connected", "disconnected", "failed", "closed"]


@dataclass(frozen=True, slots=True)
class SessionDescription:
    type: Literal["offer", "answer"]
    sdp: str


class MediaTrack(Protocol):
    kind: str
    enabled: bool

    def stop(self) -> None: ...


@dataclass
class LocalMedia:
    """Captured local tracks. Toggling `enabled` mutes without renegotiation."""

    audio_tracks: list[Any] = field(default_factory=list)
    video_tracks: list[Any] = field(default_factory=list)
    stopped: bool = False

    @property
    def tracks(self) -> list[Any]:
        return [*self.audio_tracks, *self.video_tracks]

    @property
    def audio_enabled(self) -> bool:
        return any(track.enabled for track in self.audio_tracks)

    def set_audio_enabled(self, enabled: bool) -> None:
        for track in self.audio_tracks:
            track.enabled = enabled

    def stop(self) -> None:
        if self.stopped:
            return
        self.stopped = True
        for track in self.tracks:
            track.stop()


class PeerConnection(Protocol):
    """The subset of a WebRTC peer connection the negotiator drives.

    `create_offer` and `create_answer` also apply the result as the local
    description and return what was applied.
    """

    @property
    def connection_state(self) -> ConnectionState: ...

    def on_state_change(self, callback: Callable[[ConnectionState], None]) -> None: ...

    def on_track(self, callback: Callable[[Any], None]) -> None: ...

    def on_ice_candidate(self, callback: Callable[[IceCandidate], None]) -> None: ...

    def add_track(self, track: Any) -> None: ...

    async def create_offer(self) -> SessionDescription: ...

    async def create_answer(self) -> SessionDescription: ...

    async def set_remote_description(self, description: SessionDescription) -> None: ...

    async def add_ice_candidate(self, candidate: IceCandidate) -> None: ...

    async def close(self) -> None: ...


class MediaBackend(Protocol):
    async def capture(self, *, audio: bool, video: bool) -> LocalMedia:
        """Acquire local media.

        Raises MediaPermissionDeniedError or MediaDeviceUnavailableError.
        """
        ...

    def create_connection(self, ice_servers: list[str]) -> PeerConnection: ...
