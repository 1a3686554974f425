"""Offer/answer/ICE negotiation for one call."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Union

from calls.schemas import (
    AnswerPayload,
    CandidatePayload,
    IceCandidate,
    OfferPayload,
    SignalingMessage,
)
from media.backends import (
    ConnectionState,
    LocalMedia,
    MediaBackend,
    PeerConnection,
    SessionDescription,
)
from signaling.channel import SignalingChannel

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RemoteTrackEvent:
    track: Any


@dataclass(frozen=True, slots=True)
class ConnectionStateEvent:
    state: ConnectionState


@dataclass(frozen=True, slots=True)
class NegotiationErrorEvent:
    error: str


NegotiatorEvent = Union[RemoteTrackEvent, ConnectionStateEvent, NegotiationErrorEvent]


class PeerNegotiator:
    """Owns local media and the peer connection for a single call.

    Lifecycle events go to `events`, which always ends with
    `ConnectionStateEvent("closed")` once `stop()` ran. ICE candidates that
    arrive before the remote description are held back and applied, in
    arrival order, right after it is set.
    """

    def __init__(
        self,
        backend: MediaBackend,
        channel: SignalingChannel,
        *,
        call_type: str = "voice",
        ice_servers: Iterable[str] = (),
    ) -> None:
        self._backend = backend
        self._channel = channel
        self._call_type = call_type
        self._ice_servers = list(ice_servers)
        self.events: asyncio.Queue[NegotiatorEvent] = asyncio.Queue()

        self._state: ConnectionState = "new"
        self._local_media: LocalMedia | None = None
        self._connection: PeerConnection | None = None
        self._remote_tracks: list[Any] = []
        self._pending_candidates: list[IceCandidate] = []
        self._remote_description_set = False
        self._offer_sent = False
        self._stopped = False

        self._self_id: str | None = None
        self._peer_id: str | None = None
        self._call_id: str | None = None
        self._is_initiator = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def local_media(self) -> LocalMedia | None:
        return self._local_media

    @property
    def remote_tracks(self) -> list[Any]:
        return list(self._remote_tracks)

    @property
    def pending_candidates(self) -> int:
        return len(self._pending_candidates)

    @property
    def started(self) -> bool:
        return self._connection is not None

    async def prepare(self) -> LocalMedia:
        """Acquire local media: audio always, video for video calls."""

        if self._stopped:
            raise RuntimeError("PeerNegotiator already stopped")
        if self._local_media is None:
            media = await self._backend.capture(audio=True, video=self._call_type == "video")
            if self._stopped:
                media.stop()
                raise RuntimeError("PeerNegotiator stopped during capture")
            self._local_media = media
            LOGGER.info(
                "Local media ready: %d audio, %d video track(s)",
                len(media.audio_tracks),
                len(media.video_tracks),
            )
        return self._local_media

    async def start(self, self_id: str, peer_id: str, call_id: str, is_initiator: bool) -> None:
        if self._connection is not None:
            raise RuntimeError("PeerNegotiator already started")
        media = await self.prepare()

        self._self_id = self_id
        self._peer_id = peer_id
        self._call_id = call_id
        self._is_initiator = is_initiator

        connection = self._backend.create_connection(self._ice_servers)
        connection.on_state_change(self._on_state_change)
        connection.on_track(self._on_track)
        connection.on_ice_candidate(self._on_local_candidate)
        for track in media.tracks:
            connection.add_track(track)
        self._connection = connection

        if not is_initiator:
            LOGGER.info("Waiting for offer on call=%s", call_id)
            return

        try:
            offer = await connection.create_offer()
        except Exception as exc:
            self._fail(f"offer creation failed: {exc}")
            return
        self._offer_sent = True
        await self._send(OfferPayload(sdp=offer.sdp))
        LOGGER.info("Offer sent to %s for call=%s", peer_id, call_id)

    async def on_signal(self, message: SignalingMessage) -> None:
        """Process exactly one offer, answer or candidate from the peer."""

        connection = self._connection
        if self._stopped or connection is None:
            LOGGER.debug("Ignoring %s: negotiator not running", message.payload.type)
            return
        if message.call_id != self._call_id:
            return

        payload = message.payload
        try:
            if isinstance(payload, OfferPayload):
                await self._handle_offer(connection, payload)
            elif isinstance(payload, AnswerPayload):
                await self._handle_answer(connection, payload)
            elif isinstance(payload, CandidatePayload):
                await self._handle_candidate(connection, payload.candidate)
        except Exception as exc:
            LOGGER.exception("Negotiation failed on %s for call=%s", payload.type, self._call_id)
            self._fail(f"{payload.type} handling failed: {exc}")

    async def _handle_offer(self, connection: PeerConnection, payload: OfferPayload) -> None:
        if self._is_initiator:
            LOGGER.warning("Initiator received an offer on call=%s; ignoring", self._call_id)
            return
        if self._remote_description_set:
            LOGGER.info("Duplicate offer on call=%s ignored", self._call_id)
            return
        await connection.set_remote_description(SessionDescription("offer", payload.sdp))
        self._remote_description_set = True
        await self._flush_candidates(connection)
        answer = await connection.create_answer()
        await self._send(AnswerPayload(sdp=answer.sdp))
        LOGGER.info("Answer sent to %s for call=%s", self._peer_id, self._call_id)

    async def _handle_answer(self, connection: PeerConnection, payload: AnswerPayload) -> None:
        if not (self._is_initiator and self._offer_sent):
            LOGGER.warning("Unexpected answer on call=%s; no offer was sent", self._call_id)
            return
        if self._remote_description_set:
            LOGGER.info("Duplicate answer on call=%s ignored", self._call_id)
            return
        await connection.set_remote_description(SessionDescription("answer", payload.sdp))
        self._remote_description_set = True
        await self._flush_candidates(connection)

    async def _handle_candidate(self, connection: PeerConnection, candidate: IceCandidate) -> None:
        if not self._remote_description_set:
            self._pending_candidates.append(candidate)
            LOGGER.debug(
                "Buffered ICE candidate for call=%s (%d pending)",
                self._call_id,
                len(self._pending_candidates),
            )
            return
        await self._add_candidate(connection, candidate)

    async def _flush_candidates(self, connection: PeerConnection) -> None:
        pending, self._pending_candidates = self._pending_candidates, []
        for candidate in pending:
            await self._add_candidate(connection, candidate)

    async def _add_candidate(self, connection: PeerConnection, candidate: IceCandidate) -> None:
        try:
            await connection.add_ice_candidate(candidate)
        except Exception:
            # A single bad candidate is not fatal; ICE may still succeed with others.
            LOGGER.warning("Rejected ICE candidate on call=%s: %s", self._call_id, candidate.candidate)

    async def _send(self, payload: OfferPayload | AnswerPayload | CandidatePayload) -> None:
        message = SignalingMessage(
            sender=self._self_id,
            recipient=self._peer_id,
            call_id=self._call_id,
            payload=payload,
        )
        await self._channel.send(message)

    def _on_local_candidate(self, candidate: IceCandidate) -> None:
        if self._stopped:
            return
        task = asyncio.ensure_future(self._send(CandidatePayload(candidate=candidate)))
        task.add_done_callback(_log_task_failure)

    def _on_track(self, track: Any) -> None:
        if self._stopped:
            track.stop()
            return
        self._remote_tracks.append(track)
        self.events.put_nowait(RemoteTrackEvent(track))

    def _on_state_change(self, state: ConnectionState) -> None:
        if self._stopped or state == self._state:
            return
        LOGGER.info("Connection state for call=%s: %s -> %s", self._call_id, self._state, state)
        self._state = state
        self.events.put_nowait(ConnectionStateEvent(state))

    def _fail(self, reason: str) -> None:
        if self._stopped:
            return
        self.events.put_nowait(NegotiationErrorEvent(reason))
        self._on_state_change("failed")

    def toggle_audio(self, enabled: bool) -> bool:
        if self._local_media is None:
            return False
        self._local_media.set_audio_enabled(enabled)
        LOGGER.info("Audio %s on call=%s", "enabled" if enabled else "muted", self._call_id)
        return True

    async def stop(self) -> None:
        """Stop all local and remote tracks and close the connection. Idempotent."""

        if self._stopped:
            return
        self._stopped = True
        self._pending_candidates.clear()
        for track in self._remote_tracks:
            track.stop()
        if self._local_media is not None:
            self._local_media.stop()
        connection, self._connection = self._connection, None
        try:
            if connection is not None:
                await connection.close()
        finally:
            self._state = "closed"
            self.events.put_nowait(ConnectionStateEvent("closed"))
            LOGGER.info("Negotiator closed for call=%s", self._call_id)


def _log_task_failure(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        LOGGER.error("Sending local ICE candidate failed: %s", exc)
