from __future__ import annotations

import asyncio

import pytest

from calls.errors import MediaPermissionDeniedError
from calls.schemas import (
    AnswerPayload,
    CandidatePayload,
    IceCandidate,
    OfferPayload,
    SignalingMessage,
)
from media.negotiator import (
    ConnectionStateEvent,
    NegotiationErrorEvent,
    PeerNegotiator,
    RemoteTrackEvent,
)


class RecordingChannel:
    def __init__(self) -> None:
        self.sent: list[SignalingMessage] = []

    async def send(self, message: SignalingMessage) -> None:
        self.sent.append(message)


def _signal(payload, *, sender: str = "alice", recipient: str = "bob", call_id: str = "c1") -> SignalingMessage:
    return SignalingMessage(sender=sender, recipient=recipient, call_id=call_id, payload=payload)


def _candidate(n: int) -> CandidatePayload:
    return CandidatePayload(
        candidate=IceCandidate(candidate=f"candidate:{n} 1 udp 1 10.0.0.{n} 5000 typ host", sdp_mid="0")
    )


def _drain(queue: asyncio.Queue) -> list:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


def test_initiator_sends_offer_and_applies_answer(make_backend) -> None:
    async def _run():
        backend = make_backend()
        channel = RecordingChannel()
        negotiator = PeerNegotiator(backend, channel, call_type="video")
        await negotiator.start("alice", "bob", "c1", is_initiator=True)
        offer = channel.sent[0]
        await negotiator.on_signal(_signal(AnswerPayload(sdp="v=0 answer"), sender="bob", recipient="alice"))
        return backend, channel, negotiator, offer

    backend, channel, negotiator, offer = asyncio.run(_run())
    connection = backend.connections[0]
    assert isinstance(offer.payload, OfferPayload)
    assert (offer.sender, offer.recipient, offer.call_id) == ("alice", "bob", "c1")
    assert [track.kind for track in connection.tracks] == ["audio", "video"]
    assert connection.remote.type == "answer"
    assert negotiator.state == "connected"
    assert len(negotiator.remote_tracks) == 1


def test_recipient_buffers_candidates_until_offer_then_applies_in_order(make_backend) -> None:
    async def _run():
        backend = make_backend()
        channel = RecordingChannel()
        negotiator = PeerNegotiator(backend, channel)
        await negotiator.start("bob", "alice", "c1", is_initiator=False)
        connection = backend.connections[0]

        await negotiator.on_signal(_signal(_candidate(1)))
        await negotiator.on_signal(_signal(_candidate(2)))
        buffered = negotiator.pending_candidates
        applied_early = list(connection.added_candidates)

        await negotiator.on_signal(_signal(OfferPayload(sdp="v=0 offer")))
        await negotiator.on_signal(_signal(_candidate(3)))
        return negotiator, channel, connection, buffered, applied_early

    negotiator, channel, connection, buffered, applied_early = asyncio.run(_run())
    assert buffered == 2
    assert applied_early == []
    assert [c.split()[0] for c in connection.added_candidates] == ["candidate:1", "candidate:2", "candidate:3"]
    assert negotiator.pending_candidates == 0
    assert len(channel.sent) == 1
    assert isinstance(channel.sent[0].payload, AnswerPayload)
    assert channel.sent[0].recipient == "alice"


def test_unsolicited_answer_and_foreign_call_are_ignored(make_backend) -> None:
    async def _run():
        backend = make_backend()
        negotiator = PeerNegotiator(backend, RecordingChannel())
        await negotiator.start("bob", "alice", "c1", is_initiator=False)
        await negotiator.on_signal(_signal(AnswerPayload(sdp="v=0 answer")))
        await negotiator.on_signal(_signal(OfferPayload(sdp="v=0 offer"), call_id="other"))
        return backend.connections[0], negotiator

    connection, negotiator = asyncio.run(_run())
    assert connection.remote is None
    assert negotiator.state == "new"


def test_local_candidates_are_trickled_to_the_peer(make_backend) -> None:
    async def _run():
        backend = make_backend()
        channel = RecordingChannel()
        negotiator = PeerNegotiator(backend, channel)
        await negotiator.start("alice", "bob", "c1", is_initiator=True)
        backend.connections[0].emit_candidate(IceCandidate(candidate="candidate:9 1 udp 1 10.0.0.9 5000 typ host"))
        await asyncio.sleep(0)
        return channel

    channel = asyncio.run(_run())
    assert [message.payload.type for message in channel.sent] == ["offer", "candidate"]


def test_failed_remote_description_reports_failure(make_backend) -> None:
    async def _run():
        backend = make_backend(fail_remote_description=True)
        negotiator = PeerNegotiator(backend, RecordingChannel())
        await negotiator.start("bob", "alice", "c1", is_initiator=False)
        await negotiator.on_signal(_signal(OfferPayload(sdp="garbage")))
        return negotiator, _drain(negotiator.events)

    negotiator, events = asyncio.run(_run())
    assert negotiator.state == "failed"
    assert any(isinstance(event, NegotiationErrorEvent) for event in events)
    assert events[-1] == ConnectionStateEvent("failed")


def test_stop_releases_everything_and_is_idempotent(make_backend) -> None:
    async def _run():
        backend = make_backend()
        negotiator = PeerNegotiator(backend, RecordingChannel())
        await negotiator.start("alice", "bob", "c1", is_initiator=True)
        await negotiator.on_signal(_signal(AnswerPayload(sdp="v=0 answer"), sender="bob", recipient="alice"))
        await negotiator.stop()
        await negotiator.stop()
        return backend, negotiator, _drain(negotiator.events)

    backend, negotiator, events = asyncio.run(_run())
    assert negotiator.state == "closed"
    assert backend.connections[0].closed
    assert all(track.stopped for track in backend.captures[0].tracks)
    assert all(track.stopped for track in negotiator.remote_tracks)
    assert any(isinstance(event, RemoteTrackEvent) for event in events)
    assert events[-1] == ConnectionStateEvent("closed")
    assert events.count(ConnectionStateEvent("closed")) == 1


def test_toggle_audio_mutes_local_tracks(make_backend) -> None:
    async def _run():
        backend = make_backend()
        negotiator = PeerNegotiator(backend, RecordingChannel())
        before = negotiator.toggle_audio(False)
        await negotiator.prepare()
        after = negotiator.toggle_audio(False)
        return before, after, negotiator.local_media

    before, after, media = asyncio.run(_run())
    assert before is False
    assert after is True
    assert media.audio_enabled is False


def test_prepare_surfaces_permission_errors(make_backend) -> None:
    async def _run():
        negotiator = PeerNegotiator(make_backend(error=MediaPermissionDeniedError()), RecordingChannel())
        await negotiator.prepare()

    with pytest.raises(MediaPermissionDeniedError):
        asyncio.run(_run())
