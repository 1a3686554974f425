"""Pydantic schemas and notification types for call sessions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from calls.errors import CallError

CallType = Literal["voice", "video"]
CallStatus = Literal["initiating", "ringing", "active", "ended", "declined", "missed"]
HistoryEvent = Literal["call_started", "call_declined", "call_missed", "call_ended"]

CALL_TYPES: frozenset[str] = frozenset({"voice", "video"})
TERMINAL_STATUSES: frozenset[str] = frozenset({"ended", "declined", "missed"})
ONGOING_STATUSES: tuple[str, ...] = ("initiating", "ringing", "active")

# Directed status graph. Anything not listed here is an invalid transition.
TRANSITIONS: dict[str, frozenset[str]] = {
    "initiating": frozenset({"ringing"}),
    "ringing": frozenset({"active", "declined", "missed"}),
    "active": frozenset({"ended"}),
    "ended": frozenset(),
    "declined": frozenset(),
    "missed": frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def sources_for(target: str) -> tuple[str, ...]:
    """Statuses from which `target` may be entered."""

    return tuple(status for status, targets in TRANSITIONS.items() if target in targets)


class IceCandidate(BaseModel):
    """A trickled ICE candidate as browsers serialize it."""

    model_config = ConfigDict(populate_by_name=True)

    candidate: str
    sdp_mid: str | None = Field(default=None, alias="sdpMid")
    sdp_mline_index: int | None = Field(default=None, alias="sdpMLineIndex")


class OfferPayload(BaseModel):
    type: Literal["offer"] = "offer"
    sdp: str


class AnswerPayload(BaseModel):
    type: Literal["answer"] = "answer"
    sdp: str


class CandidatePayload(BaseModel):
    type: Literal["candidate"] = "candidate"
    candidate: IceCandidate


SignalPayload = Annotated[
    Union[OfferPayload, AnswerPayload, CandidatePayload],
    Field(discriminator="type"),
]


class SignalingMessage(BaseModel):
    """Ephemeral negotiation message exchanged between the two participants."""

    model_config = ConfigDict(populate_by_name=True)

    sender: str = Field(alias="from")
    recipient: str = Field(alias="to")
    call_id: str = Field(alias="callId")
    payload: SignalPayload

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> SignalingMessage:
        return cls.model_validate(data)


class CallSessionView(BaseModel):
    """Read-only snapshot of a call session row."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    initiator_id: str
    recipient_id: str
    call_type: CallType
    status: CallStatus
    started_at: datetime | None = None
    ended_at: datetime | None = None
    duration_seconds: int = Field(default=0, ge=0)
    is_missed: bool = False
    created_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def peer_of(self, user_id: str) -> str:
        return self.recipient_id if user_id == self.initiator_id else self.initiator_id


class CallHistoryView(BaseModel):
    """Read-only snapshot of a call history row."""

    model_config = ConfigDict(from_attributes=True)

    call_id: str
    initiator_id: str
    recipient_id: str
    call_type: CallType
    duration_seconds: int = Field(default=0, ge=0)
    status: CallStatus
    event_type: HistoryEvent
    is_read: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


# Notifications delivered to the UI layer by CallSessionManager.


@dataclass(frozen=True, slots=True)
class IncomingCall:
    session: CallSessionView


@dataclass(frozen=True, slots=True)
class CallStatusChanged:
    session: CallSessionView


@dataclass(frozen=True, slots=True)
class RingCountdown:
    call_id: str
    remaining: int


@dataclass(frozen=True, slots=True)
class ConnectionStateChanged:
    call_id: str
    state: str


@dataclass(frozen=True, slots=True)
class RemoteTrack:
    call_id: str
    track: Any


@dataclass(frozen=True, slots=True)
class CallFailed:
    call_id: str | None
    error: CallError


CallNotification = Union[
    IncomingCall,
    CallStatusChanged,
    RingCountdown,
    ConnectionStateChanged,
    RemoteTrack,
    CallFailed,
]
