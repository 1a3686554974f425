"""Call session state machine and orchestration for one client.

Each participant runs its own `CallSessionManager` on its own event loop. The
managers never talk to each other directly: status changes travel through the
shared store's change feed, negotiation messages through the signaling
channel. Every transition is a guarded update, so a race between the two
clients (or between a click and the ring timer) has exactly one winner and
the loser sees `InvalidTransitionError`, which is benign.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Coroutine, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Any, Literal

from pydantic import ValidationError
from sqlalchemy.exc import NoResultFound, SQLAlchemyError

from calls.errors import (
    AuthRequiredError,
    CallError,
    CallNotFoundError,
    ConnectionFailedError,
    InvalidTransitionError,
    PersistenceFailureError,
)
from calls.history import CallHistoryRecorder
from calls.schemas import (
    CALL_TYPES,
    ONGOING_STATUSES,
    CallFailed,
    CallHistoryView,
    CallNotification,
    CallSessionView,
    CallStatusChanged,
    ConnectionStateChanged,
    IncomingCall,
    RemoteTrack,
    RingCountdown,
    SignalingMessage,
    sources_for,
)
from calls.timer import AutoRejectTimer
from config.settings import get_settings
from db.changes import ChangeSubscription, RowChange
from db.repository import SESSIONS_TABLE, CallRepository
from media.backends import MediaBackend
from media.negotiator import (
    ConnectionStateEvent,
    NegotiationErrorEvent,
    PeerNegotiator,
    RemoteTrackEvent,
)
from signaling.channel import SignalingChannel, Subscription

LOGGER = logging.getLogger(__name__)

Role = Literal["initiator", "recipient"]
Resolution = Literal["accepted", "declined", "missed"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@contextmanager
def _persistence(action: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        LOGGER.exception("%s failed", action)
        raise PersistenceFailureError(f"Could not {action}.") from exc


@dataclass
class CallController:
    """Resources of one call. Owned by the manager and destroyed with the call."""

    session: CallSessionView
    role: Role
    resolution: Resolution | None = None
    timer: AutoRejectTimer | None = None
    negotiator: PeerNegotiator | None = None
    subscription: Subscription | None = None
    inbox: asyncio.Queue[SignalingMessage] = field(default_factory=asyncio.Queue)
    tasks: set[asyncio.Task] = field(default_factory=set)
    active_since: float | None = None
    closed: bool = False

    @property
    def call_id(self) -> str:
        return self.session.id

    @property
    def accepted(self) -> bool:
        return self.resolution == "accepted"

    def claim(self, resolution: Resolution) -> bool:
        """Set the resolution once. The accepted guard is `claim("accepted")`."""

        if self.resolution is not None:
            return False
        self.resolution = resolution
        return True

    def elapsed(self, now: float) -> int:
        if self.active_since is None:
            return 0
        return max(0, int(now - self.active_since))


class CallSessionManager:
    """Public call API for one participant: initiate, accept, reject, end."""

    def __init__(
        self,
        self_id: str | None,
        repository: CallRepository,
        channel: SignalingChannel,
        *,
        media: MediaBackend | None = None,
        recorder: CallHistoryRecorder | None = None,
        ring_timeout: int | None = None,
        ring_grace: int | None = None,
        tick_interval: float | None = None,
        ice_servers: list[str] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        settings = get_settings()
        self._self_id = self_id or None
        self._repo = repository
        self._channel = channel
        self._media = media
        self._recorder = recorder or CallHistoryRecorder(repository)
        self._ring_timeout = ring_timeout if ring_timeout is not None else settings.ring_timeout_seconds
        self._ring_grace = ring_grace if ring_grace is not None else settings.ring_grace_seconds
        self._tick_interval = tick_interval if tick_interval is not None else settings.ring_tick_seconds
        self._ice_servers = list(ice_servers if ice_servers is not None else settings.ice_servers)
        self._clock = clock

        self.notifications: asyncio.Queue[CallNotification] = asyncio.Queue()
        self._calls: dict[str, CallController] = {}
        self._feed_subscription: ChangeSubscription | None = None
        self._background: set[asyncio.Task] = set()

    @property
    def self_id(self) -> str | None:
        return self._self_id

    @property
    def repository(self) -> CallRepository:
        return self._repo

    @property
    def active_call_ids(self) -> list[str]:
        return list(self._calls)

    def controller(self, call_id: str) -> CallController | None:
        return self._calls.get(call_id)

    # -- lifecycle -----------------------------------------------------

    async def start(self) -> None:
        """Subscribe to session changes involving this participant."""

        self._require_identity()
        if self._feed_subscription is None:
            self._feed_subscription = self._repo.changes.subscribe(
                SESSIONS_TABLE,
                self._on_session_change,
                predicate=self._involves_me,
            )
            LOGGER.info("Call manager for %s listening for calls", self._self_id)

    async def close(self) -> None:
        """Release every call resource this manager holds."""

        if self._feed_subscription is not None:
            self._feed_subscription.cancel()
            self._feed_subscription = None
        for controller in list(self._calls.values()):
            await self._teardown(controller)
        for task in list(self._background):
            task.cancel()

    async def next_notification(self, timeout: float | None = None) -> CallNotification:
        return await asyncio.wait_for(self.notifications.get(), timeout)

    # -- public call API -----------------------------------------------

    async def initiate(self, recipient_id: str, call_type: str = "voice") -> CallSessionView:
        self_id = self._require_identity()
        if call_type not in CALL_TYPES:
            raise ValueError(f"Unsupported call type: {call_type}")
        if not recipient_id or recipient_id == self_id:
            raise ValueError("A call needs a recipient other than the caller.")

        # Media problems must surface before anyone's phone rings.
        negotiator = self._build_negotiator(call_type)
        if negotiator is not None:
            try:
                await negotiator.prepare()
            except CallError as exc:
                self._notify(CallFailed(None, exc))
                await negotiator.stop()
                raise

        try:
            with _persistence("create call session"):
                row = await self._repo.create_session(
                    initiator_id=self_id,
                    recipient_id=recipient_id,
                    call_type=call_type,
                )
                row = await self._repo.transition_session(
                    row.id,
                    from_statuses=sources_for("ringing"),
                    to_status="ringing",
                )
        except Exception:
            if negotiator is not None:
                await negotiator.stop()
            raise
        if row is None:
            if negotiator is not None:
                await negotiator.stop()
            raise InvalidTransitionError("New call left 'initiating' before ringing.")

        session = CallSessionView.model_validate(row)
        controller = CallController(session=session, role="initiator", negotiator=negotiator)
        self._calls[session.id] = controller
        # Caller-side deadline, a few ticks past the recipient's ring timeout.
        controller.timer = AutoRejectTimer(
            partial(self._on_ring_timeout, session.id),
            duration=self._ring_timeout + self._ring_grace,
            interval=self._tick_interval,
        )
        controller.timer.start()
        if negotiator is not None:
            # Listen before the peer can answer.
            self._open_signaling(controller)
        LOGGER.info("Calling %s (%s), call=%s", recipient_id, call_type, session.id)
        return session

    async def accept(self, call_id: str) -> CallSessionView:
        self_id = self._require_identity()
        controller = self._calls.get(call_id) or await self._adopt(call_id)
        if controller.role != "recipient":
            raise InvalidTransitionError("Only the recipient can accept a call.")
        # Check-and-set of the accepted guard; no await may separate the two.
        if not controller.claim("accepted"):
            LOGGER.info("accept() on call=%s ignored; already %s", call_id, controller.resolution)
            raise InvalidTransitionError(f"Call already {controller.resolution}.")
        if controller.timer is not None:
            controller.timer.cancel()

        negotiator = self._build_negotiator(controller.session.call_type)
        controller.negotiator = negotiator
        if negotiator is not None:
            self._open_signaling(controller)
            try:
                await negotiator.start(
                    self_id, controller.session.initiator_id, call_id, is_initiator=False
                )
            except CallError as exc:
                LOGGER.warning("Cannot answer call=%s: %s", call_id, exc.detail)
                self._notify(CallFailed(call_id, exc))
                await self._resolve_ringing(controller, "declined", "call_declined")
                raise
            self._start_pumps(controller)

        try:
            with _persistence("accept call"):
                row = await self._repo.transition_session(
                    call_id,
                    from_statuses=sources_for("active"),
                    to_status="active",
                    started_at=_utcnow(),
                )
        except CallError:
            await self._teardown(controller)
            raise
        if row is None:
            await self._teardown(controller)
            raise InvalidTransitionError("Call is no longer ringing.")

        controller.session = CallSessionView.model_validate(row)
        controller.active_since = self._clock()
        with _persistence("record call start"):
            await self._recorder.upsert(
                call_id, self._history_fields(controller.session, "call_started")
            )
        LOGGER.info("Accepted call=%s from %s", call_id, controller.session.initiator_id)
        return controller.session

    async def reject(self, call_id: str) -> CallSessionView:
        self._require_identity()
        controller = self._calls.get(call_id) or await self._adopt(call_id)
        if controller.role != "recipient":
            raise InvalidTransitionError("Only the recipient can reject a call.")
        if not controller.claim("declined"):
            LOGGER.info("reject() on call=%s ignored; already %s", call_id, controller.resolution)
            raise InvalidTransitionError(f"Call already {controller.resolution}.")
        if controller.timer is not None:
            controller.timer.cancel()

        session = await self._resolve_ringing(controller, "declined", "call_declined")
        if session is None:
            raise InvalidTransitionError("Call is no longer ringing.")
        LOGGER.info("Declined call=%s", call_id)
        return session

    async def end(self, call_id: str, duration_seconds: int | None = None) -> CallSessionView:
        """Hang up. An unanswered outgoing call is withdrawn; a finished call is left untouched."""

        self._require_identity()
        if duration_seconds is not None and duration_seconds < 0:
            raise ValueError("duration_seconds must be non-negative")
        controller = self._calls.get(call_id)
        session = await self._load(call_id)

        if session.is_terminal:
            LOGGER.info("end() on call=%s already %s; nothing to do", call_id, session.status)
            if controller is not None:
                await self._teardown(controller)
            return session
        if session.status == "ringing" and session.initiator_id == self._self_id:
            # Hanging up before the recipient answers withdraws the call.
            return await self.cancel(call_id)
        if session.status != "active":
            raise InvalidTransitionError(f"Cannot end a call that is {session.status}.")

        if duration_seconds is None:
            duration_seconds = controller.elapsed(self._clock()) if controller else 0
        try:
            with _persistence("end call"):
                row = await self._repo.transition_session(
                    call_id,
                    from_statuses=sources_for("ended"),
                    to_status="ended",
                    ended_at=_utcnow(),
                    duration_seconds=duration_seconds,
                )
                if row is None:
                    # The peer hung up first; its duration stands.
                    LOGGER.info("Call=%s was ended by the peer first", call_id)
                    return CallSessionView.model_validate(await self._repo.get_session(call_id))
                session = CallSessionView.model_validate(row)
                await self._recorder.upsert(call_id, self._history_fields(session, "call_ended"))
        finally:
            if controller is not None:
                await self._teardown(controller)
        LOGGER.info("Ended call=%s after %ss", call_id, session.duration_seconds)
        return session

    async def cancel(self, call_id: str) -> CallSessionView:
        """Withdraw an outgoing call nobody answered. The recipient sees it as missed."""

        self._require_identity()
        controller = self._calls.get(call_id) or await self._adopt(call_id)
        if controller.role != "initiator":
            raise InvalidTransitionError("Only the caller can cancel a ringing call.")
        if not controller.claim("missed"):
            LOGGER.info("cancel() on call=%s ignored; already %s", call_id, controller.resolution)
            raise InvalidTransitionError(f"Call already {controller.resolution}.")
        if controller.timer is not None:
            controller.timer.cancel()

        session = await self._resolve_ringing(controller, "missed", "call_missed")
        if session is None:
            raise InvalidTransitionError("Call is no longer ringing.")
        LOGGER.info("Withdrew call=%s to %s", call_id, session.recipient_id)
        return session

    async def handle_timeout(self, call_id: str) -> CallSessionView | None:
        """Ring timer expiry on either side. Does nothing once the call was accepted."""

        controller = self._calls.get(call_id)
        if controller is None:
            LOGGER.debug("Ring timeout for unknown call=%s", call_id)
            return None
        if not controller.claim("missed"):
            LOGGER.info("Ring timeout on call=%s ignored; already %s", call_id, controller.resolution)
            return None
        if controller.timer is not None:
            controller.timer.cancel()
        session = await self._resolve_ringing(controller, "missed", "call_missed")
        if session is not None:
            LOGGER.info("Call=%s from %s missed", call_id, session.initiator_id)
        return session

    def toggle_audio(self, call_id: str, enabled: bool) -> bool:
        controller = self._calls.get(call_id)
        if controller is None or controller.negotiator is None:
            return False
        return controller.negotiator.toggle_audio(enabled)

    # -- queries -------------------------------------------------------

    async def list_history(self, limit: int | None = None) -> list[CallHistoryView]:
        self_id = self._require_identity()
        limit = limit or get_settings().history_page_size
        with _persistence("load call history"):
            rows = await self._repo.list_history(self_id, limit=limit)
        return [CallHistoryView.model_validate(row) for row in rows]

    async def ongoing_calls(self) -> list[CallSessionView]:
        self_id = self._require_identity()
        with _persistence("load ongoing calls"):
            rows = await self._repo.list_sessions(self_id, statuses=ONGOING_STATUSES)
        return [CallSessionView.model_validate(row) for row in rows]

    async def unread_missed_count(self) -> int:
        self_id = self._require_identity()
        with _persistence("count missed calls"):
            return await self._repo.count_unread_missed(self_id)

    async def mark_missed_read(self) -> int:
        self_id = self._require_identity()
        with _persistence("mark missed calls read"):
            return await self._repo.mark_missed_read(self_id)

    # -- internals -----------------------------------------------------

    def _require_identity(self) -> str:
        if not self._self_id:
            raise AuthRequiredError()
        return self._self_id

    def _involves_me(self, row: dict[str, Any]) -> bool:
        return self._self_id in (row.get("initiator_id"), row.get("recipient_id"))

    def _notify(self, notification: CallNotification) -> None:
        self.notifications.put_nowait(notification)

    def _build_negotiator(self, call_type: str) -> PeerNegotiator | None:
        if self._media is None:
            return None
        return PeerNegotiator(
            self._media,
            self._channel,
            call_type=call_type,
            ice_servers=self._ice_servers,
        )

    async def _load(self, call_id: str) -> CallSessionView:
        with _persistence("load call session"):
            try:
                row = await self._repo.get_session(call_id)
            except NoResultFound as exc:
                raise CallNotFoundError(f"Call {call_id} not found.") from exc
        session = CallSessionView.model_validate(row)
        if not self._involves_me(session.model_dump()):
            raise CallNotFoundError(f"Call {call_id} not found.")
        return session

    async def _adopt(self, call_id: str) -> CallController:
        """Build a controller for a ringing call this client has not seen yet."""

        session = await self._load(call_id)
        if session.status != "ringing":
            raise InvalidTransitionError(f"Call is {session.status}, not ringing.")
        controller = self._calls.get(call_id)
        if controller is None:
            role: Role = "recipient" if session.recipient_id == self._self_id else "initiator"
            controller = CallController(session=session, role=role)
            self._calls[call_id] = controller
        return controller

    def _open_signaling(self, controller: CallController) -> None:
        if controller.subscription is None:
            controller.subscription = self._channel.subscribe(
                controller.call_id,
                controller.inbox.put_nowait,
                self_id=self._self_id,
            )

    def _start_pumps(self, controller: CallController) -> None:
        self._spawn(controller, self._pump_signals(controller))
        self._spawn(controller, self._pump_negotiator(controller))

    def _spawn(self, controller: CallController, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        controller.tasks.add(task)
        task.add_done_callback(controller.tasks.discard)
        task.add_done_callback(_log_task_failure)

    def _spawn_background(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        task.add_done_callback(_log_task_failure)

    @staticmethod
    def _history_fields(session: CallSessionView, event_type: str) -> dict[str, Any]:
        return {
            "initiator_id": session.initiator_id,
            "recipient_id": session.recipient_id,
            "call_type": session.call_type,
            "duration_seconds": session.duration_seconds,
            "status": session.status,
            "event_type": event_type,
        }

    async def _resolve_ringing(
        self,
        controller: CallController,
        status: Literal["declined", "missed"],
        event_type: str,
    ) -> CallSessionView | None:
        fields: dict[str, Any] = {"ended_at": _utcnow(), "duration_seconds": 0}
        if status == "missed":
            fields["is_missed"] = True
        release = True
        try:
            with _persistence(f"mark call {status}"):
                row = await self._repo.transition_session(
                    controller.call_id,
                    from_statuses=sources_for(status),
                    to_status=status,
                    **fields,
                )
                if row is None:
                    LOGGER.info("Call=%s no longer ringing; %s skipped", controller.call_id, status)
                    current = await self._repo.get_session(controller.call_id)
                    if current.status == "active" and controller.role == "initiator":
                        # Answered while the caller was giving up: the call goes on.
                        controller.resolution = "accepted"
                        release = False
                    return None
                session = CallSessionView.model_validate(row)
                controller.session = session
                await self._recorder.upsert(controller.call_id, self._history_fields(session, event_type))
        finally:
            if release:
                await self._teardown(controller)
        return session

    def _ring(self, session: CallSessionView) -> None:
        controller = CallController(session=session, role="recipient")
        self._calls[session.id] = controller
        controller.timer = AutoRejectTimer(
            partial(self._on_ring_timeout, session.id),
            duration=self._ring_timeout,
            interval=self._tick_interval,
            on_tick=lambda remaining: self._notify(RingCountdown(session.id, remaining)),
        )
        controller.timer.start()
        LOGGER.info("Incoming %s call=%s from %s", session.call_type, session.id, session.initiator_id)
        self._notify(IncomingCall(session))

    async def _on_ring_timeout(self, call_id: str) -> None:
        try:
            await self.handle_timeout(call_id)
        except CallError as exc:
            LOGGER.error("Could not mark call=%s missed: %s", call_id, exc.detail)
            self._notify(CallFailed(call_id, exc))

    def _on_session_change(self, change: RowChange) -> None:
        try:
            session = CallSessionView.model_validate(change.row)
        except ValidationError as exc:
            LOGGER.warning("Ignoring malformed call session change: %s", exc)
            return

        controller = self._calls.get(session.id)
        if session.status == "ringing" and session.recipient_id == self._self_id:
            if controller is None:
                self._ring(session)
            return
        if change.operation == "INSERT":
            return

        self._notify(CallStatusChanged(session))
        if controller is None or controller.closed:
            return
        controller.session = session
        if session.status == "active" and controller.role == "initiator" and controller.active_since is None:
            controller.claim("accepted")
            if controller.timer is not None:
                controller.timer.cancel()
            controller.active_since = self._clock()
            self._spawn(controller, self._begin_negotiation(controller))
        elif session.is_terminal:
            LOGGER.info("Call=%s is %s; releasing resources", session.id, session.status)
            self._spawn_background(self._teardown(controller))

    async def _begin_negotiation(self, controller: CallController) -> None:
        negotiator = controller.negotiator
        if negotiator is None:
            return
        self._start_pumps(controller)
        await negotiator.start(
            self._self_id,
            controller.session.recipient_id,
            controller.call_id,
            is_initiator=True,
        )

    async def _pump_signals(self, controller: CallController) -> None:
        negotiator = controller.negotiator
        while True:
            message = await controller.inbox.get()
            await negotiator.on_signal(message)

    async def _pump_negotiator(self, controller: CallController) -> None:
        negotiator = controller.negotiator
        call_id = controller.call_id
        while True:
            event = await negotiator.events.get()
            if isinstance(event, RemoteTrackEvent):
                self._notify(RemoteTrack(call_id, event.track))
            elif isinstance(event, NegotiationErrorEvent):
                LOGGER.warning("Negotiation error on call=%s: %s", call_id, event.error)
            elif isinstance(event, ConnectionStateEvent):
                self._notify(ConnectionStateChanged(call_id, event.state))
                if event.state == "closed":
                    return
                if event.state == "failed":
                    await self._handle_connection_failure(controller)

    async def _handle_connection_failure(self, controller: CallController) -> None:
        call_id = controller.call_id
        error = ConnectionFailedError(f"Peer connection failed on call {call_id}.")
        LOGGER.warning("%s Ending with best-known duration.", error.detail)
        self._notify(CallFailed(call_id, error))
        try:
            await self.end(call_id)
        except CallError as exc:
            LOGGER.error("Could not end failed call=%s: %s", call_id, exc.detail)
            await self._teardown(controller)

    async def _teardown(self, controller: CallController) -> None:
        if controller.closed:
            return
        controller.closed = True
        call_id = controller.call_id
        if controller.timer is not None:
            controller.timer.cancel()
        self._channel.close_topic(call_id)
        controller.subscription = None
        if self._calls.get(call_id) is controller:
            del self._calls[call_id]
        current = asyncio.current_task()
        for task in list(controller.tasks):
            if task is not current:
                task.cancel()
        if controller.negotiator is not None:
            await controller.negotiator.stop()
        LOGGER.info("Released resources for call=%s", call_id)


def _log_task_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        LOGGER.error("Call task %s failed", task.get_name(), exc_info=exc)
