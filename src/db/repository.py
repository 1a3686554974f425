"""Repository utilities for persisting call sessions and call history."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import desc, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.base import AsyncSessionFactory
from db.changes import ChangeFeed, RowChange
from db.models import CallHistoryEntry, CallSession

LOGGER = logging.getLogger(__name__)

SESSIONS_TABLE = CallSession.__tablename__
HISTORY_TABLE = CallHistoryEntry.__tablename__

# A settled call never goes back to "started".
TERMINAL_EVENTS = frozenset({"call_ended", "call_declined", "call_missed"})

_HISTORY_FIELDS = frozenset(
    {
        "initiator_id",
        "recipient_id",
        "call_type",
        "duration_seconds",
        "status",
        "event_type",
        "is_read",
    }
)


def row_snapshot(row: CallSession | CallHistoryEntry) -> dict[str, Any]:
    """Column values of `row` as a plain dict."""

    return {column.name: getattr(row, column.name) for column in row.__table__.columns}


class CallRepository:
    """Async repository encapsulating storage operations for calls.

    Every committed write is announced on `changes`.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        changes: ChangeFeed | None = None,
    ) -> None:
        self._session_factory = session_factory or AsyncSessionFactory
        self.changes = changes or ChangeFeed()

    # -- call sessions -------------------------------------------------

    async def create_session(
        self,
        *,
        initiator_id: str,
        recipient_id: str,
        call_type: str,
    ) -> CallSession:
        async with self._session_factory() as session:
            call = CallSession(
                initiator_id=initiator_id,
                recipient_id=recipient_id,
                call_type=call_type,
                status="initiating",
            )
            session.add(call)
            await session.commit()
            await session.refresh(call)
        self.changes.publish(RowChange(SESSIONS_TABLE, "INSERT", row_snapshot(call)))
        return call

    async def get_session(self, call_id: str) -> CallSession:
        """Return the session with `call_id` or raise `NoResultFound`."""

        async with self._session_factory() as session:
            return await self._get_session(session, call_id)

    async def _get_session(self, session: AsyncSession, call_id: str) -> CallSession:
        query = select(CallSession).where(CallSession.id == call_id)
        result = await session.execute(query)
        return result.scalar_one()

    async def transition_session(
        self,
        call_id: str,
        *,
        from_statuses: Iterable[str],
        to_status: str,
        **fields: Any,
    ) -> CallSession | None:
        """Move a session to `to_status` only if it is currently in `from_statuses`.

        Returns the updated row, or None when the guard did not match (the row
        is missing or another writer already moved it).
        """

        allowed = tuple(from_statuses)
        statement = (
            update(CallSession)
            .where(CallSession.id == call_id, CallSession.status.in_(allowed))
            .values(status=to_status, updated_at=datetime.now(timezone.utc), **fields)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(statement)
            if result.rowcount == 0:
                await session.rollback()
                LOGGER.debug(
                    "Guarded update skipped for call=%s (%s -> %s)", call_id, allowed, to_status
                )
                return None
            await session.commit()
            call = await self._get_session(session, call_id)
        self.changes.publish(RowChange(SESSIONS_TABLE, "UPDATE", row_snapshot(call)))
        return call

    async def list_sessions(
        self,
        user_id: str,
        *,
        statuses: Iterable[str] | None = None,
    ) -> list[CallSession]:
        query = select(CallSession).where(
            or_(CallSession.initiator_id == user_id, CallSession.recipient_id == user_id)
        )
        if statuses is not None:
            query = query.where(CallSession.status.in_(tuple(statuses)))
        query = query.order_by(desc(CallSession.created_at))
        async with self._session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    # -- call history --------------------------------------------------

    async def get_history(self, call_id: str) -> CallHistoryEntry | None:
        async with self._session_factory() as session:
            return await self._get_history(session, call_id)

    async def _get_history(self, session: AsyncSession, call_id: str) -> CallHistoryEntry | None:
        query = select(CallHistoryEntry).where(CallHistoryEntry.call_id == call_id)
        result = await session.execute(query)
        return result.scalar_one_or_none()

    async def upsert_history(self, call_id: str, fields: dict[str, Any]) -> CallHistoryEntry:
        """Insert the history row for `call_id`, or update it in place.

        The unique constraint on `call_id` settles concurrent inserts from
        separate writers: the loser rolls back and updates the winner's row.
        A row that already records how the call ended is kept when a late
        `call_started` write arrives; the stale entry is returned unchanged.
        """

        unknown = set(fields) - _HISTORY_FIELDS
        if unknown:
            raise ValueError(f"Unknown history fields: {sorted(unknown)}")

        async with self._session_factory() as session:
            entry = await self._get_history(session, call_id)
            operation = "UPDATE"
            if entry is None:
                entry = CallHistoryEntry(call_id=call_id, **fields)
                session.add(entry)
                operation = "INSERT"
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    LOGGER.info("History row for call=%s inserted concurrently; updating", call_id)
                    entry = await self._get_history(session, call_id)
                    if entry is None:
                        raise
                    operation = "UPDATE"
                    if self._is_regression(entry, fields):
                        return entry
                    self._apply(entry, fields)
                    await session.commit()
            else:
                if self._is_regression(entry, fields):
                    return entry
                self._apply(entry, fields)
                await session.commit()
            await session.refresh(entry)
        self.changes.publish(RowChange(HISTORY_TABLE, operation, row_snapshot(entry)))
        return entry

    @staticmethod
    def _is_regression(entry: CallHistoryEntry, fields: dict[str, Any]) -> bool:
        if entry.event_type not in TERMINAL_EVENTS:
            return False
        if fields.get("event_type", entry.event_type) in TERMINAL_EVENTS:
            return False
        LOGGER.info(
            "Ignoring %s for call=%s; history already %s",
            fields.get("event_type"),
            entry.call_id,
            entry.event_type,
        )
        return True

    @staticmethod
    def _apply(entry: CallHistoryEntry, fields: dict[str, Any]) -> None:
        for name, value in fields.items():
            setattr(entry, name, value)
        entry.updated_at = datetime.now(timezone.utc)

    async def count_history(self, call_id: str) -> int:
        query = select(func.count()).select_from(CallHistoryEntry).where(
            CallHistoryEntry.call_id == call_id
        )
        async with self._session_factory() as session:
            result = await session.execute(query)
            return int(result.scalar_one())

    async def list_history(self, user_id: str, *, limit: int = 20) -> list[CallHistoryEntry]:
        query = (
            select(CallHistoryEntry)
            .where(
                or_(
                    CallHistoryEntry.initiator_id == user_id,
                    CallHistoryEntry.recipient_id == user_id,
                )
            )
            .order_by(desc(CallHistoryEntry.created_at), desc(CallHistoryEntry.id))
            .limit(limit)
        )
        async with self._session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def count_unread_missed(self, user_id: str) -> int:
        query = (
            select(func.count())
            .select_from(CallHistoryEntry)
            .where(
                CallHistoryEntry.recipient_id == user_id,
                CallHistoryEntry.event_type == "call_missed",
                CallHistoryEntry.is_read.is_(False),
            )
        )
        async with self._session_factory() as session:
            result = await session.execute(query)
            return int(result.scalar_one())

    async def mark_missed_read(self, user_id: str) -> int:
        query = select(CallHistoryEntry).where(
            CallHistoryEntry.recipient_id == user_id,
            CallHistoryEntry.event_type == "call_missed",
            CallHistoryEntry.is_read.is_(False),
        )
        async with self._session_factory() as session:
            result = await session.execute(query)
            entries = list(result.scalars().all())
            for entry in entries:
                entry.is_read = True
                entry.updated_at = datetime.now(timezone.utc)
            await session.commit()
        for entry in entries:
            self.changes.publish(RowChange(HISTORY_TABLE, "UPDATE", row_snapshot(entry)))
        return len(entries)


