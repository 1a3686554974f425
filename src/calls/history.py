"""Idempotent writer for the call history ledger."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from db.models import CallHistoryEntry
from db.repository import CallRepository

LOGGER = logging.getLogger(__name__)


class CallHistoryRecorder:
    """Ensures exactly one history row per call.

    Writers for the same call id are serialized through a per-call lock so a
    local accept and a local end never both observe "absent". Writers in other
    processes are settled by the unique constraint in the repository.
    """

    def __init__(self, repository: CallRepository) -> None:
        self._repo = repository
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    async def upsert(self, call_id: str, fields: dict[str, Any]) -> CallHistoryEntry:
        lock = self._locks.setdefault(call_id, asyncio.Lock())
        self._waiters[call_id] = self._waiters.get(call_id, 0) + 1
        try:
            async with lock:
                entry = await self._repo.upsert_history(call_id, fields)
        finally:
            self._waiters[call_id] -= 1
            if not self._waiters[call_id]:
                # Nobody else queued on this call; drop its lock.
                del self._waiters[call_id]
                self._locks.pop(call_id, None)
        LOGGER.info(
            "History for call=%s now event=%s status=%s",
            call_id,
            entry.event_type,
            entry.status,
        )
        return entry

    @property
    def pending_calls(self) -> int:
        return len(self._locks)
