"""Countdown governing how long an unanswered incoming call may ring."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable

LOGGER = logging.getLogger(__name__)

TimeoutCallback = Callable[[], Awaitable[None] | None]
TickCallback = Callable[[int], None]


class AutoRejectTimer:
    """Single cancelable countdown with a terminal timeout notification.

    `remaining` only ever decreases. The timer disarms itself before invoking
    `on_timeout`, so once the timeout side effect has started `cancel()` is a
    no-op, and a cancel that lands first guarantees the side effect never
    runs, even when the final tick was already due.
    """

    def __init__(
        self,
        on_timeout: TimeoutCallback,
        *,
        duration: int = 30,
        interval: float = 1.0,
        on_tick: TickCallback | None = None,
    ) -> None:
        if duration < 1:
            raise ValueError("duration must be at least one tick")
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._on_timeout = on_timeout
        self._on_tick = on_tick
        self._interval = interval
        self._remaining = duration
        self._task: asyncio.Task | None = None
        self._cancelled = False
        self._fired = False
        self._finished = asyncio.Event()

    @property
    def remaining(self) -> int:
        return self._remaining

    @property
    def armed(self) -> bool:
        return self._task is not None and not (self._cancelled or self._fired)

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def start(self) -> None:
        if self._task is not None:
            raise RuntimeError("AutoRejectTimer already started")
        if self._cancelled:
            return
        self._task = asyncio.create_task(self._run())

    def cancel(self) -> bool:
        """Disarm the timer. Returns False if it already fired or was cancelled."""

        if self._fired or self._cancelled:
            return False
        self._cancelled = True
        if self._task is not None:
            self._task.cancel()
        self._finished.set()
        return True

    async def wait(self) -> bool:
        """Wait until the timer fired or was cancelled. True means it fired."""

        await self._finished.wait()
        return self._fired

    async def _run(self) -> None:
        try:
            while self._remaining > 0:
                await asyncio.sleep(self._interval)
                if self._cancelled:
                    return
                self._remaining -= 1
                if self._on_tick is not None:
                    try:
                        self._on_tick(self._remaining)
                    except Exception:
                        LOGGER.exception("Ring countdown tick handler failed")

            if self._cancelled:
                return
            # Disarm first: a cancel issued from within the timeout handler
            # must not interrupt it.
            self._fired = True
            self._finished.set()
            result = self._on_timeout()
            if inspect.isawaitable(result):
                await result
        finally:
            self._finished.set()
