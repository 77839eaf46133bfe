# chargequeue/services/timers.py
"""
Clock / timer facility built on the asyncio event loop.

Every time-based behaviour (reservation expiry, session ticks, auto-resume,
the maintenance loop) goes through a Clock so it can be cancelled through
the TimerHandle it returns, and so tests can swap in a manually advanced clock.
"""

import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Optional, Set

from chargequeue.utils.logger import get_logger

logger = get_logger(__name__)

Callback = Callable[[], Awaitable[None]]


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class TimerHandle:
    """Cancellable handle for one scheduled (or repeating) callback."""

    def __init__(self, name: str):
        self.name = name
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def active(self) -> bool:
        return not self._cancelled and (self._task is None or not self._task.done())

    def cancel(self) -> None:
        """
        Cancel synchronously. A callback cancelling its own timer only marks
        the handle, so the running callback finishes instead of being interrupted.
        """
        if self._cancelled:
            return
        self._cancelled = True
        task = self._task
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()

    def __repr__(self):
        return f"<TimerHandle {self.name} cancelled={self._cancelled}>"


async def run_guarded(name: str, callback: Callback) -> None:
    """Run a timer callback; errors are logged and never escape the timer."""
    try:
        await callback()
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error(f"[TIMER] {name} callback failed: {e}", exc_info=True)


class Clock:
    """Wall clock + asyncio-backed scheduler."""

    def __init__(self):
        self._handles: Set[TimerHandle] = set()

    def now(self) -> datetime:
        return datetime.utcnow()

    def call_later(self, delay_seconds: float, callback: Callback, *, name: str) -> TimerHandle:
        handle = TimerHandle(name)

        async def _runner():
            try:
                await asyncio.sleep(max(0.0, delay_seconds))
                if not handle.cancelled:
                    await run_guarded(name, callback)
            finally:
                self._handles.discard(handle)

        self._start(handle, _runner)
        return handle

    def call_every(self, interval_seconds: float, callback: Callback, *, name: str) -> TimerHandle:
        handle = TimerHandle(name)

        async def _runner():
            try:
                while not handle.cancelled:
                    await asyncio.sleep(interval_seconds)
                    if handle.cancelled:
                        break
                    await run_guarded(name, callback)
            finally:
                self._handles.discard(handle)

        self._start(handle, _runner)
        return handle

    def _start(self, handle: TimerHandle, runner) -> None:
        handle._task = asyncio.get_running_loop().create_task(runner(), name=handle.name)
        self._handles.add(handle)

    def pending(self) -> int:
        return sum(1 for h in self._handles if h.active)

    def cancel_all(self) -> None:
        for handle in list(self._handles):
            handle.cancel()
        self._handles.clear()
