"""Debounced re-scan scheduler: idle → scheduled → running.

``trigger()`` (re)starts the quiet-period timer. When the timer fires the
action runs once. Triggers that arrive while the action is running are
coalesced into a single follow-up run after it finishes.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class ScanState(enum.Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    RUNNING = "running"


class ScanScheduler:
    """Debounce-and-coalesce runner for one action."""

    def __init__(self, action: Callable[[], Awaitable[None] | None], delay: float = 0.1) -> None:
        self._action = action
        self.delay = delay
        self.state = ScanState.IDLE
        self.runs = 0
        self._timer: asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None
        self._rerun = False

    def trigger(self) -> None:
        if self.state is ScanState.RUNNING:
            self._rerun = True
            return
        self._cancel_timer()
        self._drop_queued_run()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.delay, self._fire)
        self.state = ScanState.SCHEDULED

    def cancel(self) -> None:
        """Drop a pending run. A run already in progress finishes, without a follow-up."""
        self._cancel_timer()
        self._drop_queued_run()
        self._rerun = False
        if self.state is ScanState.SCHEDULED:
            self.state = ScanState.IDLE

    async def run_now(self) -> None:
        self._cancel_timer()
        if self.state is ScanState.RUNNING:
            self._rerun = True
            return
        self._drop_queued_run()
        await self._run()

    async def wait_idle(self) -> None:
        """Return once nothing is scheduled or running."""
        while self.state is not ScanState.IDLE:
            task = self._task
            if task is not None and not task.done():
                try:
                    await asyncio.shield(task)
                except asyncio.CancelledError:
                    # A queued run was dropped; keep waiting for the state
                    if not task.cancelled():
                        raise
            else:
                await asyncio.sleep(self.delay / 2 or 0.001)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _drop_queued_run(self) -> None:
        """Cancel a run whose timer fired but which has not started yet."""
        task = self._task
        if task is None or task.done() or task is asyncio.current_task():
            return
        if self.state is not ScanState.RUNNING:
            task.cancel()
            self._task = None

    def _fire(self) -> None:
        self._timer = None
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        self.state = ScanState.RUNNING
        self.runs += 1
        try:
            result = self._action()
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Scheduled scan failed")
        finally:
            self.state = ScanState.IDLE
            if self._rerun:
                self._rerun = False
                self.trigger()
