"""
Debounce state machine.

    IDLE --trigger--> PENDING --window elapses--> FIRED --callback done--> IDLE
    PENDING --trigger--> PENDING (timer restarted)
    any --cancel--> CANCELLED (terminal)

One ``Debouncer`` per subscription. Independent of any UI lifecycle so it
can be driven directly from tests.

Async callbacks never overlap. A window that elapses while the previous
callback is still running is held in FIRED and the callback runs once more
when the previous one finishes.
"""

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Callable, Optional


logger = logging.getLogger(__name__)


class DebounceState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    FIRED = "fired"
    CANCELLED = "cancelled"


class Debouncer:
    """
    Collapses a burst of triggers into one callback, timed from the last
    trigger.
    """

    def __init__(
        self,
        window: float,
        callback: Callable[[], Any],
        name: str = "debounce",
    ):
        self.window = window
        self.callback = callback
        self.name = name
        self.state = DebounceState.IDLE
        self.fire_count = 0
        self._timer: Optional[asyncio.TimerHandle] = None
        self._running: Optional[asyncio.Future] = None
        self._rerun = False

    @property
    def is_running(self) -> bool:
        return self._running is not None

    def trigger(self) -> bool:
        """Start or restart the window. Returns False once cancelled."""
        if self.state is DebounceState.CANCELLED:
            return False
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.window, self._fire)
        self.state = DebounceState.PENDING
        return True

    def _fire(self) -> None:
        self._timer = None
        if self.state is not DebounceState.PENDING:
            return
        self.state = DebounceState.FIRED
        if self._running is not None:
            logger.debug(f"{self.name}: window elapsed during callback, queued")
            self._rerun = True
            return
        self._invoke()

    def _invoke(self) -> None:
        self.fire_count += 1
        logger.debug(f"{self.name}: window elapsed, firing")
        try:
            outcome = self.callback()
        except Exception as e:
            logger.error(f"{self.name}: callback failed: {e}")
            self._settle()
            return
        if inspect.isawaitable(outcome):
            self._running = asyncio.ensure_future(outcome)
            self._running.add_done_callback(self._callback_done)
        else:
            self._settle()

    def _callback_done(self, task: asyncio.Future) -> None:
        self._running = None
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"{self.name}: callback failed: {task.exception()}")
        rerun, self._rerun = self._rerun, False
        if rerun and self.state is DebounceState.FIRED:
            self._invoke()
        else:
            self._settle()

    def _settle(self) -> None:
        # A trigger during the callback already moved us to PENDING
        if self.state is DebounceState.FIRED:
            self.state = DebounceState.IDLE

    def cancel(self) -> None:
        """Cancel the pending timer. Idempotent; a running callback finishes."""
        if self.state is DebounceState.CANCELLED:
            return
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._rerun = False
        self.state = DebounceState.CANCELLED

    async def wait(self) -> None:
        """Wait for running async callbacks, including a queued rerun."""
        while self._running is not None:
            await asyncio.gather(self._running, return_exceptions=True)
            # Let the done callback start a queued rerun
            await asyncio.sleep(0)
