"""
Latency injection for outbound commands.

Each command is emitted a fixed delay after it is computed, modeling the
actuator/network latency the latency compensator predicts over. The delay is
a timer on the event loop, so one connection's wait never stalls another.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Set

logger = logging.getLogger(__name__)


class LatencyInjector:
    """Per-connection delayed emission."""

    def __init__(self, delay: float):
        """
        Args:
            delay: Seconds between computing a command and sending it. Must be
                the same value the latency compensator uses.
        """
        if delay < 0.0:
            raise ValueError(f"delay must be >= 0, got {delay}")
        self.delay = float(delay)
        self.closed = False
        self._handles: Set[asyncio.TimerHandle] = set()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        """Emissions scheduled or in flight."""
        return len(self._handles) + len(self._tasks)

    def schedule(self, send: Callable[[], Awaitable[None]]) -> bool:
        """
        Schedule send() to run after the delay.

        Returns:
            False if the injector is closed and nothing was scheduled
        """
        if self.closed:
            return False
        loop = asyncio.get_running_loop()
        handle = None

        def _fire():
            self._handles.discard(handle)
            if self.closed:
                return
            task = loop.create_task(send())
            self._tasks.add(task)
            task.add_done_callback(self._on_done)

        handle = loop.call_later(self.delay, _fire)
        self._handles.add(handle)
        return True

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("[EMIT_FAILED] delayed send raised %s: %s", type(exc).__name__, exc)

    def cancel(self) -> int:
        """Discard everything pending. Returns the number of dropped emissions."""
        self.closed = True
        dropped = self.pending
        for handle in self._handles:
            handle.cancel()
        for task in self._tasks:
            task.cancel()
        self._handles.clear()
        self._tasks.clear()
        return dropped

    async def drain(self) -> None:
        """Wait until every scheduled emission has been sent."""
        while self._handles or self._tasks:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            else:
                await asyncio.sleep(self.delay / 2.0)
