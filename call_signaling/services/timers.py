"""
Cancelable scheduling primitives.

Every autonomous timer in the service is a handle owned by whoever armed
it. Cancelling the handle guarantees the callback never runs afterwards.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class CancelableTimer:
    """One-shot timer built on loop.call_later."""

    def __init__(self, name: str):
        self.name = name
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def arm(self, delay: float, callback: Callable[..., Any], *args: Any) -> None:
        """(Re)arm the timer. Any previously armed callback is canceled first."""
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(delay, self._fire, callback, args)

    def cancel(self) -> bool:
        if self._handle is None:
            return False
        self._handle.cancel()
        self._handle = None
        return True

    def _fire(self, callback: Callable[..., Any], args: tuple) -> None:
        self._handle = None
        try:
            callback(*args)
        except Exception:
            logger.exception(f"Timer '{self.name}' callback failed")


class Poller:
    """
    Runs an async function on a fixed interval until stopped.

    Failures are logged and the next tick still runs; stop() cancels the
    task and waits for it so no tick can land after it returns.
    """

    def __init__(self, func: Callable[[], Awaitable[Any]], interval: float, *, initial_delay: float = 0.0, name: str = "poller"):
        self._func = func
        self.interval = interval
        self.initial_delay = initial_delay
        self.name = name
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=self.name)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        if self.initial_delay:
            await asyncio.sleep(self.initial_delay)
        while True:
            try:
                await self._func()
            except Exception as e:
                logger.exception(f"Poller '{self.name}' tick failed: {e}")
            await asyncio.sleep(self.interval)
