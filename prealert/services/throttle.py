import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class KeyedThrottle:
    """Rate-limit a coroutine per key, keeping only the latest call.

    A call outside the window runs at once. Calls inside the window replace
    whatever is pending for that key; the last one runs when the window ends.
    """

    def __init__(self, interval: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.interval = interval
        self._clock = clock
        self._last_run: dict[str, float] = {}
        self._pending: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()

    def submit(self, key: str, func: Callable[..., Awaitable[Any]], *args: Any) -> bool:
        """Schedule ``func(*args)``. Returns True when it started immediately."""
        loop = asyncio.get_running_loop()
        pending = self._pending.pop(key, None)
        if pending is not None:
            pending.cancel()

        now = self._clock()
        last = self._last_run.get(key)
        if last is None or now - last >= self.interval:
            self._run(key, func, args)
            return True

        delay = self.interval - (now - last)
        self._pending[key] = loop.call_later(delay, self._fire, key, func, args)
        return False

    def _fire(self, key: str, func, args) -> None:
        self._pending.pop(key, None)
        self._run(key, func, args)

    def _run(self, key: str, func, args) -> None:
        self._last_run[key] = self._clock()
        task = asyncio.create_task(func(*args))
        self._tasks.add(task)
        task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Throttled task failed: %s", exc, exc_info=exc)

    def has_pending(self, key: str) -> bool:
        return key in self._pending

    async def drain(self) -> None:
        """Wait for calls already started. Pending calls are not forced."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_all(self) -> None:
        for handle in self._pending.values():
            handle.cancel()
        self._pending.clear()
        for task in list(self._tasks):
            task.cancel()
