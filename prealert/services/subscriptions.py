"""Explicit subscription handles over the change feed.

``Subscription.close()`` is synchronous: once it returns the listener is
detached from the feed and no handler call will start afterwards.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable

from prealert.errors import InvalidArgument
from prealert.services.change_feed import ChangeFeed

logger = logging.getLogger(__name__)

_CLOSED = object()

SubscriptionKey = tuple[str, tuple[tuple[str, str], ...]]


def subscription_key(table: str, filters: dict[str, str] | None) -> SubscriptionKey:
    return table, tuple(sorted((k, str(v)) for k, v in (filters or {}).items()))


class Subscription:
    def __init__(self, feed: ChangeFeed, table: str, filters: dict[str, str] | None = None) -> None:
        self.table = table
        self.filters = dict(filters or {})
        self.key = subscription_key(table, self.filters)
        self._feed = feed
        self._queue = feed.subscribe(table, self.filters)
        self._closed = False
        self._task: asyncio.Task | None = None
        self._close_callbacks: list[Callable[["Subscription"], None]] = []

    @property
    def closed(self) -> bool:
        return self._closed

    def on_close(self, callback: Callable[["Subscription"], None]) -> None:
        self._close_callbacks.append(callback)

    async def get(self, timeout: float | None = None) -> dict | None:
        """Next change event, or None on timeout or once closed."""
        if self._closed:
            return None
        try:
            event = await asyncio.wait_for(self._queue.get(), timeout)
        except TimeoutError:
            return None
        if event is _CLOSED or self._closed:
            return None
        return event

    def start(self, handler: Callable[[dict], Any]) -> None:
        """Deliver events to ``handler`` (sync or async) in arrival order."""
        if self._task is not None:
            raise RuntimeError("Subscription already started")
        self._task = asyncio.create_task(self._pump(handler))

    async def _pump(self, handler: Callable[[dict], Any]) -> None:
        while not self._closed:
            event = await self._queue.get()
            if event is _CLOSED or self._closed:
                return
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Subscription handler failed for %s", self.table)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._feed.unsubscribe(self._queue)
        self._queue.put_nowait(_CLOSED)
        if self._task is not None and not self._task.done() and self._task is not asyncio.current_task():
            self._task.cancel()
        for callback in self._close_callbacks:
            callback(self)
        self._close_callbacks.clear()


class SubscriptionRegistry:
    """Open subscriptions owned by one session, at most one per (table, filter)."""

    def __init__(self) -> None:
        self._open: dict[SubscriptionKey, Subscription] = {}

    def add(self, subscription: Subscription) -> Subscription:
        existing = self._open.get(subscription.key)
        if existing is not None and not existing.closed:
            subscription.close()
            raise InvalidArgument(
                f"Already subscribed to {subscription.table} with {subscription.filters}"
            )
        self._open[subscription.key] = subscription
        subscription.on_close(self._discard)
        return subscription

    def _discard(self, subscription: Subscription) -> None:
        if self._open.get(subscription.key) is subscription:
            del self._open[subscription.key]

    def close_all(self) -> None:
        for subscription in list(self._open.values()):
            subscription.close()
        self._open.clear()

    def __len__(self) -> int:
        return len(self._open)
