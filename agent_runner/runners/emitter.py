"""Ordered event delivery from a runner to any number of subscribers.

Two ways to listen:
- ``on(event, callback)``: synchronous callback, called in emission order.
- ``subscribe(*events)``: an independent queue per subscriber, drained at the
  subscriber's own pace.

Emitting never waits on a subscriber. A callback that raises is logged and
skipped so one bad listener can't break the session.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, AsyncIterator, Callable

log = logging.getLogger(__name__)

RunnerEvent = tuple[str, Any]

_CLOSED = object()


class Subscription:
    """Queue-backed view of the events emitted after it was created."""

    def __init__(self, emitter: EventEmitter, events: frozenset[str] | None):
        self._emitter = emitter
        self._events = events
        self._queue: asyncio.Queue[RunnerEvent | object] = asyncio.Queue()
        self.closed = False

    def wants(self, event: str) -> bool:
        return self._events is None or event in self._events

    def put(self, item: RunnerEvent) -> None:
        if not self.closed:
            self._queue.put_nowait(item)

    async def get(self) -> RunnerEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item  # type: ignore[return-value]

    def drain(self) -> list[RunnerEvent]:
        """Return everything queued so far without waiting."""
        items: list[RunnerEvent] = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is _CLOSED:
                self._queue.put_nowait(_CLOSED)
                break
            items.append(item)  # type: ignore[arg-type]
        return items

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(_CLOSED)
        self._emitter._unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[RunnerEvent]:
        return self

    async def __anext__(self) -> RunnerEvent:
        return await self.get()


class EventEmitter:
    def __init__(self) -> None:
        self._listeners: dict[str, list[Callable[..., Any]]] = defaultdict(list)
        self._subscriptions: list[Subscription] = []

    def on(self, event: str, callback: Callable[..., Any]) -> None:
        self._listeners[event].append(callback)

    def off(self, event: str, callback: Callable[..., Any]) -> None:
        listeners = self._listeners.get(event, [])
        if callback in listeners:
            listeners.remove(callback)

    def subscribe(self, *events: str) -> Subscription:
        sub = Subscription(self, frozenset(events) if events else None)
        self._subscriptions.append(sub)
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    def emit(self, event: str, *args: Any) -> None:
        payload = args[0] if len(args) == 1 else args
        for sub in list(self._subscriptions):
            if sub.wants(event):
                sub.put((event, payload))
        for callback in list(self._listeners.get(event, [])):
            try:
                callback(*args)
            except Exception:
                log.exception(f"Listener for {event!r} failed")
