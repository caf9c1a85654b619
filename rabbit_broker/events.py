"""Diagnostics bus: process-wide notifications about broker activity.

The core never logs-and-forgets a failure silently: synchronous operations
raise *and* emit an ``error`` event, while consume-time failures are only
visible here (or through a subscription's ``on_error`` callback).

Two ways to listen:

- ``bus.subscribe(callback, kinds=...)`` registers a plain callable invoked
  inline during ``emit``. It returns an ``unsubscribe`` function.
- ``bus.stream(kinds=...)`` returns an ``EventStream`` that buffers events in
  an ``asyncio.Queue`` for a task to iterate over.

Example:
    >>> bus = DiagnosticsBus()
    >>> seen = []
    >>> unsubscribe = bus.subscribe(seen.append, kinds={EventKind.ERROR})
    >>> _ = bus.emit(EventKind.ERROR, cause=RuntimeError("boom"))
    >>> [e.kind for e in seen]
    [<EventKind.ERROR: 'error'>]
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Optional

from rabbit_broker.metrics import BROKER_EVENT_TOTAL


logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    ERROR = "error"
    CONNECTION_CLOSED = "connection_closed"
    MESSAGE_PUBLISHED = "message_published"
    MESSAGE_CONSUMED = "message_consumed"


@dataclass(frozen=True)
class DiagnosticEvent:
    """A single notification. Payload content is never attached."""

    kind: EventKind
    cause: Optional[BaseException] = None
    destination: Optional[str] = None
    routing_key: Optional[str] = None
    queue: Optional[str] = None
    details: Mapping[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


Listener = Callable[[DiagnosticEvent], None]


class _Subscriber:
    def __init__(self, callback: Listener, kinds: Optional[frozenset[EventKind]]):
        self.callback = callback
        self.kinds = kinds

    def accepts(self, event: DiagnosticEvent) -> bool:
        return self.kinds is None or event.kind in self.kinds


def _normalize_kinds(kinds: Optional[Iterable[EventKind | str]]) -> Optional[frozenset[EventKind]]:
    if kinds is None:
        return None
    return frozenset(EventKind(k) for k in kinds)


_CLOSED = object()


class EventStream:
    """Async iterator over events delivered to one subscriber.

    Events arrive in emission order. When ``maxsize`` is reached new events
    are dropped (and logged) rather than blocking the emitter.

    Example:
        >>> stream = bus.stream(kinds={"error"})
        >>> async for event in stream:
        ...     alert(event.cause)
    """

    def __init__(self, bus: "DiagnosticsBus", kinds: Optional[frozenset[EventKind]], maxsize: int = 0):
        # Unbounded; ``maxsize`` is enforced in ``_put``
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._maxsize = max(0, int(maxsize))
        self._closed = False
        self._unsubscribe = bus._add(_Subscriber(self._put, kinds))

    def _put(self, event: DiagnosticEvent) -> None:
        if self._maxsize and self._queue.qsize() >= self._maxsize:
            logger.warning("diagnostics stream full, dropping %s event", event.kind.value)
            return
        self._queue.put_nowait(event)

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self, timeout: Optional[float] = None) -> Optional[DiagnosticEvent]:
        """Wait for the next event; ``None`` once the stream is closed and drained.

        Raises ``asyncio.TimeoutError`` when ``timeout`` elapses first.
        """
        item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def close(self) -> None:
        """Stop receiving events; iteration ends after the buffered ones."""
        if self._closed:
            return
        self._closed = True
        self._unsubscribe()
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "EventStream":
        return self

    async def __anext__(self) -> DiagnosticEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def __aenter__(self) -> "EventStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


class DiagnosticsBus:
    """Publish/subscribe channel for broker lifecycle and error events."""

    def __init__(self) -> None:
        self._subscribers: list[_Subscriber] = []

    def _add(self, subscriber: _Subscriber) -> Callable[[], None]:
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            try:
                self._subscribers.remove(subscriber)
            except ValueError:
                pass

        return unsubscribe

    def subscribe(
        self, callback: Listener, kinds: Optional[Iterable[EventKind | str]] = None
    ) -> Callable[[], None]:
        """Register ``callback`` for ``kinds`` (all kinds when omitted)."""
        return self._add(_Subscriber(callback, _normalize_kinds(kinds)))

    def stream(self, kinds: Optional[Iterable[EventKind | str]] = None, maxsize: int = 0) -> EventStream:
        return EventStream(self, _normalize_kinds(kinds), maxsize=maxsize)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def emit(self, kind: EventKind | str, **fields: Any) -> DiagnosticEvent:
        """Build an event and hand it to every matching subscriber.

        A subscriber that raises is logged and skipped; it never interrupts
        the emitter or the remaining subscribers.
        """
        event = DiagnosticEvent(kind=EventKind(kind), **fields)
        BROKER_EVENT_TOTAL.labels(kind=event.kind.value).inc()
        for subscriber in list(self._subscribers):
            if not subscriber.accepts(event):
                continue
            try:
                subscriber.callback(event)
            except Exception:  # noqa: BLE001
                logger.exception("diagnostics subscriber failed on %s event", event.kind.value)
        return event

    def error(self, cause: BaseException, **fields: Any) -> DiagnosticEvent:
        return self.emit(EventKind.ERROR, cause=cause, **fields)


_bus: Optional[DiagnosticsBus] = None


def get_diagnostics_bus() -> DiagnosticsBus:
    """Return the process-wide bus, creating it on first use.

    Brokers constructed without an explicit ``bus`` share this instance.
    """
    global _bus
    if _bus is None:
        _bus = DiagnosticsBus()
    return _bus
