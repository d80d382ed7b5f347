"""
Event Multiplexer — turns engine callbacks into one ordered event stream.

Engines report output through a callback from whatever thread runs the
code. The multiplexer:
- normalizes each callback into a StreamEvent
- tags it with the request's parent context
- delivers it to the execution's async stream AND to the kernel's listeners
  in production order

Design:
- One EventMultiplexer per execution (events of different executions never
  interleave in a stream)
- One ListenerRegistry per manager, keyed by kernel id and event kind
- Thread hop: emit() may be called from any thread; delivery always happens
  on the event loop via call_soon_threadsafe, which preserves call order
- The stream queue is unbounded: engines never block on a slow consumer

Usage:
    mux = EventMultiplexer(kernel_id, loop, listeners, parent=None)
    engine.run(code, mux.emit)       # from a worker thread
    mux.close()                      # when the run has finished
    async for event in mux.events():
        ...
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Callable

from kernelhub.kernel.contracts import StreamEvent

logger = logging.getLogger(__name__)

# Sentinel to signal end of stream
_STREAM_END = object()

Listener = Callable[[StreamEvent], Any]


def normalize(kind: str, payload: Any) -> StreamEvent:
    """
    Map an engine callback to a StreamEvent.

    Known engine kinds: stdout, stderr, result, display, update_display,
    error. A payload that is already a wire dict ({"type", "data"}) passes
    through unchanged, which is how worker messages arrive.
    """
    if kind == "event":
        return StreamEvent.from_dict(payload)
    if kind in ("stdout", "stderr"):
        return StreamEvent.stream(kind, str(payload))
    if kind == "result":
        return StreamEvent.execute_result(
            payload.get("data", {}),
            execution_count=payload.get("execution_count"),
            metadata=payload.get("metadata"),
        )
    if kind in ("display", "update_display"):
        return StreamEvent.display_data(
            payload.get("data", {}),
            metadata=payload.get("metadata"),
            transient=payload.get("transient"),
            update=kind == "update_display",
        )
    if kind == "error":
        return StreamEvent.execute_error(
            payload.get("ename", "Error"),
            payload.get("evalue", ""),
            payload.get("traceback"),
        )
    if kind == "kernel_info":
        return StreamEvent.kernel_info(payload)
    raise ValueError(f"Unknown engine event kind: {kind!r}")


@dataclass(frozen=True)
class ListenerHandle:
    """Opaque token returned by ListenerRegistry.add()."""

    kernel_id: str
    kind: str
    token: int


class ListenerRegistry:
    """
    Per-kernel event listeners.

    Not thread-safe: add/remove/dispatch run on the event loop only.
    """

    def __init__(self) -> None:
        # kernel_id → kind → token → listener
        self._listeners: dict[str, dict[str, dict[int, Listener]]] = defaultdict(
            lambda: defaultdict(dict)
        )
        self._tokens = itertools.count(1)

    def add(self, kernel_id: str, kind: str, listener: Listener) -> ListenerHandle:
        handle = ListenerHandle(kernel_id, kind, next(self._tokens))
        self._listeners[kernel_id][kind][handle.token] = listener
        logger.debug("Listener added for %s/%s", kernel_id, kind)
        return handle

    def remove(self, handle: ListenerHandle) -> bool:
        """Remove a listener. Safe to call twice; returns whether it was present."""
        kinds = self._listeners.get(handle.kernel_id)
        if not kinds or handle.kind not in kinds:
            return False
        removed = kinds[handle.kind].pop(handle.token, None) is not None
        if not kinds[handle.kind]:
            del kinds[handle.kind]
        if not kinds:
            del self._listeners[handle.kernel_id]
        return removed

    def clear(self, kernel_id: str) -> None:
        """Forget every listener of a kernel (on destroy)."""
        self._listeners.pop(kernel_id, None)

    def count(self, kernel_id: str, kind: str | None = None) -> int:
        kinds = self._listeners.get(kernel_id, {})
        if kind is not None:
            return len(kinds.get(kind, {}))
        return sum(len(v) for v in kinds.values())

    def dispatch(self, kernel_id: str, event: StreamEvent) -> int:
        """
        Call every listener registered for event.type on this kernel.

        Iterates over a snapshot, so listeners may add or remove listeners
        (including themselves) from inside the callback; one removed during
        dispatch is not called afterwards. Listener exceptions are logged and
        do not stop dispatch. Returns the number of listeners called.
        """
        by_kind = self._listeners.get(kernel_id, {}).get(event.type)
        if not by_kind:
            return 0
        called = 0
        for token, listener in list(by_kind.items()):
            if token not in by_kind:
                continue
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Listener for %s failed", event.type, extra={"kernel_id": kernel_id}
                )
            called += 1
        return called


class EventMultiplexer:
    """
    Ordered fan-out of one execution's events.

    Each emitted event is delivered to listeners first, then made available
    to the stream consumer, both in emission order.
    """

    def __init__(
        self,
        kernel_id: str,
        loop: asyncio.AbstractEventLoop,
        listeners: ListenerRegistry | None = None,
        parent: dict[str, Any] | None = None,
    ) -> None:
        self.kernel_id = kernel_id
        self._loop = loop
        self._listeners = listeners
        self._parent = parent
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._consumed = False
        self.event_count = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, kind: str, payload: Any) -> None:
        """Engine callback. Safe to call from any thread."""
        event = normalize(kind, payload)
        self._loop.call_soon_threadsafe(self._deliver, event)

    def emit_event(self, event: StreamEvent) -> None:
        """Deliver an already-built event. Event-loop thread only."""
        self._deliver(event)

    def _deliver(self, event: StreamEvent) -> None:
        if self._closed:
            logger.debug(
                "Dropping %s after stream end", event.type, extra={"kernel_id": self.kernel_id}
            )
            return
        event = event.with_parent(self._parent)
        self.event_count += 1
        if self._listeners is not None:
            self._listeners.dispatch(self.kernel_id, event)
        self._queue.put_nowait(event)

    def close(self) -> None:
        """
        Signal end of stream.

        Thread-safe: the sentinel is queued behind every event already
        emitted from other threads.
        """
        self._loop.call_soon_threadsafe(self._finish)

    def _finish(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_STREAM_END)

    async def events(self) -> AsyncGenerator[StreamEvent, None]:
        """
        Yield events until the stream ends.

        A stream can be consumed once; iterating it again yields nothing.
        """
        if self._consumed:
            return
        self._consumed = True
        while True:
            item = await self._queue.get()
            if item is _STREAM_END:
                break
            yield item
