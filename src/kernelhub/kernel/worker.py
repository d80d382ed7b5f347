"""
Worker Bridge — isolated-worker kernels.

Each isolated kernel gets a dedicated worker thread that owns its engine.
Host and worker only exchange plain dict messages:

    host → worker (queue.Queue inbox)
        {"type": "init", "config": {language, env, filesystem, lock_file_url}}
        {"type": "execute", "request_id": ..., "code": ...}
        {"type": "shutdown"}

    worker → host (loop.call_soon_threadsafe)
        {"type": "ready", "kernel_info": {...}}
        {"type": "init_error", "error": "..."}
        {"type": "event", "request_id": ..., "event": StreamEvent wire dict}
        {"type": "done", "request_id": ...}

Lifecycle: spawn → init → ready (bounded wait) → usable → terminated.
The host never touches the engine, so only shared-memory interrupts reach
these kernels.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import queue
import threading
import time
from typing import TYPE_CHECKING, Any, AsyncGenerator, Callable

from kernelhub.kernel.contracts import KernelMode, KernelOptions, StreamEvent
from kernelhub.kernel.errors import WorkerSpawnFailure, WorkerTerminated
from kernelhub.kernel.interface import KernelHandle
from kernelhub.kernel.interrupt import raise_async_exception
from kernelhub.kernel.multiplexer import normalize

if TYPE_CHECKING:
    from kernelhub.kernel.contracts import ExecutionRequest
    from kernelhub.kernel.engine import EngineFactory
    from kernelhub.kernel.interrupt import SharedInterruptFlag
    from kernelhub.kernel.multiplexer import EventMultiplexer

logger = logging.getLogger(__name__)

# Seconds to wait for a terminated worker thread before leaving it behind
_JOIN_TIMEOUT = 1.0
_JOIN_POLL = 0.01

_worker_ids = itertools.count(1)


class WorkerExit(BaseException):
    """Injected into a worker thread to unwind it on termination."""


def _worker_main(
    inbox: "queue.Queue[dict[str, Any]]",
    post: Callable[[dict[str, Any]], None],
    engine_factory: "EngineFactory",
    interrupt_flag: "SharedInterruptFlag | None",
    executing: threading.Event,
) -> None:
    """Worker thread body: one engine, one message at a time."""
    engine = None
    try:
        while True:
            message = inbox.get()
            kind = message.get("type")

            if kind == "init":
                try:
                    engine = engine_factory(
                        interrupt_flag=interrupt_flag, **message["config"]
                    )
                    post({"type": "ready", "kernel_info": engine.kernel_info()})
                except Exception as e:
                    post({"type": "init_error", "error": f"{type(e).__name__}: {e}"})
                    return

            elif kind == "execute":
                request_id = message["request_id"]

                def emit(event_kind: str, payload: Any, _rid: str = request_id) -> None:
                    post(
                        {
                            "type": "event",
                            "request_id": _rid,
                            "event": normalize(event_kind, payload).to_dict(),
                        }
                    )

                executing.set()
                try:
                    if engine is None:
                        raise RuntimeError("Worker received execute before init")
                    engine.run(message["code"], emit)
                except Exception as e:
                    # Engine faults cross the boundary as data, never as a crash
                    emit(
                        "error",
                        {"ename": type(e).__name__, "evalue": str(e), "traceback": []},
                    )
                finally:
                    executing.clear()
                post({"type": "done", "request_id": request_id})

            elif kind == "shutdown":
                return
    except WorkerExit:
        logger.debug("Worker thread unwound by terminate()")
    finally:
        if engine is not None:
            try:
                engine.close()
            except Exception:
                logger.exception("Worker engine close failed")


class WorkerBridge(KernelHandle):
    """
    Host-side endpoint of an isolated worker.

    Correlates execute requests with the worker's event/done messages by
    request id and relays them as a local async sequence.
    """

    mode = KernelMode.ISOLATED_WORKER
    supports_direct_interrupt = False

    def __init__(
        self,
        options: KernelOptions,
        engine_factory: "EngineFactory",
        interrupt_flag: "SharedInterruptFlag | None" = None,
        ready_timeout: float = 30.0,
    ) -> None:
        super().__init__()
        self._options = options
        self._factory = engine_factory
        self._flag = interrupt_flag
        self._ready_timeout = ready_timeout
        self._inbox: queue.Queue[dict[str, Any]] = queue.Queue()
        self._executing = threading.Event()
        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._ready: asyncio.Future | None = None
        self._pending: dict[str, asyncio.Queue] = {}
        self._dead = False
        self.name = f"kernelhub-worker-{next(_worker_ids)}"

    @property
    def alive(self) -> bool:
        return not self._dead and self._thread is not None and self._thread.is_alive()

    @property
    def pending_requests(self) -> int:
        return len(self._pending)

    # ── Lifecycle ─────────────────────────────────────────────────

    async def start(self) -> dict[str, Any]:
        """Spawn the worker and wait for its ready handshake."""
        started = time.monotonic()
        self._loop = asyncio.get_running_loop()
        self._ready = self._loop.create_future()
        self._thread = threading.Thread(
            target=_worker_main,
            args=(self._inbox, self._post, self._factory, self._flag, self._executing),
            name=self.name,
            daemon=True,
        )
        try:
            self._thread.start()
        except RuntimeError as e:
            self._dead = True
            raise WorkerSpawnFailure(f"Could not start worker thread: {e}") from e

        self._inbox.put({"type": "init", "config": self._options.engine_config()})
        try:
            info = await asyncio.wait_for(self._ready, timeout=self._ready_timeout)
        except asyncio.TimeoutError:
            await self.terminate()
            raise WorkerSpawnFailure(
                f"Worker not ready after {self._ready_timeout}s"
            ) from None
        except (WorkerSpawnFailure, asyncio.CancelledError):
            await self.terminate()
            raise

        self._kernel_info = info
        logger.info(
            "Worker %s ready",
            self.name,
            extra={
                "language": self._options.language,
                "duration_ms": round((time.monotonic() - started) * 1000, 1),
            },
        )
        return self.kernel_info

    async def terminate(self) -> None:
        """
        Stop the worker. Idempotent.

        Pending requests end with a WorkerTerminated error event; messages
        the worker posts afterwards are dropped.
        """
        if self._dead:
            return
        self._dead = True

        if self._ready is not None and not self._ready.done():
            self._ready.cancel()

        for request_id, pending in list(self._pending.items()):
            error = StreamEvent.execute_error(
                WorkerTerminated.__name__, "Worker terminated during execution"
            )
            pending.put_nowait(
                {"type": "event", "request_id": request_id, "event": error.to_dict()}
            )
            pending.put_nowait({"type": "done", "request_id": request_id})
        self._pending.clear()

        self._inbox.put({"type": "shutdown"})
        thread = self._thread
        if thread is None or not thread.is_alive():
            return
        if self._executing.is_set() and thread.ident is not None:
            raise_async_exception(thread.ident, WorkerExit)
        # Joined by polling; a stuck worker must not occupy a default executor thread
        deadline = time.monotonic() + _JOIN_TIMEOUT
        while thread.is_alive() and time.monotonic() < deadline:
            await asyncio.sleep(_JOIN_POLL)
        if thread.is_alive():
            # Blocked in native code; the daemon thread exits when it returns
            logger.warning("Worker %s did not exit within %.1fs", self.name, _JOIN_TIMEOUT)

    async def close(self) -> None:
        await self.terminate()

    # ── Messaging ─────────────────────────────────────────────────

    def _post(self, message: dict[str, Any]) -> None:
        """Called on the worker thread: hop the message onto the event loop."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._on_message, message)
        except RuntimeError:
            # Loop closed between the check and the call
            logger.debug("Dropping worker message %s: loop closed", message.get("type"))

    def _on_message(self, message: dict[str, Any]) -> None:
        if self._dead:
            return
        kind = message.get("type")
        if kind == "ready":
            if self._ready is not None and not self._ready.done():
                self._ready.set_result(message.get("kernel_info") or {})
        elif kind == "init_error":
            if self._ready is not None and not self._ready.done():
                self._ready.set_exception(
                    WorkerSpawnFailure(f"Worker init failed: {message.get('error')}")
                )
        elif kind in ("event", "done"):
            pending = self._pending.get(message.get("request_id", ""))
            if pending is None:
                logger.debug("Message for unknown request %s", message.get("request_id"))
                return
            pending.put_nowait(message)
        else:
            logger.warning("Unknown worker message type: %s", kind)

    async def stream(self, request: "ExecutionRequest") -> AsyncGenerator[StreamEvent, None]:
        """Send one execute request and yield the worker's events until done."""
        if self._dead:
            raise WorkerTerminated(f"Worker {self.name} has been terminated")
        pending: asyncio.Queue = asyncio.Queue()
        self._pending[request.request_id] = pending
        self._inbox.put(
            {"type": "execute", "request_id": request.request_id, "code": request.code}
        )
        try:
            while True:
                message = await pending.get()
                if message["type"] == "done":
                    return
                yield StreamEvent.from_dict(message["event"])
        finally:
            self._pending.pop(request.request_id, None)

    async def run(self, request: "ExecutionRequest", mux: "EventMultiplexer") -> None:
        async for event in self.stream(request):
            mux.emit_event(event)
