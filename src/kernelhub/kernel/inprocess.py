"""
In-process kernels — the host holds the engine directly.

Engine calls are blocking, so each kernel runs them on its own executor
thread. The event loop, and the default executor, stay free to serve other
kernels however long one of them runs.
Because the host can see the thread running the code, these kernels
support direct-call interrupts.
"""

from __future__ import annotations

import asyncio
import contextvars
import functools
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Any

from kernelhub.kernel.contracts import KernelMode, KernelOptions
from kernelhub.kernel.errors import KernelStartFailure
from kernelhub.kernel.interface import KernelHandle

if TYPE_CHECKING:
    from kernelhub.kernel.contracts import ExecutionRequest
    from kernelhub.kernel.engine import EngineFactory, ExecutionEngine
    from kernelhub.kernel.interrupt import SharedInterruptFlag
    from kernelhub.kernel.multiplexer import EventMultiplexer

logger = logging.getLogger(__name__)


class DirectKernelHandle(KernelHandle):
    """Handle for an engine living in the host process."""

    mode = KernelMode.IN_PROCESS
    supports_direct_interrupt = True

    def __init__(
        self,
        options: KernelOptions,
        engine_factory: "EngineFactory",
        interrupt_flag: "SharedInterruptFlag | None" = None,
    ) -> None:
        super().__init__()
        self._options = options
        self._factory = engine_factory
        self._flag = interrupt_flag
        self._engine: "ExecutionEngine | None" = None
        self._running = False
        self._closed = False
        self._executor: ThreadPoolExecutor | None = None

    @property
    def engine(self) -> "ExecutionEngine | None":
        return self._engine

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> dict[str, Any]:
        started = time.monotonic()
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"kernelhub-{self._options.language}"
        )
        try:
            self._engine = await self._call(
                self._factory, interrupt_flag=self._flag, **self._options.engine_config()
            )
            self._kernel_info = await self._call(self._engine.kernel_info)
        except Exception as e:
            self._shutdown_executor()
            raise KernelStartFailure(
                f"In-process engine for {self._options.language} failed to start: {e}"
            ) from e
        logger.debug(
            "In-process engine ready",
            extra={
                "language": self._options.language,
                "duration_ms": round((time.monotonic() - started) * 1000, 1),
            },
        )
        return self.kernel_info

    async def run(self, request: "ExecutionRequest", mux: "EventMultiplexer") -> None:
        if self._engine is None or self._closed:
            raise KernelStartFailure("Engine is not running")
        self._running = True
        try:
            await self._call(self._engine.run, request.code, mux.emit)
        finally:
            self._running = False

    async def _call(self, func, /, *args, **kwargs):
        """Run a blocking engine call on this kernel's thread, keeping the log context."""
        if self._executor is None:
            raise KernelStartFailure("Engine is not running")
        loop = asyncio.get_running_loop()
        ctx = contextvars.copy_context()
        call = functools.partial(ctx.run, func, *args, **kwargs)
        return await loop.run_in_executor(self._executor, call)

    def _shutdown_executor(self) -> None:
        executor, self._executor = self._executor, None
        if executor is not None:
            # A run still unwinding after an interrupt finishes on its own
            executor.shutdown(wait=False)

    def interrupt_direct(self) -> bool:
        if self._engine is None:
            return False
        return self._engine.interrupt()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        engine, self._engine = self._engine, None
        try:
            if engine is not None:
                # PythonEngine.close() interrupts a run still in progress
                engine.close()
        except Exception:
            logger.exception("Engine close failed")
        finally:
            self._shutdown_executor()
