"""
Kernel Manager — public façade over registry, pool, workers and interrupts.

Architecture:
    KernelManager
      ├── KernelRegistry      live kernels (owned, never global)
      ├── PoolManager         pre-warmed idle kernels per (mode, language)
      ├── InterruptController per-kernel interrupt channels
      └── ListenerRegistry    per-kernel event listeners

    create_kernel → pool.take() or fresh handle → registry
    execute_stream → kernel lock (FIFO) → handle.run() → EventMultiplexer → caller

Execution:
- one execution in flight per kernel; concurrent requests wait in FIFO order
- faults in executed code are data (execute_error events), never exceptions
- structural problems (unknown id, disallowed type) raise immediately

Usage:
    async with KernelManager() as manager:
        kernel_id = await manager.create_kernel(mode="isolated-worker")
        async for event in manager.execute_stream(kernel_id, "print(1)"):
            print(event.to_dict())
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
import uuid
from functools import partial
from typing import Any, AsyncGenerator

import kernelhub.core.config as config_module
from kernelhub.core.config import KernelHubConfig, PoolConfig
from kernelhub.core.logging import kernel_log_context
from kernelhub.core.metrics import metrics
from kernelhub.kernel.contracts import (
    LISTENER_KINDS,
    ExecutionRequest,
    ExecutionResult,
    KernelInfo,
    KernelMode,
    KernelOptions,
    KernelState,
    KernelType,
    LifecycleEvent,
    StreamEvent,
)
from kernelhub.kernel.engine import EngineFactory, PythonEngine
from kernelhub.kernel.errors import (
    InterruptUnavailable,
    KernelNotFound,
    KernelStartFailure,
    UnsupportedKernelType,
)
from kernelhub.kernel.inprocess import DirectKernelHandle
from kernelhub.kernel.interface import KernelHandle
from kernelhub.kernel.interrupt import InterruptChannel, InterruptController
from kernelhub.kernel.multiplexer import EventMultiplexer, Listener, ListenerHandle, ListenerRegistry
from kernelhub.kernel.pool import PoolEntry, PoolManager
from kernelhub.kernel.registry import KernelInstance, KernelRegistry
from kernelhub.kernel.worker import WorkerBridge

logger = logging.getLogger(__name__)

# Poll interval while retrying a direct-call interrupt that found no running code yet
_INTERRUPT_RETRY_INTERVAL = 0.01
# Grace period for a flag interrupt before an in-process run is interrupted directly
_INTERRUPT_ESCALATE_AFTER = 0.1


class KernelManager:
    """
    Orchestrates many kernels on one event loop.

    Registry and pool belong to this instance, so independent managers can
    coexist (e.g. one per test).
    """

    def __init__(
        self,
        config: KernelHubConfig | None = None,
        engines: dict[str, EngineFactory] | None = None,
    ) -> None:
        self._config = config or config_module.config
        self._engines: dict[str, EngineFactory] = {"python": PythonEngine}
        self._engines.update(engines or {})

        self._registry = KernelRegistry()
        self._listeners = ListenerRegistry()
        self._interrupts = InterruptController(self._config.interruption_mode)
        self._pool = PoolManager(self._config.pool, self._create_pool_entry)

        # Fire-and-forget tasks (watchdogs, inactivity teardown)
        self._background: set[asyncio.Task] = set()
        self._running = False
        # Set for the whole of shutdown(); creations still starting are refused
        self._closing = False

    @property
    def config(self) -> KernelHubConfig:
        return self._config

    @property
    def registry(self) -> KernelRegistry:
        return self._registry

    @property
    def pool(self) -> PoolManager:
        return self._pool

    @property
    def interrupts(self) -> InterruptController:
        return self._interrupts

    # ─── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        """Start background pool preloading."""
        if self._running:
            return
        self._running = True
        self._closing = False
        self._pool.start()
        logger.info(
            "Kernel manager started (interrupts=%s, pool=%s)",
            self._interrupts.mode.value,
            "on" if self._pool.enabled else "off",
        )

    async def shutdown(self) -> None:
        """Destroy every kernel and release the pool."""
        self._closing = True
        await self.destroy_all()
        await self._pool.close()

        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()

        self._running = False
        logger.info("Kernel manager stopped")

    async def __aenter__(self) -> "KernelManager":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    # ─── Construction ─────────────────────────────────────────────

    def _engine_factory(self, kernel_type: KernelType) -> EngineFactory:
        factory = self._engines.get(kernel_type.language)
        if factory is None:
            raise UnsupportedKernelType(kernel_type)
        return factory

    def _build_handle(self, options: KernelOptions, channel: InterruptChannel) -> KernelHandle:
        factory = self._engine_factory(options.kernel_type)
        if options.mode is KernelMode.IN_PROCESS:
            return DirectKernelHandle(options, factory, channel.flag)
        return WorkerBridge(
            options,
            factory,
            channel.flag,
            ready_timeout=self._config.worker_ready_timeout,
        )

    async def _start_handle(
        self, options: KernelOptions
    ) -> tuple[KernelHandle, InterruptChannel]:
        """Build and start a fresh engine. Raises KernelStartFailure subclasses."""
        channel = self._interrupts.create_channel()
        handle = self._build_handle(options, channel)
        started = time.monotonic()
        await handle.start()
        metrics.observe(
            "kernel.startup.duration_ms",
            (time.monotonic() - started) * 1000,
            labels={"mode": options.mode.value},
        )
        return handle, channel

    async def _create_pool_entry(self, kernel_type: KernelType) -> PoolEntry:
        options = KernelOptions(mode=kernel_type.mode, language=kernel_type.language)
        handle, channel = await self._start_handle(options)
        return PoolEntry(kernel_type=kernel_type, handle=handle, channel=channel)

    async def create_kernel(self, options: KernelOptions | None = None, **fields: Any) -> str:
        """
        Create a kernel and return its id.

        Accepts a KernelOptions or its fields as keyword arguments
        (mode, language, namespace, id, env, filesystem, lock_file_url,
        inactivity_timeout, max_execution_time). ``lang`` is accepted as an
        alias for ``language``.

        Raises:
            UnsupportedKernelType: (mode, language) is not allowed.
            IdConflict: an explicit id is live, being created, or was destroyed.
            KernelStartFailure / WorkerSpawnFailure: the engine did not start.
        """
        if "lang" in fields:
            lang = fields.pop("lang")
            fields.setdefault("language", lang)
        if options is None:
            fields.setdefault("mode", self._config.default_mode)
            options = KernelOptions(**fields)
        elif fields:
            options = dataclasses.replace(options, **fields)

        kernel_type = options.kernel_type
        if not self._config.allows(kernel_type) or kernel_type.language not in self._engines:
            raise UnsupportedKernelType(kernel_type)

        kernel_id = options.id or str(uuid.uuid4())
        self._registry.reserve(kernel_id)
        started = time.monotonic()
        try:
            # A customised kernel needs its own engine setup; pooled ones are generic
            entry = None if options.is_customised else self._pool.take(kernel_type)
            if entry is not None:
                handle, channel, from_pool = entry.handle, entry.channel, True
            else:
                handle, channel = await self._start_handle(options)
                from_pool = None
                if self._closing:
                    await handle.close()
                    raise KernelStartFailure("Manager shut down during kernel start")

            instance = KernelInstance(
                id=kernel_id,
                mode=options.mode,
                language=options.language,
                options=options,
                channel=channel,
                direct=handle if isinstance(handle, DirectKernelHandle) else None,
                worker=handle if isinstance(handle, WorkerBridge) else None,
                namespace=options.namespace,
                from_pool=from_pool,
            )
        except BaseException:
            self._registry.release(kernel_id)
            raise

        self._registry.add(instance)
        self._schedule_inactivity(instance)

        source = "pool" if from_pool else "fresh"
        metrics.inc("kernel.created", labels={"mode": options.mode.value, "source": source})
        metrics.gauge_set("kernel.live", len(self._registry))
        logger.info(
            "Kernel %s created (%s)",
            kernel_id,
            source,
            extra={
                "kernel_id": kernel_id,
                "mode": options.mode.value,
                "language": options.language,
                "namespace": options.namespace,
                "duration_ms": round((time.monotonic() - started) * 1000, 1),
            },
        )
        return kernel_id

    # ─── Lookup ───────────────────────────────────────────────────

    def get_kernel(self, kernel_id: str) -> KernelInstance | None:
        """Return the kernel or None. No side effects."""
        return self._registry.get(kernel_id)

    def _require(self, kernel_id: str) -> KernelInstance:
        instance = self._registry.get(kernel_id)
        if instance is None:
            raise KernelNotFound(kernel_id)
        return instance

    def list_kernels(self, namespace: str | None = None) -> list[KernelInfo]:
        return [k.to_info() for k in self._registry.list(namespace)]

    # ─── Teardown ─────────────────────────────────────────────────

    async def destroy_kernel(self, kernel_id: str) -> None:
        """
        Tear down a kernel. Destroying an unknown or destroyed id is a no-op.

        An in-flight execution is forced to end: interrupted for in-process
        kernels, cut off by worker termination for isolated ones.
        """
        instance = self._registry.remove(kernel_id)
        if instance is None:
            return
        instance.state = KernelState.DESTROYED
        if instance.inactivity_timer is not None:
            instance.inactivity_timer.cancel()
            instance.inactivity_timer = None

        task = instance.current_task
        try:
            await instance.handle.close()
        except Exception:
            logger.exception("Closing kernel %s failed", kernel_id, extra={"kernel_id": kernel_id})

        if task is not None and not task.done():
            await asyncio.wait({task}, timeout=self._config.interrupt_timeout)
            if not task.done():
                logger.warning(
                    "Execution on %s did not stop, abandoning it",
                    kernel_id,
                    extra={"kernel_id": kernel_id},
                )
                task.cancel()
                await asyncio.wait({task})

        self._listeners.clear(kernel_id)
        metrics.inc("kernel.destroyed", labels={"mode": instance.mode.value})
        metrics.gauge_set("kernel.live", len(self._registry))
        logger.info("Kernel %s destroyed", kernel_id, extra={"kernel_id": kernel_id})

    async def destroy_all(self, namespace: str | None = None) -> None:
        """Destroy every kernel (or one namespace) in parallel; failures are logged."""
        ids = [k.id for k in self._registry.list(namespace)]
        if not ids:
            return
        results = await asyncio.gather(
            *(self.destroy_kernel(kernel_id) for kernel_id in ids),
            return_exceptions=True,
        )
        for kernel_id, result in zip(ids, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Failed to destroy kernel %s: %s",
                    kernel_id,
                    result,
                    extra={"kernel_id": kernel_id},
                )

    async def restart_kernel(self, kernel_id: str) -> str:
        """Destroy a kernel and create a fresh one with the same options. Returns the new id."""
        instance = self._require(kernel_id)
        options = dataclasses.replace(instance.options, id=None)
        await self.destroy_kernel(kernel_id)
        return await self.create_kernel(options)

    # ─── Execution ────────────────────────────────────────────────

    async def execute(
        self, kernel_id: str, code: str, parent: dict[str, Any] | None = None
    ) -> ExecutionResult:
        """Run code to completion and aggregate its events."""
        events = [event async for event in self.execute_stream(kernel_id, code, parent)]
        return ExecutionResult.from_events(events)

    def execute_stream(
        self, kernel_id: str, code: str, parent: dict[str, Any] | None = None
    ) -> AsyncGenerator[StreamEvent, None]:
        """
        Run code and stream its events in production order.

        Raises KernelNotFound immediately for an unknown id. The returned
        stream is lazy (nothing runs until it is iterated), finite, and can
        be consumed once. Closing it early interrupts the execution.
        """
        instance = self._require(kernel_id)
        request = ExecutionRequest(kernel_id=kernel_id, code=code, parent=parent)
        return self._stream(instance, request)

    async def _stream(
        self, instance: KernelInstance, request: ExecutionRequest
    ) -> AsyncGenerator[StreamEvent, None]:
        loop = asyncio.get_running_loop()
        await instance.lock.acquire()
        try:
            if instance.state is KernelState.DESTROYED:
                raise KernelNotFound(instance.id)
            mux = EventMultiplexer(instance.id, loop, self._listeners, request.parent)
            self._begin(instance)
            # The run task and its engine thread inherit the log context
            with kernel_log_context(kernel_id=instance.id, request_id=request.request_id):
                task = asyncio.create_task(
                    self._run_contained(instance, request, mux),
                    name=f"kernel-run-{instance.id}",
                )
        except BaseException:
            instance.lock.release()
            raise

        instance.current_task = task
        # The lock is released when the run ends, not when the consumer finishes
        task.add_done_callback(partial(self._finish, instance, request, time.monotonic()))

        watchdog: asyncio.TimerHandle | None = None
        if instance.options.max_execution_time:
            watchdog = loop.call_later(
                instance.options.max_execution_time, self._on_execution_timeout, instance, task
            )

        try:
            async for event in mux.events():
                yield event
        finally:
            if watchdog is not None:
                watchdog.cancel()
            if not task.done():
                # Stream abandoned mid-run
                logger.debug(
                    "Stream closed early, interrupting",
                    extra={"kernel_id": instance.id, "request_id": request.request_id},
                )
                await self._interrupt_task(instance, task)

    def _begin(self, instance: KernelInstance) -> None:
        instance.channel.reset()
        if instance.inactivity_timer is not None:
            instance.inactivity_timer.cancel()
            instance.inactivity_timer = None
        instance.state = KernelState.BUSY
        instance.execution_count += 1
        metrics.gauge_add("kernel.busy", 1)
        self._dispatch_lifecycle(instance, LifecycleEvent.KERNEL_BUSY)

    async def _run_contained(
        self, instance: KernelInstance, request: ExecutionRequest, mux: EventMultiplexer
    ) -> None:
        """Run one request; every failure becomes an execute_error event."""
        try:
            await instance.handle.run(request, mux)
        except asyncio.CancelledError:
            mux.emit_event(
                StreamEvent.execute_error("ExecutionCancelled", "Execution was abandoned")
            )
            raise
        except Exception as e:
            logger.exception(
                "Execution failed outside user code",
                extra={"kernel_id": instance.id, "request_id": request.request_id},
            )
            mux.emit_event(StreamEvent.execute_error(type(e).__name__, str(e)))
        finally:
            mux.close()

    def _finish(
        self,
        instance: KernelInstance,
        request: ExecutionRequest,
        started: float,
        task: asyncio.Task,
    ) -> None:
        instance.current_task = None
        if instance.lock.locked():
            instance.lock.release()
        metrics.gauge_add("kernel.busy", -1)

        duration_ms = (time.monotonic() - started) * 1000
        metrics.observe("kernel.execution.duration_ms", duration_ms)
        metrics.inc("kernel.executions", labels={"mode": instance.mode.value})
        logger.debug(
            "Execution finished",
            extra={
                "kernel_id": instance.id,
                "request_id": request.request_id,
                "duration_ms": round(duration_ms, 1),
            },
        )

        if instance.state is KernelState.DESTROYED:
            return
        instance.state = KernelState.IDLE
        self._dispatch_lifecycle(instance, LifecycleEvent.KERNEL_IDLE)
        self._schedule_inactivity(instance)

    # ─── Interrupts ───────────────────────────────────────────────

    async def interrupt_kernel(self, kernel_id: str) -> bool:
        """
        Interrupt the kernel's in-flight execution.

        Returns True when the kernel is idle afterwards (including when it
        was already idle). Returns False when the configured strategy cannot
        reach the kernel or the execution did not stop within
        interrupt_timeout.
        """
        instance = self._require(kernel_id)
        task = instance.current_task
        if task is None or task.done():
            return True
        return await self._interrupt_task(instance, task)

    async def _interrupt_task(self, instance: KernelInstance, task: asyncio.Task) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.interrupt_timeout
        try:
            # A direct-call interrupt misses if the engine thread has not entered the code yet
            while not self._interrupts.signal(instance.channel, instance.handle):
                if task.done():
                    return True
                if loop.time() >= deadline:
                    return False
                await asyncio.sleep(_INTERRUPT_RETRY_INTERVAL)
        except InterruptUnavailable as e:
            logger.warning("Interrupt unavailable: %s", e, extra={"kernel_id": instance.id})
            return False

        escalated = False
        while not task.done() and loop.time() < deadline:
            step = min(_INTERRUPT_ESCALATE_AFTER, max(0.0, deadline - loop.time()))
            await asyncio.wait({task}, timeout=step)
            if not task.done() and not escalated:
                escalated = self._interrupts.escalate(instance.channel, instance.handle)

        done = task.done()
        if not done:
            logger.warning(
                "Execution did not stop within %.1fs",
                self._config.interrupt_timeout,
                extra={"kernel_id": instance.id},
            )
        return bool(done)

    def _on_execution_timeout(self, instance: KernelInstance, task: asyncio.Task) -> None:
        if task.done():
            return
        logger.warning(
            "Execution exceeded %.1fs, interrupting",
            instance.options.max_execution_time,
            extra={"kernel_id": instance.id},
        )
        self._spawn(self._interrupt_task(instance, task))

    # ─── Inactivity ───────────────────────────────────────────────

    def _schedule_inactivity(self, instance: KernelInstance) -> None:
        if instance.inactivity_timer is not None:
            instance.inactivity_timer.cancel()
            instance.inactivity_timer = None
        timeout = instance.options.inactivity_timeout
        if not timeout:
            return
        loop = asyncio.get_running_loop()
        instance.inactivity_timer = loop.call_later(timeout, self._on_inactive, instance)

    def _on_inactive(self, instance: KernelInstance) -> None:
        instance.inactivity_timer = None
        if instance.state is not KernelState.IDLE:
            return
        logger.info(
            "Kernel %s idle for %.1fs, destroying",
            instance.id,
            instance.options.inactivity_timeout,
            extra={"kernel_id": instance.id},
        )
        self._spawn(self.destroy_kernel(instance.id))

    def _spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ─── Events ───────────────────────────────────────────────────

    def on_kernel_event(self, kernel_id: str, kind: Any, listener: Listener) -> ListenerHandle:
        """
        Subscribe to one kind of event on one kernel.

        kind is a StreamEvent type (stream, execute_result, ...) or a
        lifecycle event (kernel_busy, kernel_idle).
        """
        kind = getattr(kind, "value", kind)
        if kind not in LISTENER_KINDS:
            raise ValueError(f"Unknown kernel event kind: {kind!r}")
        self._require(kernel_id)
        return self._listeners.add(kernel_id, kind, listener)

    def off_kernel_event(self, handle: ListenerHandle) -> bool:
        return self._listeners.remove(handle)

    def _dispatch_lifecycle(self, instance: KernelInstance, kind: LifecycleEvent) -> None:
        event = StreamEvent(type=kind.value, data={"kernel_id": instance.id})
        self._listeners.dispatch(instance.id, event)

    async def request_kernel_info(self, kernel_id: str) -> dict[str, Any]:
        """Return the engine's kernel_info and notify kernel_info listeners."""
        instance = self._require(kernel_id)
        info = instance.kernel_info
        self._listeners.dispatch(kernel_id, StreamEvent.kernel_info(info))
        return info

    # ─── Introspection ────────────────────────────────────────────

    def get_pool_stats(self) -> dict[str, dict[str, int]]:
        return self._pool.get_pool_stats()

    def get_pool_config(self) -> PoolConfig:
        return self._pool.get_pool_config()

    async def health_check(self) -> dict[str, Any]:
        """Manager health: kernel counts, pool state, metrics snapshot."""
        kernels = self._registry.list()
        return {
            "manager": "kernelhub",
            "running": self._running,
            "kernels": {
                "live": len(kernels),
                "busy": sum(1 for k in kernels if k.busy),
                "by_mode": {
                    mode.value: sum(1 for k in kernels if k.mode is mode)
                    for mode in KernelMode
                },
            },
            "interrupts": self._interrupts.mode.value,
            "pool": self._pool.status(),
            "metrics": metrics.snapshot(),
        }
