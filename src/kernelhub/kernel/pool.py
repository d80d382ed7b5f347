"""
Pool Manager — pre-warmed idle kernels keyed by (mode, language).

Design:
- start() schedules background creation for every preloaded type; one
  type failing never blocks the others
- take() pops an idle entry in O(1) or misses; it never waits
- after a take, refill() schedules a replacement in the background
- a failed creation is retried with exponential backoff until it succeeds
  or the pool is closed, so the pool never silently stays under-filled
- entries being created are tracked separately and never counted as
  available, so available + in-flight ≤ total at every await point

The pool does not know how kernels are built: the manager passes an async
factory that returns a started handle plus its interrupt channel.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from kernelhub.core.config import PoolConfig
from kernelhub.core.metrics import metrics
from kernelhub.kernel.contracts import KernelType
from kernelhub.kernel.errors import PoolRefillFailure
from kernelhub.kernel.interface import KernelHandle
from kernelhub.kernel.interrupt import InterruptChannel

logger = logging.getLogger(__name__)


@dataclass
class PoolEntry:
    """A started, idle kernel waiting to be claimed."""

    kernel_type: KernelType
    handle: KernelHandle
    channel: InterruptChannel
    created_at: float = field(default_factory=time.time)


PoolEntryFactory = Callable[[KernelType], Awaitable[PoolEntry]]


class PoolManager:
    """Keeps `pool_size` idle kernels ready for each preloaded kernel type."""

    def __init__(self, config: PoolConfig, factory: PoolEntryFactory) -> None:
        self._config = config
        self._factory = factory
        self._available: dict[KernelType, deque[PoolEntry]] = {
            kernel_type: deque() for kernel_type in config.preload_configs
        }
        self._inflight: dict[KernelType, int] = defaultdict(int)
        self._tasks: set[asyncio.Task] = set()
        self._started = False
        self._closed = False

    @property
    def enabled(self) -> bool:
        return self._config.enabled and self._config.pool_size > 0

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        """Begin preloading in the background. Returns immediately."""
        if not self.enabled or self._started or self._closed:
            return
        self._started = True
        for kernel_type in self._available:
            scheduled = self.refill(kernel_type, force=True)
            logger.info(
                "Preloading %d kernel(s)",
                scheduled,
                extra={"pool_key": kernel_type.key},
            )

    # ── Claiming ──────────────────────────────────────────────────

    def take(self, kernel_type: KernelType) -> PoolEntry | None:
        """Remove and return one idle entry, or None on a miss."""
        if not self.enabled or not self._started or self._closed:
            return None
        entries = self._available.get(kernel_type)
        if not entries:
            metrics.inc("pool.misses", labels={"pool": kernel_type.key})
            if entries is not None and self._config.auto_refill:
                self.refill(kernel_type)
            return None

        entry = entries.popleft()
        metrics.inc("pool.hits", labels={"pool": kernel_type.key})
        metrics.gauge_set("pool.available", len(entries), labels={"pool": kernel_type.key})
        logger.debug("Pool hit", extra={"pool_key": kernel_type.key})
        if self._config.auto_refill:
            self.refill(kernel_type)
        return entry

    def refill(self, kernel_type: KernelType, force: bool = False) -> int:
        """
        Schedule creations to bring a type back to pool_size.

        Does nothing unless auto_refill is on (or force is set). Returns the
        number of creations scheduled.
        """
        if not self.enabled or self._closed or kernel_type not in self._available:
            return 0
        if not (self._config.auto_refill or force):
            return 0
        missing = (
            self._config.pool_size
            - len(self._available[kernel_type])
            - self._inflight[kernel_type]
        )
        for _ in range(max(0, missing)):
            self._inflight[kernel_type] += 1
            task = asyncio.create_task(
                self._fill_one(kernel_type), name=f"pool-fill-{kernel_type.key}"
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return max(0, missing)

    async def _fill_one(self, kernel_type: KernelType) -> None:
        entry: PoolEntry | None = None
        try:
            entry = await self._create_with_retry(kernel_type)
        finally:
            self._inflight[kernel_type] -= 1

        if entry is None:
            return
        if self._closed:
            await entry.handle.close()
            return
        self._available[kernel_type].append(entry)
        metrics.gauge_set(
            "pool.available",
            len(self._available[kernel_type]),
            labels={"pool": kernel_type.key},
        )

    async def _create_with_retry(self, kernel_type: KernelType) -> PoolEntry | None:
        """Create one entry, retrying with exponential backoff until closed."""
        delay = self._config.refill_delay
        attempt = 0
        while not self._closed:
            attempt += 1
            try:
                return await self._factory(kernel_type)
            except Exception as e:
                failure = PoolRefillFailure(f"{kernel_type.key}: {e}")
                metrics.inc("pool.refill_failures", labels={"pool": kernel_type.key})
                logger.warning(
                    "Pool entry creation failed, retrying in %.1fs: %s",
                    delay,
                    failure,
                    extra={"pool_key": kernel_type.key, "attempt": attempt},
                )
            await asyncio.sleep(delay)
            delay = min(delay * 2, self._config.refill_max_delay)
        return None

    # ── Introspection ─────────────────────────────────────────────

    def get_pool_stats(self) -> dict[str, dict[str, int]]:
        """{key: {"available", "total"}} per preloaded type."""
        total = self._config.pool_size if self.enabled else 0
        return {
            kernel_type.key: {"available": len(entries), "total": total}
            for kernel_type, entries in self._available.items()
        }

    def get_pool_config(self) -> PoolConfig:
        return self._config

    def inflight(self, kernel_type: KernelType) -> int:
        return self._inflight[kernel_type]

    def status(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "closed": self._closed,
            "stats": self.get_pool_stats(),
            "inflight": {kt.key: n for kt, n in self._inflight.items() if n},
        }

    # ── Shutdown ──────────────────────────────────────────────────

    async def close(self) -> None:
        """Stop refilling and release every idle entry."""
        if self._closed:
            return
        self._closed = True

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        entries = [e for pool in self._available.values() for e in pool]
        for pool in self._available.values():
            pool.clear()
        results = await asyncio.gather(
            *(e.handle.close() for e in entries), return_exceptions=True
        )
        for entry, result in zip(entries, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "Closing pooled kernel failed: %s",
                    result,
                    extra={"pool_key": entry.kernel_type.key},
                )
        logger.info("Kernel pool closed (%d idle kernel(s) released)", len(entries))
