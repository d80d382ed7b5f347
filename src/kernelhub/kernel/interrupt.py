"""
Interrupt Controller — per-kernel preemption of running executions.

Strategies:
- shared-memory: a one-byte flag cell is handed to the engine at creation.
  The engine polls it at safe points (each line of kernel input) and raises
  KeyboardInterrupt when set. Works on either side of a worker boundary.
- direct-call: asks the engine to inject KeyboardInterrupt into the thread
  running the code. Only possible when the host holds the engine directly
  (in-process kernels).
- auto: shared-memory when flag cells can be allocated, else direct-call.

Each kernel gets its own InterruptChannel, so signalling one kernel never
touches another.
"""

from __future__ import annotations

import ctypes
import logging
import multiprocessing
from dataclasses import dataclass
from typing import TYPE_CHECKING

from kernelhub.core.metrics import metrics
from kernelhub.kernel.contracts import InterruptionMode
from kernelhub.kernel.errors import InterruptUnavailable

if TYPE_CHECKING:
    from kernelhub.kernel.interface import KernelHandle

logger = logging.getLogger(__name__)


def raise_async_exception(thread_id: int, exc_type: type[BaseException]) -> bool:
    """Inject `exc_type` into a thread by id; returns success."""
    res = ctypes.pythonapi.PyThreadState_SetAsyncExc(
        ctypes.c_ulong(thread_id), ctypes.py_object(exc_type)
    )
    if res == 0:
        return False
    if res > 1:
        # More than one thread state matched; undo
        ctypes.pythonapi.PyThreadState_SetAsyncExc(ctypes.c_ulong(thread_id), None)
        return False
    return True


class SharedInterruptFlag:
    """
    A flag cell shared between the host and the thread running kernel code.

    Backed by multiprocessing.Value so every write goes through the cell's
    lock. Construction raises OSError/ImportError on hosts without
    semaphore support; check supported() first.
    """

    def __init__(self) -> None:
        self._cell = multiprocessing.Value(ctypes.c_byte, 0)

    @classmethod
    def supported(cls) -> bool:
        """Whether flag cells can be allocated on this host."""
        try:
            cls()
        except (ImportError, OSError, PermissionError) as exc:
            logger.debug("Shared interrupt flags unavailable: %s", exc)
            return False
        return True

    def set(self) -> None:
        with self._cell.get_lock():
            self._cell.value = 1

    def clear(self) -> None:
        with self._cell.get_lock():
            self._cell.value = 0

    def is_set(self) -> bool:
        return bool(self._cell.value)

    def consume(self) -> bool:
        """Atomically read and reset the flag. Returns the value read."""
        if not self._cell.value:
            return False
        with self._cell.get_lock():
            was_set = bool(self._cell.value)
            self._cell.value = 0
        return was_set


@dataclass
class InterruptChannel:
    """Per-kernel interrupt state: resolved strategy plus the flag cell."""

    strategy: InterruptionMode
    flag: SharedInterruptFlag | None = None

    def reset(self) -> None:
        """Drop a stale request before a new execution starts."""
        if self.flag is not None:
            self.flag.clear()


class InterruptController:
    """Selects the strategy per kernel and delivers interrupt signals."""

    def __init__(self, mode: InterruptionMode | str = InterruptionMode.AUTO) -> None:
        self._mode = InterruptionMode(mode)
        self._shared_supported: bool | None = None

    @property
    def mode(self) -> InterruptionMode:
        return self._mode

    def _shared_memory_available(self) -> bool:
        if self._shared_supported is None:
            self._shared_supported = SharedInterruptFlag.supported()
        return self._shared_supported

    def create_channel(self) -> InterruptChannel:
        """Allocate the channel for a new kernel. Never fails; degrades instead."""
        if self._mode is InterruptionMode.DIRECT_CALL:
            return InterruptChannel(strategy=InterruptionMode.DIRECT_CALL)

        if self._shared_memory_available():
            try:
                return InterruptChannel(
                    strategy=InterruptionMode.SHARED_MEMORY,
                    flag=SharedInterruptFlag(),
                )
            except (ImportError, OSError, PermissionError) as exc:
                logger.warning("Shared interrupt flag allocation failed: %s", exc)

        if self._mode is InterruptionMode.SHARED_MEMORY:
            logger.warning(
                "Shared-memory interrupts unavailable, falling back to direct-call"
            )
        return InterruptChannel(strategy=InterruptionMode.DIRECT_CALL)

    def signal(self, channel: InterruptChannel, handle: "KernelHandle") -> bool:
        """
        Deliver an interrupt through the kernel's channel.

        Raises:
            InterruptUnavailable: direct-call was requested for a kernel the
                host cannot reach directly.
        """
        metrics.inc("kernel.interrupts", labels={"strategy": channel.strategy.value})
        if channel.strategy is InterruptionMode.SHARED_MEMORY and channel.flag:
            channel.flag.set()
            return True
        if not handle.supports_direct_interrupt:
            raise InterruptUnavailable(
                f"direct-call interrupts cannot reach a {handle.mode.value} kernel"
            )
        return handle.interrupt_direct()

    def escalate(self, channel: InterruptChannel, handle: "KernelHandle") -> bool:
        """
        Follow a shared-memory interrupt with a direct call.

        The flag is only polled in kernel input, so code running in library
        frames never sees it. In-process handles can still be reached
        directly; for anything else this is a no-op returning False.
        """
        if channel.strategy is not InterruptionMode.SHARED_MEMORY:
            return False
        if not handle.supports_direct_interrupt:
            return False
        delivered = handle.interrupt_direct()
        if delivered:
            metrics.inc("kernel.interrupts.escalated")
        return delivered
