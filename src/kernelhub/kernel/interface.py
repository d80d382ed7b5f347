"""
Kernel Handle Interface — what the manager holds for each live kernel.

A handle owns one execution engine, wherever it runs, and exposes a
uniform async surface:
- start():  bring the engine up, return its kernel_info
- run():    execute one request, reporting events into a multiplexer
- close():  release the engine, ending any in-flight run

Implementations:
- DirectKernelHandle: engine called from executor threads (in-process)
- WorkerBridge: engine owned by a dedicated worker thread (isolated-worker)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from kernelhub.kernel.contracts import KernelMode

if TYPE_CHECKING:
    from kernelhub.kernel.contracts import ExecutionRequest
    from kernelhub.kernel.multiplexer import EventMultiplexer


class KernelHandle(ABC):
    """
    Abstract handle for one kernel's engine.

    Handles are used from the event loop only; they hop threads internally.
    """

    mode: KernelMode
    # Whether the host can inject an interrupt into the engine's thread
    supports_direct_interrupt: bool = False

    def __init__(self) -> None:
        self._kernel_info: dict[str, Any] = {}

    @property
    def kernel_info(self) -> dict[str, Any]:
        """Engine description captured at start()."""
        return dict(self._kernel_info)

    @abstractmethod
    async def start(self) -> dict[str, Any]:
        """
        Initialise the engine.

        Returns:
            The engine's kernel_info mapping.

        Raises:
            KernelStartFailure: the engine could not be brought up.
        """
        ...

    @abstractmethod
    async def run(self, request: "ExecutionRequest", mux: "EventMultiplexer") -> None:
        """
        Execute one request.

        Every output is reported through `mux`; faults in the executed code
        become execute_error events rather than exceptions. Returns when the
        execution has ended. Does not close `mux`.
        """
        ...

    def interrupt_direct(self) -> bool:
        """Inject KeyboardInterrupt into the running code. False if impossible."""
        return False

    @abstractmethod
    async def close(self) -> None:
        """Release the engine. Idempotent."""
        ...
