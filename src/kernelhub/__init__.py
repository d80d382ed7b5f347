"""kernelhub — a manager for many isolated, stateful code-execution kernels."""

from kernelhub.kernel.contracts import (
    ExecutionResult,
    KernelMode,
    KernelOptions,
    KernelType,
    StreamEvent,
)
from kernelhub.kernel.manager import KernelManager

__version__ = "0.1.0"

__all__ = [
    "KernelManager",
    "KernelOptions",
    "KernelMode",
    "KernelType",
    "StreamEvent",
    "ExecutionResult",
]
