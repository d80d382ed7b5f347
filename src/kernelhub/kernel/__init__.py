"""
Kernel Package — orchestration of isolated code-execution sessions.

Kernels run an execution engine either in the host process or on a
dedicated worker thread. The manager creates, pools, streams and
interrupts them.

Architecture:
  KernelManager (facade) → KernelRegistry / PoolManager → DirectKernelHandle | WorkerBridge → engine
"""

from kernelhub.kernel.contracts import (
    EventType,
    ExecutionRequest,
    ExecutionResult,
    ErrorInfo,
    InterruptionMode,
    KernelInfo,
    KernelLanguage,
    KernelMode,
    KernelOptions,
    KernelState,
    KernelType,
    LifecycleEvent,
    StreamEvent,
)
from kernelhub.kernel.errors import (
    ExecutionError,
    IdConflict,
    InterruptUnavailable,
    KernelHubError,
    KernelNotFound,
    KernelStartFailure,
    PoolRefillFailure,
    UnsupportedKernelType,
    WorkerSpawnFailure,
    WorkerTerminated,
)

__all__ = [
    # Contracts
    "KernelMode",
    "KernelLanguage",
    "KernelState",
    "KernelType",
    "KernelOptions",
    "KernelInfo",
    "InterruptionMode",
    "EventType",
    "LifecycleEvent",
    "ExecutionRequest",
    "StreamEvent",
    "ErrorInfo",
    "ExecutionResult",
    # Errors
    "KernelHubError",
    "UnsupportedKernelType",
    "KernelNotFound",
    "IdConflict",
    "KernelStartFailure",
    "WorkerSpawnFailure",
    "WorkerTerminated",
    "ExecutionError",
    "InterruptUnavailable",
    "PoolRefillFailure",
]
