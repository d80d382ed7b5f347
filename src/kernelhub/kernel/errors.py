"""
Kernel errors.

Structural errors (unknown kernel, disallowed type, id collision, startup
failure) are raised to the caller. Faults inside executed code are reported
as execute_error events instead; ExecutionError only appears when a caller
asks for it via ExecutionResult.raise_for_error().
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from kernelhub.kernel.contracts import ErrorInfo, KernelType


class KernelHubError(Exception):
    """Base class for every kernelhub error."""


class UnsupportedKernelType(KernelHubError):
    """Raised when (mode, language) is not in the allow-list."""

    def __init__(self, kernel_type: "KernelType") -> None:
        super().__init__(f"Kernel type not allowed: {kernel_type.key}")
        self.kernel_type = kernel_type


class KernelNotFound(KernelHubError, LookupError):
    """Raised for operations on an unknown or destroyed kernel id."""

    def __init__(self, kernel_id: str) -> None:
        super().__init__(f"Kernel {kernel_id} not found")
        self.kernel_id = kernel_id


class IdConflict(KernelHubError):
    """Raised when an explicit kernel id is live, reserved or was destroyed."""

    def __init__(self, kernel_id: str) -> None:
        super().__init__(f"Kernel id already used: {kernel_id}")
        self.kernel_id = kernel_id


class KernelStartFailure(KernelHubError):
    """The engine behind a new kernel could not be initialised."""


class WorkerSpawnFailure(KernelStartFailure):
    """An isolated worker failed to start or never sent its ready handshake."""


class WorkerTerminated(KernelHubError):
    """A request reached a worker that has already been terminated."""


class ExecutionError(KernelHubError):
    """Code under execution raised."""

    def __init__(self, error: "ErrorInfo") -> None:
        super().__init__(str(error))
        self.error = error


class InterruptUnavailable(KernelHubError):
    """The configured interrupt strategy cannot reach this kernel."""


class PoolRefillFailure(KernelHubError):
    """A pool entry could not be created. Logged and retried, never raised to callers."""
