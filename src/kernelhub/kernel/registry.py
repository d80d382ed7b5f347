"""
Kernel Registry — the live kernel table of one manager.

Owned by a single KernelManager and mutated on its event loop only, so no
locking is needed. Ids move through:

    reserve() → add() → remove()            (normal life)
    reserve() → release()                   (construction failed)

Removed ids are remembered and never handed out again.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from kernelhub.kernel.contracts import KernelInfo, KernelMode, KernelOptions, KernelState
from kernelhub.kernel.errors import IdConflict
from kernelhub.kernel.inprocess import DirectKernelHandle
from kernelhub.kernel.interface import KernelHandle
from kernelhub.kernel.interrupt import InterruptChannel
from kernelhub.kernel.worker import WorkerBridge

logger = logging.getLogger(__name__)


@dataclass
class KernelInstance:
    """One live kernel and everything the manager tracks about it."""

    id: str
    mode: KernelMode
    language: str
    options: KernelOptions
    channel: InterruptChannel
    direct: DirectKernelHandle | None = None
    worker: WorkerBridge | None = None
    namespace: str = "global"
    created_at: float = field(default_factory=time.time)
    state: KernelState = KernelState.IDLE
    from_pool: bool | None = None
    # Serialises executions: one in flight per kernel, others wait in FIFO order
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    current_task: asyncio.Task | None = None
    inactivity_timer: asyncio.TimerHandle | None = None
    execution_count: int = 0

    def __post_init__(self) -> None:
        if (self.direct is None) == (self.worker is None):
            raise ValueError("KernelInstance needs exactly one of direct or worker")
        expected = KernelMode.IN_PROCESS if self.direct is not None else KernelMode.ISOLATED_WORKER
        if self.mode is not expected:
            raise ValueError(f"{self.mode.value} kernel cannot hold a {expected.value} handle")

    @property
    def handle(self) -> KernelHandle:
        return self.direct if self.direct is not None else self.worker  # type: ignore[return-value]

    @property
    def busy(self) -> bool:
        return self.state is KernelState.BUSY

    @property
    def kernel_info(self) -> dict[str, Any]:
        return self.handle.kernel_info

    def to_info(self) -> KernelInfo:
        return KernelInfo(
            id=self.id,
            mode=self.mode,
            language=self.language,
            namespace=self.namespace,
            created_at=self.created_at,
            state=self.state,
            from_pool=self.from_pool,
        )


class KernelRegistry:
    """Id → KernelInstance map with reservations and tombstones."""

    def __init__(self) -> None:
        self._kernels: dict[str, KernelInstance] = {}
        self._reserved: set[str] = set()
        self._destroyed: set[str] = set()

    def __len__(self) -> int:
        return len(self._kernels)

    def __contains__(self, kernel_id: object) -> bool:
        return kernel_id in self._kernels

    def reserve(self, kernel_id: str) -> None:
        """
        Claim an id before construction starts.

        Raises:
            IdConflict: the id is live, being constructed, or was destroyed.
        """
        if (
            kernel_id in self._kernels
            or kernel_id in self._reserved
            or kernel_id in self._destroyed
        ):
            raise IdConflict(kernel_id)
        self._reserved.add(kernel_id)

    def release(self, kernel_id: str) -> None:
        """Give back a reservation whose construction failed."""
        self._reserved.discard(kernel_id)

    def add(self, instance: KernelInstance) -> None:
        """Publish a fully constructed kernel under its reserved id."""
        if instance.id not in self._reserved:
            raise IdConflict(instance.id)
        self._reserved.discard(instance.id)
        self._kernels[instance.id] = instance

    def get(self, kernel_id: str) -> KernelInstance | None:
        return self._kernels.get(kernel_id)

    def remove(self, kernel_id: str) -> KernelInstance | None:
        """Unpublish a kernel and tombstone its id."""
        instance = self._kernels.pop(kernel_id, None)
        if instance is not None:
            self._destroyed.add(kernel_id)
        return instance

    def list(self, namespace: str | None = None) -> list[KernelInstance]:
        return [
            k
            for k in self._kernels.values()
            if namespace is None or k.namespace == namespace
        ]

    def ids(self) -> list[str]:
        return list(self._kernels)

    def was_destroyed(self, kernel_id: str) -> bool:
        return kernel_id in self._destroyed
