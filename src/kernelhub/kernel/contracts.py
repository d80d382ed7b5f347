"""
Kernel Contracts — data structures for kernel orchestration.

These contracts define the interface between:
- Callers (create kernels, submit code, subscribe to events)
- KernelManager (routes requests to the right kernel)
- Handles and engines (produce output events)

Everything that crosses a thread boundary is a plain dict produced by
StreamEvent.to_dict(), so contracts stay immutable and serializable.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class KernelMode(str, Enum):
    """Where the execution engine runs."""

    IN_PROCESS = "in-process"  # Engine called directly from the host
    ISOLATED_WORKER = "isolated-worker"  # Engine owned by a dedicated worker thread


class KernelLanguage(str, Enum):
    """Languages with a built-in engine."""

    PYTHON = "python"


class KernelState(str, Enum):
    """Lifecycle state of a kernel."""

    IDLE = "idle"
    BUSY = "busy"
    DESTROYED = "destroyed"


class InterruptionMode(str, Enum):
    """How a running execution is preempted."""

    SHARED_MEMORY = "shared-memory"
    DIRECT_CALL = "direct-call"
    AUTO = "auto"


class EventType(str, Enum):
    """Kinds of StreamEvent produced by an execution."""

    STREAM = "stream"
    EXECUTE_RESULT = "execute_result"
    EXECUTE_ERROR = "execute_error"
    DISPLAY_DATA = "display_data"
    UPDATE_DISPLAY_DATA = "update_display_data"
    KERNEL_INFO = "kernel_info"


class LifecycleEvent(str, Enum):
    """Kernel state notifications delivered to listeners."""

    KERNEL_BUSY = "kernel_busy"
    KERNEL_IDLE = "kernel_idle"


LISTENER_KINDS = frozenset(e.value for e in EventType) | frozenset(
    e.value for e in LifecycleEvent
)


def _enum_value(value: Any) -> str:
    return value.value if isinstance(value, Enum) else str(value)


@dataclass(frozen=True)
class KernelType:
    """A (mode, language) pair — allow-list entry and pool key."""

    mode: KernelMode
    language: str = KernelLanguage.PYTHON.value

    def __post_init__(self) -> None:
        # Normalise so "python" and KernelLanguage.PYTHON hash identically
        object.__setattr__(self, "mode", KernelMode(self.mode))
        object.__setattr__(self, "language", _enum_value(self.language))

    @property
    def key(self) -> str:
        return f"{self.mode.value}-{self.language}"

    @classmethod
    def parse(cls, text: str) -> "KernelType":
        """Parse "mode:language" (language defaults to python)."""
        mode, _, language = text.strip().partition(":")
        return cls(mode=KernelMode(mode.strip()), language=language.strip() or "python")


@dataclass(frozen=True)
class KernelOptions:
    """
    Per-kernel creation options.

    env, filesystem and lock_file_url are passed through to the engine
    untouched.
    """

    id: str | None = None
    mode: KernelMode = KernelMode.IN_PROCESS
    language: str = KernelLanguage.PYTHON.value
    namespace: str = "global"
    env: dict[str, str] = field(default_factory=dict)
    filesystem: dict[str, Any] = field(default_factory=dict)
    lock_file_url: str | None = None
    inactivity_timeout: float | None = None  # seconds idle before auto-destroy
    max_execution_time: float | None = None  # seconds before auto-interrupt

    def __post_init__(self) -> None:
        object.__setattr__(self, "mode", KernelMode(self.mode))
        object.__setattr__(self, "language", _enum_value(self.language))

    @property
    def kernel_type(self) -> KernelType:
        return KernelType(mode=self.mode, language=self.language)

    @property
    def is_customised(self) -> bool:
        """True when the engine needs per-kernel setup a pooled one lacks."""
        return bool(self.env or self.filesystem or self.lock_file_url)

    def engine_config(self) -> dict[str, Any]:
        """The initialization payload handed to an engine or worker."""
        return {
            "language": self.language,
            "env": dict(self.env),
            "filesystem": dict(self.filesystem),
            "lock_file_url": self.lock_file_url,
        }


@dataclass(frozen=True)
class ExecutionRequest:
    """A single piece of code submitted to a kernel."""

    kernel_id: str
    code: str
    parent: dict[str, Any] | None = None  # Correlates nested/streamed calls
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass(frozen=True)
class StreamEvent:
    """
    One unit of execution output.

    Wire shape is {"type": ..., "data": ...}; "parent" is added only when the
    request carried a parent context.
    """

    type: str  # EventType value
    data: dict[str, Any]
    parent: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": self.type, "data": self.data}
        if self.parent is not None:
            out["parent"] = self.parent
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "StreamEvent":
        event_type = EventType(raw["type"])
        return cls(
            type=event_type.value,
            data=dict(raw.get("data") or {}),
            parent=raw.get("parent"),
        )

    def with_parent(self, parent: dict[str, Any] | None) -> "StreamEvent":
        """Return a copy tagged with the request's parent context."""
        if parent is None:
            return self
        return StreamEvent(type=self.type, data=self.data, parent=parent)

    @property
    def is_error(self) -> bool:
        return self.type == EventType.EXECUTE_ERROR.value

    @classmethod
    def stream(cls, name: str, text: str) -> "StreamEvent":
        """Create a stdout/stderr text fragment."""
        return cls(type=EventType.STREAM.value, data={"name": name, "text": text})

    @classmethod
    def execute_result(
        cls,
        data: dict[str, Any],
        execution_count: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> "StreamEvent":
        """Create the value of the last expression of a cell."""
        return cls(
            type=EventType.EXECUTE_RESULT.value,
            data={
                "data": data,
                "metadata": metadata or {},
                "execution_count": execution_count,
            },
        )

    @classmethod
    def execute_error(
        cls, ename: str, evalue: str, traceback: list[str] | None = None
    ) -> "StreamEvent":
        """Create an error event."""
        return cls(
            type=EventType.EXECUTE_ERROR.value,
            data={"ename": ename, "evalue": evalue, "traceback": list(traceback or [])},
        )

    @classmethod
    def display_data(
        cls,
        data: dict[str, Any],
        metadata: dict[str, Any] | None = None,
        transient: dict[str, Any] | None = None,
        update: bool = False,
    ) -> "StreamEvent":
        """Create a rich display payload (MIME type → content)."""
        event_type = (
            EventType.UPDATE_DISPLAY_DATA if update else EventType.DISPLAY_DATA
        )
        return cls(
            type=event_type.value,
            data={
                "data": data,
                "metadata": metadata or {},
                "transient": transient or {},
            },
        )

    @classmethod
    def kernel_info(cls, info: dict[str, Any]) -> "StreamEvent":
        return cls(type=EventType.KERNEL_INFO.value, data=dict(info))


@dataclass(frozen=True)
class ErrorInfo:
    """Error details lifted out of an execute_error event."""

    ename: str
    evalue: str
    traceback: tuple[str, ...] = ()

    @classmethod
    def from_event(cls, event: StreamEvent) -> "ErrorInfo":
        return cls(
            ename=event.data.get("ename", "Error"),
            evalue=event.data.get("evalue", ""),
            traceback=tuple(event.data.get("traceback") or ()),
        )

    def __str__(self) -> str:
        return f"{self.ename}: {self.evalue}"


@dataclass(frozen=True)
class ExecutionResult:
    """
    Aggregate outcome of one execution.

    Returned by KernelManager.execute() after the event stream is drained.
    """

    success: bool
    error: ErrorInfo | None = None
    result: dict[str, Any] | None = None  # Last execute_result payload
    outputs: tuple[StreamEvent, ...] = ()

    @classmethod
    def from_events(cls, events: list[StreamEvent]) -> "ExecutionResult":
        error: ErrorInfo | None = None
        result: dict[str, Any] | None = None
        for event in events:
            if event.is_error and error is None:
                error = ErrorInfo.from_event(event)
            elif event.type == EventType.EXECUTE_RESULT.value:
                result = event.data
        return cls(
            success=error is None,
            error=error,
            result=result,
            outputs=tuple(events),
        )

    @property
    def stdout(self) -> str:
        """Concatenated stdout text, in production order."""
        return "".join(
            e.data.get("text", "")
            for e in self.outputs
            if e.type == EventType.STREAM.value and e.data.get("name") == "stdout"
        )

    def raise_for_error(self) -> "ExecutionResult":
        """Raise ExecutionError if the code faulted; return self otherwise."""
        if self.error is not None:
            from kernelhub.kernel.errors import ExecutionError

            raise ExecutionError(self.error)
        return self


@dataclass(frozen=True)
class KernelInfo:
    """Snapshot row returned by KernelManager.list_kernels()."""

    id: str
    mode: KernelMode
    language: str
    namespace: str
    created_at: float
    state: KernelState
    from_pool: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "mode": self.mode.value,
            "language": self.language,
            "namespace": self.namespace,
            "created_at": self.created_at,
            "state": self.state.value,
            "from_pool": self.from_pool,
        }
