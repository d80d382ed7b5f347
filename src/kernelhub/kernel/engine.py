"""
Execution Engine — the thing that actually runs code.

The manager never interprets code itself. An engine accepts source, reports
what happens through a callback `emit(kind, payload)`, and supports an
interrupt primitive. Engines are synchronous: the handle decides which
thread calls run() (an executor thread for in-process kernels, the worker
thread for isolated ones).

Callback kinds an engine may emit (normalized by the multiplexer):
    stdout / stderr   payload: text fragment (str)
    result            payload: {"data": mime bundle, "execution_count": n}
    display           payload: {"data": mime bundle, "metadata", "transient"}
    update_display    payload: same as display
    error             payload: {"ename", "evalue", "traceback"}

PythonEngine is the built-in engine for language "python".
"""

from __future__ import annotations

import ast
import base64
import builtins
import io
import platform
import sys
import threading
import traceback
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Callable, Protocol

from kernelhub.kernel.interrupt import raise_async_exception

if TYPE_CHECKING:
    from kernelhub.kernel.interrupt import SharedInterruptFlag

Emit = Callable[[str, Any], None]

# Code objects compiled from kernel input are named "<kernel-input-N>"
_INPUT_PREFIX = "<kernel-input-"


class ExecutionEngine(ABC):
    """Contract every engine implements."""

    language: str = ""

    @abstractmethod
    def run(self, code: str, emit: Emit) -> None:
        """Execute `code`, reporting output through `emit`. Must not raise for user faults."""

    @abstractmethod
    def interrupt(self) -> bool:
        """Raise KeyboardInterrupt inside the running code. False if nothing is running."""

    @abstractmethod
    def kernel_info(self) -> dict[str, Any]:
        """Static description of the engine (language, version, ...)."""

    def close(self) -> None:
        """Release engine resources, interrupting a run still in progress."""


class EngineFactory(Protocol):
    def __call__(
        self,
        *,
        language: str,
        env: dict[str, str],
        filesystem: dict[str, Any],
        lock_file_url: str | None,
        interrupt_flag: "SharedInterruptFlag | None",
    ) -> ExecutionEngine: ...


# ─── Per-thread output routing ────────────────────────────────────


class _ThreadRoutedStream(io.TextIOBase):
    """
    Stand-in for sys.stdout / sys.stderr.

    Writes from a thread executing kernel code go to that kernel's writer;
    every other thread writes to the stream that was installed before us.
    """

    _local = threading.local()

    def __init__(self, name: str, fallback: Any) -> None:
        self.name = name
        self.fallback = fallback

    def _target(self) -> Any:
        return getattr(self._local, self.name, None) or self.fallback

    def write(self, text: str) -> int:
        return self._target().write(text)

    def flush(self) -> None:
        self._target().flush()

    def writable(self) -> bool:
        return True

    def isatty(self) -> bool:
        return False

    @property
    def encoding(self) -> str:  # type: ignore[override]
        return getattr(self.fallback, "encoding", "utf-8")

    @classmethod
    def bind(cls, stdout: Any, stderr: Any) -> None:
        cls._local.stdout = stdout
        cls._local.stderr = stderr

    @classmethod
    def unbind(cls) -> None:
        cls._local.stdout = None
        cls._local.stderr = None


_install_lock = threading.Lock()


def _install_output_router() -> None:
    """Wrap sys.stdout/sys.stderr unless something replaced our wrapper since."""
    with _install_lock:
        if not isinstance(sys.stdout, _ThreadRoutedStream):
            sys.stdout = _ThreadRoutedStream("stdout", sys.stdout)
        if not isinstance(sys.stderr, _ThreadRoutedStream):
            sys.stderr = _ThreadRoutedStream("stderr", sys.stderr)


class _LineWriter(io.TextIOBase):
    """Buffers text and emits one callback per complete line."""

    def __init__(self, name: str, emit: Emit) -> None:
        self.name = name
        self._emit = emit
        self._buffer = ""

    def write(self, text: str) -> int:
        self._buffer += text
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            self._emit(self.name, line + "\n")
        return len(text)

    def flush(self) -> None:
        if self._buffer:
            text, self._buffer = self._buffer, ""
            self._emit(self.name, text)

    def writable(self) -> bool:
        return True


# ─── Rich display ─────────────────────────────────────────────────


def mime_bundle(obj: Any) -> dict[str, Any]:
    """Build a MIME bundle from the IPython-style _repr_*_ protocol."""
    bundle: dict[str, Any] = {}
    png = getattr(obj, "_repr_png_", None)
    if callable(png):
        raw = png()
        if raw is not None:
            bundle["image/png"] = (
                base64.b64encode(raw).decode("ascii") if isinstance(raw, bytes) else raw
            )
    html = getattr(obj, "_repr_html_", None)
    if callable(html):
        value = html()
        if value is not None:
            bundle["text/html"] = value
    bundle["text/plain"] = repr(obj)
    return bundle


class PythonEngine(ExecutionEngine):
    """
    Runs Python source in a private namespace.

    - stdout/stderr are captured per thread and emitted line by line
    - a trailing expression produces an execute_result (like a notebook cell)
    - `display(obj, display_id=None)` and `update_display(obj, display_id)`
      are available to kernel code
    - with an interrupt flag, a trace hook polls it on every line of kernel
      input and raises KeyboardInterrupt when it is set
    """

    language = "python"

    def __init__(
        self,
        *,
        language: str = "python",
        env: dict[str, str] | None = None,
        filesystem: dict[str, Any] | None = None,
        lock_file_url: str | None = None,
        interrupt_flag: "SharedInterruptFlag | None" = None,
    ) -> None:
        if language != self.language:
            raise ValueError(f"PythonEngine cannot run {language!r}")
        self.env = dict(env or {})
        self.filesystem = dict(filesystem or {})
        self.lock_file_url = lock_file_url
        self._flag = interrupt_flag
        self._execution_count = 0
        self._emit: Emit | None = None
        self._writers: tuple[_LineWriter, _LineWriter] | None = None
        self._state_lock = threading.Lock()
        self._thread_id: int | None = None
        self.namespace: dict[str, Any] = {
            "__name__": "__main__",
            # Own copy, so one kernel rebinding a builtin leaves the others alone
            "__builtins__": dict(vars(builtins)),
            "__env__": self.env,
            "__filesystem__": self.filesystem,
            "display": self._display,
            "update_display": self._update_display,
        }

    @property
    def execution_count(self) -> int:
        return self._execution_count

    def kernel_info(self) -> dict[str, Any]:
        return {
            "implementation": "kernelhub",
            "language_info": {
                "name": "python",
                "version": platform.python_version(),
                "mimetype": "text/x-python",
                "file_extension": ".py",
            },
            "lock_file_url": self.lock_file_url,
            "interrupt": "shared-memory" if self._flag is not None else "direct-call",
        }

    # ── Execution ─────────────────────────────────────────────────

    def run(self, code: str, emit: Emit) -> None:
        self._execution_count += 1
        filename = f"{_INPUT_PREFIX}{self._execution_count}>"
        stdout = _LineWriter("stdout", emit)
        stderr = _LineWriter("stderr", emit)
        self._emit = emit
        self._writers = (stdout, stderr)

        _install_output_router()
        _ThreadRoutedStream.bind(stdout, stderr)
        previous_trace = sys.gettrace()
        try:
            try:
                try:
                    with self._state_lock:
                        self._thread_id = threading.get_ident()
                    if self._flag is not None:
                        sys.settrace(self._make_trace())
                    self._run_cell(code, filename)
                finally:
                    # No interrupt can be requested past this point
                    with self._state_lock:
                        self._thread_id = None
                    sys.settrace(previous_trace)
            except (Exception, KeyboardInterrupt, SystemExit) as exc:
                self._report_error(exc)
            finally:
                sys.settrace(previous_trace)
                stdout.flush()
                stderr.flush()
        except KeyboardInterrupt:
            # A second interrupt landed while the first was being reported
            pass
        finally:
            _ThreadRoutedStream.unbind()
            self._emit = None
            self._writers = None

    def _run_cell(self, code: str, filename: str) -> None:
        tree = ast.parse(code, filename=filename, mode="exec")
        last_expr: ast.expr | None = None
        if tree.body and isinstance(tree.body[-1], ast.Expr):
            last_expr = tree.body.pop().value

        exec(compile(tree, filename, "exec"), self.namespace)
        if last_expr is None:
            return
        value = eval(
            compile(ast.Expression(last_expr), filename, "eval"), self.namespace
        )
        if value is not None:
            self.namespace["_"] = value
            self._emit_ordered(
                "result",
                {"data": mime_bundle(value), "execution_count": self._execution_count},
            )

    def _make_trace(self) -> Callable:
        flag = self._flag

        def trace(frame, event, arg):
            # Kernel input of any cell is traced; library frames run untraced
            if not frame.f_code.co_filename.startswith(_INPUT_PREFIX):
                return None
            if flag is not None and flag.consume():
                raise KeyboardInterrupt("Execution interrupted")
            return trace

        return trace

    def _report_error(self, exc: BaseException) -> None:
        tb = exc.__traceback__
        # Skip engine frames so the traceback starts at kernel input
        while tb is not None and not tb.tb_frame.f_code.co_filename.startswith(_INPUT_PREFIX):
            tb = tb.tb_next
        if isinstance(exc, SyntaxError):
            lines = traceback.format_exception_only(type(exc), exc)
        else:
            lines = traceback.format_exception(type(exc), exc, tb)
        self._emit_ordered(
            "error",
            {
                "ename": type(exc).__name__,
                "evalue": str(exc),
                "traceback": [line.rstrip("\n") for line in lines],
            },
        )

    def _emit_ordered(self, kind: str, payload: Any) -> None:
        """Flush pending text first so rich events keep their position."""
        if self._writers is not None:
            for writer in self._writers:
                writer.flush()
        if self._emit is not None:
            self._emit(kind, payload)

    # ── Display helpers exposed to kernel code ────────────────────

    def _display(self, *objs: Any, display_id: str | None = None) -> None:
        transient = {"display_id": display_id} if display_id else {}
        for obj in objs:
            self._emit_ordered(
                "display",
                {"data": mime_bundle(obj), "metadata": {}, "transient": transient},
            )

    def _update_display(self, obj: Any, display_id: str) -> None:
        self._emit_ordered(
            "update_display",
            {
                "data": mime_bundle(obj),
                "metadata": {},
                "transient": {"display_id": display_id},
            },
        )

    # ── Interrupt ─────────────────────────────────────────────────

    def interrupt(self) -> bool:
        with self._state_lock:
            if self._thread_id is None:
                return False
            return raise_async_exception(self._thread_id, KeyboardInterrupt)

    def close(self) -> None:
        self.interrupt()
        self.namespace.clear()
