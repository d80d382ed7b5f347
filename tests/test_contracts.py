"""Tests for kernel contracts — data shapes shared by every component."""

import pytest

from kernelhub.kernel.contracts import (
    LISTENER_KINDS,
    ErrorInfo,
    EventType,
    ExecutionRequest,
    ExecutionResult,
    KernelInfo,
    KernelLanguage,
    KernelMode,
    KernelOptions,
    KernelState,
    KernelType,
    StreamEvent,
)
from kernelhub.kernel.errors import ExecutionError


class TestKernelType:
    def test_key(self):
        kt = KernelType(KernelMode.ISOLATED_WORKER, "python")
        assert kt.key == "isolated-worker-python"

    def test_string_and_enum_inputs_are_equal(self):
        a = KernelType("in-process", KernelLanguage.PYTHON)
        b = KernelType(KernelMode.IN_PROCESS, "python")
        assert a == b
        assert hash(a) == hash(b)
        assert {a: 1}[b] == 1

    def test_parse(self):
        assert KernelType.parse("isolated-worker:python") == KernelType(
            KernelMode.ISOLATED_WORKER, "python"
        )
        assert KernelType.parse(" in-process ").language == "python"

    def test_parse_rejects_unknown_mode(self):
        with pytest.raises(ValueError):
            KernelType.parse("remote:python")


class TestKernelOptions:
    def test_defaults(self):
        opts = KernelOptions()
        assert opts.mode is KernelMode.IN_PROCESS
        assert opts.language == "python"
        assert opts.namespace == "global"
        assert opts.id is None
        assert not opts.is_customised

    def test_mode_string_normalised(self):
        opts = KernelOptions(mode="isolated-worker")
        assert opts.mode is KernelMode.ISOLATED_WORKER
        assert opts.kernel_type == KernelType(KernelMode.ISOLATED_WORKER, "python")

    def test_customised_when_env_given(self):
        assert KernelOptions(env={"A": "1"}).is_customised
        assert KernelOptions(filesystem={"root": "/tmp"}).is_customised
        assert KernelOptions(lock_file_url="file:///lock").is_customised

    def test_engine_config_passthrough(self):
        opts = KernelOptions(env={"A": "1"}, lock_file_url="u")
        cfg = opts.engine_config()
        assert cfg == {
            "language": "python",
            "env": {"A": "1"},
            "filesystem": {},
            "lock_file_url": "u",
        }
        cfg["env"]["B"] = "2"
        assert "B" not in opts.env

    def test_frozen(self):
        opts = KernelOptions()
        with pytest.raises(AttributeError):
            opts.namespace = "other"  # type: ignore[misc]


class TestStreamEvent:
    def test_stream_wire_shape(self):
        event = StreamEvent.stream("stdout", "hi\n")
        assert event.to_dict() == {
            "type": "stream",
            "data": {"name": "stdout", "text": "hi\n"},
        }

    def test_parent_only_on_wire_when_set(self):
        event = StreamEvent.stream("stdout", "x").with_parent({"msg_id": "p1"})
        assert event.to_dict()["parent"] == {"msg_id": "p1"}
        assert StreamEvent.stream("stdout", "x").with_parent(None).parent is None

    def test_from_dict(self):
        raw = {"type": "execute_error", "data": {"ename": "E", "evalue": "v", "traceback": []}}
        event = StreamEvent.from_dict(raw)
        assert event.is_error
        assert event.to_dict() == raw

    def test_from_dict_unknown_type(self):
        with pytest.raises(ValueError):
            StreamEvent.from_dict({"type": "bogus", "data": {}})

    def test_display_and_update(self):
        shown = StreamEvent.display_data({"text/plain": "x"}, transient={"display_id": "d"})
        updated = StreamEvent.display_data({"text/plain": "y"}, update=True)
        assert shown.type == EventType.DISPLAY_DATA.value
        assert shown.data["transient"] == {"display_id": "d"}
        assert updated.type == EventType.UPDATE_DISPLAY_DATA.value
        assert updated.data["metadata"] == {}

    def test_execute_result(self):
        event = StreamEvent.execute_result({"text/plain": "2"}, execution_count=3)
        assert event.data == {
            "data": {"text/plain": "2"},
            "metadata": {},
            "execution_count": 3,
        }


class TestExecutionResult:
    def test_success(self):
        events = [
            StreamEvent.stream("stdout", "a\n"),
            StreamEvent.stream("stderr", "warn\n"),
            StreamEvent.stream("stdout", "b\n"),
            StreamEvent.execute_result({"text/plain": "1"}),
        ]
        result = ExecutionResult.from_events(events)
        assert result.success
        assert result.error is None
        assert result.result["data"] == {"text/plain": "1"}
        assert result.stdout == "a\nb\n"
        assert len(result.outputs) == 4
        assert result.raise_for_error() is result

    def test_failure_keeps_first_error(self):
        events = [
            StreamEvent.execute_error("ValueError", "bad", ["tb"]),
            StreamEvent.execute_error("Other", "later"),
        ]
        result = ExecutionResult.from_events(events)
        assert not result.success
        assert result.error == ErrorInfo("ValueError", "bad", ("tb",))
        assert str(result.error) == "ValueError: bad"

    def test_raise_for_error(self):
        result = ExecutionResult.from_events([StreamEvent.execute_error("E", "v")])
        with pytest.raises(ExecutionError) as exc_info:
            result.raise_for_error()
        assert exc_info.value.error.ename == "E"


def test_execution_request_ids_unique():
    a = ExecutionRequest(kernel_id="k", code="1")
    b = ExecutionRequest(kernel_id="k", code="1")
    assert a.request_id != b.request_id


def test_kernel_info_to_dict():
    info = KernelInfo(
        id="k1",
        mode=KernelMode.IN_PROCESS,
        language="python",
        namespace="ns",
        created_at=1.0,
        state=KernelState.IDLE,
    )
    assert info.to_dict() == {
        "id": "k1",
        "mode": "in-process",
        "language": "python",
        "namespace": "ns",
        "created_at": 1.0,
        "state": "idle",
        "from_pool": None,
    }


def test_listener_kinds():
    assert "stream" in LISTENER_KINDS
    assert "kernel_busy" in LISTENER_KINDS
    assert "kernel_idle" in LISTENER_KINDS
    assert "nonsense" not in LISTENER_KINDS
