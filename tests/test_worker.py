"""Tests for the Worker Bridge — isolated-worker kernels."""

import asyncio
import time

import pytest

from kernelhub.kernel.contracts import ExecutionRequest, KernelMode, KernelOptions
from kernelhub.kernel.engine import PythonEngine
from kernelhub.kernel.errors import WorkerSpawnFailure, WorkerTerminated
from kernelhub.kernel.interrupt import SharedInterruptFlag
from kernelhub.kernel.multiplexer import EventMultiplexer
from kernelhub.kernel.worker import WorkerBridge

WORKER_OPTIONS = KernelOptions(mode=KernelMode.ISOLATED_WORKER)


def request(code: str) -> ExecutionRequest:
    return ExecutionRequest(kernel_id="w", code=code)


async def collect(bridge: WorkerBridge, code: str):
    return [e async for e in bridge.stream(request(code))]


def failing_factory(**kwargs):
    raise RuntimeError("no interpreter today")


def slow_factory(**kwargs):
    time.sleep(1.0)
    return PythonEngine(**kwargs)


@pytest.mark.asyncio
async def test_handshake_returns_kernel_info():
    bridge = WorkerBridge(WORKER_OPTIONS, PythonEngine)
    info = await bridge.start()
    assert info["language_info"]["name"] == "python"
    assert bridge.alive
    assert bridge.kernel_info == info
    await bridge.terminate()
    assert not bridge.alive


@pytest.mark.asyncio
async def test_stream_relays_events_in_order():
    bridge = WorkerBridge(WORKER_OPTIONS, PythonEngine)
    await bridge.start()
    events = await collect(bridge, "for i in range(3):\n    print(i)\n'done'")
    assert [e.type for e in events] == ["stream", "stream", "stream", "execute_result"]
    assert "".join(e.data["text"] for e in events[:3]) == "0\n1\n2\n"
    assert bridge.pending_requests == 0
    await bridge.terminate()


@pytest.mark.asyncio
async def test_state_lives_in_the_worker():
    bridge = WorkerBridge(WORKER_OPTIONS, PythonEngine)
    await bridge.start()
    await collect(bridge, "value = 41")
    events = await collect(bridge, "value + 1")
    assert events[-1].data["data"]["text/plain"] == "42"
    await bridge.terminate()


@pytest.mark.asyncio
async def test_code_fault_is_an_event():
    bridge = WorkerBridge(WORKER_OPTIONS, PythonEngine)
    await bridge.start()
    events = await collect(bridge, "raise KeyError('missing')")
    assert events[-1].is_error
    assert events[-1].data["ename"] == "KeyError"
    # Worker survives
    events = await collect(bridge, "1")
    assert events[-1].data["data"]["text/plain"] == "1"
    await bridge.terminate()


@pytest.mark.asyncio
async def test_env_passthrough():
    options = KernelOptions(mode=KernelMode.ISOLATED_WORKER, env={"NAME": "worker"})
    bridge = WorkerBridge(options, PythonEngine)
    await bridge.start()
    events = await collect(bridge, "print(__env__['NAME'])")
    assert events[0].data["text"] == "worker\n"
    await bridge.terminate()


@pytest.mark.asyncio
async def test_run_feeds_multiplexer():
    bridge = WorkerBridge(WORKER_OPTIONS, PythonEngine)
    await bridge.start()
    mux = EventMultiplexer("w", asyncio.get_running_loop())
    await bridge.run(request("print('via mux')"), mux)
    mux.close()
    events = [e async for e in mux.events()]
    assert events[0].data["text"] == "via mux\n"
    await bridge.terminate()


@pytest.mark.asyncio
async def test_init_error_is_spawn_failure():
    bridge = WorkerBridge(WORKER_OPTIONS, failing_factory)
    with pytest.raises(WorkerSpawnFailure, match="no interpreter today"):
        await bridge.start()
    assert not bridge.alive


@pytest.mark.asyncio
async def test_ready_timeout_is_spawn_failure():
    bridge = WorkerBridge(WORKER_OPTIONS, slow_factory, ready_timeout=0.1)
    with pytest.raises(WorkerSpawnFailure, match="not ready"):
        await bridge.start()


@pytest.mark.asyncio
async def test_terminate_resolves_pending_request():
    bridge = WorkerBridge(WORKER_OPTIONS, PythonEngine)
    await bridge.start()

    events = []

    async def consume():
        async for event in bridge.stream(request("print('started')\nwhile True:\n    pass")):
            events.append(event)

    consumer = asyncio.create_task(consume())
    await asyncio.sleep(0.2)
    await bridge.terminate()
    await asyncio.wait_for(consumer, timeout=5)

    assert events[0].data["text"] == "started\n"
    assert events[-1].is_error
    assert events[-1].data["ename"] == "WorkerTerminated"


@pytest.mark.asyncio
async def test_stream_after_terminate_raises():
    bridge = WorkerBridge(WORKER_OPTIONS, PythonEngine)
    await bridge.start()
    await bridge.terminate()
    await bridge.terminate()  # idempotent
    with pytest.raises(WorkerTerminated):
        await collect(bridge, "1")


@pytest.mark.asyncio
async def test_direct_interrupt_unsupported():
    bridge = WorkerBridge(WORKER_OPTIONS, PythonEngine)
    assert bridge.supports_direct_interrupt is False
    assert bridge.interrupt_direct() is False


@pytest.mark.asyncio
@pytest.mark.skipif(not SharedInterruptFlag.supported(), reason="no shared memory on this host")
async def test_shared_flag_interrupts_worker():
    flag = SharedInterruptFlag()
    bridge = WorkerBridge(WORKER_OPTIONS, PythonEngine, interrupt_flag=flag)
    await bridge.start()

    stream = bridge.stream(request("i = 0\nwhile True:\n    i += 1"))
    consumer = asyncio.create_task(_drain(stream))
    await asyncio.sleep(0.1)
    flag.set()
    events = await asyncio.wait_for(consumer, timeout=5)

    assert events[-1].data["ename"] == "KeyboardInterrupt"
    # Kernel is still usable after the interrupt
    events = await collect(bridge, "i > 0")
    assert events[-1].data["data"]["text/plain"] == "True"
    await bridge.terminate()


async def _drain(stream):
    return [e async for e in stream]
