"""
Shared fixtures for kernelhub tests.

Managers are built from explicit configs (never the process default) with
the pool off and short timeouts, so tests do not depend on the environment.
"""

from __future__ import annotations

import asyncio
import time

import pytest
import pytest_asyncio

from kernelhub.core.config import KernelHubConfig, PoolConfig
from kernelhub.core.metrics import metrics
from kernelhub.kernel.manager import KernelManager


def make_config(**overrides) -> KernelHubConfig:
    """A test config: pool disabled, short timeouts."""
    overrides.setdefault("pool", PoolConfig(enabled=False))
    overrides.setdefault("worker_ready_timeout", 5.0)
    overrides.setdefault("interrupt_timeout", 5.0)
    return KernelHubConfig(**overrides)


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll `predicate` until it is truthy or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return bool(predicate())


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield


@pytest_asyncio.fixture
async def manager():
    mgr = KernelManager(make_config())
    await mgr.start()
    yield mgr
    await mgr.shutdown()
