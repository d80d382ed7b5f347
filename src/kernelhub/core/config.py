"""
kernelhub Configuration — single source of truth for manager settings.

Reads from environment variables (and a local .env file) with sensible
defaults. A KernelManager built without an explicit config uses `config`.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from kernelhub.kernel.contracts import InterruptionMode, KernelMode, KernelType

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def parse_kernel_types(raw: str) -> tuple[KernelType, ...]:
    """Parse "in-process:python,isolated-worker:python"."""
    return tuple(KernelType.parse(part) for part in raw.split(",") if part.strip())


_BOTH_PYTHON = (
    KernelType(KernelMode.IN_PROCESS, "python"),
    KernelType(KernelMode.ISOLATED_WORKER, "python"),
)


@dataclass(frozen=True)
class PoolConfig:
    """Pre-warmed kernel pool settings."""

    enabled: bool = False
    pool_size: int = 2  # Target idle kernels per preloaded type
    auto_refill: bool = True
    preload_configs: tuple[KernelType, ...] = _BOTH_PYTHON
    # Refill retry backoff: seconds, doubles each attempt up to the max
    refill_delay: float = 0.5
    refill_max_delay: float = 30.0

    def __post_init__(self) -> None:
        if self.pool_size < 0:
            raise ValueError("pool_size must be >= 0")
        object.__setattr__(self, "preload_configs", tuple(self.preload_configs))

    @classmethod
    def from_env(cls) -> PoolConfig:
        preload = os.getenv("KERNELHUB_POOL_PRELOAD")
        return cls(
            enabled=_env_bool("KERNELHUB_POOL_ENABLED", False),
            pool_size=int(os.getenv("KERNELHUB_POOL_SIZE", "2")),
            auto_refill=_env_bool("KERNELHUB_POOL_AUTO_REFILL", True),
            preload_configs=parse_kernel_types(preload) if preload else _BOTH_PYTHON,
            refill_delay=float(os.getenv("KERNELHUB_POOL_REFILL_DELAY", "0.5")),
            refill_max_delay=float(os.getenv("KERNELHUB_POOL_REFILL_MAX_DELAY", "30.0")),
        )


@dataclass(frozen=True)
class KernelHubConfig:
    """Root configuration for a KernelManager."""

    allowed_kernel_types: tuple[KernelType, ...] = _BOTH_PYTHON
    interruption_mode: InterruptionMode = InterruptionMode.AUTO
    default_mode: KernelMode = KernelMode.IN_PROCESS
    worker_ready_timeout: float = 30.0  # seconds to wait for a worker handshake
    interrupt_timeout: float = 5.0  # seconds to wait for an interrupted run to end
    pool: PoolConfig = field(default_factory=PoolConfig)

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "allowed_kernel_types", tuple(self.allowed_kernel_types)
        )
        object.__setattr__(
            self, "interruption_mode", InterruptionMode(self.interruption_mode)
        )
        object.__setattr__(self, "default_mode", KernelMode(self.default_mode))

    def allows(self, kernel_type: KernelType) -> bool:
        return kernel_type in self.allowed_kernel_types

    @classmethod
    def from_env(cls) -> KernelHubConfig:
        allowed = os.getenv("KERNELHUB_ALLOWED_KERNEL_TYPES")
        return cls(
            allowed_kernel_types=parse_kernel_types(allowed) if allowed else _BOTH_PYTHON,
            interruption_mode=InterruptionMode(
                os.getenv("KERNELHUB_INTERRUPTION_MODE", "auto")
            ),
            default_mode=KernelMode(os.getenv("KERNELHUB_DEFAULT_MODE", "in-process")),
            worker_ready_timeout=float(
                os.getenv("KERNELHUB_WORKER_READY_TIMEOUT", "30.0")
            ),
            interrupt_timeout=float(os.getenv("KERNELHUB_INTERRUPT_TIMEOUT", "5.0")),
            pool=PoolConfig.from_env(),
        )


# Process default; KernelManager() falls back to this
config = KernelHubConfig.from_env()
