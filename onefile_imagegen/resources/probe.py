"""Environment probe.

This module handles:
- Detecting the execution context (interactive host, container, CI)
- Reading available memory and usable core count
- Recording the permission model (root, sudo availability)

The probe has no dependencies on the rest of the package; every input can
be injected so that the scheduler can be tested against synthetic hosts.
"""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from onefile_imagegen.types import ExecutionContext

logger = logging.getLogger(__name__)

GIB = 1024**3

MEMINFO_PATH = Path("/proc/meminfo")
DOCKERENV_PATH = Path("/.dockerenv")
CGROUP_PATH = Path("/proc/1/cgroup")

# Share of total memory assumed usable when MemAvailable is not reported
AVAILABLE_FALLBACK_RATIO = 0.7

CI_ENV_VARS = ("GITHUB_ACTIONS", "CI")
CONTAINER_ENV_VARS = ("IN_DOCKER_CONTAINER",)
CONTAINER_CGROUP_MARKERS = ("docker", "containerd", "kubepods", "lxc")


@dataclass(frozen=True)
class ResourceSnapshot:
    """Point-in-time view of the executing host.

    Attributes:
        available_memory_bytes: Memory available for new work.
        total_memory_bytes: Physical memory.
        core_count: Logical cores usable by this process.
        context: Interactive host, container, or CI runner.
        is_root: Running with effective uid 0.
        can_sudo: ``sudo`` is on PATH.
    """

    available_memory_bytes: int
    total_memory_bytes: int
    core_count: int
    context: ExecutionContext = ExecutionContext.INTERACTIVE
    is_root: bool = False
    can_sudo: bool = False

    @property
    def is_ci(self) -> bool:
        return self.context == ExecutionContext.CI

    @property
    def is_container(self) -> bool:
        return self.context == ExecutionContext.CONTAINER

    @property
    def available_memory_gib(self) -> float:
        return self.available_memory_bytes / GIB


def read_meminfo(path: Path = MEMINFO_PATH) -> dict[str, int]:
    """Parse /proc/meminfo into a mapping of field name to bytes.

    Args:
        path: meminfo file.

    Returns:
        Mapping such as ``{"MemTotal": 16777216000, ...}``.

    Raises:
        OSError: If the file cannot be read.
    """
    values: dict[str, int] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        name, _, rest = line.partition(":")
        parts = rest.split()
        if not parts or not parts[0].isdigit():
            continue
        amount = int(parts[0])
        if len(parts) > 1 and parts[1].lower() == "kb":
            amount *= 1024
        values[name.strip()] = amount
    return values


def memory_from_meminfo(meminfo: Mapping[str, int]) -> tuple[int, int]:
    """Return (available, total) bytes from parsed meminfo."""
    total = meminfo.get("MemTotal", 0)
    available = meminfo.get("MemAvailable")
    if available is None:
        available = int(total * AVAILABLE_FALLBACK_RATIO)
    return available, total


def _sysconf_memory() -> tuple[int, int]:
    try:
        total = os.sysconf("SC_PHYS_PAGES") * os.sysconf("SC_PAGE_SIZE")
    except (ValueError, OSError):
        return 0, 0
    return int(total * AVAILABLE_FALLBACK_RATIO), total


def usable_core_count() -> int:
    """Number of cores this process may run on."""
    if hasattr(os, "sched_getaffinity"):
        return max(1, len(os.sched_getaffinity(0)))
    return max(1, os.cpu_count() or 1)


def _env_flag(env: Mapping[str, str], names: tuple[str, ...]) -> bool:
    return any(env.get(name, "").lower() in ("true", "1", "yes") for name in names)


def detect_context(
    environ: Mapping[str, str] | None = None,
    dockerenv_path: Path = DOCKERENV_PATH,
    cgroup_path: Path = CGROUP_PATH,
) -> ExecutionContext:
    """Detect where the orchestrator is running.

    CI takes precedence over container detection.

    Args:
        environ: Environment mapping (defaults to os.environ).
        dockerenv_path: Marker file created by Docker.
        cgroup_path: cgroup file of PID 1.

    Returns:
        ExecutionContext.
    """
    env = os.environ if environ is None else environ

    if _env_flag(env, CI_ENV_VARS):
        return ExecutionContext.CI

    if _env_flag(env, CONTAINER_ENV_VARS):
        return ExecutionContext.CONTAINER
    if dockerenv_path.exists():
        return ExecutionContext.CONTAINER
    try:
        cgroup = cgroup_path.read_text(encoding="utf-8")
    except OSError:
        cgroup = ""
    if any(marker in cgroup for marker in CONTAINER_CGROUP_MARKERS):
        return ExecutionContext.CONTAINER

    return ExecutionContext.INTERACTIVE


def probe_environment(
    environ: Mapping[str, str] | None = None,
    meminfo_path: Path = MEMINFO_PATH,
    dockerenv_path: Path = DOCKERENV_PATH,
    cgroup_path: Path = CGROUP_PATH,
) -> ResourceSnapshot:
    """Take a snapshot of the executing environment.

    Args:
        environ: Environment mapping (defaults to os.environ).
        meminfo_path: meminfo file.
        dockerenv_path: Docker marker file.
        cgroup_path: cgroup file of PID 1.

    Returns:
        ResourceSnapshot.
    """
    try:
        available, total = memory_from_meminfo(read_meminfo(meminfo_path))
    except OSError as e:
        logger.warning("Cannot read %s (%s); estimating memory", meminfo_path, e)
        available, total = _sysconf_memory()

    snapshot = ResourceSnapshot(
        available_memory_bytes=available,
        total_memory_bytes=total,
        core_count=usable_core_count(),
        context=detect_context(environ, dockerenv_path, cgroup_path),
        is_root=hasattr(os, "geteuid") and os.geteuid() == 0,
        can_sudo=shutil.which("sudo") is not None,
    )
    logger.info(
        "Environment: %s, %.1f GiB available, %d cores, root=%s",
        snapshot.context.value,
        snapshot.available_memory_gib,
        snapshot.core_count,
        snapshot.is_root,
    )
    return snapshot


__all__ = [
    "GIB",
    "ResourceSnapshot",
    "detect_context",
    "memory_from_meminfo",
    "probe_environment",
    "read_meminfo",
    "usable_core_count",
]
