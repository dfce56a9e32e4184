"""Resource-adaptive scheduler.

This module handles:
- Computing a safe worker count from memory and cores
- Deciding whether to request temporary swap
- Selecting a compiler resource profile

A requested job count is an upper bound, never a guarantee. The worker
count is ``min(requested or cores, floor(available / per-worker budget))``
and never below 1.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, replace
from typing import TYPE_CHECKING, Any

from onefile_imagegen.resources.probe import GIB, ResourceSnapshot
from onefile_imagegen.types import CompilerProfile

if TYPE_CHECKING:
    from onefile_imagegen.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_PER_WORKER_MEMORY = 2 * GIB
DEFAULT_LOW_MEMORY_THRESHOLD = 4 * GIB
DEFAULT_SWAP_SIZE_MB = 4096

LOW_MEMORY_WORKER_CAP = 2
CI_LOW_MEMORY_WORKER_CAP = 1
SWAP_DECLINED_WORKER_CAP = 1

COMPILER_FLAGS: dict[CompilerProfile, str] = {
    CompilerProfile.OPTIMIZED: "-O2",
    CompilerProfile.SIZE_REDUCED: "-g0 -Os",
}


@dataclass(frozen=True)
class SchedulerPolicy:
    """Fixed scheduling constants.

    Attributes:
        per_worker_memory_bytes: Memory of the heaviest compilation unit.
        low_memory_threshold_bytes: Below this the host is memory-constrained.
        swap_size_mb: Size of the advisory swap request.
    """

    per_worker_memory_bytes: int = DEFAULT_PER_WORKER_MEMORY
    low_memory_threshold_bytes: int = DEFAULT_LOW_MEMORY_THRESHOLD
    swap_size_mb: int = DEFAULT_SWAP_SIZE_MB

    @classmethod
    def from_settings(cls, settings: Settings) -> SchedulerPolicy:
        return cls(
            per_worker_memory_bytes=int(settings.per_worker_memory_gib * GIB),
            low_memory_threshold_bytes=int(settings.low_memory_threshold_gib * GIB),
            swap_size_mb=settings.swap_size_mb,
        )


@dataclass(frozen=True)
class ResourceProfile:
    """Resource plan for one invocation; never persisted.

    Attributes:
        available_memory_bytes: Memory available when planned.
        core_count: Usable logical cores.
        worker_count: Safe parallel worker count (>= 1).
        swap_requested: Whether temporary swap should be provisioned.
        swap_size_mb: Size of the swap request.
        compiler_profile: Optimized or size-reduced compilation.
        low_memory: Host is below the low-memory threshold.
    """

    available_memory_bytes: int
    core_count: int
    worker_count: int
    swap_requested: bool = False
    swap_size_mb: int = 0
    compiler_profile: CompilerProfile = CompilerProfile.OPTIMIZED
    low_memory: bool = False

    @property
    def compiler_flags(self) -> str:
        return COMPILER_FLAGS[self.compiler_profile]

    def without_swap(self) -> ResourceProfile:
        """Profile to use when a swap request was declined."""
        return replace(
            self,
            swap_requested=False,
            worker_count=min(self.worker_count, SWAP_DECLINED_WORKER_CAP),
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["compiler_profile"] = self.compiler_profile.value
        data["compiler_flags"] = self.compiler_flags
        return data


def safe_worker_count(
    available_memory_bytes: int,
    core_count: int,
    requested_jobs: int | None,
    per_worker_memory_bytes: int,
) -> int:
    """Compute the memory-safe worker count.

    Args:
        available_memory_bytes: Memory available for compilation.
        core_count: Usable logical cores.
        requested_jobs: Caller's upper bound, if any.
        per_worker_memory_bytes: Budget per worker.

    Returns:
        Worker count, at least 1.
    """
    limit = requested_jobs or core_count
    by_memory = available_memory_bytes // per_worker_memory_bytes
    return max(1, min(limit, by_memory))


def plan(
    probe: ResourceSnapshot,
    requested_jobs: int | None = None,
    allow_swap: bool = False,
    policy: SchedulerPolicy | None = None,
) -> ResourceProfile:
    """Plan resources for a pipeline invocation.

    Args:
        probe: Environment snapshot.
        requested_jobs: Requested parallelism (upper bound).
        allow_swap: Configuration permits temporary swap.
        policy: Scheduling constants; defaults when omitted.

    Returns:
        ResourceProfile.
    """
    if policy is None:
        policy = SchedulerPolicy()

    workers = safe_worker_count(
        probe.available_memory_bytes,
        probe.core_count,
        requested_jobs,
        policy.per_worker_memory_bytes,
    )

    low_memory = probe.available_memory_bytes < policy.low_memory_threshold_bytes
    if low_memory:
        cap = CI_LOW_MEMORY_WORKER_CAP if probe.is_ci else LOW_MEMORY_WORKER_CAP
        workers = min(workers, cap)

    swap_requested = low_memory and allow_swap
    profile = ResourceProfile(
        available_memory_bytes=probe.available_memory_bytes,
        core_count=probe.core_count,
        worker_count=workers,
        swap_requested=swap_requested,
        swap_size_mb=policy.swap_size_mb if swap_requested else 0,
        compiler_profile=(
            CompilerProfile.SIZE_REDUCED if low_memory else CompilerProfile.OPTIMIZED
        ),
        low_memory=low_memory,
    )

    if requested_jobs and requested_jobs > workers:
        logger.info(
            "Requested %d jobs; limited to %d by available resources",
            requested_jobs,
            workers,
        )
    logger.info(
        "Resource plan: %d worker(s), compiler flags '%s', swap %s",
        profile.worker_count,
        profile.compiler_flags,
        f"{profile.swap_size_mb} MB requested" if swap_requested else "not requested",
    )
    return profile


__all__ = [
    "COMPILER_FLAGS",
    "ResourceProfile",
    "SchedulerPolicy",
    "plan",
    "safe_worker_count",
]
