"""Shared type definitions for onefile_imagegen.

This module contains enums and dataclasses shared across subpackages to
avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum


class BuildType(str, Enum):
    """Named preset that fixes the baseline component selection."""

    MINIMAL = "minimal"
    STANDARD = "standard"
    FULL = "full"


class CompressionTool(str, Enum):
    """Closed set of compression capabilities for the final artifact."""

    UPX = "upx"
    XZ = "xz"
    ZSTD = "zstd"


class PasswordMode(str, Enum):
    """How the root password of the image is determined."""

    EXPLICIT = "explicit"
    RANDOM = "random"
    NONE = "none"


class StageState(str, Enum):
    """State of a single pipeline stage within one invocation."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class PipelineStatus(str, Enum):
    """Overall outcome of a pipeline invocation."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class IdempotencyContract(str, Enum):
    """Whether a stage can be re-run after a partial failure without cleanup."""

    SAFE_TO_RERUN = "safe-to-rerun"
    REQUIRES_CLEANUP = "requires-cleanup"


class RunMode(str, Enum):
    """How prior checkpoints are treated by a pipeline invocation."""

    FRESH = "fresh"
    RESUME = "resume"
    CLEAN = "clean"


class ExecutionContext(str, Enum):
    """Where the orchestrator is running."""

    INTERACTIVE = "interactive"
    CONTAINER = "container"
    CI = "ci"


class CompilerProfile(str, Enum):
    """Compiler resource profile selected by the scheduler."""

    OPTIMIZED = "optimized"
    SIZE_REDUCED = "size-reduced"


@dataclass
class ArtifactInfo:
    """Information about a produced artifact."""

    filename: str
    path: str
    size_bytes: int
    sha256: str
    kind: str | None = None
    labels: list[str] = field(default_factory=list)


__all__ = [
    "ArtifactInfo",
    "BuildType",
    "CompilerProfile",
    "CompressionTool",
    "ExecutionContext",
    "IdempotencyContract",
    "PasswordMode",
    "PipelineStatus",
    "RunMode",
    "StageState",
]
