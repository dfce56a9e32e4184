"""Artifact finalization.

This module handles:
- Optional compression of the raw kernel image
- Verification of bootable compressed output before it replaces the raw image
- Measurement-only compression that keeps a sidecar next to the raw image
- Falling back to the untouched raw image on any compression failure

The raw artifact is never modified unless a verified bootable replacement
exists; replacement is a single atomic rename.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from onefile_imagegen.buildconfig.models import CompressionPolicy
from onefile_imagegen.toolchain.process import CollaboratorError
from onefile_imagegen.types import CompressionTool

logger = logging.getLogger(__name__)

# Whether a tool's output is itself a bootable image
BOOTABLE_OUTPUT: dict[CompressionTool, bool] = {
    CompressionTool.UPX: True,
    CompressionTool.XZ: False,
    CompressionTool.ZSTD: False,
}

SIDECAR_SUFFIX = ".compressed"
WORK_SUFFIX = ".compress-work"


class FinalizeError(Exception):
    """Raised when compression of the final artifact fails.

    Never fatal to a build: the finalizer recovers by keeping the raw
    artifact.
    """

    def __init__(self, message: str, code: str = "finalize_error") -> None:
        super().__init__(message)
        self.code = code


class Compressor(Protocol):
    """Compression capability used by the finalizer."""

    def compress(self, tool: CompressionTool, path: Path) -> Path:
        """Compress ``path``; return the file holding the result."""
        ...

    def verify(self, tool: CompressionTool, path: Path) -> bool:
        """Check that compressed output is intact."""
        ...


@dataclass
class FinalizeResult:
    """Outcome of finalization.

    Attributes:
        final_artifact: Path of the bootable final artifact.
        original_size: Size of the raw artifact in bytes.
        final_size: Size of the final artifact in bytes.
        compressed: The final artifact is the compressed output.
        tool: Compression tool attempted, if any.
        sidecar: Measurement-only compressed file, if kept.
        sidecar_size: Size of the sidecar in bytes.
        warning: Why compression was abandoned, if it was.
    """

    final_artifact: Path
    original_size: int
    final_size: int
    compressed: bool = False
    tool: CompressionTool | None = None
    sidecar: Path | None = None
    sidecar_size: int | None = None
    warning: str | None = None

    @property
    def ratio(self) -> float | None:
        """Compressed size relative to the original."""
        size = self.final_size if self.compressed else self.sidecar_size
        if size is None or not self.original_size:
            return None
        return size / self.original_size

    def to_dict(self) -> dict[str, Any]:
        return {
            "final_artifact": str(self.final_artifact),
            "original_size": self.original_size,
            "final_size": self.final_size,
            "compressed": self.compressed,
            "tool": self.tool.value if self.tool else None,
            "sidecar": str(self.sidecar) if self.sidecar else None,
            "sidecar_size": self.sidecar_size,
            "warning": self.warning,
        }


def produces_bootable(tool: CompressionTool) -> bool:
    return BOOTABLE_OUTPUT[tool]


def _compress(
    raw_artifact: Path,
    tool: CompressionTool,
    compressor: Compressor,
    original_size: int,
) -> FinalizeResult:
    work = raw_artifact.with_name(raw_artifact.name + WORK_SUFFIX)
    output: Path | None = None
    try:
        try:
            shutil.copy2(raw_artifact, work)
            output = compressor.compress(tool, work)
        except (CollaboratorError, OSError) as e:
            raise FinalizeError(
                f"{tool.value} compression failed: {e}", code="tool_failed"
            ) from e

        if not output.is_file() or output.stat().st_size == 0:
            raise FinalizeError(
                f"{tool.value} produced no output", code="verification_failed"
            )

        if produces_bootable(tool):
            try:
                verified = compressor.verify(tool, output)
            except CollaboratorError as e:
                raise FinalizeError(
                    f"{tool.value} verification failed: {e}",
                    code="verification_failed",
                ) from e
            if not verified:
                raise FinalizeError(
                    f"{tool.value} output failed verification",
                    code="verification_failed",
                )
            os.replace(output, raw_artifact)
            final_size = raw_artifact.stat().st_size
            logger.info(
                "Compressed %s with %s: %d -> %d bytes",
                raw_artifact.name,
                tool.value,
                original_size,
                final_size,
            )
            return FinalizeResult(
                final_artifact=raw_artifact,
                original_size=original_size,
                final_size=final_size,
                compressed=True,
                tool=tool,
            )

        sidecar = raw_artifact.with_name(raw_artifact.name + SIDECAR_SUFFIX)
        os.replace(output, sidecar)
        sidecar_size = sidecar.stat().st_size
        logger.warning(
            "%s output is not bootable; keeping uncompressed %s "
            "(compressed size %d bytes saved to %s)",
            tool.value,
            raw_artifact.name,
            sidecar_size,
            sidecar.name,
        )
        return FinalizeResult(
            final_artifact=raw_artifact,
            original_size=original_size,
            final_size=original_size,
            tool=tool,
            sidecar=sidecar,
            sidecar_size=sidecar_size,
        )
    finally:
        work.unlink(missing_ok=True)
        if output is not None and output != raw_artifact:
            output.unlink(missing_ok=True)


def finalize(
    raw_artifact: Path,
    policy: CompressionPolicy,
    compressor: Compressor,
) -> FinalizeResult:
    """Produce the final artifact from the raw kernel image.

    Args:
        raw_artifact: Raw bootable kernel image.
        policy: Compression policy of the build configuration.
        compressor: Compression capability.

    Returns:
        FinalizeResult; its final artifact is always bootable.

    Raises:
        FileNotFoundError: If the raw artifact does not exist.
    """
    if not raw_artifact.is_file():
        raise FileNotFoundError(f"Raw artifact not found: {raw_artifact}")

    original_size = raw_artifact.stat().st_size

    if not policy.enabled:
        logger.info("Compression disabled; final artifact is %s", raw_artifact)
        return FinalizeResult(
            final_artifact=raw_artifact,
            original_size=original_size,
            final_size=original_size,
        )

    try:
        return _compress(raw_artifact, policy.tool, compressor, original_size)
    except (FinalizeError, OSError) as e:
        logger.warning("%s; keeping uncompressed artifact", e)
        return FinalizeResult(
            final_artifact=raw_artifact,
            original_size=original_size,
            final_size=raw_artifact.stat().st_size,
            tool=policy.tool,
            warning=str(e),
        )


__all__ = [
    "BOOTABLE_OUTPUT",
    "Compressor",
    "FinalizeError",
    "FinalizeResult",
    "finalize",
    "produces_bootable",
]
