"""Compression collaborator.

This module handles:
- Command lines for the supported compression tools
- Running a tool on an artifact copy and verifying its output
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from onefile_imagegen.toolchain.process import CollaboratorError, run_command
from onefile_imagegen.types import CompressionTool

logger = logging.getLogger(__name__)

# Suffix appended to the input file by tools that write a new file
OUTPUT_SUFFIXES: dict[CompressionTool, str] = {
    CompressionTool.UPX: "",
    CompressionTool.XZ: ".xz",
    CompressionTool.ZSTD: ".zst",
}


def compress_command(tool: CompressionTool, path: Path) -> tuple[list[str], Path]:
    """Compose the command for a tool and the path it writes.

    UPX compresses in place; xz and zstd write a new file next to ``path``.
    """
    output = path.with_name(path.name + OUTPUT_SUFFIXES[tool])
    if tool == CompressionTool.UPX:
        return ["upx", "--best", "--lzma", str(path)], output
    if tool == CompressionTool.XZ:
        return ["xz", "-z", "-9", "-e", "-k", "-f", str(path)], output
    return ["zstd", "-19", "-f", "-q", str(path), "-o", str(output)], output


def verify_command(tool: CompressionTool, path: Path) -> list[str]:
    """Compose the integrity-test command for a tool's output."""
    if tool == CompressionTool.UPX:
        return ["upx", "-t", str(path)]
    if tool == CompressionTool.XZ:
        return ["xz", "-t", str(path)]
    return ["zstd", "-t", "-q", str(path)]


class ToolCompressor:
    """Default compression capability backed by the command-line tools."""

    def __init__(self, log_dir: Path | None = None, timeout: int | None = None) -> None:
        self.log_dir = log_dir
        self.timeout = timeout

    @property
    def log_path(self) -> Path | None:
        return self.log_dir / "finalize.log" if self.log_dir else None

    def _require(self, tool: CompressionTool) -> None:
        if shutil.which(tool.value) is None:
            raise CollaboratorError(
                f"{tool.value} not found on PATH", code="tool_missing"
            )

    def compress(self, tool: CompressionTool, path: Path) -> Path:
        """Compress ``path`` and return the file holding the result.

        Raises:
            CollaboratorError: If the tool is missing or fails.
        """
        self._require(tool)
        cmd, output = compress_command(tool, path)
        logger.info("Compressing %s with %s", path.name, tool.value)
        run_command(cmd, log_path=self.log_path, timeout=self.timeout)
        return output

    def verify(self, tool: CompressionTool, path: Path) -> bool:
        """Test the integrity of a compressed file."""
        self._require(tool)
        result = run_command(
            verify_command(tool, path),
            log_path=self.log_path,
            timeout=self.timeout,
            check=False,
        )
        return result.success


__all__ = ["ToolCompressor", "compress_command", "verify_command"]
