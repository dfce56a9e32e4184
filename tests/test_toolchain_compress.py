"""Tests for the compression collaborator."""

from pathlib import Path
from unittest.mock import patch

import pytest

from onefile_imagegen.toolchain.compress import (
    ToolCompressor,
    compress_command,
    verify_command,
)
from onefile_imagegen.toolchain.process import CollaboratorError, CommandResult
from onefile_imagegen.types import CompressionTool

ARTIFACT = Path("/build/output/OneFileLinux.efi")


class TestCommands:
    """Test tool command lines."""

    def test_upx_in_place(self):
        cmd, output = compress_command(CompressionTool.UPX, ARTIFACT)
        assert cmd == ["upx", "--best", "--lzma", str(ARTIFACT)]
        assert output == ARTIFACT

    def test_xz_keeps_input(self):
        cmd, output = compress_command(CompressionTool.XZ, ARTIFACT)
        assert "-k" in cmd
        assert output == Path("/build/output/OneFileLinux.efi.xz")

    def test_zstd_output(self):
        cmd, output = compress_command(CompressionTool.ZSTD, ARTIFACT)
        assert cmd[-2:] == ["-o", "/build/output/OneFileLinux.efi.zst"]
        assert output == Path("/build/output/OneFileLinux.efi.zst")

    @pytest.mark.parametrize(
        "tool,expected",
        [
            (CompressionTool.UPX, ["upx", "-t"]),
            (CompressionTool.XZ, ["xz", "-t"]),
            (CompressionTool.ZSTD, ["zstd", "-t", "-q"]),
        ],
    )
    def test_verify_command(self, tool, expected):
        assert verify_command(tool, ARTIFACT) == [*expected, str(ARTIFACT)]


class TestToolCompressor:
    """Test the command-line compressor."""

    def test_missing_tool(self, tmp_path):
        with (
            patch(
                "onefile_imagegen.toolchain.compress.shutil.which",
                return_value=None,
            ),
            pytest.raises(CollaboratorError) as exc_info,
        ):
            ToolCompressor().compress(CompressionTool.UPX, tmp_path / "a.efi")
        assert exc_info.value.code == "tool_missing"

    def test_compress_logs_to_finalize_log(self, tmp_path):
        compressor = ToolCompressor(log_dir=tmp_path / "logs", timeout=60)
        with (
            patch(
                "onefile_imagegen.toolchain.compress.shutil.which",
                return_value="/usr/bin/xz",
            ),
            patch("onefile_imagegen.toolchain.compress.run_command") as mock_run,
        ):
            output = compressor.compress(CompressionTool.XZ, tmp_path / "a.efi")

        assert output == tmp_path / "a.efi.xz"
        _, kwargs = mock_run.call_args
        assert kwargs["log_path"] == tmp_path / "logs" / "finalize.log"
        assert kwargs["timeout"] == 60

    def test_verify_reports_exit_status(self, tmp_path):
        failed = CommandResult(
            command="upx -t a.efi",
            exit_code=2,
            started_at=None,
            finished_at=None,
        )
        with (
            patch(
                "onefile_imagegen.toolchain.compress.shutil.which",
                return_value="/usr/bin/upx",
            ),
            patch(
                "onefile_imagegen.toolchain.compress.run_command",
                return_value=failed,
            ),
        ):
            assert ToolCompressor().verify(CompressionTool.UPX, tmp_path) is False
