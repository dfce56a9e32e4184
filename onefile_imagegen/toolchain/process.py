"""Command execution for external collaborators.

This module handles:
- Executing toolchain commands with subprocess
- Capturing stdout/stderr to per-stage log files
- Enforcing command timeouts
- Prefixing privileged commands with sudo when not running as root
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


class CollaboratorError(Exception):
    """Raised when an external collaborator command fails."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "collaborator_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


@dataclass
class CommandResult:
    """Result of a collaborator command.

    Attributes:
        command: The command that was executed, shell-quoted.
        exit_code: Process exit code.
        started_at: Start time.
        finished_at: Finish time.
        log_path: Log file, when output went to a log.
        output: Captured stdout, when no log file was used.
    """

    command: str
    exit_code: int
    started_at: datetime
    finished_at: datetime
    log_path: Path | None = None
    output: str | None = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0


def privileged(cmd: Sequence[str], is_root: bool, can_sudo: bool) -> list[str]:
    """Prefix a command with sudo when needed and possible.

    Args:
        cmd: Command to run with root privileges.
        is_root: Already running as root.
        can_sudo: sudo is available.

    Returns:
        Command list.

    Raises:
        CollaboratorError: If root is required but unavailable.
    """
    if is_root:
        return list(cmd)
    if can_sudo:
        return ["sudo", *cmd]
    raise CollaboratorError(
        f"Root privileges required for: {shlex.join(cmd)}",
        code="permission_denied",
    )


def run_command(
    cmd: Sequence[str],
    cwd: Path | None = None,
    log_path: Path | None = None,
    timeout: int | None = None,
    env_override: dict[str, str] | None = None,
    input_text: str | None = None,
    check: bool = True,
) -> CommandResult:
    """Execute a collaborator command.

    When ``log_path`` is given, stdout and stderr are appended to it with a
    header and footer; otherwise stdout is captured and returned.

    Args:
        cmd: Command as list of strings.
        cwd: Working directory.
        log_path: Log file to append output to.
        timeout: Timeout in seconds (None = no timeout).
        env_override: Environment variable overrides.
        input_text: Text fed to stdin; never logged.
        check: Raise on a non-zero exit code.

    Returns:
        CommandResult.

    Raises:
        CollaboratorError: On timeout, failure to start, or (with ``check``)
            a non-zero exit code.
    """
    cmd_str = shlex.join(cmd)
    logger.info("Executing: %s", cmd_str)

    env: dict[str, str] | None = None
    if env_override:
        env = dict(os.environ)
        env.update(env_override)

    started_at = datetime.now(timezone.utc)
    output: str | None = None

    try:
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with log_path.open("a") as log_file:
                log_file.write(f"# Command: {cmd_str}\n")
                log_file.write(f"# Started: {started_at.isoformat()}\n")
                log_file.write(f"# CWD: {cwd or Path.cwd()}\n")
                log_file.write("# " + "=" * 70 + "\n\n")
                log_file.flush()

                result = subprocess.run(
                    list(cmd),
                    cwd=cwd,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    input=input_text,
                    text=True,
                    timeout=timeout,
                    env=env,
                    check=False,
                )
        else:
            result = subprocess.run(
                list(cmd),
                cwd=cwd,
                capture_output=True,
                input=input_text,
                text=True,
                timeout=timeout,
                env=env,
                check=False,
            )
            output = result.stdout

    except subprocess.TimeoutExpired as e:
        message = f"Command timed out after {timeout} seconds: {cmd_str}"
        logger.error(message)
        if log_path is not None:
            with log_path.open("a") as log_file:
                log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")
        raise CollaboratorError(message, exit_code=-1, code="timeout") from e

    except OSError as e:
        message = f"Failed to execute {cmd[0]}: {e}"
        logger.error(message)
        raise CollaboratorError(message, code="execution_error") from e

    finished_at = datetime.now(timezone.utc)

    if log_path is not None:
        with log_path.open("a") as log_file:
            log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
            log_file.write(f"# Exit code: {result.returncode}\n")
            duration = (finished_at - started_at).total_seconds()
            log_file.write(f"# Duration: {duration:.1f}s\n\n")

    if check and result.returncode != 0:
        message = f"{cmd[0]} exited with code {result.returncode}"
        if log_path is not None:
            message += f" (see {log_path})"
        elif result.stderr:
            message += f": {result.stderr.strip()[-500:]}"
        logger.error(message)
        raise CollaboratorError(
            message, exit_code=result.returncode, code="command_failed"
        )

    return CommandResult(
        command=cmd_str,
        exit_code=result.returncode,
        started_at=started_at,
        finished_at=finished_at,
        log_path=log_path,
        output=output,
    )


__all__ = ["CollaboratorError", "CommandResult", "privileged", "run_command"]
