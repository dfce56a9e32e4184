"""Temporary swap provisioning.

This module handles:
- The swap provisioner capability (which may decline a request)
- A system provisioner built on fallocate/mkswap/swapon
- A scope that guarantees release on every exit path
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Protocol

from onefile_imagegen.resources.scheduler import ResourceProfile
from onefile_imagegen.toolchain.process import (
    CollaboratorError,
    privileged,
    run_command,
)

logger = logging.getLogger(__name__)


class SwapProvisioner(Protocol):
    """Capability that creates and removes a temporary swap file."""

    def provision(self, path: Path, size_mb: int) -> bool:
        """Create and enable swap; return False to decline."""
        ...

    def release(self, path: Path) -> None:
        """Disable and remove swap created by ``provision``."""
        ...


class SystemSwapProvisioner:
    """Provision swap with the system swap utilities."""

    def __init__(self, is_root: bool, can_sudo: bool) -> None:
        self.is_root = is_root
        self.can_sudo = can_sudo

    def _run(self, *cmd: str) -> None:
        run_command(privileged(cmd, self.is_root, self.can_sudo), timeout=600)

    def provision(self, path: Path, size_mb: int) -> bool:
        if not self.is_root and not self.can_sudo:
            logger.warning("Declining swap request: root privileges unavailable")
            return False

        path.parent.mkdir(parents=True, exist_ok=True)
        free_mb = shutil.disk_usage(path.parent).free // (1024 * 1024)
        if free_mb < size_mb:
            logger.warning(
                "Declining swap request: %d MB free in %s, %d MB needed",
                free_mb,
                path.parent,
                size_mb,
            )
            return False

        try:
            self._run("fallocate", "-l", f"{size_mb}M", str(path))
            self._run("chmod", "600", str(path))
            self._run("mkswap", str(path))
            self._run("swapon", str(path))
        except CollaboratorError as e:
            logger.warning("Declining swap request: %s", e)
            self._remove(path)
            return False

        logger.info("Enabled %d MB temporary swap at %s", size_mb, path)
        return True

    def release(self, path: Path) -> None:
        try:
            self._run("swapoff", str(path))
        except CollaboratorError as e:
            logger.warning("swapoff failed for %s: %s", path, e)
        self._remove(path)
        logger.info("Released temporary swap at %s", path)

    def _remove(self, path: Path) -> None:
        try:
            self._run("rm", "-f", str(path))
        except CollaboratorError as e:
            logger.warning("Could not remove swap file %s: %s", path, e)


@contextmanager
def provisioned_swap(
    profile: ResourceProfile,
    provisioner: SwapProvisioner,
    path: Path,
) -> Iterator[ResourceProfile]:
    """Provision swap for the duration of the block if the profile asks.

    A declined request is not an error: the block runs with a reduced
    worker count instead. Provisioned swap is released however the block
    exits.

    Args:
        profile: Planned resource profile.
        provisioner: Swap capability.
        path: Swap file location.

    Yields:
        The effective ResourceProfile.
    """
    if not profile.swap_requested:
        yield profile
        return

    if not provisioner.provision(path, profile.swap_size_mb):
        reduced = profile.without_swap()
        logger.warning(
            "Swap declined; continuing with %d worker(s)", reduced.worker_count
        )
        yield reduced
        return

    try:
        yield profile
    finally:
        provisioner.release(path)


__all__ = ["SwapProvisioner", "SystemSwapProvisioner", "provisioned_swap"]
