"""Kernel build collaborator.

This module handles:
- Writing the effective kernel configuration and normalizing it
- Compiling the kernel with the planned worker count and compiler flags
- Installing kernel (and optional ZFS) modules into the install root
- Rebuilding so the embedded initramfs carries the installed modules
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from onefile_imagegen.kconfig.document import ConfigDocument
from onefile_imagegen.resources.probe import ResourceSnapshot
from onefile_imagegen.resources.scheduler import ResourceProfile
from onefile_imagegen.toolchain.process import (
    CollaboratorError,
    privileged,
    run_command,
)

logger = logging.getLogger(__name__)

KERNEL_IMAGE = Path("arch") / "x86" / "boot" / "bzImage"


def make_command(
    profile: ResourceProfile, *targets: str, use_ccache: bool = False
) -> list[str]:
    """Compose a make invocation for the planned parallelism."""
    cmd = ["nice", "-n", "19", "make", f"-j{profile.worker_count}", *targets]
    if use_ccache:
        cmd.extend(["CC=ccache gcc", "HOSTCC=ccache gcc"])
    return cmd


class KernelToolchain:
    """Default kernel build capability using make."""

    def __init__(
        self,
        snapshot: ResourceSnapshot,
        log_dir: Path | None = None,
        timeout: int | None = None,
        ccache_dir: Path | None = None,
    ) -> None:
        self.snapshot = snapshot
        self.log_dir = log_dir
        self.timeout = timeout
        self.ccache_dir = ccache_dir

    def _log(self, name: str) -> Path | None:
        return self.log_dir / f"{name}.log" if self.log_dir else None

    @property
    def use_ccache(self) -> bool:
        if self.ccache_dir is None:
            return False
        if shutil.which("ccache") is None:
            logger.warning("ccache requested but not installed; building without it")
            return False
        return True

    def configure(self, kernel_dir: Path, document: ConfigDocument) -> None:
        """Install ``document`` as the kernel's .config and normalize it.

        Raises:
            CollaboratorError: If ``make olddefconfig`` fails.
        """
        config_path = document.write(kernel_dir / ".config")
        logger.info(
            "Wrote kernel configuration (%d settings) to %s", len(document), config_path
        )
        run_command(
            ["make", "olddefconfig"],
            cwd=kernel_dir,
            log_path=self._log("configure"),
            timeout=self.timeout,
        )

    def compile(
        self,
        document: ConfigDocument,
        profile: ResourceProfile,
        root: Path,
        kernel_dir: Path,
        driver_dir: Path | None = None,
    ) -> Path:
        """Build the kernel image with ``root`` embedded as initramfs.

        Args:
            document: Effective kernel configuration.
            profile: Resource plan for this invocation.
            root: Install root, receives the modules.
            kernel_dir: Kernel source tree.
            driver_dir: ZFS source tree, when ZFS is enabled.

        Returns:
            Path to the built kernel image.

        Raises:
            CollaboratorError: If any build command fails.
        """
        env = {"KCFLAGS": profile.compiler_flags}
        use_ccache = self.use_ccache
        if use_ccache and self.ccache_dir is not None:
            self.ccache_dir.mkdir(parents=True, exist_ok=True)
            env["CCACHE_DIR"] = str(self.ccache_dir)

        log_path = self._log("compile")
        logger.info(
            "Compiling kernel with %d worker(s), KCFLAGS='%s'",
            profile.worker_count,
            profile.compiler_flags,
        )
        run_command(
            make_command(profile, use_ccache=use_ccache),
            cwd=kernel_dir,
            log_path=log_path,
            timeout=self.timeout,
            env_override=env,
        )
        run_command(
            make_command(profile, "modules", use_ccache=use_ccache),
            cwd=kernel_dir,
            log_path=log_path,
            timeout=self.timeout,
            env_override=env,
        )
        self._privileged(
            ["make", "-s", "modules_install", f"INSTALL_MOD_PATH={root}"],
            cwd=kernel_dir,
            log_path=log_path,
        )

        if driver_dir is not None:
            self._build_driver(profile, root, kernel_dir, driver_dir, env)

        logger.info("Rebuilding kernel to embed installed modules")
        run_command(
            make_command(profile, use_ccache=use_ccache),
            cwd=kernel_dir,
            log_path=log_path,
            timeout=self.timeout,
            env_override=env,
        )

        image = kernel_dir / KERNEL_IMAGE
        if not image.is_file():
            raise CollaboratorError(
                f"Kernel build finished without producing {image}",
                code="missing_output",
            )
        return image

    def _privileged(self, cmd: list[str], cwd: Path, log_path: Path | None) -> None:
        run_command(
            privileged(cmd, self.snapshot.is_root, self.snapshot.can_sudo),
            cwd=cwd,
            log_path=log_path,
            timeout=self.timeout,
        )

    def _build_driver(
        self,
        profile: ResourceProfile,
        root: Path,
        kernel_dir: Path,
        driver_dir: Path,
        env: dict[str, str],
    ) -> None:
        log_path = self._log("zfs")
        driver_env = {"CFLAGS": profile.compiler_flags}
        if "CCACHE_DIR" in env:
            driver_env.update(
                CC="ccache gcc", HOSTCC="ccache gcc", CCACHE_DIR=env["CCACHE_DIR"]
            )

        logger.info("Building ZFS modules with %d worker(s)", profile.worker_count)
        for cmd in (
            ["sh", "autogen.sh"],
            [
                "./configure",
                f"--with-linux={kernel_dir}",
                f"--with-linux-obj={kernel_dir}",
                "--prefix=/usr",
            ],
            ["make", "-s", f"-j{profile.worker_count}", "-C", "module"],
        ):
            run_command(
                cmd,
                cwd=driver_dir,
                log_path=log_path,
                timeout=self.timeout,
                env_override=driver_env,
            )
        self._privileged(
            [
                "make",
                "-C",
                "module",
                f"DESTDIR={root}",
                f"INSTALL_MOD_PATH={root}",
                "install",
            ],
            cwd=driver_dir,
            log_path=log_path,
        )


__all__ = ["KERNEL_IMAGE", "KernelToolchain", "make_command"]
