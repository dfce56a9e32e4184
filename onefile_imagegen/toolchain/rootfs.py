"""Install root preparation.

This module handles:
- Composing the package list from the enabled components
- Installing packages inside the install root with apk in a chroot
- Mounting (and always unmounting) pseudo-filesystems around the chroot
- Service, console and root-password configuration of the install root
"""

from __future__ import annotations

import logging
import os
import secrets
import string
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from pydantic import SecretStr

from onefile_imagegen.buildconfig.components import BASE_PACKAGES, COMPONENT_PACKAGES
from onefile_imagegen.buildconfig.models import BuildConfiguration, PasswordPolicy
from onefile_imagegen.resources.probe import ResourceSnapshot
from onefile_imagegen.toolchain.process import (
    CollaboratorError,
    privileged,
    run_command,
)
from onefile_imagegen.types import PasswordMode

logger = logging.getLogger(__name__)

PASSWORD_ALPHABET = string.ascii_letters + string.digits + "_!@#$%^&*()"
PASSWORD_FILE_NAME = "onefile-password.txt"

INSTALL_SCRIPT_NAME = "onefile-install.sh"

NAMESERVERS = ("1.1.1.1", "8.8.4.4")

SYSINIT_SERVICES = ("mdev", "devfs", "dmesg", "syslog", "hwdrivers", "networking")

INIT_SCRIPT = """\
#!/bin/sh
mount -t proc none /proc
mount -t sysfs none /sys
mount -t devtmpfs none /dev
exec /sbin/init
"""

NETWORK_INTERFACES = """\
auto lo
iface lo inet loopback

auto eth0
iface eth0 inet dhcp
"""


def compose_packages(config: BuildConfiguration) -> list[str]:
    """Packages to install for a configuration, without duplicates.

    Base packages come first, then component groups in catalogue order,
    then extra packages.
    """
    packages: list[str] = list(BASE_PACKAGES)
    for component in config.components.enabled():
        packages.extend(COMPONENT_PACKAGES.get(component, ()))
    packages.extend(config.extra_packages)
    return list(dict.fromkeys(packages))


def compose_install_script(packages: list[str]) -> str:
    """Shell script run inside the chroot to install packages."""
    lines = [
        "#!/bin/sh",
        "set -e",
        "apk update",
        "apk add --no-cache " + " ".join(packages),
    ]
    for service in SYSINIT_SERVICES:
        lines.append(
            f"ln -fs /etc/init.d/{service} /etc/runlevels/sysinit/{service}"
        )
    lines.append("ln -fs /sbin/agetty /sbin/getty")
    return "\n".join(lines) + "\n"


def generate_password(length: int) -> str:
    """Generate a random root password."""
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def materialize_password(
    policy: PasswordPolicy, password_file: Path
) -> SecretStr | None:
    """Turn a password policy into the concrete root password.

    A generated password is written to ``password_file`` (mode 0600) and is
    never logged.

    Returns:
        The password, or None for a password-less root account.
    """
    if policy.mode == PasswordMode.NONE:
        return None
    if policy.mode == PasswordMode.EXPLICIT:
        return policy.value

    password = generate_password(policy.length)
    password_file.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(password_file), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(password + "\n")
    logger.info("Generated random root password; saved to %s", password_file)
    return SecretStr(password)


class ChrootInstaller:
    """Default isolated-install capability using chroot and apk."""

    def __init__(
        self,
        snapshot: ResourceSnapshot,
        log_dir: Path | None = None,
        timeout: int | None = None,
    ) -> None:
        self.snapshot = snapshot
        self.log_dir = log_dir
        self.timeout = timeout

    @property
    def log_path(self) -> Path | None:
        return self.log_dir / "install.log" if self.log_dir else None

    def _run(self, *cmd: str, input_text: str | None = None) -> None:
        run_command(
            privileged(cmd, self.snapshot.is_root, self.snapshot.can_sudo),
            log_path=self.log_path,
            timeout=self.timeout,
            input_text=input_text,
        )

    @contextmanager
    def mounted(self, root: Path) -> Iterator[None]:
        """Mount pseudo-filesystems into the root for the block.

        Inside containers only /proc is mounted. Whatever was mounted is
        unmounted again however the block exits.
        """
        mounts = [("proc", root / "proc", ["-t", "proc", "none"])]
        if not self.snapshot.is_container:
            mounts.append(("sys", root / "sys", ["--rbind", "/sys"]))
            mounts.append(("dev", root / "dev", ["--rbind", "/dev"]))

        mounted: list[Path] = []
        try:
            for name, target, args in mounts:
                target.mkdir(parents=True, exist_ok=True)
                self._run("mount", *args, str(target))
                mounted.append(target)
                logger.debug("Mounted %s at %s", name, target)
            yield
        finally:
            for target in reversed(mounted):
                try:
                    self._run("umount", "-l", str(target))
                except CollaboratorError as e:
                    logger.warning("Failed to unmount %s: %s", target, e)

    def install(
        self,
        config: BuildConfiguration,
        root: Path,
        root_password: SecretStr | None,
    ) -> None:
        """Install packages into ``root`` and configure the system.

        Raises:
            CollaboratorError: If a command fails.
        """
        packages = compose_packages(config)
        logger.info("Installing %d packages into %s", len(packages), root)

        (root / "etc").mkdir(parents=True, exist_ok=True)
        (root / "etc" / "resolv.conf").write_text(
            "".join(f"nameserver {ns}\n" for ns in NAMESERVERS)
        )

        script = root / INSTALL_SCRIPT_NAME
        script.write_text(compose_install_script(packages))
        script.chmod(0o755)
        try:
            with self.mounted(root):
                self._run("chroot", str(root), "/bin/sh", f"/{INSTALL_SCRIPT_NAME}")
                self._set_root_password(root, root_password)
        finally:
            script.unlink(missing_ok=True)

        self._configure_system(root)

    def _set_root_password(self, root: Path, password: SecretStr | None) -> None:
        if password is None:
            self._run("chroot", str(root), "passwd", "-d", "root")
            logger.warning("Root account has no password")
            return
        # Fed through stdin so the password never appears in a command line
        self._run(
            "chroot",
            str(root),
            "chpasswd",
            "-c",
            "sha512",
            input_text=f"root:{password.get_secret_value()}\n",
        )
        logger.info("Root password set")

    def _configure_system(self, root: Path) -> None:
        network_dir = root / "etc" / "network"
        network_dir.mkdir(parents=True, exist_ok=True)
        (network_dir / "interfaces").write_text(NETWORK_INTERFACES)

        init = root / "init"
        init.write_text(INIT_SCRIPT)
        init.chmod(0o755)

        inittab = root / "etc" / "inittab"
        if inittab.is_file():
            lines = []
            for line in inittab.read_text().splitlines():
                if line.startswith("#ttyS0"):
                    line = line[1:]
                if "getty -a root" not in line:
                    line = line.replace("/sbin/getty ", "/sbin/getty -a root ")
                lines.append(line)
            inittab.write_text("\n".join(lines) + "\n")


__all__ = [
    "ChrootInstaller",
    "PASSWORD_ALPHABET",
    "PASSWORD_FILE_NAME",
    "compose_install_script",
    "compose_packages",
    "generate_password",
    "materialize_password",
]
