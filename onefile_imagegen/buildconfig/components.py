"""Component catalogue for image builds.

This module handles:
- The closed set of selectable image components and their flag aliases
- Preset baselines (minimal, standard, full)
- Package groups installed for each enabled component
"""

from __future__ import annotations

from enum import Enum

from onefile_imagegen.types import BuildType


class Component(str, Enum):
    """A selectable image component.

    The value is the canonical flag name used in ``--with-<value>``.
    """

    ZFS = "zfs"
    BTRFS = "btrfs"
    RECOVERY_TOOLS = "recovery-tools"
    NETWORK_TOOLS = "network-tools"
    CRYPTO = "crypto"
    TUI = "tui"
    ADVANCED_FS = "advanced-fs"
    DISK_DIAG = "disk-diag"
    NETWORK_DIAG = "network-diag"
    SYSTEM_TOOLS = "system-tools"
    DATA_RECOVERY = "data-recovery"
    BOOT_REPAIR = "boot-repair"
    EDITORS = "editors"
    SECURITY = "security"

    @property
    def field_name(self) -> str:
        """Attribute name on ComponentSelection."""
        return self.value.replace("-", "_")


ADVANCED_GROUPS: tuple[Component, ...] = (
    Component.ADVANCED_FS,
    Component.DISK_DIAG,
    Component.NETWORK_DIAG,
    Component.SYSTEM_TOOLS,
    Component.DATA_RECOVERY,
    Component.BOOT_REPAIR,
    Component.EDITORS,
    Component.SECURITY,
)

# Alternate flag spellings accepted by the resolver
COMPONENT_ALIASES: dict[str, Component] = {
    "filesystem-driver": Component.ZFS,
    "encryption": Component.CRYPTO,
    "text-ui": Component.TUI,
}


def lookup_component(name: str) -> Component | None:
    """Map a flag name (canonical or alias) to a Component.

    Args:
        name: Flag suffix, e.g. ``network-tools`` or ``filesystem-driver``.

    Returns:
        The matching Component, or None if the name is unknown.
    """
    normalized = name.strip().lower().replace("_", "-")
    if normalized in COMPONENT_ALIASES:
        return COMPONENT_ALIASES[normalized]
    try:
        return Component(normalized)
    except ValueError:
        return None


def preset_baseline(build_type: BuildType) -> dict[Component, bool]:
    """Return the complete component baseline for a preset.

    Args:
        build_type: Preset to expand.

    Returns:
        Mapping with an entry for every Component.
    """
    if build_type == BuildType.MINIMAL:
        return dict.fromkeys(Component, False)
    if build_type == BuildType.FULL:
        return dict.fromkeys(Component, True)

    baseline = dict.fromkeys(Component, False)
    for component in (
        Component.ZFS,
        Component.RECOVERY_TOOLS,
        Component.NETWORK_TOOLS,
        Component.CRYPTO,
        Component.TUI,
    ):
        baseline[component] = True
    return baseline


BASE_PACKAGES: tuple[str, ...] = (
    "openrc",
    "nano",
    "mc",
    "bash",
    "parted",
    "dropbear",
    "dropbear-ssh",
    "efibootmgr",
    "e2fsprogs",
    "e2fsprogs-extra",
    "dosfstools",
    "dmraid",
    "fuse",
    "gawk",
    "grep",
    "sed",
    "util-linux",
    "wget",
)

COMPONENT_PACKAGES: dict[Component, tuple[str, ...]] = {
    Component.ZFS: (
        "zfs",
        "util-linux-dev",
        "util-linux-misc",
        "util-linux-bash-completion",
    ),
    Component.BTRFS: ("btrfs-progs",),
    Component.RECOVERY_TOOLS: ("testdisk", "ddrescue", "rsync", "unzip", "tar"),
    Component.NETWORK_TOOLS: ("curl", "rsync", "iperf3", "tcpdump", "nftables"),
    Component.CRYPTO: ("cryptsetup", "lvm2", "mdadm"),
    Component.TUI: ("ncurses-terminfo-base", "less"),
    Component.ADVANCED_FS: (
        "ntfs-3g",
        "xfsprogs",
        "gptfdisk",
        "exfatprogs",
        "f2fs-tools",
    ),
    Component.DISK_DIAG: ("smartmontools", "hdparm", "nvme-cli", "dmidecode", "lshw"),
    Component.NETWORK_DIAG: ("ethtool", "nmap", "wireguard-tools", "openvpn"),
    Component.SYSTEM_TOOLS: ("htop", "strace", "pciutils", "usbutils"),
    Component.DATA_RECOVERY: ("testdisk",),
    Component.BOOT_REPAIR: ("grub",),
    Component.EDITORS: ("vim", "tmux", "jq"),
    Component.SECURITY: ("openssl",),
}


__all__ = [
    "ADVANCED_GROUPS",
    "BASE_PACKAGES",
    "COMPONENT_ALIASES",
    "COMPONENT_PACKAGES",
    "Component",
    "lookup_component",
    "preset_baseline",
]
