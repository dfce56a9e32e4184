"""Overlay selection for a build configuration.

This module handles:
- Choosing the base kernel config document (custom, Alpine's, or per build type)
- Selecting component overlays from the configuration's inclusion booleans
- Loading and merging everything into the EffectiveConfig
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from onefile_imagegen.buildconfig.components import Component
from onefile_imagegen.buildconfig.models import BuildConfiguration
from onefile_imagegen.kconfig.document import ConfigDocument, MergeError
from onefile_imagegen.kconfig.overlay import ConfigOverlay, OverlayOrigin, merge
from onefile_imagegen.types import BuildType

logger = logging.getLogger(__name__)

STANDARD_BASE = "standard.config"
MINIMAL_BASE = "minimal.config"
FEATURES_DIR = "features"

COMPONENT_OVERLAYS: dict[Component, str] = {
    Component.ZFS: "zfs-support.conf",
    Component.BTRFS: "btrfs-support.conf",
    Component.CRYPTO: "crypto-support.conf",
}


@dataclass(frozen=True)
class SelectedOverlay:
    """An overlay chosen for application."""

    name: str
    path: Path
    origin: OverlayOrigin


@dataclass
class OverlayPlan:
    """Base document and overlays, in application order."""

    base_path: Path
    overlays: list[SelectedOverlay] = field(default_factory=list)


def select_overlays(
    config: BuildConfiguration,
    kernel_config_dir: Path,
    alpine_config: Path | None = None,
) -> OverlayPlan:
    """Decide which documents make up the EffectiveConfig.

    The base is the custom ``--kernel-config`` document, else Alpine's LTS
    config when requested, else the shipped document for the build type.

    Args:
        config: Resolved build configuration.
        kernel_config_dir: Directory with base documents and ``features/``.
        alpine_config: Downloaded Alpine LTS config, when requested.

    Returns:
        OverlayPlan. No files are read.

    Raises:
        MergeError: If Alpine's config is requested but was not provided.
    """
    if config.kernel_config is not None:
        base_path = config.kernel_config
    elif config.alpine_kernel_config:
        if alpine_config is None:
            raise MergeError(
                "Alpine kernel config requested but not available",
                code="missing_document",
            )
        base_path = alpine_config
    elif config.build_type == BuildType.MINIMAL:
        base_path = kernel_config_dir / MINIMAL_BASE
    else:
        base_path = kernel_config_dir / STANDARD_BASE

    plan = OverlayPlan(base_path=base_path)

    if config.auto_kernel_config:
        for component, filename in COMPONENT_OVERLAYS.items():
            if config.is_enabled(component):
                plan.overlays.append(
                    SelectedOverlay(
                        name=component.value,
                        path=kernel_config_dir / FEATURES_DIR / filename,
                        origin=OverlayOrigin.COMPONENT,
                    )
                )

    for path in config.config_overlays:
        plan.overlays.append(
            SelectedOverlay(name=path.stem, path=path, origin=OverlayOrigin.CUSTOM)
        )

    return plan


def build_effective_config(
    config: BuildConfiguration,
    kernel_config_dir: Path,
    alpine_config: Path | None = None,
) -> ConfigDocument:
    """Load the selected documents and merge them.

    Args:
        config: Resolved build configuration.
        kernel_config_dir: Directory with base documents and ``features/``.
        alpine_config: Downloaded Alpine LTS config, when requested.

    Returns:
        The EffectiveConfig document.

    Raises:
        MergeError: If the base or a selected overlay is missing or malformed.
    """
    plan = select_overlays(config, kernel_config_dir, alpine_config)
    logger.info(
        "Kernel config base %s with %d overlay(s)",
        plan.base_path,
        len(plan.overlays),
    )

    base = ConfigDocument.load(plan.base_path)
    overlays = [
        ConfigOverlay.load(selected.path, name=selected.name, origin=selected.origin)
        for selected in plan.overlays
    ]
    return merge(base, overlays)


__all__ = [
    "COMPONENT_OVERLAYS",
    "MINIMAL_BASE",
    "STANDARD_BASE",
    "OverlayPlan",
    "SelectedOverlay",
    "build_effective_config",
    "select_overlays",
]
