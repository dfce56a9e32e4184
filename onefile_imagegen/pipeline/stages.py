"""Pipeline stage definitions.

This module handles:
- The fixed, ordered stage list and each stage's idempotency contract
- Splitting a stage selector from configuration flags
- The workspace layout and per-invocation stage context
- Stage actions, each delegating to one collaborator capability
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from onefile_imagegen.artifacts.finalize import finalize
from onefile_imagegen.artifacts.manifest import (
    MANIFEST_NAME,
    generate_manifest,
    write_manifest,
)
from onefile_imagegen.buildconfig.components import Component
from onefile_imagegen.buildconfig.fingerprint import create_fingerprint_inputs
from onefile_imagegen.buildconfig.models import BuildConfiguration
from onefile_imagegen.buildconfig.resolver import ConfigError
from onefile_imagegen.config import Settings
from onefile_imagegen.kconfig.document import ConfigDocument
from onefile_imagegen.pipeline.collaborators import Collaborators
from onefile_imagegen.resources.scheduler import ResourceProfile
from onefile_imagegen.toolchain.fetch import default_sources
from onefile_imagegen.toolchain.rootfs import PASSWORD_FILE_NAME, materialize_password
from onefile_imagegen.types import IdempotencyContract

logger = logging.getLogger(__name__)

ALL_STAGES = "all"


@dataclass(frozen=True)
class Stage:
    """A named pipeline step.

    Attributes:
        name: Stage name, also the selector token.
        ordinal: Position in the fixed order (1-based).
        contract: Whether the stage may be re-run after a failure.
        description: One-line summary.
    """

    name: str
    ordinal: int
    contract: IdempotencyContract
    description: str

    @property
    def retry_allowed(self) -> bool:
        return self.contract == IdempotencyContract.SAFE_TO_RERUN


STAGES: tuple[Stage, ...] = (
    Stage("fetch", 1, IdempotencyContract.SAFE_TO_RERUN, "Fetch sources"),
    Stage(
        "install",
        2,
        IdempotencyContract.REQUIRES_CLEANUP,
        "Install packages into the install root",
    ),
    Stage(
        "configure",
        3,
        IdempotencyContract.SAFE_TO_RERUN,
        "Apply the kernel configuration",
    ),
    Stage("compile", 4, IdempotencyContract.SAFE_TO_RERUN, "Compile the kernel"),
    Stage(
        "finalize",
        5,
        IdempotencyContract.SAFE_TO_RERUN,
        "Compress and describe the final artifact",
    ),
)

STAGE_NAMES: tuple[str, ...] = tuple(stage.name for stage in STAGES)


def get_stage(name: str) -> Stage:
    """Look up a stage by name.

    Raises:
        KeyError: If no stage has that name.
    """
    for stage in STAGES:
        if stage.name == name:
            return stage
    raise KeyError(name)


def split_stage_selector(tokens: Sequence[str]) -> tuple[str, list[str]]:
    """Separate the stage selector from configuration flags.

    Args:
        tokens: Raw command-line tokens.

    Returns:
        Tuple of (selector, remaining flag tokens). The selector defaults
        to ``all``.

    Raises:
        ConfigError: If two different stages are selected.
    """
    selector: str | None = None
    flags: list[str] = []
    for token in tokens:
        if token == ALL_STAGES or token in STAGE_NAMES:
            if selector is not None and selector != token:
                raise ConfigError(
                    f"Conflicting stage selectors: {selector} and {token}",
                    token=token,
                    code="conflicting_values",
                )
            selector = token
        else:
            flags.append(token)
    return selector or ALL_STAGES, flags


@dataclass(frozen=True)
class Workspace:
    """Layout of the working directory."""

    work_dir: Path
    artifact_name: str

    @property
    def rootfs_dir(self) -> Path:
        return self.work_dir / "alpine-minirootfs"

    @property
    def kernel_dir(self) -> Path:
        return self.work_dir / "linux"

    @property
    def driver_dir(self) -> Path:
        return self.work_dir / "zfs"

    @property
    def output_dir(self) -> Path:
        return self.work_dir / "output"

    @property
    def raw_artifact(self) -> Path:
        return self.output_dir / self.artifact_name

    @property
    def password_file(self) -> Path:
        return self.output_dir / PASSWORD_FILE_NAME

    @property
    def manifest_path(self) -> Path:
        return self.output_dir / MANIFEST_NAME


@dataclass(frozen=True)
class StageContext:
    """Everything a stage action may read; shared by all stages of a run."""

    config: BuildConfiguration
    fingerprint: str
    effective_config: ConfigDocument
    profile: ResourceProfile
    workspace: Workspace
    settings: Settings
    collaborators: Collaborators


StageAction = Callable[[StageContext], None]


def fetch_stage(ctx: StageContext) -> None:
    fetcher = ctx.collaborators.fetcher
    for source in default_sources(ctx.settings, ctx.config):
        fetcher.fetch(source, ctx.workspace.work_dir / source.target_dir)


def install_stage(ctx: StageContext) -> None:
    password = materialize_password(ctx.config.password, ctx.workspace.password_file)
    ctx.collaborators.installer.install(
        ctx.config, ctx.workspace.rootfs_dir, password
    )


def configure_stage(ctx: StageContext) -> None:
    ctx.collaborators.kernel.configure(
        ctx.workspace.kernel_dir, ctx.effective_config
    )


def compile_stage(ctx: StageContext) -> None:
    workspace = ctx.workspace
    driver_dir = (
        workspace.driver_dir if ctx.config.is_enabled(Component.ZFS) else None
    )
    image = ctx.collaborators.kernel.compile(
        ctx.effective_config,
        ctx.profile,
        workspace.rootfs_dir,
        workspace.kernel_dir,
        driver_dir,
    )
    workspace.output_dir.mkdir(parents=True, exist_ok=True)
    shutil.copy2(image, workspace.raw_artifact)
    logger.info("Kernel image copied to %s", workspace.raw_artifact)


def finalize_stage(ctx: StageContext) -> None:
    result = finalize(
        ctx.workspace.raw_artifact,
        ctx.config.compression,
        ctx.collaborators.compressor,
    )
    manifest = generate_manifest(
        result,
        ctx.fingerprint,
        build_inputs=create_fingerprint_inputs(ctx.config).to_dict(),
        resources=ctx.profile.to_dict(),
    )
    write_manifest(manifest, ctx.workspace.manifest_path)


STAGE_ACTIONS: dict[str, StageAction] = {
    "fetch": fetch_stage,
    "install": install_stage,
    "configure": configure_stage,
    "compile": compile_stage,
    "finalize": finalize_stage,
}


__all__ = [
    "ALL_STAGES",
    "STAGES",
    "STAGE_ACTIONS",
    "STAGE_NAMES",
    "Stage",
    "StageAction",
    "StageContext",
    "Workspace",
    "get_stage",
    "split_stage_selector",
]
