"""Build orchestration service.

This module handles:
- Preparing every read-only input of a run (fingerprint, effective kernel
  config, environment snapshot, resource plan)
- Holding the run lock, interrupt guard and temporary swap around the
  stage pipeline
- Cleaning the working directory and checkpoints of a configuration, before
  a run or after a successful one
"""

from __future__ import annotations

import logging
import shutil
from contextlib import ExitStack
from dataclasses import dataclass

from onefile_imagegen.buildconfig.fingerprint import compute_fingerprint
from onefile_imagegen.buildconfig.models import BuildConfiguration
from onefile_imagegen.config import Settings, get_settings
from onefile_imagegen.kconfig.document import ConfigDocument
from onefile_imagegen.kconfig.selection import build_effective_config
from onefile_imagegen.pipeline.checkpoints import CheckpointStore
from onefile_imagegen.pipeline.collaborators import (
    Collaborators,
    default_collaborators,
)
from onefile_imagegen.pipeline.lock import interrupt_guard, run_lock
from onefile_imagegen.pipeline.runner import PipelineResult, StagePipeline
from onefile_imagegen.pipeline.stages import ALL_STAGES, StageContext, Workspace
from onefile_imagegen.resources.probe import ResourceSnapshot, probe_environment
from onefile_imagegen.resources.scheduler import SchedulerPolicy, plan
from onefile_imagegen.resources.swap import provisioned_swap
from onefile_imagegen.toolchain.fetch import fetch_alpine_kernel_config
from onefile_imagegen.types import RunMode

logger = logging.getLogger(__name__)


def open_store(settings: Settings) -> CheckpointStore:
    """Open the checkpoint store under the state directory."""
    settings.state_dir.mkdir(parents=True, exist_ok=True)
    return CheckpointStore.open(settings.db_url)


def workspace_for(settings: Settings) -> Workspace:
    return Workspace(settings.work_dir.resolve(), settings.artifact_name)


def effective_kernel_config(
    config: BuildConfiguration, settings: Settings
) -> ConfigDocument:
    """Assemble the EffectiveConfig, fetching Alpine's base config if requested.

    Raises:
        FetchError: If Alpine's kernel config cannot be downloaded.
        MergeError: If the kernel configuration cannot be assembled.
    """
    alpine_config = None
    if config.alpine_kernel_config and config.kernel_config is None:
        alpine_config = fetch_alpine_kernel_config(
            config.cache.directory or settings.cache_dir,
            settings.alpine_version,
            use_cache=config.cache.enabled,
            timeout=settings.download_timeout,
        )
    return build_effective_config(config, settings.kernel_config_dir, alpine_config)


def run_build(
    config: BuildConfiguration,
    selector: str = ALL_STAGES,
    mode: RunMode = RunMode.FRESH,
    settings: Settings | None = None,
    collaborators: Collaborators | None = None,
    snapshot: ResourceSnapshot | None = None,
    store: CheckpointStore | None = None,
) -> PipelineResult:
    """Run the build pipeline for a resolved configuration.

    Args:
        config: Resolved build configuration.
        selector: ``all`` or a single stage name.
        mode: Fresh, resume or clean run.
        settings: Application settings; loaded from the environment if omitted.
        collaborators: Stage capabilities; system toolchain if omitted.
        snapshot: Environment snapshot; probed if omitted.
        store: Checkpoint store; opened under the state directory if omitted.

    Returns:
        PipelineResult.

    Raises:
        FetchError: If Alpine's kernel config cannot be downloaded.
        MergeError: If the kernel configuration cannot be assembled.
        RunLockError: If another build holds the run lock.
        PipelineInterrupted: If the process receives SIGINT or SIGTERM.
    """
    if settings is None:
        settings = get_settings()

    fingerprint = compute_fingerprint(config)
    logger.info("Configuration fingerprint: %s", fingerprint)

    effective_config = effective_kernel_config(config, settings)

    if snapshot is None:
        snapshot = probe_environment()
    profile = plan(
        snapshot,
        config.jobs,
        allow_swap=config.use_swap,
        policy=SchedulerPolicy.from_settings(settings),
    )

    if collaborators is None:
        collaborators = default_collaborators(settings, config, snapshot)
    if store is None:
        store = open_store(settings)

    workspace = workspace_for(settings)
    workspace.work_dir.mkdir(parents=True, exist_ok=True)

    with ExitStack() as stack:
        stack.enter_context(run_lock(settings.lock_path))
        stack.enter_context(interrupt_guard())
        effective_profile = stack.enter_context(
            provisioned_swap(profile, collaborators.swap, settings.swap_path)
        )

        ctx = StageContext(
            config=config,
            fingerprint=fingerprint,
            effective_config=effective_config,
            profile=effective_profile,
            workspace=workspace,
            settings=settings,
            collaborators=collaborators,
        )
        return StagePipeline(store).run(ctx, selector, mode)


@dataclass
class CleanResult:
    """What a clean removed."""

    checkpoints_removed: int
    removed_paths: list[str]


def clean_build(
    config: BuildConfiguration,
    settings: Settings | None = None,
    store: CheckpointStore | None = None,
    keep_output: bool = False,
) -> CleanResult:
    """Remove the working directory and a configuration's checkpoints.

    The compiler cache survives when the configuration keeps it. With
    ``keep_output`` the output directory (artifact, manifest, password
    file) is left in place and everything else in the working directory
    is removed.

    Raises:
        RunLockError: If a build is running.
    """
    if settings is None:
        settings = get_settings()
    if store is None:
        store = open_store(settings)

    removed: list[str] = []
    with run_lock(settings.lock_path):
        workspace = workspace_for(settings)
        if keep_output and workspace.work_dir.exists():
            for entry in sorted(workspace.work_dir.iterdir()):
                if entry == workspace.output_dir:
                    continue
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
                removed.append(str(entry))
        elif workspace.work_dir.exists():
            shutil.rmtree(workspace.work_dir)
            removed.append(str(workspace.work_dir))

        if not config.cache.keep_ccache:
            ccache_dir = (config.cache.directory or settings.cache_dir) / "ccache"
            if ccache_dir.exists():
                shutil.rmtree(ccache_dir)
                removed.append(str(ccache_dir))

        checkpoints_removed = store.invalidate(compute_fingerprint(config))

    for path in removed:
        logger.info("Removed %s", path)
    return CleanResult(checkpoints_removed=checkpoints_removed, removed_paths=removed)


__all__ = [
    "CleanResult",
    "clean_build",
    "effective_kernel_config",
    "open_store",
    "run_build",
    "workspace_for",
]
