"""Collaborator capabilities used by the pipeline stages.

Each stage delegates its work to exactly one capability. The defaults
wrap the system toolchain; tests substitute in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from pydantic import SecretStr

from onefile_imagegen.artifacts.finalize import Compressor
from onefile_imagegen.buildconfig.models import BuildConfiguration
from onefile_imagegen.config import Settings
from onefile_imagegen.kconfig.document import ConfigDocument
from onefile_imagegen.resources.probe import ResourceSnapshot
from onefile_imagegen.resources.scheduler import ResourceProfile
from onefile_imagegen.resources.swap import SwapProvisioner, SystemSwapProvisioner
from onefile_imagegen.toolchain.compress import ToolCompressor
from onefile_imagegen.toolchain.fetch import HttpSourceFetcher, SourceSpec
from onefile_imagegen.toolchain.kernel import KernelToolchain
from onefile_imagegen.toolchain.rootfs import ChrootInstaller


class SourceFetcher(Protocol):
    """Makes a source component available, unpacked, in the workspace."""

    def fetch(self, source: SourceSpec, dest_dir: Path) -> Path: ...


class IsolatedInstaller(Protocol):
    """Installs the configured packages into the install root."""

    def install(
        self,
        config: BuildConfiguration,
        root: Path,
        root_password: SecretStr | None,
    ) -> None: ...


class KernelBuilder(Protocol):
    """Configures and compiles the kernel."""

    def configure(self, kernel_dir: Path, document: ConfigDocument) -> None: ...

    def compile(
        self,
        document: ConfigDocument,
        profile: ResourceProfile,
        root: Path,
        kernel_dir: Path,
        driver_dir: Path | None = None,
    ) -> Path: ...


@dataclass
class Collaborators:
    """Capabilities available to one pipeline invocation."""

    fetcher: SourceFetcher
    installer: IsolatedInstaller
    kernel: KernelBuilder
    compressor: Compressor
    swap: SwapProvisioner


def default_collaborators(
    settings: Settings,
    config: BuildConfiguration,
    snapshot: ResourceSnapshot,
) -> Collaborators:
    """Build the system-toolchain collaborators for an invocation."""
    cache_dir = config.cache.directory or settings.cache_dir
    logs_dir = settings.logs_dir
    ccache_dir = cache_dir / "ccache" if config.cache.enabled else None
    return Collaborators(
        fetcher=HttpSourceFetcher(
            cache_dir,
            use_cache=config.cache.enabled,
            timeout=settings.download_timeout,
        ),
        installer=ChrootInstaller(
            snapshot, log_dir=logs_dir, timeout=settings.stage_timeout
        ),
        kernel=KernelToolchain(
            snapshot,
            log_dir=logs_dir,
            timeout=settings.stage_timeout,
            ccache_dir=ccache_dir,
        ),
        compressor=ToolCompressor(log_dir=logs_dir, timeout=settings.stage_timeout),
        swap=SystemSwapProvisioner(snapshot.is_root, snapshot.can_sudo),
    )


__all__ = [
    "Collaborators",
    "IsolatedInstaller",
    "KernelBuilder",
    "SourceFetcher",
    "default_collaborators",
]
