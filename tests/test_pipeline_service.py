"""Tests for the build orchestration service."""

import json
import os
import signal
from pathlib import Path

import httpx
import pytest
import respx
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from onefile_imagegen.buildconfig.fingerprint import compute_fingerprint
from onefile_imagegen.buildconfig.resolver import resolve
from onefile_imagegen.config import Settings
from onefile_imagegen.db import Base
from onefile_imagegen.kconfig.document import MergeError
from onefile_imagegen.pipeline.checkpoints import CheckpointStore
from onefile_imagegen.pipeline.collaborators import Collaborators
from onefile_imagegen.pipeline.lock import (
    PipelineInterrupted,
    RunLockError,
    run_lock,
)
from onefile_imagegen.pipeline.models import Checkpoint  # noqa: F401
from onefile_imagegen.pipeline.service import (
    clean_build,
    effective_kernel_config,
    open_store,
    run_build,
)
from onefile_imagegen.pipeline.stages import STAGE_NAMES
from onefile_imagegen.resources.probe import GIB, ResourceSnapshot
from onefile_imagegen.toolchain.fetch import ALPINE_KERNEL_CONFIG_URLS, FetchError
from onefile_imagegen.toolchain.process import CollaboratorError
from onefile_imagegen.types import RunMode

KERNEL_CONFIG_DIR = Path(__file__).resolve().parent.parent / "kernel-configs"


class FakeFetcher:
    def fetch(self, source, dest_dir):
        dest_dir.mkdir(parents=True, exist_ok=True)
        return dest_dir


class FakeInstaller:
    def install(self, config, root, root_password):
        root.mkdir(parents=True, exist_ok=True)


class FakeKernel:
    """Kernel builder that can fail a number of compile attempts."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.profiles = []
        self.config_written = None

    def configure(self, kernel_dir, document):
        self.config_written = document.write(kernel_dir / ".config")

    def compile(self, document, profile, root, kernel_dir, driver_dir=None):
        self.profiles.append(profile)
        if self.failures:
            self.failures -= 1
            raise CollaboratorError("make exited with code 2", exit_code=2)
        image = kernel_dir / "arch" / "x86" / "boot" / "bzImage"
        image.parent.mkdir(parents=True, exist_ok=True)
        image.write_bytes(b"MZ" + b"\0" * 8192)
        return image


class InterruptingKernel(FakeKernel):
    """Kernel builder whose compile is interrupted by Ctrl-C."""

    def compile(self, document, profile, root, kernel_dir, driver_dir=None):
        self.profiles.append(profile)
        os.kill(os.getpid(), signal.SIGINT)
        raise AssertionError("SIGINT was not delivered")


class FakeUpx:
    """Compresses in place, like upx."""

    def compress(self, tool, path):
        path.write_bytes(b"UPX!" + b"\1" * 64)
        return path

    def verify(self, tool, path):
        return True


class FakeSwap:
    def __init__(self, accept: bool = True) -> None:
        self.accept = accept
        self.released = []

    def provision(self, path, size_mb):
        return self.accept

    def release(self, path):
        self.released.append(path)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        state_dir=tmp_path / "state",
        work_dir=tmp_path / "build",
        kernel_config_dir=KERNEL_CONFIG_DIR,
        swap_path=tmp_path / "swapfile",
    )


@pytest.fixture
def store():
    engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(bind=engine)
    return CheckpointStore(
        sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    )


@pytest.fixture
def kernel():
    return FakeKernel()


@pytest.fixture
def swap():
    return FakeSwap()


@pytest.fixture
def collaborators(kernel, swap) -> Collaborators:
    return Collaborators(
        fetcher=FakeFetcher(),
        installer=FakeInstaller(),
        kernel=kernel,
        compressor=FakeUpx(),
        swap=swap,
    )


def host(available_gib: float = 32, cores: int = 8) -> ResourceSnapshot:
    return ResourceSnapshot(
        available_memory_bytes=int(available_gib * GIB),
        total_memory_bytes=64 * GIB,
        core_count=cores,
    )


class TestRunBuild:
    """Test full builds against fake collaborators."""

    def test_full_build(self, settings, store, collaborators, kernel):
        config = resolve([])
        result = run_build(
            config,
            settings=settings,
            collaborators=collaborators,
            snapshot=host(),
            store=store,
        )

        assert result.succeeded
        assert result.fingerprint == compute_fingerprint(config)
        assert result.executed == list(STAGE_NAMES)

        output = settings.work_dir.resolve() / "output"
        artifact = output / "OneFileLinux.efi"
        assert artifact.read_bytes().startswith(b"UPX!")

        manifest = json.loads((output / "manifest.json").read_text())
        assert manifest["fingerprint"] == result.fingerprint
        assert manifest["compression"]["compressed"] is True
        assert manifest["artifacts"][0]["labels"] == ["bootable", "compressed:upx"]

    def test_effective_config_reaches_kernel(
        self, settings, store, collaborators, kernel
    ):
        run_build(
            resolve(["--with-btrfs"]),
            settings=settings,
            collaborators=collaborators,
            snapshot=host(),
            store=store,
        )
        written = kernel.config_written.read_text()
        assert "CONFIG_BTRFS_FS=y" in written
        assert "CONFIG_DM_CRYPT=y" in written

    def test_resume_after_compile_failure(self, settings, store, collaborators, kernel):
        kernel.failures = 2
        config = resolve([])
        first = run_build(
            config,
            settings=settings,
            collaborators=collaborators,
            snapshot=host(),
            store=store,
        )
        assert first.failed_stage == "compile"
        assert first.last_completed == "configure"

        second = run_build(
            config,
            mode=RunMode.RESUME,
            settings=settings,
            collaborators=collaborators,
            snapshot=host(),
            store=store,
        )
        assert second.succeeded
        assert second.executed == ["compile", "finalize"]
        assert second.skipped == ["fetch", "install", "configure"]

    def test_single_stage(self, settings, store, collaborators):
        result = run_build(
            resolve([]),
            selector="fetch",
            settings=settings,
            collaborators=collaborators,
            snapshot=host(),
            store=store,
        )
        assert result.succeeded
        assert result.executed == ["fetch"]
        assert result.last_completed == "fetch"

    def test_resource_plan_reaches_kernel(self, settings, store, collaborators, kernel):
        run_build(
            resolve(["--jobs=3"]),
            settings=settings,
            collaborators=collaborators,
            snapshot=host(cores=16),
            store=store,
        )
        assert kernel.profiles[0].worker_count == 3

    def test_swap_released_after_build(
        self, settings, store, collaborators, kernel, swap
    ):
        run_build(
            resolve(["--use-swap"]),
            settings=settings,
            collaborators=collaborators,
            snapshot=host(available_gib=3),
            store=store,
        )
        assert kernel.profiles[0].swap_requested is True
        assert swap.released == [settings.swap_path]

    def test_declined_swap_reduces_workers(
        self, settings, store, collaborators, kernel, swap
    ):
        swap.accept = False
        result = run_build(
            resolve(["--use-swap"]),
            settings=settings,
            collaborators=collaborators,
            snapshot=host(available_gib=3.5),
            store=store,
        )
        assert result.succeeded
        assert kernel.profiles[0].worker_count == 1
        assert swap.released == []

    def test_merge_error_propagates(self, settings, store, collaborators, tmp_path):
        settings.kernel_config_dir = tmp_path / "no-configs"
        with pytest.raises(MergeError):
            run_build(
                resolve([]),
                settings=settings,
                collaborators=collaborators,
                snapshot=host(),
                store=store,
            )

    def test_interrupt_releases_resources(self, settings, store, collaborators, swap):
        """Ctrl-C mid-stage should release swap and the lock, keeping no checkpoint."""
        collaborators.kernel = InterruptingKernel()
        config = resolve(["--use-swap"])
        fingerprint = compute_fingerprint(config)

        with pytest.raises(PipelineInterrupted) as exc_info:
            run_build(
                config,
                settings=settings,
                collaborators=collaborators,
                snapshot=host(available_gib=3),
                store=store,
            )

        assert exc_info.value.signum == signal.SIGINT
        assert swap.released == [settings.swap_path]
        assert store.has("configure", fingerprint)
        assert not store.has("compile", fingerprint)
        with run_lock(settings.lock_path):
            pass

    def test_concurrent_build_rejected(self, settings, store, collaborators):
        with run_lock(settings.lock_path):
            with pytest.raises(RunLockError):
                run_build(
                    resolve([]),
                    settings=settings,
                    collaborators=collaborators,
                    snapshot=host(),
                    store=store,
                )


class TestCleanBuild:
    """Test workspace cleaning."""

    def test_clean_removes_workdir_and_checkpoints(self, settings, store):
        config = resolve([])
        fingerprint = compute_fingerprint(config)
        store.record("fetch", fingerprint)
        (settings.work_dir / "linux").mkdir(parents=True)
        ccache = settings.cache_dir / "ccache"
        ccache.mkdir(parents=True)

        result = clean_build(config, settings=settings, store=store)

        assert result.checkpoints_removed == 1
        assert not settings.work_dir.exists()
        assert not ccache.exists()
        assert len(result.removed_paths) == 2
        assert store.completed_stages(fingerprint) == {}

    def test_clean_keeps_ccache(self, settings, store):
        ccache = settings.cache_dir / "ccache"
        ccache.mkdir(parents=True)
        result = clean_build(resolve(["--keep-ccache"]), settings=settings, store=store)
        assert ccache.is_dir()
        assert result.removed_paths == []

    def test_clean_keeping_output(self, settings, store):
        """Post-build cleanup should leave only the output directory."""
        config = resolve([])
        store.record("finalize", compute_fingerprint(config))
        output = settings.work_dir / "output"
        output.mkdir(parents=True)
        (output / "OneFileLinux.efi").write_bytes(b"MZ")
        (settings.work_dir / "linux").mkdir()
        (settings.work_dir / "alpine-minirootfs").mkdir()
        (settings.work_dir / "stray.log").write_text("x")

        result = clean_build(config, settings=settings, store=store, keep_output=True)

        assert sorted(p.name for p in settings.work_dir.iterdir()) == ["output"]
        assert (output / "OneFileLinux.efi").read_bytes() == b"MZ"
        assert len(result.removed_paths) == 3
        assert result.checkpoints_removed == 1

    def test_clean_while_running(self, settings, store):
        with run_lock(settings.lock_path):
            with pytest.raises(RunLockError):
                clean_build(resolve([]), settings=settings, store=store)


class TestEffectiveKernelConfig:
    """Test assembling the kernel config for a run."""

    def test_shipped_base(self, settings):
        document = effective_kernel_config(resolve(["--with-btrfs"]), settings)
        assert document.get("CONFIG_BTRFS_FS") == "y"

    @respx.mock
    def test_alpine_base_downloaded(self, settings):
        route = respx.get(ALPINE_KERNEL_CONFIG_URLS[0]).mock(
            return_value=httpx.Response(
                200, content=b"CONFIG_MODULES=y\nCONFIG_ALPINE_LTS=y\n"
            )
        )
        config = resolve(["minimal", "--use-alpine-kernel-config"])

        document = effective_kernel_config(config, settings)
        assert document.get("CONFIG_ALPINE_LTS") == "y"

        # Second run reuses the cached download
        effective_kernel_config(config, settings)
        assert route.call_count == 1
        cached = settings.cache_dir / "kernel-configs"
        assert [p.name for p in cached.iterdir()] == [
            f"alpine-lts-{settings.alpine_version}.config"
        ]

    @respx.mock
    def test_alpine_download_failure(self, settings):
        for url in ALPINE_KERNEL_CONFIG_URLS:
            respx.get(url).mock(return_value=httpx.Response(503))
        with pytest.raises(FetchError):
            effective_kernel_config(resolve(["--use-alpine-kernel-config"]), settings)


class TestOpenStore:
    """Test opening the state-dir store."""

    def test_open_store_creates_state_dir(self, settings):
        store = open_store(settings)
        assert settings.state_dir.is_dir()
        store.record("fetch", "sha256:" + "d" * 64)
        assert (settings.state_dir / "checkpoints.sqlite").is_file()
