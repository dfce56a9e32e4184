"""Tests for overlay selection and the effective kernel configuration."""

from pathlib import Path

import pytest

from onefile_imagegen.buildconfig.resolver import resolve
from onefile_imagegen.kconfig.document import MergeError
from onefile_imagegen.kconfig.overlay import OverlayOrigin
from onefile_imagegen.kconfig.selection import (
    build_effective_config,
    select_overlays,
)

KERNEL_CONFIG_DIR = Path(__file__).resolve().parent.parent / "kernel-configs"


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    """A small kernel config directory."""
    (tmp_path / "standard.config").write_text(
        "CONFIG_MODULES=y\n# CONFIG_BTRFS_FS is not set\nCONFIG_STANDARD=y\n"
    )
    (tmp_path / "minimal.config").write_text("CONFIG_MODULES=y\n")
    features = tmp_path / "features"
    features.mkdir()
    (features / "zfs-support.conf").write_text("CONFIG_ZLIB_DEFLATE=y\n")
    (features / "btrfs-support.conf").write_text("CONFIG_BTRFS_FS=y\n")
    (features / "crypto-support.conf").write_text("CONFIG_DM_CRYPT=y\n")
    return tmp_path


class TestSelectOverlays:
    """Test overlay selection."""

    def test_standard_selection(self, config_dir: Path) -> None:
        plan = select_overlays(resolve([]), config_dir)
        assert plan.base_path == config_dir / "standard.config"
        assert [o.name for o in plan.overlays] == ["zfs", "crypto"]

    def test_minimal_base(self, config_dir: Path) -> None:
        plan = select_overlays(resolve(["minimal"]), config_dir)
        assert plan.base_path == config_dir / "minimal.config"
        assert plan.overlays == []

    def test_full_base_is_standard(self, config_dir: Path) -> None:
        plan = select_overlays(resolve(["full"]), config_dir)
        assert plan.base_path == config_dir / "standard.config"
        assert [o.name for o in plan.overlays] == ["zfs", "btrfs", "crypto"]

    def test_auto_kernel_config_disabled(self, config_dir: Path) -> None:
        plan = select_overlays(resolve(["--no-auto-kernel-config"]), config_dir)
        assert plan.overlays == []

    def test_custom_base_and_overlays(self, config_dir: Path, tmp_path: Path) -> None:
        custom = tmp_path / "mine.config"
        extra = tmp_path / "extra.conf"
        config = resolve(
            ["minimal", f"--kernel-config={custom}", f"--config-overlay={extra}"]
        )
        plan = select_overlays(config, config_dir)
        assert plan.base_path == custom
        assert len(plan.overlays) == 1
        assert plan.overlays[0].name == "extra"
        assert plan.overlays[0].origin == OverlayOrigin.CUSTOM


    def test_alpine_base(self, config_dir: Path, tmp_path: Path) -> None:
        """Alpine's config replaces the shipped base for any build type."""
        alpine = tmp_path / "alpine-lts.config"
        for preset in ("minimal", "standard"):
            config = resolve([preset, "--use-alpine-kernel-config"])
            plan = select_overlays(config, config_dir, alpine_config=alpine)
            assert plan.base_path == alpine

    def test_custom_base_beats_alpine(self, config_dir: Path, tmp_path: Path) -> None:
        custom = tmp_path / "mine.config"
        config = resolve(["--use-alpine-kernel-config", f"--kernel-config={custom}"])
        plan = select_overlays(config, config_dir)
        assert plan.base_path == custom

    def test_alpine_requested_but_missing(self, config_dir: Path) -> None:
        with pytest.raises(MergeError) as exc_info:
            select_overlays(resolve(["--use-alpine-kernel-config"]), config_dir)
        assert exc_info.value.code == "missing_document"


class TestBuildEffectiveConfig:
    """Test loading and merging the effective configuration."""

    def test_btrfs_overlay_enables_unset_key(self, config_dir: Path) -> None:
        doc = build_effective_config(resolve(["--with-btrfs"]), config_dir)
        assert doc.get("CONFIG_BTRFS_FS") == "y"
        assert "# CONFIG_BTRFS_FS is not set" not in doc.render()

    def test_custom_overlay_wins(self, config_dir: Path) -> None:
        custom = config_dir / "no-crypt.conf"
        custom.write_text("# CONFIG_DM_CRYPT is not set\n")
        doc = build_effective_config(
            resolve([f"--config-overlay={custom}"]), config_dir
        )
        assert "CONFIG_DM_CRYPT" in doc
        assert doc.get("CONFIG_DM_CRYPT") is None

    def test_missing_base(self, tmp_path: Path) -> None:
        with pytest.raises(MergeError) as exc_info:
            build_effective_config(resolve(["minimal"]), tmp_path)
        assert exc_info.value.code == "missing_document"

    def test_missing_selected_overlay(self, config_dir: Path) -> None:
        (config_dir / "features" / "crypto-support.conf").unlink()
        with pytest.raises(MergeError) as exc_info:
            build_effective_config(resolve([]), config_dir)
        assert exc_info.value.code == "missing_overlay"

    def test_shipped_configs(self) -> None:
        """The shipped documents should merge for every preset."""
        minimal = build_effective_config(resolve(["minimal"]), KERNEL_CONFIG_DIR)
        full = build_effective_config(resolve(["full"]), KERNEL_CONFIG_DIR)

        assert minimal.is_set("CONFIG_EFI_STUB")
        assert not minimal.is_set("CONFIG_BTRFS_FS")
        assert full.get("CONFIG_BTRFS_FS") == "y"
        assert full.get("CONFIG_DM_CRYPT") == "y"
