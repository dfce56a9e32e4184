"""Tests for configuration overlay merging."""

import logging
from pathlib import Path

import pytest

from onefile_imagegen.kconfig.document import ConfigDocument, MergeError
from onefile_imagegen.kconfig.overlay import (
    ConfigOverlay,
    OverlayOrigin,
    apply_overlay,
    merge,
    merge_with_stats,
    order_overlays,
)


@pytest.fixture
def base() -> ConfigDocument:
    """Base document shared by the merge tests."""
    return ConfigDocument.parse(
        "CONFIG_MODULES=y\n# CONFIG_OPT_A is not set\nCONFIG_DEBUG=y\n",
        name="base",
    )


class TestConfigOverlay:
    """Test overlay parsing and loading."""

    def test_parse(self) -> None:
        overlay = ConfigOverlay.parse("CONFIG_A=y\n# CONFIG_B is not set\n", "demo")
        assert overlay.name == "demo"
        assert overlay.origin == OverlayOrigin.COMPONENT
        assert overlay.keys == frozenset({"CONFIG_A", "CONFIG_B"})

    def test_load_uses_file_stem(self, tmp_path: Path) -> None:
        path = tmp_path / "wifi.conf"
        path.write_text("CONFIG_CFG80211=m\n")
        overlay = ConfigOverlay.load(path, origin=OverlayOrigin.CUSTOM)
        assert overlay.name == "wifi"
        assert overlay.source == path
        assert overlay.origin == OverlayOrigin.CUSTOM

    def test_load_missing(self, tmp_path: Path) -> None:
        with pytest.raises(MergeError) as exc_info:
            ConfigOverlay.load(tmp_path / "absent.conf")
        assert exc_info.value.code == "missing_overlay"
        assert exc_info.value.path == tmp_path / "absent.conf"

    def test_load_malformed(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.conf"
        path.write_text("CONFIG_A=y\nnot a setting\n")
        with pytest.raises(MergeError) as exc_info:
            ConfigOverlay.load(path)
        assert exc_info.value.code == "malformed_line"
        assert exc_info.value.path == path


class TestApplyOverlay:
    """Test single overlay application."""

    def test_unset_marker_replaced(self, base: ConfigDocument) -> None:
        """Enabling a "not set" key should leave only the new record."""
        overlay = ConfigOverlay.parse("CONFIG_OPT_A=y\n", "opt")
        merged, _ = apply_overlay(base, overlay)

        assert merged.get("CONFIG_OPT_A") == "y"
        rendered = merged.render()
        assert "CONFIG_OPT_A=y" in rendered
        assert "# CONFIG_OPT_A is not set" not in rendered
        assert rendered.count("CONFIG_OPT_A") == 1

    def test_value_replaced_by_unset(self, base: ConfigDocument) -> None:
        overlay = ConfigOverlay.parse("# CONFIG_DEBUG is not set\n", "nodebug")
        merged, _ = apply_overlay(base, overlay)
        assert "CONFIG_DEBUG" in merged
        assert merged.get("CONFIG_DEBUG") is None
        assert "CONFIG_DEBUG=y" not in merged.render()

    def test_stats(self, base: ConfigDocument) -> None:
        overlay = ConfigOverlay.parse(
            "CONFIG_MODULES=m\nCONFIG_NEW_1=y\nCONFIG_NEW_2=y\n", "stats"
        )
        _, stats = apply_overlay(base, overlay)
        assert stats.name == "stats"
        assert stats.added == 2
        assert stats.modified == 1

    def test_idempotent(self, base: ConfigDocument) -> None:
        """Applying the same overlay twice should equal applying it once."""
        overlay = ConfigOverlay.parse("CONFIG_OPT_A=y\nCONFIG_X=m\n", "twice")
        once, _ = apply_overlay(base, overlay)
        twice, _ = apply_overlay(once, overlay)
        assert twice == once

    def test_base_untouched(self, base: ConfigDocument) -> None:
        apply_overlay(base, ConfigOverlay.parse("CONFIG_MODULES=n\n", "x"))
        assert base.get("CONFIG_MODULES") == "y"


class TestMerge:
    """Test merging several overlays."""

    def test_later_overlay_wins(self, base: ConfigDocument) -> None:
        first = ConfigOverlay.parse("CONFIG_X=y\n", "first")
        second = ConfigOverlay.parse("CONFIG_X=m\n", "second")
        assert merge(base, [first, second]).get("CONFIG_X") == "m"
        assert merge(base, [second, first]).get("CONFIG_X") == "y"

    def test_disjoint_overlays_commute(self, base: ConfigDocument) -> None:
        first = ConfigOverlay.parse("CONFIG_X=y\n", "first")
        second = ConfigOverlay.parse("CONFIG_Y=y\n# CONFIG_OPT_A is not set\n", "s")
        assert merge(base, [first, second]) == merge(base, [second, first])

    def test_custom_applied_after_component(self, base: ConfigDocument) -> None:
        """Custom overlays should win even when listed first."""
        custom = ConfigOverlay.parse(
            "CONFIG_X=n\n", "custom", origin=OverlayOrigin.CUSTOM
        )
        component = ConfigOverlay.parse("CONFIG_X=y\n", "component")
        assert merge(base, [custom, component]).get("CONFIG_X") == "n"

    def test_order_overlays_stable(self) -> None:
        a = ConfigOverlay.parse("CONFIG_A=y\n", "a", origin=OverlayOrigin.CUSTOM)
        b = ConfigOverlay.parse("CONFIG_B=y\n", "b")
        c = ConfigOverlay.parse("CONFIG_C=y\n", "c", origin=OverlayOrigin.CUSTOM)
        d = ConfigOverlay.parse("CONFIG_D=y\n", "d")
        assert [o.name for o in order_overlays([a, b, c, d])] == ["b", "d", "a", "c"]

    def test_no_overlays(self, base: ConfigDocument) -> None:
        assert merge(base, []) == base

    def test_merge_with_stats_logs(
        self, base: ConfigDocument, caplog: pytest.LogCaptureFixture
    ) -> None:
        overlay = ConfigOverlay.parse("CONFIG_DEBUG=n\nCONFIG_Z=y\n", "zeta")
        with caplog.at_level(logging.INFO):
            _, stats = merge_with_stats(base, [overlay])
        assert [(s.name, s.added, s.modified) for s in stats] == [("zeta", 1, 1)]
        assert "features added: 1, features modified: 1" in caplog.text
