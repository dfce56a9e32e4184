"""Tests for the component catalogue."""

from onefile_imagegen.buildconfig.components import (
    ADVANCED_GROUPS,
    COMPONENT_PACKAGES,
    Component,
    lookup_component,
    preset_baseline,
)
from onefile_imagegen.buildconfig.models import ComponentSelection
from onefile_imagegen.types import BuildType

CORE_COMPONENTS = (
    Component.ZFS,
    Component.RECOVERY_TOOLS,
    Component.NETWORK_TOOLS,
    Component.CRYPTO,
    Component.TUI,
)


class TestPresetBaseline:
    """Test preset expansion."""

    def test_every_preset_covers_every_component(self) -> None:
        """A baseline should have an entry for every component."""
        for build_type in BuildType:
            assert set(preset_baseline(build_type)) == set(Component)

    def test_minimal_disables_everything(self) -> None:
        assert not any(preset_baseline(BuildType.MINIMAL).values())

    def test_full_enables_everything(self) -> None:
        assert all(preset_baseline(BuildType.FULL).values())

    def test_standard_enables_core_components(self) -> None:
        """Standard should enable the core set and nothing else."""
        baseline = preset_baseline(BuildType.STANDARD)
        enabled = {c for c, on in baseline.items() if on}
        assert enabled == set(CORE_COMPONENTS)

    def test_baseline_is_a_fresh_dict(self) -> None:
        """Mutating a baseline should not affect later calls."""
        baseline = preset_baseline(BuildType.MINIMAL)
        baseline[Component.ZFS] = True
        assert preset_baseline(BuildType.MINIMAL)[Component.ZFS] is False


class TestLookupComponent:
    """Test flag name lookup."""

    def test_canonical_name(self) -> None:
        assert lookup_component("network-tools") is Component.NETWORK_TOOLS

    def test_aliases(self) -> None:
        """Alternate spellings should map to the canonical component."""
        assert lookup_component("filesystem-driver") is Component.ZFS
        assert lookup_component("encryption") is Component.CRYPTO
        assert lookup_component("text-ui") is Component.TUI

    def test_underscores_and_case(self) -> None:
        assert lookup_component("Network_Tools") is Component.NETWORK_TOOLS

    def test_unknown_returns_none(self) -> None:
        assert lookup_component("gpu-drivers") is None


class TestCatalogue:
    """Test catalogue consistency."""

    def test_every_component_has_packages(self) -> None:
        assert set(COMPONENT_PACKAGES) == set(Component)

    def test_advanced_groups_are_components(self) -> None:
        assert len(ADVANCED_GROUPS) == 8
        assert not set(ADVANCED_GROUPS) & set(CORE_COMPONENTS)

    def test_field_names_match_selection(self) -> None:
        """Every component should map to a ComponentSelection field."""
        assert {c.field_name for c in Component} == set(
            ComponentSelection.model_fields
        )

    def test_selection_round_trip(self) -> None:
        """from_mapping and as_mapping should agree."""
        mapping = preset_baseline(BuildType.STANDARD)
        selection = ComponentSelection.from_mapping(mapping)
        assert selection.as_mapping() == mapping
        assert selection.enabled() == list(CORE_COMPONENTS)
