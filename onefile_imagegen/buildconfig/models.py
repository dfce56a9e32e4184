"""Pydantic models for the resolved build configuration.

A BuildConfiguration is created once per invocation by the resolver and is
never mutated afterwards; every stage reads the same snapshot.
"""

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, SecretStr, model_validator

from onefile_imagegen.buildconfig.components import Component, preset_baseline
from onefile_imagegen.types import BuildType, CompressionTool, PasswordMode

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 64
DEFAULT_PASSWORD_LENGTH = 12


class ComponentSelection(BaseModel):
    """Inclusion boolean for every selectable component."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    zfs: bool = False
    btrfs: bool = False
    recovery_tools: bool = False
    network_tools: bool = False
    crypto: bool = False
    tui: bool = False
    advanced_fs: bool = False
    disk_diag: bool = False
    network_diag: bool = False
    system_tools: bool = False
    data_recovery: bool = False
    boot_repair: bool = False
    editors: bool = False
    security: bool = False

    @classmethod
    def from_mapping(cls, mapping: dict[Component, bool]) -> "ComponentSelection":
        """Build a selection from a Component -> bool mapping."""
        return cls(**{c.field_name: enabled for c, enabled in mapping.items()})

    def as_mapping(self) -> dict[Component, bool]:
        """Return the selection as a Component -> bool mapping."""
        return {c: getattr(self, c.field_name) for c in Component}

    def is_enabled(self, component: Component) -> bool:
        """Check whether a component is included."""
        return bool(getattr(self, component.field_name))

    def enabled(self) -> list[Component]:
        """List included components in catalogue order."""
        return [c for c in Component if self.is_enabled(c)]


def standard_components() -> ComponentSelection:
    """Component baseline of the default standard preset."""
    return ComponentSelection.from_mapping(preset_baseline(BuildType.STANDARD))


class CompressionPolicy(BaseModel):
    """Compression policy for the final artifact.

    Attributes:
        enabled: Whether to attempt compression at all.
        tool: Capability from the closed set of supported tools.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = True
    tool: CompressionTool = CompressionTool.UPX


class PasswordPolicy(BaseModel):
    """Root password policy.

    Attributes:
        mode: explicit, random or none.
        value: Explicit password; only set in explicit mode.
        length: Length of a generated random password.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    mode: PasswordMode = PasswordMode.RANDOM
    value: SecretStr | None = None
    length: int = Field(
        default=DEFAULT_PASSWORD_LENGTH,
        ge=PASSWORD_MIN_LENGTH,
        le=PASSWORD_MAX_LENGTH,
    )

    @model_validator(mode="after")
    def check_value_matches_mode(self) -> "PasswordPolicy":
        """Explicit mode needs a value; other modes must not carry one."""
        if self.mode == PasswordMode.EXPLICIT and (
            self.value is None or not self.value.get_secret_value()
        ):
            raise ValueError("explicit password mode requires a value")
        if self.mode != PasswordMode.EXPLICIT and self.value is not None:
            raise ValueError(f"password value not allowed in {self.mode.value} mode")
        return self


class CachePolicy(BaseModel):
    """Cache policy for fetched sources and compiler caches.

    Attributes:
        enabled: Reuse previously downloaded sources.
        directory: Cache directory; None means the state-dir default.
        keep_ccache: Keep the compiler cache between builds.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = True
    directory: Path | None = None
    keep_ccache: bool = False


class BuildConfiguration(BaseModel):
    """Immutable, fully resolved build configuration."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    build_type: BuildType = BuildType.STANDARD
    components: ComponentSelection = Field(default_factory=standard_components)
    compression: CompressionPolicy = Field(default_factory=CompressionPolicy)
    password: PasswordPolicy = Field(default_factory=PasswordPolicy)
    jobs: int | None = Field(default=None, ge=1, description="Requested parallelism")
    cache: CachePolicy = Field(default_factory=CachePolicy)
    use_swap: bool = Field(default=False, description="Permit temporary swap")
    auto_kernel_config: bool = Field(
        default=True, description="Apply component kernel config overlays"
    )
    alpine_kernel_config: bool = Field(
        default=False, description="Use Alpine's LTS kernel config as the base"
    )
    kernel_config: Path | None = Field(
        default=None, description="Custom base kernel config document"
    )
    config_overlays: tuple[Path, ...] = Field(
        default=(), description="Ad hoc custom overlays, applied last"
    )
    extra_packages: tuple[str, ...] = ()

    def is_enabled(self, component: Component) -> bool:
        """Check whether a component is included."""
        return self.components.is_enabled(component)


__all__ = [
    "DEFAULT_PASSWORD_LENGTH",
    "PASSWORD_MAX_LENGTH",
    "PASSWORD_MIN_LENGTH",
    "BuildConfiguration",
    "CachePolicy",
    "ComponentSelection",
    "CompressionPolicy",
    "PasswordPolicy",
    "standard_components",
]
