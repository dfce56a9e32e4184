"""Configuration resolver.

This module handles:
- Scanning an ordered list of flag tokens left to right
- Expanding presets into a full component baseline
- Applying explicit per-component overrides on top of the baseline
- Password, compression, cache and parallelism policy resolution

Explicit ``--with-X``/``--without-X`` tokens always beat a preset, wherever
the preset appears; among explicit tokens for one component the last wins.
Unknown tokens are warnings, malformed values are fatal.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TypeVar

from pydantic import SecretStr, ValidationError

from onefile_imagegen.buildconfig.components import (
    ADVANCED_GROUPS,
    Component,
    lookup_component,
    preset_baseline,
)
from onefile_imagegen.buildconfig.models import (
    PASSWORD_MAX_LENGTH,
    PASSWORD_MIN_LENGTH,
    BuildConfiguration,
    CachePolicy,
    ComponentSelection,
    CompressionPolicy,
    PasswordPolicy,
)
from onefile_imagegen.types import BuildType, CompressionTool, PasswordMode

logger = logging.getLogger(__name__)

T = TypeVar("T")

PRESET_TOKENS: dict[str, BuildType] = {
    "minimal": BuildType.MINIMAL,
    "--minimal": BuildType.MINIMAL,
    "standard": BuildType.STANDARD,
    "--standard": BuildType.STANDARD,
    "full": BuildType.FULL,
    "--full": BuildType.FULL,
}

# Boolean switches: token -> (attribute on ParsedFlags, value)
SWITCH_TOKENS: dict[str, tuple[str, bool]] = {
    "--use-cache": ("cache_enabled", True),
    "--no-cache": ("cache_enabled", False),
    "--keep-ccache": ("keep_ccache", True),
    "--no-keep-ccache": ("keep_ccache", False),
    "--use-swap": ("use_swap", True),
    "--no-swap": ("use_swap", False),
    "--auto-kernel-config": ("auto_kernel_config", True),
    "--no-auto-kernel-config": ("auto_kernel_config", False),
    "--use-alpine-kernel-config": ("alpine_kernel_config", True),
    "--no-alpine-kernel-config": ("alpine_kernel_config", False),
    "--random-password": ("random_password", True),
    "--no-password": ("no_password", True),
}

VALUE_OPTIONS = frozenset(
    {
        "--jobs",
        "--compression-tool",
        "--cache-dir",
        "--kernel-config",
        "--config-overlay",
        "--extra-packages",
        "--password",
        "--password-length",
    }
)


class ConfigError(Exception):
    """Raised when flags are malformed or cannot be resolved."""

    def __init__(
        self,
        message: str,
        token: str | None = None,
        code: str = "invalid_value",
    ) -> None:
        super().__init__(message)
        self.token = token
        self.code = code


@dataclass
class ParsedFlags:
    """Result of scanning flag tokens, before defaults are applied.

    ``None`` means the flag was not given.
    """

    preset: BuildType | None = None
    overrides: dict[Component, bool] = field(default_factory=dict)
    compression_enabled: bool | None = None
    compression_tool: CompressionTool | None = None
    jobs: int | None = None
    cache_enabled: bool | None = None
    cache_dir: Path | None = None
    keep_ccache: bool | None = None
    use_swap: bool | None = None
    auto_kernel_config: bool | None = None
    alpine_kernel_config: bool | None = None
    kernel_config: Path | None = None
    config_overlays: list[Path] = field(default_factory=list)
    extra_packages: list[str] | None = None
    password: SecretStr | None = None
    random_password: bool = False
    no_password: bool = False
    password_length: int | None = None
    unknown: list[str] = field(default_factory=list)


def _parse_positive_int(option: str, value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise ConfigError(
            f"{option} expects a positive integer, got '{value}'",
            token=option,
        ) from None
    if number < 1:
        raise ConfigError(
            f"{option} expects a positive integer, got '{value}'",
            token=option,
        )
    return number


def _apply_value_option(parsed: ParsedFlags, option: str, value: str) -> None:
    """Store the value of a ``--option=value`` token."""
    if option == "--jobs":
        parsed.jobs = _parse_positive_int(option, value)
    elif option == "--password-length":
        length = _parse_positive_int(option, value)
        if not PASSWORD_MIN_LENGTH <= length <= PASSWORD_MAX_LENGTH:
            raise ConfigError(
                f"{option} must be between {PASSWORD_MIN_LENGTH} and "
                f"{PASSWORD_MAX_LENGTH}, got {length}",
                token=option,
            )
        parsed.password_length = length
    elif option == "--compression-tool":
        try:
            parsed.compression_tool = CompressionTool(value.lower())
        except ValueError:
            valid = ", ".join(t.value for t in CompressionTool)
            raise ConfigError(
                f"Unsupported compression tool '{value}' (valid: {valid})",
                token=option,
            ) from None
    elif option == "--cache-dir":
        parsed.cache_dir = Path(value).expanduser()
    elif option == "--kernel-config":
        parsed.kernel_config = Path(value).expanduser()
    elif option == "--config-overlay":
        parsed.config_overlays.append(Path(value).expanduser())
    elif option == "--extra-packages":
        parsed.extra_packages = [p for p in re.split(r"[,\s]+", value) if p]
    elif option == "--password":
        parsed.password = SecretStr(value)


def parse_flags(args: Sequence[str]) -> ParsedFlags:
    """Scan flag tokens left to right.

    Args:
        args: Ordered flag tokens (no stage selector).

    Returns:
        ParsedFlags with the last value seen for every option.

    Raises:
        ConfigError: If an option value is missing or malformed.
    """
    parsed = ParsedFlags()

    for token in args:
        option, sep, value = token.partition("=")

        if token in PRESET_TOKENS:
            parsed.preset = PRESET_TOKENS[token]
            continue

        if option in VALUE_OPTIONS:
            if not sep or not value:
                raise ConfigError(
                    f"{option} requires a value ({option}=VALUE)",
                    token=option,
                    code="missing_value",
                )
            _apply_value_option(parsed, option, value)
            continue

        if sep:
            parsed.unknown.append(token)
            continue

        if token in SWITCH_TOKENS:
            attr, flag_value = SWITCH_TOKENS[token]
            setattr(parsed, attr, flag_value)
            continue

        enable: bool | None = None
        name = ""
        if token.startswith("--with-"):
            enable, name = True, token[len("--with-") :]
        elif token.startswith("--without-"):
            enable, name = False, token[len("--without-") :]

        if enable is None:
            parsed.unknown.append(token)
        elif name == "compression":
            parsed.compression_enabled = enable
        elif name == "all-advanced":
            for group in ADVANCED_GROUPS:
                parsed.overrides[group] = enable
        else:
            component = lookup_component(name)
            if component is None:
                parsed.unknown.append(token)
            else:
                parsed.overrides[component] = enable

    return parsed


def _resolve_password(parsed: ParsedFlags, base: PasswordPolicy) -> PasswordPolicy:
    """Explicit beats random beats none beats the baseline."""
    length = parsed.password_length or base.length
    if parsed.password is not None:
        return PasswordPolicy(
            mode=PasswordMode.EXPLICIT, value=parsed.password, length=length
        )
    if parsed.random_password:
        return PasswordPolicy(mode=PasswordMode.RANDOM, length=length)
    if parsed.no_password:
        return PasswordPolicy(mode=PasswordMode.NONE, length=length)
    if base.mode == PasswordMode.EXPLICIT:
        return base.model_copy(update={"length": length})
    return PasswordPolicy(mode=base.mode, length=length)


def _pick(value: T | None, fallback: T) -> T:
    return fallback if value is None else value


def resolve(
    args: Sequence[str],
    defaults: BuildConfiguration | None = None,
) -> BuildConfiguration:
    """Resolve flag tokens into an immutable BuildConfiguration.

    Args:
        args: Ordered flag tokens.
        defaults: Baseline configuration (e.g. saved defaults). The
            built-in standard configuration is used when omitted.

    Returns:
        Resolved BuildConfiguration.

    Raises:
        ConfigError: If any flag value is malformed.
    """
    parsed = parse_flags(args)
    for token in parsed.unknown:
        logger.warning("Ignoring unknown flag: %s", token)

    base = defaults or BuildConfiguration()

    if parsed.preset is not None:
        build_type = parsed.preset
        components = preset_baseline(parsed.preset)
    else:
        build_type = base.build_type
        components = base.components.as_mapping()
    components.update(parsed.overrides)

    try:
        return BuildConfiguration(
            build_type=build_type,
            components=ComponentSelection.from_mapping(components),
            compression=CompressionPolicy(
                enabled=_pick(parsed.compression_enabled, base.compression.enabled),
                tool=_pick(parsed.compression_tool, base.compression.tool),
            ),
            password=_resolve_password(parsed, base.password),
            jobs=_pick(parsed.jobs, base.jobs),
            cache=CachePolicy(
                enabled=_pick(parsed.cache_enabled, base.cache.enabled),
                directory=_pick(parsed.cache_dir, base.cache.directory),
                keep_ccache=_pick(parsed.keep_ccache, base.cache.keep_ccache),
            ),
            use_swap=_pick(parsed.use_swap, base.use_swap),
            auto_kernel_config=_pick(
                parsed.auto_kernel_config, base.auto_kernel_config
            ),
            alpine_kernel_config=_pick(
                parsed.alpine_kernel_config, base.alpine_kernel_config
            ),
            kernel_config=_pick(parsed.kernel_config, base.kernel_config),
            config_overlays=tuple(parsed.config_overlays) or base.config_overlays,
            extra_packages=tuple(
                _pick(parsed.extra_packages, list(base.extra_packages))
            ),
        )
    except ValidationError as e:
        raise ConfigError(f"Invalid build configuration: {e}") from e


__all__ = [
    "PRESET_TOKENS",
    "ConfigError",
    "ParsedFlags",
    "parse_flags",
    "resolve",
]
