"""Configuration fingerprint computation.

This module handles:
- Canonical snapshot creation from a BuildConfiguration
- Deterministic hash computation over the normalized snapshot

The fingerprint scopes checkpoint validity: checkpoints recorded under one
fingerprint never satisfy a resume request for another. Only fields that
affect the produced image are included; resource knobs (jobs, cache, swap)
and the explicit password value are not. Custom kernel config files are
captured by content, so editing one in place invalidates its checkpoints.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from onefile_imagegen.buildconfig.models import BuildConfiguration

# Bump when the fingerprint input format changes
FINGERPRINT_SCHEMA_VERSION = "2"


@dataclass
class FingerprintInputs:
    """Canonical representation of the output-affecting configuration.

    Attributes:
        schema_version: Version of the fingerprint schema.
        build_type: Preset name.
        components: Sorted list of enabled component names.
        compression: Compression policy snapshot.
        password: Password mode and length (never the value).
        kernel: Kernel configuration inputs.
        extra_packages: Sorted extra packages.
    """

    schema_version: str = FINGERPRINT_SCHEMA_VERSION
    build_type: str = ""
    components: list[str] = field(default_factory=list)
    compression: dict[str, Any] = field(default_factory=dict)
    password: dict[str, Any] = field(default_factory=dict)
    kernel: dict[str, Any] = field(default_factory=dict)
    extra_packages: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


def file_snapshot(path: Path) -> dict[str, Any]:
    """Path and content digest of a user-supplied kernel config file.

    A file that cannot be read has no digest; the merge reports it later.
    """
    digest: str | None = None
    if path.is_file():
        digest = hashlib.sha256(path.read_bytes()).hexdigest()
    return {"path": str(path), "sha256": digest}


def create_fingerprint_inputs(config: BuildConfiguration) -> FingerprintInputs:
    """Create the canonical fingerprint inputs for a configuration.

    Args:
        config: Resolved build configuration.

    Returns:
        FingerprintInputs with normalized values.
    """
    return FingerprintInputs(
        build_type=config.build_type.value,
        components=sorted(c.value for c in config.components.enabled()),
        compression={
            "enabled": config.compression.enabled,
            "tool": config.compression.tool.value,
        },
        password={
            "mode": config.password.mode.value,
            "length": config.password.length,
        },
        kernel={
            "auto_kernel_config": config.auto_kernel_config,
            "alpine_base": config.alpine_kernel_config,
            "base": (
                file_snapshot(config.kernel_config) if config.kernel_config else None
            ),
            # Overlay order is significant: later overlays win on conflicts
            "overlays": [file_snapshot(p) for p in config.config_overlays],
        },
        extra_packages=sorted(set(config.extra_packages)),
    )


def compute_fingerprint(config: BuildConfiguration) -> str:
    """Compute the fingerprint of a build configuration.

    The fingerprint is a SHA-256 hash of the canonical JSON representation
    of the fingerprint inputs.

    Args:
        config: Resolved build configuration.

    Returns:
        Fingerprint as ``sha256:<hex>``.
    """
    canonical_json = json.dumps(
        create_fingerprint_inputs(config).to_dict(),
        sort_keys=True,
        separators=(",", ":"),
    )
    digest = hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()
    return f"sha256:{digest}"


def short_fingerprint(fingerprint: str, length: int = 12) -> str:
    """Return an abbreviated fingerprint for display."""
    return fingerprint.removeprefix("sha256:")[:length]


__all__ = [
    "FINGERPRINT_SCHEMA_VERSION",
    "FingerprintInputs",
    "compute_fingerprint",
    "create_fingerprint_inputs",
    "file_snapshot",
    "short_fingerprint",
]
