"""Build manifest generation.

This module handles:
- Computing artifact checksums
- Describing the final artifact and any measurement sidecar
- Writing a JSON manifest next to the final artifact
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from onefile_imagegen import __version__
from onefile_imagegen.artifacts.finalize import FinalizeResult
from onefile_imagegen.types import ArtifactInfo

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def describe_artifact(
    path: Path, kind: str, labels: list[str] | None = None
) -> ArtifactInfo:
    """Build ArtifactInfo for a file on disk."""
    return ArtifactInfo(
        filename=path.name,
        path=str(path),
        size_bytes=path.stat().st_size,
        sha256=compute_file_hash(path),
        kind=kind,
        labels=list(labels or []),
    )


def collect_artifacts(result: FinalizeResult) -> list[ArtifactInfo]:
    """Artifacts produced by finalization, bootable image first."""
    labels = ["bootable"]
    if result.compressed and result.tool is not None:
        labels.append(f"compressed:{result.tool.value}")
    artifacts = [describe_artifact(result.final_artifact, "efi", labels)]
    if result.sidecar is not None and result.sidecar.is_file():
        artifacts.append(
            describe_artifact(result.sidecar, "measurement", ["not_bootable"])
        )
    return artifacts


def generate_manifest(
    result: FinalizeResult,
    fingerprint: str,
    build_inputs: dict[str, Any] | None = None,
    resources: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Generate a build manifest.

    The manifest contains:
    - The final artifact (and measurement sidecar) with checksums
    - The configuration fingerprint and build inputs
    - Compression outcome and resource plan

    Args:
        result: Finalization outcome.
        fingerprint: Configuration fingerprint.
        build_inputs: Fingerprinted configuration inputs.
        resources: Resource profile of the invocation.

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    artifacts = collect_artifacts(result)
    manifest: dict[str, Any] = {
        "version": "1.0",
        "generator": f"onefile-imagegen {__version__}",
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "fingerprint": fingerprint,
        "artifacts": [asdict(a) for a in artifacts],
        "compression": result.to_dict(),
    }
    if build_inputs:
        manifest["build_inputs"] = build_inputs
    if resources:
        manifest["resources"] = resources
    return manifest


def write_manifest(
    manifest: dict[str, Any],
    output_path: Path,
) -> Path:
    """Write manifest to a JSON file.

    Args:
        manifest: Manifest dictionary.
        output_path: Output file path.

    Returns:
        Path to written manifest file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)

    logger.info("Wrote manifest to %s", output_path)
    return output_path


__all__ = [
    "MANIFEST_NAME",
    "collect_artifacts",
    "compute_file_hash",
    "describe_artifact",
    "generate_manifest",
    "write_manifest",
]
