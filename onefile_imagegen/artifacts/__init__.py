"""Artifact finalization module.

This module handles:
- Optional, verified compression of the raw kernel image
- Build manifests for the final artifact
"""

from onefile_imagegen.artifacts.finalize import FinalizeError, FinalizeResult, finalize
from onefile_imagegen.artifacts.manifest import generate_manifest, write_manifest

__all__ = [
    "FinalizeError",
    "FinalizeResult",
    "finalize",
    "generate_manifest",
    "write_manifest",
]
