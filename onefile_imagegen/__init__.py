"""OneFile Image Generator - resumable orchestration for single-file Linux images.

This package resolves feature flags into an immutable build configuration,
merges kernel configuration overlays, plans resources for the executing host,
and drives a checkpointed stage pipeline that produces a bootable EFI artifact.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
