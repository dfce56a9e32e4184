"""Kernel configuration overlay module.

This module handles:
- Parsing and rendering kernel config documents
- Merging component and custom overlays into an EffectiveConfig
"""

from onefile_imagegen.kconfig.document import ConfigDocument, MergeError
from onefile_imagegen.kconfig.overlay import ConfigOverlay, merge

__all__ = ["ConfigDocument", "ConfigOverlay", "MergeError", "merge"]
