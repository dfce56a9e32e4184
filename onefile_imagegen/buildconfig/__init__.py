"""Build configuration module.

This module handles:
- Component catalogue and presets
- Flag resolution into an immutable BuildConfiguration
- Configuration fingerprints
- Saved default configuration
"""

from onefile_imagegen.buildconfig.components import Component
from onefile_imagegen.buildconfig.models import BuildConfiguration
from onefile_imagegen.buildconfig.resolver import ConfigError, resolve

__all__ = ["BuildConfiguration", "Component", "ConfigError", "resolve"]
