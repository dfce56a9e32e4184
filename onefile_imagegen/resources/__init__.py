"""Resource planning module.

This module handles:
- Environment probing (context, memory, cores, permissions)
- Resource-adaptive scheduling
- Scoped temporary swap
"""

from onefile_imagegen.resources.probe import ResourceSnapshot, probe_environment
from onefile_imagegen.resources.scheduler import ResourceProfile, plan

__all__ = ["ResourceProfile", "ResourceSnapshot", "plan", "probe_environment"]
