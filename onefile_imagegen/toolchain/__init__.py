"""External collaborators.

This module handles:
- Running toolchain commands with logs and timeouts
- Fetching and unpacking sources
- Installing into the install root, building the kernel, compressing
"""

from onefile_imagegen.toolchain.fetch import FetchError, HttpSourceFetcher
from onefile_imagegen.toolchain.process import CollaboratorError, run_command

__all__ = ["CollaboratorError", "FetchError", "HttpSourceFetcher", "run_command"]
