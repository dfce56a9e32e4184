"""Stage pipeline module.

This module handles:
- The fixed stage order and stage actions
- Fingerprint-scoped checkpoints and resume
- Run lock, interrupt handling and scoped resources
- Build orchestration
"""

from onefile_imagegen.pipeline.checkpoints import CheckpointStore
from onefile_imagegen.pipeline.runner import PipelineResult, StageError, StagePipeline
from onefile_imagegen.pipeline.service import run_build

__all__ = [
    "CheckpointStore",
    "PipelineResult",
    "StageError",
    "StagePipeline",
    "run_build",
]
