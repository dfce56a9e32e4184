"""Stage pipeline state machine.

This module handles:
- Selecting the stages of an invocation (all, or a single named stage)
- Enforcing stage order against the checkpoint store
- Skipping checkpointed stages on resume
- Retrying safe-to-rerun stages once; failing fast otherwise
- Wrapping collaborator failures into a StageError naming the stage
- Failing a stage without retry on any other error, except an interrupt

Stages run strictly sequentially. A stage's checkpoint is recorded only
after its action has returned, so an interrupted or failed stage is
re-attempted from its beginning by the next resume.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from onefile_imagegen.pipeline.checkpoints import CheckpointStore
from onefile_imagegen.pipeline.lock import PipelineInterrupted
from onefile_imagegen.pipeline.stages import (
    ALL_STAGES,
    STAGE_ACTIONS,
    STAGES,
    Stage,
    StageAction,
    StageContext,
)
from onefile_imagegen.toolchain.process import CollaboratorError
from onefile_imagegen.types import PipelineStatus, RunMode, StageState

logger = logging.getLogger(__name__)

# Automatic retries granted to a safe-to-rerun stage
MAX_RETRIES = 1


class StageError(Exception):
    """Raised when a stage cannot be completed."""

    def __init__(self, stage: str, message: str, code: str = "stage_failed") -> None:
        """Initialize StageError.

        Args:
            stage: Name of the failing stage.
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(f"Stage '{stage}' failed: {message}")
        self.stage = stage
        self.detail = message
        self.code = code


@dataclass
class StageRecord:
    """Progress of one stage within an invocation."""

    stage: Stage
    state: StageState = StageState.PENDING
    attempts: int = 0
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage.name,
            "ordinal": self.stage.ordinal,
            "state": self.state.value,
            "attempts": self.attempts,
            "message": self.message,
        }


@dataclass
class PipelineResult:
    """Outcome of a pipeline invocation.

    Attributes:
        fingerprint: Configuration fingerprint the run was scoped to.
        selector: Stage selector (``all`` or a stage name).
        mode: Fresh, resume or clean run.
        status: Succeeded or failed.
        records: Per-stage progress, in stage order.
        last_completed: Highest stage with every stage up to it checkpointed.
        error: The failure, when the run failed.
    """

    fingerprint: str
    selector: str
    mode: RunMode
    status: PipelineStatus
    records: list[StageRecord] = field(default_factory=list)
    last_completed: str | None = None
    error: StageError | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == PipelineStatus.SUCCEEDED

    @property
    def failed_stage(self) -> str | None:
        return self.error.stage if self.error else None

    @property
    def executed(self) -> list[str]:
        """Stages whose action ran in this invocation."""
        return [r.stage.name for r in self.records if r.attempts > 0]

    @property
    def skipped(self) -> list[str]:
        return [r.stage.name for r in self.records if r.state == StageState.SKIPPED]

    @property
    def resume_hint(self) -> str | None:
        """Instruction for retrying a failed run."""
        if self.error is None:
            return None
        return (
            f"Re-run with --resume to retry from stage '{self.error.stage}' "
            "onward; completed stages will be skipped."
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "selector": self.selector,
            "mode": self.mode.value,
            "status": self.status.value,
            "stages": [r.to_dict() for r in self.records],
            "last_completed": self.last_completed,
            "failed_stage": self.failed_stage,
            "error": str(self.error) if self.error else None,
            "resume_hint": self.resume_hint,
        }


class StagePipeline:
    """Drive the fixed stage order for one configuration fingerprint."""

    def __init__(
        self,
        store: CheckpointStore,
        stages: Sequence[Stage] = STAGES,
        actions: Mapping[str, StageAction] | None = None,
    ) -> None:
        self.store = store
        self.stages = sorted(stages, key=lambda s: s.ordinal)
        self.actions = dict(STAGE_ACTIONS if actions is None else actions)

    def select(self, selector: str) -> list[Stage]:
        """Stages to run for a selector.

        Raises:
            StageError: If the selector names no stage.
        """
        if selector == ALL_STAGES:
            return list(self.stages)
        for stage in self.stages:
            if stage.name == selector:
                return [stage]
        raise StageError(selector, "unknown stage", code="unknown_stage")

    def last_completed(self, fingerprint: str) -> str | None:
        """Highest stage with every stage up to it checkpointed."""
        completed = self.store.completed_stages(fingerprint)
        last: str | None = None
        for stage in self.stages:
            if stage.name not in completed:
                break
            last = stage.name
        return last

    def missing_prerequisites(self, stage: Stage, fingerprint: str) -> list[str]:
        """Lower-ordinal stages without a checkpoint for this fingerprint."""
        return [
            s.name
            for s in self.stages
            if s.ordinal < stage.ordinal and not self.store.has(s.name, fingerprint)
        ]

    def run(
        self,
        ctx: StageContext,
        selector: str = ALL_STAGES,
        mode: RunMode = RunMode.FRESH,
    ) -> PipelineResult:
        """Run the selected stages.

        Args:
            ctx: Read-only inputs shared by every stage.
            selector: ``all`` or a single stage name.
            mode: FRESH runs every selected stage, RESUME skips checkpointed
                stages, CLEAN invalidates this fingerprint's checkpoints
                first and bypasses the ordering check.

        Returns:
            PipelineResult. Stage failures are reported in the result, not
            raised.
        """
        fingerprint = ctx.fingerprint
        result = PipelineResult(
            fingerprint=fingerprint,
            selector=selector,
            mode=mode,
            status=PipelineStatus.SUCCEEDED,
        )

        try:
            targets = self.select(selector)
        except StageError as e:
            return self._fail(result, e)

        if mode == RunMode.CLEAN:
            self.store.invalidate(fingerprint)

        result.records = [StageRecord(stage) for stage in targets]
        total = len(self.stages)

        for record in result.records:
            stage = record.stage

            if mode == RunMode.RESUME and self.store.has(stage.name, fingerprint):
                record.state = StageState.SKIPPED
                logger.info(
                    "Stage %d/%d %s: checkpoint found, skipping",
                    stage.ordinal,
                    total,
                    stage.name,
                )
                continue

            if mode != RunMode.CLEAN:
                missing = self.missing_prerequisites(stage, fingerprint)
                if missing:
                    error = StageError(
                        stage.name,
                        "requires completed stage(s): " + ", ".join(missing),
                        code="prerequisite_missing",
                    )
                    record.state = StageState.FAILED
                    record.message = error.detail
                    return self._fail(result, error)

            try:
                self._execute(record, ctx, total)
            except StageError as e:
                record.state = StageState.FAILED
                record.message = e.detail
                return self._fail(result, e)

            self.store.record(stage.name, fingerprint)
            record.state = StageState.COMPLETED
            logger.info(
                "Stage %d/%d %s: completed", stage.ordinal, total, stage.name
            )

        result.last_completed = self.last_completed(fingerprint)
        return result

    def _execute(self, record: StageRecord, ctx: StageContext, total: int) -> None:
        stage = record.stage
        action = self.actions.get(stage.name)
        if action is None:
            raise StageError(stage.name, "no action registered", code="no_action")

        attempts = 1 + (MAX_RETRIES if stage.retry_allowed else 0)
        for attempt in range(1, attempts + 1):
            record.state = StageState.RUNNING
            record.attempts = attempt
            logger.info(
                "Stage %d/%d %s: running (attempt %d/%d)",
                stage.ordinal,
                total,
                stage.name,
                attempt,
                attempts,
            )
            try:
                action(ctx)
                return
            except (StageError, CollaboratorError, OSError) as e:
                error = _as_stage_error(stage, e)
                if attempt < attempts:
                    logger.warning(
                        "Stage %s failed (%s); retrying", stage.name, error.detail
                    )
                    continue
                if not stage.retry_allowed:
                    logger.error(
                        "Stage %s requires cleanup before it can be re-run; "
                        "not retrying",
                        stage.name,
                    )
                if error is e:
                    raise
                raise error from e
            except PipelineInterrupted:
                raise
            except Exception as e:
                logger.exception("Stage %s raised an unexpected error", stage.name)
                raise StageError(
                    stage.name,
                    f"unexpected {type(e).__name__}: {e}",
                    code="unexpected_error",
                ) from e

    def _fail(self, result: PipelineResult, error: StageError) -> PipelineResult:
        logger.error("%s", error)
        result.status = PipelineStatus.FAILED
        result.error = error
        result.last_completed = self.last_completed(result.fingerprint)
        return result


def _as_stage_error(stage: Stage, error: Exception) -> StageError:
    if isinstance(error, StageError):
        return error
    code = error.code if isinstance(error, CollaboratorError) else "stage_failed"
    return StageError(stage.name, str(error), code=code)


__all__ = [
    "MAX_RETRIES",
    "PipelineResult",
    "StageError",
    "StagePipeline",
    "StageRecord",
]
