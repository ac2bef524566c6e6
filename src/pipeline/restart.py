# src/pipeline/restart.py — v1
"""Restart a step left in its running phase.

A run killed mid-step leaves the pipeline in the step's running phase, from
which neither ``run_step`` nor the space analysis may start. Restarting moves
it back to the step's pending phase and bumps the reset counter, so a late
result of the orphaned run is fenced off. Queued retries of the step are
discarded. Committed outputs and the attempt history are kept.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from stagegate.core import phases
from stagegate.core.errors import ErrorCode, StepError, VersionConflict
from stagegate.core.models import Pipeline, PipelineEvent

if TYPE_CHECKING:
    from stagegate.store.base_store import BasePipelineStore

logger = logging.getLogger(__name__)


class StepRestart:
    """Implements ``RestartStep(pipeline_id)``."""

    def __init__(self, store: BasePipelineStore, cas_max_retries: int = 5) -> None:
        self._store = store
        self._cas_max_retries = cas_max_retries

    async def restart_step(
        self, pipeline_id: str, owner: str, current_step: int | None = None
    ) -> Pipeline:
        """Move a running step back to pending.

        ``current_step``, when given, must equal the pipeline's current step.

        Raises:
            StepError: PIPELINE_NOT_FOUND, AUTH_INVALID, PHASE_MISMATCH when
                the step is not running, or PERSISTENCE_WRITE_ERROR.
        """
        previous: dict[str, str] = {}

        def mutate(draft: Pipeline) -> None:
            if draft.owner != owner:
                raise StepError(ErrorCode.AUTH_INVALID, "pipeline is not owned by caller")
            step = draft.current_step
            if current_step is not None and current_step != step:
                raise StepError(
                    ErrorCode.PHASE_MISMATCH,
                    f"pipeline is at step {step}, not {current_step}",
                    details={"phase": draft.phase, "step": step},
                )
            if not phases.is_subphase(draft.phase, phases.Subphase.RUNNING):
                raise StepError(
                    ErrorCode.PHASE_MISMATCH,
                    f"step {step} is not running (phase is {draft.phase!r})",
                    details={"phase": draft.phase, "step": step},
                )
            previous["phase"] = draft.phase
            draft.move_to(phases.pending_phase(step))
            draft.reset_counter += 1
            draft.last_error = None

        try:
            committed = await self._store.update(pipeline_id, mutate, self._cas_max_retries)
        except VersionConflict as e:
            raise StepError(ErrorCode.PERSISTENCE_WRITE_ERROR, str(e)) from e

        step = committed.current_step
        discarded = await self._store.discard_retry_tasks(pipeline_id, step)
        await self._store.record_event(
            PipelineEvent(
                pipeline_id=pipeline_id,
                owner=owner,
                step=step,
                type="step_restart",
                message=f"step {step} restarted from {previous['phase']}",
                data={
                    "from_phase": previous["phase"],
                    "discarded_retry_tasks": discarded,
                    "reset_counter": committed.reset_counter,
                },
            )
        )
        logger.info(
            "Restarted step %d of %s: %s -> %s", step, pipeline_id, previous["phase"], committed.phase
        )
        return committed
