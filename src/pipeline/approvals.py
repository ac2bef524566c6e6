# src/pipeline/approvals.py — v1
"""Human gate: approve a reviewed step and continue to the next one."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from stagegate.core import phases
from stagegate.core.errors import ErrorCode, StepError, VersionConflict
from stagegate.core.models import Pipeline, PipelineEvent, utc_now

if TYPE_CHECKING:
    from stagegate.store.base_store import BasePipelineStore

logger = logging.getLogger(__name__)


def _phase_mismatch(pipeline: Pipeline, message: str) -> StepError:
    return StepError(
        ErrorCode.PHASE_MISMATCH,
        message,
        details={"phase": pipeline.phase, "step": pipeline.current_step},
    )


class ApprovalGate:
    def __init__(self, store: BasePipelineStore, cas_max_retries: int = 5) -> None:
        self._store = store
        self._cas_max_retries = cas_max_retries

    async def _update(self, pipeline_id: str, owner: str, mutate) -> Pipeline:
        def guarded(draft: Pipeline) -> None:
            if draft.owner != owner:
                raise StepError(ErrorCode.AUTH_INVALID, "pipeline is not owned by caller")
            mutate(draft)

        try:
            return await self._store.update(pipeline_id, guarded, self._cas_max_retries)
        except VersionConflict as e:
            raise StepError(ErrorCode.PERSISTENCE_WRITE_ERROR, str(e)) from e

    async def approve_step(
        self,
        pipeline_id: str,
        owner: str,
        step: int,
        artifact_id: str | None = None,
        notes: str = "",
    ) -> Pipeline:
        """Manually approve the output of ``step``.

        Allowed from the step's review or blocked phase. ``artifact_id``
        selects one of the step's candidates; by default the primary one.

        Raises:
            StepError: PHASE_MISMATCH, INVALID_REQUEST for an unknown
                candidate, AUTH_INVALID, PIPELINE_NOT_FOUND.
        """
        if not 1 <= step <= 7:
            raise StepError(ErrorCode.INVALID_REQUEST, f"step {step} has no manual approval")

        def mutate(draft: Pipeline) -> None:
            allowed = {phases.review_phase(step), phases.blocked_phase(step)}
            if draft.phase not in allowed:
                raise _phase_mismatch(draft, f"step {step} cannot be approved from {draft.phase!r}")
            output = draft.output_for(step)
            if output is None or not output.candidates:
                raise _phase_mismatch(draft, f"step {step} has no output to approve")
            selected = artifact_id or output.primary_artifact_id
            if selected not in output.artifact_ids:
                raise StepError(
                    ErrorCode.INVALID_REQUEST,
                    f"artifact {selected} is not a candidate of step {step}",
                    details={"artifact_id": selected, "candidates": output.artifact_ids},
                )
            output.manual_approved = True
            output.selected_artifact_id = selected
            output.approved_at = utc_now()
            output.updated_at = utc_now()
            if notes:
                output.notes["approval"] = notes
            draft.move_to(phases.approved_phase(step))
            draft.last_error = None

        pipeline = await self._update(pipeline_id, owner, mutate)
        await self._store.record_event(
            PipelineEvent(
                pipeline_id=pipeline_id,
                owner=owner,
                step=step,
                type="manual_approval",
                message=f"step {step} approved",
                data={"artifact_id": pipeline.output_for(step).selected_artifact_id},  # type: ignore[union-attr]
            )
        )
        logger.info("Step %d of %s approved -> %s", step, pipeline_id, pipeline.phase)
        return pipeline

    async def continue_step(
        self, pipeline_id: str, owner: str, from_step: int | None = None
    ) -> Pipeline:
        """Move an approved step N to the pending phase of step N+1."""
        previous: dict[str, int] = {}

        def mutate(draft: Pipeline) -> None:
            if not phases.is_subphase(draft.phase, phases.Subphase.APPROVED):
                raise _phase_mismatch(draft, f"cannot continue from {draft.phase!r}")
            if draft.phase == phases.TERMINAL_PHASE:
                raise _phase_mismatch(draft, "pipeline is already completed")
            if from_step is not None and draft.current_step != from_step:
                raise _phase_mismatch(draft, f"pipeline is at step {draft.current_step}, not {from_step}")
            previous["step"] = draft.current_step
            draft.move_to(phases.next_pending(draft.phase))

        pipeline = await self._update(pipeline_id, owner, mutate)
        await self._store.record_event(
            PipelineEvent(
                pipeline_id=pipeline_id,
                owner=owner,
                step=pipeline.current_step,
                type="step_continue",
                message=f"continued from step {previous['step']} to {pipeline.phase}",
            )
        )
        return pipeline
