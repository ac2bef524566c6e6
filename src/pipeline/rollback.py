# src/pipeline/rollback.py — v1
"""One-step rollback: discard step N and everything after it.

The pipeline moves to the pending phase of step N-1, its reset counter is
bumped so in-flight results and queued retries of the discarded steps are
fenced off, and every artifact produced at or after step N is deleted from
object storage and from the artifact registry.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from stagegate.core import phases
from stagegate.core.errors import ErrorCode, StepError, VersionConflict
from stagegate.core.models import Pipeline, PipelineEvent, RollbackResult, step_from_key

if TYPE_CHECKING:
    from stagegate.storage.base_object_storage import BaseObjectStorage
    from stagegate.store.base_store import BasePipelineStore

logger = logging.getLogger(__name__)


def _at_or_after(key: str, step: int) -> bool:
    n = step_from_key(key)
    return n is not None and n >= step


def collect_artifact_ids(pipeline: Pipeline, from_step: int) -> set[str]:
    """Artifact ids referenced by step outputs and retry history of steps >= ``from_step``."""
    ids: set[str] = set()
    for key, output in pipeline.step_outputs.items():
        if _at_or_after(key, from_step):
            ids.update(output.artifact_ids)
    for key, state in pipeline.step_retry_state.items():
        if _at_or_after(key, from_step):
            ids.update(state.artifact_ids)
    ids.discard(pipeline.source_artifact_id)
    return ids


class StepRollback:
    """Implements ``RollbackOneStep(pipeline_id)``."""

    def __init__(
        self,
        store: BasePipelineStore,
        storage: BaseObjectStorage,
        cas_max_retries: int = 5,
    ) -> None:
        self._store = store
        self._storage = storage
        self._cas_max_retries = cas_max_retries

    async def rollback_one_step(
        self, pipeline_id: str, owner: str, current_step: int | None = None
    ) -> RollbackResult:
        """Roll the pipeline back from its current step N to step N-1.

        ``current_step``, when given, must equal the pipeline's current step.

        Raises:
            StepError: PIPELINE_NOT_FOUND, AUTH_INVALID, INVALID_REQUEST when
                the pipeline is at step 0, PHASE_MISMATCH, or PERSISTENCE_WRITE_ERROR.
        """
        pipeline = await self._store.load(pipeline_id)
        if pipeline is None:
            raise StepError(ErrorCode.PIPELINE_NOT_FOUND, f"pipeline {pipeline_id} not found")
        if pipeline.owner != owner:
            raise StepError(ErrorCode.AUTH_INVALID, "pipeline is not owned by caller")

        from_step = pipeline.current_step
        if current_step is not None and current_step != from_step:
            raise StepError(
                ErrorCode.PHASE_MISMATCH,
                f"pipeline is at step {from_step}, not {current_step}",
                details={"phase": pipeline.phase, "step": from_step},
            )
        if not 1 <= from_step <= 7:
            raise StepError(
                ErrorCode.INVALID_REQUEST,
                f"cannot roll back from step {from_step}",
                details={"phase": pipeline.phase, "step": from_step},
            )
        to_step = from_step - 1
        target_phase = phases.pending_phase(to_step)
        discarded_ids: dict[str, set[str]] = {"ids": set()}

        def mutate(draft: Pipeline) -> None:
            if draft.current_step != from_step:
                raise StepError(
                    ErrorCode.PHASE_MISMATCH,
                    f"pipeline moved to step {draft.current_step} during rollback",
                    details={"phase": draft.phase, "step": draft.current_step},
                )
            discarded_ids["ids"] = collect_artifact_ids(draft, from_step)
            for key in [k for k in draft.step_outputs if _at_or_after(k, from_step)]:
                del draft.step_outputs[key]
            for key in [k for k in draft.step_retry_state if _at_or_after(k, from_step)]:
                del draft.step_retry_state[key]
            draft.move_to(target_phase)
            draft.last_error = None
            draft.total_retry_count += 1
            draft.reset_counter += 1

        try:
            committed = await self._store.update(pipeline_id, mutate, self._cas_max_retries)
        except VersionConflict as e:
            raise StepError(ErrorCode.PERSISTENCE_WRITE_ERROR, str(e)) from e

        # The committed draft may hold outputs written after the initial load.
        artifact_ids = discarded_ids["ids"] | collect_artifact_ids(pipeline, from_step)
        for record in await self._store.list_attempts(pipeline_id):
            if record.step >= from_step:
                artifact_ids.add(record.artifact_id)
        artifact_ids.discard(committed.source_artifact_id)

        deleted = await self._delete_artifacts(artifact_ids)
        await self._store.delete_attempts_from(pipeline_id, from_step)
        await self._store.delete_judge_results_from(pipeline_id, from_step)
        await self._store.delete_events_from(pipeline_id, from_step)
        await self._store.delete_space_outputs_from(pipeline_id, from_step)
        discarded = await self._store.discard_retry_tasks(pipeline_id, from_step)

        await self._store.record_event(
            PipelineEvent(
                pipeline_id=pipeline_id,
                owner=owner,
                step=from_step,
                type="STEP_ROLLBACK",
                message=f"rolled back from step {from_step} to {target_phase}",
                data={
                    "deleted_artifacts": deleted,
                    "discarded_retry_tasks": discarded,
                    "reset_counter": committed.reset_counter,
                },
            )
        )
        logger.info(
            "Rolled back %s from step %d to %s (%d artifacts deleted)",
            pipeline_id, from_step, target_phase, deleted,
        )
        return RollbackResult(
            from_step=from_step,
            to_step=to_step,
            target_phase=target_phase,
            deleted_artifact_count=deleted,
            reset_counter=committed.reset_counter,
        )

    async def _delete_artifacts(self, artifact_ids: set[str]) -> int:
        """Best-effort delete; failures are logged and do not abort the rollback."""
        deleted = 0
        for artifact_id in sorted(artifact_ids):
            artifact = await self._store.get_artifact(artifact_id)
            try:
                if artifact is not None:
                    await self._storage.delete(artifact.path)
                await self._store.delete_artifact(artifact_id)
                deleted += 1
            except Exception as e:
                logger.warning("Failed to delete artifact %s: %s", artifact_id, e)
        return deleted
