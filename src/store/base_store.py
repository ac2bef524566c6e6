# src/store/base_store.py — v1
"""Abstract pipeline store: versioned aggregate plus append-only logs.

The aggregate is only ever written through compare-and-swap on its
version. Attempt records, judge results, events and notifications are
append-only; rollback is the only operation that deletes them.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable

from stagegate.core.errors import ErrorCode, StepError, VersionConflict
from stagegate.core.models import (
    Artifact,
    AttemptRecord,
    JudgeResultRecord,
    Notification,
    Pipeline,
    PipelineEvent,
    RetryTask,
    RetryTaskStatus,
    SpaceOutput,
)

logger = logging.getLogger(__name__)


class BasePipelineStore(ABC):
    """Unified interface for pipeline persistence backends."""

    # --- Aggregate ---

    @abstractmethod
    async def create(self, pipeline: Pipeline) -> Pipeline:
        """Insert a new pipeline at version 1."""

    @abstractmethod
    async def load(self, pipeline_id: str) -> Pipeline | None:
        """Load the current state of a pipeline, or None if unknown."""

    @abstractmethod
    async def compare_and_swap(
        self, pipeline_id: str, expected_version: int, new_state: Pipeline
    ) -> bool:
        """Write ``new_state`` iff the stored version equals ``expected_version``.

        On success the stored version becomes ``expected_version + 1`` and
        ``new_state.version`` is updated to match. Returns False on conflict.

        Raises:
            PhaseInvariantError: If ``new_state`` pairs a phase with the wrong step.
        """

    @abstractmethod
    async def list_pipelines(self, owner: str | None = None) -> list[Pipeline]:
        """List pipelines, optionally filtered by owner."""

    # --- Attempts (append-only) ---

    @abstractmethod
    async def record_attempt(self, record: AttemptRecord) -> None:
        """Append an attempt. Duplicate (step, attempt, candidate) keys fail."""

    @abstractmethod
    async def list_attempts(
        self, pipeline_id: str, step: int | None = None
    ) -> list[AttemptRecord]:
        """Attempts ordered by step, attempt index, candidate index."""

    @abstractmethod
    async def next_attempt_index(self, pipeline_id: str, step: int) -> int:
        """1-based index of the next attempt for ``step``."""

    @abstractmethod
    async def delete_attempts_from(self, pipeline_id: str, from_step: int) -> int:
        """Delete attempts for steps >= ``from_step``; return the count."""

    # --- Judge results ---

    @abstractmethod
    async def record_judge_result(self, record: JudgeResultRecord) -> None: ...

    @abstractmethod
    async def list_judge_results(
        self, pipeline_id: str, step: int | None = None
    ) -> list[JudgeResultRecord]: ...

    @abstractmethod
    async def delete_judge_results_from(self, pipeline_id: str, from_step: int) -> int: ...

    # --- Events ---

    @abstractmethod
    async def record_event(self, event: PipelineEvent) -> None: ...

    @abstractmethod
    async def list_events(
        self, pipeline_id: str, step: int | None = None
    ) -> list[PipelineEvent]: ...

    @abstractmethod
    async def delete_events_from(self, pipeline_id: str, from_step: int) -> int: ...

    # --- Notifications ---

    @abstractmethod
    async def record_notification(self, notification: Notification) -> None: ...

    @abstractmethod
    async def list_notifications(
        self, owner: str | None = None, pipeline_id: str | None = None
    ) -> list[Notification]: ...

    # --- Artifact registry ---

    @abstractmethod
    async def register_artifact(self, artifact: Artifact) -> None: ...

    @abstractmethod
    async def get_artifact(self, artifact_id: str) -> Artifact | None: ...

    @abstractmethod
    async def delete_artifact(self, artifact_id: str) -> None:
        """Remove a registry row. Unknown ids are not an error."""

    # --- Per-space outputs ---

    @abstractmethod
    async def record_space_output(self, output: SpaceOutput) -> None: ...

    @abstractmethod
    async def list_space_outputs(
        self, pipeline_id: str, step: int | None = None
    ) -> list[SpaceOutput]: ...

    @abstractmethod
    async def delete_space_outputs_from(self, pipeline_id: str, from_step: int) -> int: ...

    # --- Retry tasks ---

    @abstractmethod
    async def enqueue_retry_task(self, task: RetryTask) -> None: ...

    @abstractmethod
    async def claim_retry_task(self, task_id: str) -> RetryTask | None:
        """Atomically move a task from pending to running.

        Returns None if the task is unknown or was already claimed.
        """

    @abstractmethod
    async def finish_retry_task(
        self, task_id: str, status: RetryTaskStatus, note: str = ""
    ) -> None: ...

    @abstractmethod
    async def list_retry_tasks(
        self,
        status: RetryTaskStatus | None = None,
        pipeline_id: str | None = None,
    ) -> list[RetryTask]: ...

    @abstractmethod
    async def discard_retry_tasks(self, pipeline_id: str, from_step: int) -> int:
        """Mark pending tasks for steps >= ``from_step`` as discarded."""

    def close(self) -> None:
        """Release backend resources."""

    # --- Read-modify-write ---

    async def update(
        self,
        pipeline_id: str,
        mutate: Callable[[Pipeline], None],
        max_retries: int = 5,
    ) -> Pipeline:
        """Load, apply ``mutate`` to a copy, and compare-and-swap it back.

        ``mutate`` is re-applied to a freshly loaded state after each lost
        race, so it must be a pure function of the state it is given. It may
        raise to abort the update.

        Raises:
            StepError: PIPELINE_NOT_FOUND if the pipeline is unknown.
            VersionConflict: If every attempt lost a race.
        """
        for attempt in range(1, max_retries + 1):
            current = await self.load(pipeline_id)
            if current is None:
                raise StepError(
                    ErrorCode.PIPELINE_NOT_FOUND, f"pipeline {pipeline_id} not found"
                )
            draft = current.model_copy(deep=True)
            mutate(draft)
            if await self.compare_and_swap(pipeline_id, current.version, draft):
                return draft
            logger.debug(
                "CAS conflict on %s at version %d (attempt %d/%d)",
                pipeline_id, current.version, attempt, max_retries,
            )
        raise VersionConflict(pipeline_id, current.version)
