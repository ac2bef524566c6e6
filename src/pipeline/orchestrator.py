# src/pipeline/orchestrator.py — v1
"""Pipeline orchestrator: the public operations of the step engine.

Delegates to the components that own each concern:
  - SpaceAnalyzer   step 0 (single attempt)
  - StepExecutor    steps 1-7 (generate, judge, retry decision)
  - ApprovalGate    manual approval and continuation
  - StepRollback    one-step rewind with fencing
  - StepRestart     recovery of a step left running by a crash
  - RetryQueue      durable auto-retry continuations

Operations that change a pipeline never raise on domain errors; they return
an ``ErrorResult`` carrying a stable code instead.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from stagegate.core.errors import ErrorCode, StepError
from stagegate.core.models import (
    Artifact,
    ErrorResult,
    Pipeline,
    PipelineEvent,
    QualityPolicy,
    RollbackResult,
    StepParams,
    StepResult,
    new_id,
)

if TYPE_CHECKING:
    from stagegate.api.models import CreatePipelineRequest
    from stagegate.config.settings import Settings
    from stagegate.pipeline.approvals import ApprovalGate
    from stagegate.pipeline.executor import StepExecutor
    from stagegate.pipeline.restart import StepRestart
    from stagegate.pipeline.retry_queue import RetryQueue
    from stagegate.pipeline.rollback import StepRollback
    from stagegate.pipeline.space_analysis import SpaceAnalyzer
    from stagegate.storage.base_object_storage import BaseObjectStorage
    from stagegate.store.base_store import BasePipelineStore

logger = logging.getLogger(__name__)


def _as_error(e: StepError) -> ErrorResult:
    return ErrorResult(code=e.code.value, message=e.message, retryable=e.retryable, details=e.details)


class PipelineOrchestrator:
    """Top-level entry point for pipeline operations.

    Built by ``stagegate.api.facade.build_orchestrator``; tests assemble it
    from fakes directly.
    """

    def __init__(
        self,
        settings: Settings,
        store: BasePipelineStore,
        storage: BaseObjectStorage,
        executor: StepExecutor,
        analyzer: SpaceAnalyzer,
        approvals: ApprovalGate,
        rollback: StepRollback,
        restart: StepRestart,
        retry_queue: RetryQueue,
    ) -> None:
        self._settings = settings
        self._store = store
        self._storage = storage
        self._executor = executor
        self._analyzer = analyzer
        self._approvals = approvals
        self._rollback = rollback
        self._restart = restart
        self._retry_queue = retry_queue

    @property
    def store(self) -> BasePipelineStore:
        return self._store

    @property
    def storage(self) -> BaseObjectStorage:
        return self._storage

    @property
    def retry_queue(self) -> RetryQueue:
        return self._retry_queue

    # --- Lifecycle ---

    async def create_pipeline(self, request: CreatePipelineRequest) -> Pipeline:
        """Register the source image and create a pipeline in ``upload``."""
        s = self._settings
        pipeline_id = new_id()
        source = request.source
        data = source.read_bytes()
        if not data:
            raise StepError(ErrorCode.INVALID_REQUEST, "source image is empty")

        artifact = Artifact(
            pipeline_id=pipeline_id,
            owner=request.owner,
            path=f"pipelines/{pipeline_id}/source/{source.filename}",
            mime_type=source.mime_type,
            step=0,
        )
        await self._storage.write(artifact.path, data, artifact.mime_type)
        await self._store.register_artifact(artifact)

        pipeline = Pipeline(
            id=pipeline_id,
            owner=request.owner,
            source_artifact_id=artifact.id,
            quality=QualityPolicy(
                quality_tier=request.quality_tier or s.default_quality_tier,
                aspect_ratio=request.aspect_ratio or s.default_aspect_ratio,
            ),
            auto_retry_enabled=(
                s.auto_retry_enabled
                if request.auto_retry_enabled is None
                else request.auto_retry_enabled
            ),
        )
        created = await self._store.create(pipeline)
        await self._store.record_event(
            PipelineEvent(
                pipeline_id=pipeline_id,
                owner=request.owner,
                step=0,
                type="pipeline_created",
                message=f"pipeline created from {source.filename}",
                data={"source_artifact_id": artifact.id},
            )
        )
        logger.info("Created pipeline %s for %s", pipeline_id, request.owner)
        return created

    async def get_pipeline(self, pipeline_id: str, owner: str) -> Pipeline | ErrorResult:
        pipeline = await self._store.load(pipeline_id)
        if pipeline is None:
            return ErrorResult(
                code=ErrorCode.PIPELINE_NOT_FOUND.value, message=f"pipeline {pipeline_id} not found"
            )
        if pipeline.owner != owner:
            return ErrorResult(
                code=ErrorCode.AUTH_INVALID.value, message="pipeline is not owned by caller"
            )
        return pipeline

    # --- Steps ---

    async def run_space_analysis(self, pipeline_id: str, owner: str) -> Pipeline | ErrorResult:
        return await self._analyzer.run(pipeline_id, owner)

    async def run_step(
        self,
        pipeline_id: str,
        step: int,
        owner: str,
        params: StepParams | None = None,
    ) -> StepResult:
        """Run step 1-7 once; see ``StepExecutor.run_step``."""
        return await self._executor.run_step(pipeline_id, step, owner, params)

    async def approve_step(
        self,
        pipeline_id: str,
        owner: str,
        step: int,
        artifact_id: str | None = None,
        notes: str = "",
    ) -> Pipeline | ErrorResult:
        try:
            return await self._approvals.approve_step(pipeline_id, owner, step, artifact_id, notes)
        except StepError as e:
            return _as_error(e)

    async def continue_step(
        self, pipeline_id: str, owner: str, from_step: int | None = None
    ) -> Pipeline | ErrorResult:
        try:
            return await self._approvals.continue_step(pipeline_id, owner, from_step)
        except StepError as e:
            return _as_error(e)

    async def rollback_one_step(
        self, pipeline_id: str, owner: str, current_step: int | None = None
    ) -> RollbackResult | ErrorResult:
        try:
            return await self._rollback.rollback_one_step(pipeline_id, owner, current_step)
        except StepError as e:
            return _as_error(e)

    async def restart_step(
        self, pipeline_id: str, owner: str, current_step: int | None = None
    ) -> Pipeline | ErrorResult:
        """Move a step stuck in its running phase back to pending."""
        try:
            return await self._restart.restart_step(pipeline_id, owner, current_step)
        except StepError as e:
            return _as_error(e)

    # --- Retry queue ---

    async def drain_retries(self) -> list[StepResult]:
        """Run every pending retry task (crash recovery and worker mode)."""
        results = await self._retry_queue.drain()
        logger.info("Drained %d retry task(s)", len(results))
        return results

    async def wait_for_retries(self) -> None:
        await self._retry_queue.join()

    def close(self) -> None:
        self._store.close()
