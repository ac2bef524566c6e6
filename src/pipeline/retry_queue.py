# src/pipeline/retry_queue.py — v1
"""Durable auto-retry queue.

Retry tasks are persisted in the store before they are scheduled, so a
process restart can replay them with ``drain()``. Each task carries the
pipeline's reset counter at enqueue time; a task whose counter no longer
matches (a rollback happened in between) is discarded without running.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from stagegate.core.models import PipelineEvent, RetryTask, StepParams, StepResult
from stagegate.store.base_store import BasePipelineStore

logger = logging.getLogger(__name__)

RunStepFn = Callable[..., Awaitable[StepResult]]


class RetryQueue:
    """Schedules retry continuations of ``run_step`` on the running event loop.

    Args:
        store: Pipeline store holding the task rows.
        run_step: The executor's ``run_step`` (attached after construction).
        autostart: Schedule tasks immediately on submit. With ``False`` tasks
            only run on ``drain()``.
    """

    def __init__(
        self,
        store: BasePipelineStore,
        run_step: RunStepFn | None = None,
        autostart: bool = True,
    ) -> None:
        self._store = store
        self._run_step = run_step
        self._autostart = autostart
        self._inflight: set[asyncio.Task] = set()

    def attach(self, run_step: RunStepFn) -> None:
        self._run_step = run_step

    async def submit(self, task: RetryTask) -> None:
        """Persist ``task`` and schedule it."""
        await self._store.enqueue_retry_task(task)
        logger.info(
            "Queued retry %s for step %d (attempt %d)", task.id, task.step, task.attempt
        )
        if self._autostart:
            self._spawn(task.id)

    def _spawn(self, task_id: str) -> None:
        handle = asyncio.get_running_loop().create_task(self.process(task_id))
        self._inflight.add(handle)
        handle.add_done_callback(self._inflight.discard)

    async def process(self, task_id: str) -> StepResult | None:
        """Claim and run one task. Returns None if it was claimed elsewhere or discarded."""
        if self._run_step is None:
            raise RuntimeError("RetryQueue has no run_step attached")

        task = await self._store.claim_retry_task(task_id)
        if task is None:
            logger.debug("Retry task %s already claimed", task_id)
            return None

        pipeline = await self._store.load(task.pipeline_id)
        if pipeline is None or pipeline.reset_counter != task.reset_counter:
            current = pipeline.reset_counter if pipeline else None
            await self._store.finish_retry_task(
                task.id, "discarded", f"reset counter {task.reset_counter} -> {current}"
            )
            if pipeline is not None:
                await self._store.record_event(
                    PipelineEvent(
                        pipeline_id=task.pipeline_id,
                        owner=task.owner,
                        step=task.step,
                        type="retry_discarded",
                        message=f"retry {task.id} discarded after rollback",
                        data={"task_reset_counter": task.reset_counter, "reset_counter": current},
                    )
                )
            logger.info("Discarded stale retry task %s", task.id)
            return None

        params = StepParams(
            output_count=task.output_count,
            retry_delta=task.retry_delta,
            retry_task_id=task.id,
        )
        result = await self._run_step(
            task.pipeline_id, task.step, task.owner, params, fence=task.reset_counter
        )
        status = "failed" if result.kind == "error" else "done"
        await self._store.finish_retry_task(task.id, status, result.kind)
        return result

    async def drain(self) -> list[StepResult]:
        """Run every pending task, including those queued while draining."""
        results: list[StepResult] = []
        while True:
            pending = await self._store.list_retry_tasks(status="pending")
            if not pending:
                return results
            for task in pending:
                result = await self.process(task.id)
                if result is not None:
                    results.append(result)

    async def join(self) -> None:
        """Wait for every scheduled task, including tasks they schedule."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
