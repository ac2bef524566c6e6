# src/pipeline/executor.py — v1
"""Step executor: run one generate-and-judge pass of steps 1-7.

Flow of ``run_step``:
  1. Check ownership, step number, allowed start phase and cross-step
     approval, then move the phase to the step's running token. That
     compare-and-swap is the single-flight lock.
  2. Resolve the input artifact and camera pose, generate each candidate,
     store it, and judge it.
  3. Aggregate the candidate decisions and commit outputs and retry state
     in one write, fenced by the reset counter observed at start.
  4. Hand rejected runs to the retry controller (steps 1-3), the panorama
     loop (step 4) or straight to human review (steps 5-7).

Any failure resets the running phase back to pending, deletes the
artifacts the run generated, persists ``last_error`` and returns an
``ErrorResult``; nothing is raised to the caller. Progress events are held
until the run commits, so a fenced-off run leaves none behind.
"""

from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from stagegate.config.steps import StepSpec, effective_quality, get_step
from stagegate.core import phases
from stagegate.core.aggregator import aggregate, is_reviewable
from stagegate.core.errors import (
    ErrorCode,
    StaleResultDiscarded,
    StepError,
    VersionConflict,
)
from stagegate.core.models import (
    Artifact,
    AttemptRecord,
    AutoRetryTriggered,
    BlockedForHuman,
    CandidateSummary,
    Completed,
    ErrorResult,
    JudgeResultRecord,
    Notification,
    Pipeline,
    PipelineEvent,
    RetryDelta,
    RetryTask,
    SpaceOutput,
    StepOutput,
    StepParams,
    StepResult,
    new_id,
    step_key,
)
from stagegate.gateway.judge_prompts import JudgeContext
from stagegate.llm.models import ImageInput
from stagegate.logging.context import clear_context, set_pipeline_context, set_step_context
from stagegate.pipeline.camera import derive_camera_pose
from stagegate.pipeline.candidates import CandidateRun, CandidateTarget
from stagegate.pipeline.inputs import resolve_input
from stagegate.pipeline.retry_controller import RetryDecision
from stagegate.pipeline.retry_delta import BASE_TEMPERATURE, apply_delta

if TYPE_CHECKING:
    from stagegate.gateway.generation import GenerationGateway
    from stagegate.gateway.judge import QAJudgeGateway
    from stagegate.pipeline.panorama_loop import PanoramaRetryLoop
    from stagegate.pipeline.retry_controller import QARetryController
    from stagegate.pipeline.retry_queue import RetryQueue
    from stagegate.storage.base_object_storage import BaseObjectStorage
    from stagegate.store.base_store import BasePipelineStore

logger = logging.getLogger(__name__)

SPACE_OUTPUT_KINDS = {5: "render", 6: "panorama", 7: "merge"}


def artifact_path(pipeline_id: str, step: int, artifact_id: str, mime_type: str) -> str:
    """Object storage path of a generated artifact."""
    ext = mimetypes.guess_extension(mime_type) or ".bin"
    return f"pipelines/{pipeline_id}/{step_key(step)}/{artifact_id}{ext}"


@dataclass
class _Invocation:
    """Mutable bookkeeping of one run_step call."""

    pipeline_id: str
    owner: str
    step: int
    params: StepParams
    fence: int | None = None
    pipeline: Pipeline | None = None
    locked: bool = False
    reset_counter: int = 0
    committed: bool = False
    new_artifacts: list[Artifact] = field(default_factory=list)
    events: list[PipelineEvent] = field(default_factory=list)

    @property
    def is_retry(self) -> bool:
        return self.fence is not None


class StepExecutor:
    """Runs ``RunStep(pipeline_id, step, params)`` for steps 1-7.

    Args:
        store: Pipeline store.
        storage: Object storage for generated images.
        generation: Image generation gateway.
        judge: QA judge gateway.
        controller: Retry policy for steps 1-3.
        panorama_loop: Bounded retry loop for step 4.
        retry_queue: Dispatcher for auto-retry tasks (attached later by the facade).
        max_output_count: Upper bound of candidates per invocation.
        cas_max_retries: Compare-and-swap attempts per write.
    """

    def __init__(
        self,
        store: BasePipelineStore,
        storage: BaseObjectStorage,
        generation: GenerationGateway,
        judge: QAJudgeGateway,
        controller: QARetryController,
        panorama_loop: PanoramaRetryLoop,
        retry_queue: RetryQueue | None = None,
        max_output_count: int = 4,
        cas_max_retries: int = 5,
    ) -> None:
        self._store = store
        self._storage = storage
        self._generation = generation
        self._judge = judge
        self._controller = controller
        self._panorama_loop = panorama_loop
        self._retry_queue = retry_queue
        self._max_output_count = max_output_count
        self._cas_max_retries = cas_max_retries

    def attach_retry_queue(self, retry_queue: RetryQueue) -> None:
        self._retry_queue = retry_queue

    # --- Public operation ---

    async def run_step(
        self,
        pipeline_id: str,
        step: int,
        owner: str,
        params: StepParams | None = None,
        fence: int | None = None,
    ) -> StepResult:
        """Run one step. ``fence`` is set only by retry continuations."""
        inv = _Invocation(
            pipeline_id=pipeline_id,
            owner=owner,
            step=step,
            params=params or StepParams(),
            fence=fence,
        )
        set_pipeline_context(pipeline_id, owner)
        set_step_context(step)
        try:
            return await self._run(inv)
        except StepError as e:
            return await self._fail(inv, e)
        except Exception as e:
            logger.exception("Unhandled error in step %d of %s", step, pipeline_id)
            return await self._fail(inv, StepError(ErrorCode.UNHANDLED_ERROR, str(e) or type(e).__name__))
        finally:
            clear_context()

    # --- Preconditions and lock ---

    def _check_start(self, inv: _Invocation, pipeline: Pipeline) -> None:
        if inv.fence is not None and pipeline.reset_counter != inv.fence:
            raise StaleResultDiscarded(pipeline.id, inv.fence, pipeline.reset_counter)

        step = inv.step
        if inv.is_retry:
            state = pipeline.retry_state_for(step)
            if pipeline.phase != phases.pending_phase(step) or state is None or state.status != "qa_fail":
                raise StepError(
                    ErrorCode.PHASE_MISMATCH,
                    f"retry of step {step} requires {phases.pending_phase(step)!r} "
                    f"with a qa_fail retry state (phase is {pipeline.phase!r})",
                    details={"phase": pipeline.phase, "step": step},
                )
        elif pipeline.phase not in phases.run_start_phases(step):
            raise StepError(
                ErrorCode.PHASE_MISMATCH,
                f"step {step} cannot start from phase {pipeline.phase!r}",
                details={
                    "phase": pipeline.phase,
                    "step": step,
                    "allowed": sorted(phases.run_start_phases(step)),
                },
            )

        if step == 2:
            step1 = pipeline.output_for(1)
            if step1 is None or not step1.manual_approved:
                raise StepError(
                    ErrorCode.PHASE_MISMATCH,
                    "step 2 requires a manually approved step 1 output",
                    details={"step": step},
                )

    async def _acquire(self, inv: _Invocation) -> Pipeline:
        """Validate preconditions and move the phase to running."""
        for _ in range(self._cas_max_retries):
            pipeline = await self._store.load(inv.pipeline_id)
            if pipeline is None:
                raise StepError(
                    ErrorCode.PIPELINE_NOT_FOUND, f"pipeline {inv.pipeline_id} not found"
                )
            if pipeline.owner != inv.owner:
                raise StepError(ErrorCode.AUTH_INVALID, "pipeline is not owned by caller")
            inv.pipeline = pipeline
            self._check_start(inv, pipeline)

            draft = pipeline.model_copy(deep=True)
            if not inv.is_retry:
                self._controller.reset_for_manual_run(draft, inv.step)
            draft.move_to(phases.running_phase(inv.step))
            draft.last_error = None
            if await self._store.compare_and_swap(pipeline.id, pipeline.version, draft):
                inv.locked = True
                inv.reset_counter = draft.reset_counter
                inv.pipeline = draft
                return draft
            logger.debug("Lost race acquiring step %d of %s; rechecking", inv.step, inv.pipeline_id)
        raise StepError(
            ErrorCode.PERSISTENCE_WRITE_ERROR,
            f"could not acquire step {inv.step} after {self._cas_max_retries} attempts",
        )

    # --- Main flow ---

    async def _run(self, inv: _Invocation) -> StepResult:
        if inv.step == 0:
            raise StepError(
                ErrorCode.PHASE_MISMATCH,
                "step 0 is run by the space analysis, not by run_step",
                details={"step": 0},
            )
        if not 1 <= inv.step <= 7:
            raise StepError(ErrorCode.INVALID_REQUEST, f"unknown step {inv.step}")

        pipeline = await self._acquire(inv)
        spec = get_step(inv.step)
        self._buffer_event(inv, "step_start", f"step {inv.step} ({spec.name}) started",
                           {"retry_task_id": inv.params.retry_task_id})

        targets = self._build_targets(pipeline, spec, inv.params)
        attempt_index = await self._store.next_attempt_index(pipeline.id, inv.step)
        set_step_context(inv.step, attempt_index)

        delta = inv.params.retry_delta
        prompt = apply_delta(self._base_prompt(spec, inv.params), delta)
        temperature = delta.temperature if delta else BASE_TEMPERATURE
        seed = delta.seed if delta else None

        inputs = await self._load_images(targets)

        async def produce(
            target: CandidateTarget, attempt: int, text: str, temp: float, seed_: int | None
        ) -> CandidateRun:
            return await self._produce(inv, spec, pipeline, target, inputs, attempt, text, temp, seed_)

        if spec.retry_regime == "panorama_loop":
            loop_result = await self._panorama_loop.run(
                targets, produce, prompt, attempt_index, temperature, seed
            )
            final, runs = loop_result.final, loop_result.runs
        else:
            final = [await produce(t, attempt_index, prompt, temperature, seed) for t in targets]
            runs = list(final)

        decision = aggregate([r.outcome.decision for r in final])
        logger.info(
            "Step %d aggregate: %s (%d candidates)", inv.step, decision, len(final)
        )

        retry_delta: RetryDelta | None = None
        if decision == "rejected" and spec.retry_regime == "controller":
            retry_delta = self._controller.plan_delta(pipeline, inv.step, [r.outcome for r in final])

        committed, retry = await self._commit(inv, spec, final, runs, decision, retry_delta)
        return await self._finish(inv, committed, final, decision, retry)

    def _build_targets(
        self, pipeline: Pipeline, spec: StepSpec, params: StepParams
    ) -> list[CandidateTarget]:
        if spec.single_output:
            count = 1
        else:
            count = max(1, min(params.output_count, self._max_output_count))

        spaces: list[tuple[str | None, str | None]] = [(params.space_id, None)]
        if spec.per_space and params.space_id is None and pipeline.space_analysis:
            spaces = [(s.id, s.name) for s in pipeline.space_analysis.spaces] or spaces
        elif params.space_id and pipeline.space_analysis:
            names = {s.id: s.name for s in pipeline.space_analysis.spaces}
            spaces = [(params.space_id, names.get(params.space_id))]

        targets: list[CandidateTarget] = []
        for space_id, space_name in spaces:
            resolved = resolve_input(pipeline, spec.number, space_id)
            position = forward = None
            if spec.uses_camera_pose:
                pose = derive_camera_pose(
                    pipeline, spec.number, params.camera_position, params.forward_direction, space_id
                )
                position, forward = pose.position, pose.forward
            references = tuple(resolved.reference_artifact_ids + list(params.reference_artifact_ids))
            for _ in range(count):
                targets.append(
                    CandidateTarget(
                        candidate_index=len(targets),
                        input_artifact_id=resolved.artifact_id,
                        reference_artifact_ids=references,
                        space_id=space_id,
                        space_name=space_name,
                        camera_position=position,
                        forward_direction=forward,
                        camera_angle=params.camera_angle,
                    )
                )
        return targets

    def _base_prompt(self, spec: StepSpec, params: StepParams) -> str:
        return params.prompt or spec.base_prompt

    async def _load_images(self, targets: list[CandidateTarget]) -> dict[str, ImageInput]:
        """Read every input and reference image once."""
        images: dict[str, ImageInput] = {}
        for target in targets:
            for artifact_id in (target.input_artifact_id, *target.reference_artifact_ids):
                if artifact_id in images:
                    continue
                artifact = await self._store.get_artifact(artifact_id)
                if artifact is None:
                    raise StepError(
                        ErrorCode.INPUT_IMAGE_MISSING,
                        f"input artifact {artifact_id} is not registered",
                        details={"artifact_id": artifact_id},
                    )
                try:
                    data = await self._storage.read(artifact.path)
                except (OSError, KeyError) as e:
                    raise StepError(
                        ErrorCode.INPUT_IMAGE_MISSING,
                        f"input artifact {artifact_id} could not be read: {e}",
                        details={"artifact_id": artifact_id, "path": artifact.path},
                    ) from e
                images[artifact_id] = ImageInput(
                    data=data, media_type=artifact.mime_type, source_id=artifact_id
                )
        return images

    async def _produce(
        self,
        inv: _Invocation,
        spec: StepSpec,
        pipeline: Pipeline,
        target: CandidateTarget,
        inputs: dict[str, ImageInput],
        attempt_index: int,
        prompt: str,
        temperature: float,
        seed: int | None,
    ) -> CandidateRun:
        """Generate, store and judge one candidate."""
        judge_type = spec.judge_type
        if judge_type is None:
            raise StepError(
                ErrorCode.INVALID_REQUEST,
                f"step {spec.number} has no judge configured",
                details={"step": spec.number},
            )
        full_prompt = prompt
        if target.space_name:
            full_prompt += f"\n\nSpace: {target.space_name}."
        if target.camera_position:
            full_prompt += (
                f"\nCamera position: {target.camera_position}."
                f"\nCamera facing: {target.forward_direction}."
            )

        quality = effective_quality(spec.number, pipeline.quality)
        primary = inputs[target.input_artifact_id]
        references = [inputs[a] for a in target.reference_artifact_ids]
        image = await self._generation.generate(
            prompt=full_prompt,
            reference_images=[primary, *references],
            quality_tier=quality.quality_tier,
            aspect_ratio=quality.aspect_ratio,
            temperature=temperature,
            seed=seed,
        )

        artifact_id = new_id()
        artifact = Artifact(
            id=artifact_id,
            pipeline_id=inv.pipeline_id,
            owner=inv.owner,
            path=artifact_path(inv.pipeline_id, spec.number, artifact_id, image.mime_type),
            mime_type=image.mime_type,
            step=spec.number,
        )
        inv.new_artifacts.append(artifact)
        await self._storage.write(artifact.path, image.data, image.mime_type)
        await self._store.register_artifact(artifact)
        self._buffer_event(
            inv, "generation_complete", f"candidate {target.candidate_index} generated",
            {"artifact_id": artifact_id, "attempt_index": attempt_index},
        )

        outcome = await self._judge.judge(
            candidate=ImageInput(data=image.data, media_type=image.mime_type, source_id=artifact_id),
            judge_type=judge_type,
            context=JudgeContext(
                step=spec.number,
                step_name=spec.name,
                generation_prompt=full_prompt,
                space_name=target.space_name,
                camera_position=target.camera_position,
                forward_direction=target.forward_direction,
            ),
            references=[primary, *references],
        )
        self._buffer_event(
            inv, "qa_complete", f"candidate {target.candidate_index}: {outcome.decision}",
            {"artifact_id": artifact_id, "score": outcome.score, "qa_executed": outcome.qa_executed},
        )

        reason_codes = [r.code for r in outcome.reasons]
        summary = CandidateSummary(
            artifact_id=artifact_id,
            decision=outcome.decision,
            reason=outcome.reason_text,
            reason_codes=reason_codes,
            score=outcome.score,
            qa_executed=outcome.qa_executed,
            prompt=full_prompt,
            camera_angle=target.camera_angle,
            space_id=target.space_id,
        )
        attempt = AttemptRecord(
            pipeline_id=inv.pipeline_id,
            step=spec.number,
            attempt_index=attempt_index,
            candidate_index=target.candidate_index,
            artifact_id=artifact_id,
            prompt=full_prompt,
            model=image.model or self._generation.model_name,
            decision=outcome.decision,
            score=outcome.score,
            reasons=outcome.reasons,
            qa_executed=outcome.qa_executed,
        )
        judge_record = JudgeResultRecord(
            pipeline_id=inv.pipeline_id,
            step=spec.number,
            attempt_index=attempt_index,
            candidate_index=target.candidate_index,
            artifact_id=artifact_id,
            judge_type=judge_type,
            decision=outcome.decision,
            score=outcome.score,
            reasons=outcome.reasons,
            qa_executed=outcome.qa_executed,
            model=outcome.model,
            raw_output=outcome.raw_output,
        )
        space_output = None
        if spec.per_space and target.space_id is not None:
            space_output = SpaceOutput(
                pipeline_id=inv.pipeline_id,
                step=spec.number,
                space_id=target.space_id,
                kind=SPACE_OUTPUT_KINDS[spec.number],  # type: ignore[arg-type]
                artifact_id=artifact_id,
                decision=outcome.decision,
            )
        return CandidateRun(
            target=target,
            attempt_index=attempt_index,
            artifact=artifact,
            outcome=outcome,
            summary=summary,
            attempt=attempt,
            judge_record=judge_record,
            space_output=space_output,
        )

    # --- Commit ---

    async def _commit(
        self,
        inv: _Invocation,
        spec: StepSpec,
        final: list[CandidateRun],
        runs: list[CandidateRun],
        decision: str,
        retry_delta: RetryDelta | None,
    ) -> tuple[Pipeline, RetryDecision | None]:
        """Write outputs and retry state in one fenced compare-and-swap."""
        outcomes = [r.outcome for r in final]
        artifact_ids = [r.artifact.id for r in final]
        first = final[0].target
        holder: dict[str, RetryDecision | None] = {"retry": None}

        def mutate(draft: Pipeline) -> None:
            if draft.reset_counter != inv.reset_counter or draft.phase != phases.running_phase(inv.step):
                raise StaleResultDiscarded(draft.id, inv.reset_counter, draft.reset_counter)

            draft.step_outputs[step_key(inv.step)] = StepOutput(
                step=inv.step,
                candidates=[r.summary for r in final],
                decision=decision,  # type: ignore[arg-type]
                camera_position=first.camera_position,
                forward_direction=first.forward_direction,
            )
            draft.last_error = None
            holder["retry"] = None
            if is_reviewable(decision):  # type: ignore[arg-type]
                self._controller.record_acceptance(
                    draft, inv.step, decision, outcomes, artifact_ids  # type: ignore[arg-type]
                )
            else:
                holder["retry"] = self._controller.record_rejection(
                    draft,
                    inv.step,
                    outcomes,
                    artifact_ids,
                    retry_delta,
                    allow_auto_retry=spec.retry_regime == "controller",
                )

        try:
            committed = await self._store.update(inv.pipeline_id, mutate, self._cas_max_retries)
        except StaleResultDiscarded:
            inv.locked = False
            raise
        except VersionConflict as e:
            raise StepError(ErrorCode.PERSISTENCE_WRITE_ERROR, str(e)) from e
        inv.locked = False
        inv.committed = True

        await self._flush_events(inv)
        for run in runs:
            await self._store.record_attempt(run.attempt)
            await self._store.record_judge_result(run.judge_record)
            if run.space_output is not None:
                await self._store.record_space_output(run.space_output)
        return committed, holder["retry"]

    async def _discard_artifacts(self, inv: _Invocation) -> None:
        """Delete artifacts written by a run that never committed its outputs."""
        if not inv.new_artifacts:
            return
        for artifact in inv.new_artifacts:
            try:
                await self._storage.delete(artifact.path)
                await self._store.delete_artifact(artifact.id)
            except Exception as e:
                logger.warning("Could not delete uncommitted artifact %s: %s", artifact.id, e)
        logger.info(
            "Discarded %d uncommitted artifact(s) of step %d",
            len(inv.new_artifacts), inv.step,
        )
        inv.new_artifacts.clear()

    # --- Outcome ---

    async def _finish(
        self,
        inv: _Invocation,
        pipeline: Pipeline,
        final: list[CandidateRun],
        decision: str,
        retry: RetryDecision | None,
    ) -> StepResult:
        step = inv.step
        if retry is None:
            await self._event(inv, "step_complete", f"step {step} {decision}",
                              {"decision": decision, "phase": pipeline.phase})
            return Completed(
                step=step,
                decision=decision,  # type: ignore[arg-type]
                outputs=[r.summary for r in final],
                phase=pipeline.phase,
            )

        if retry.auto_retry and retry.delta is not None:
            task = RetryTask(
                pipeline_id=pipeline.id,
                owner=inv.owner,
                step=step,
                attempt=retry.attempt_count + 1,
                reset_counter=inv.reset_counter,
                retry_delta=retry.delta,
                output_count=len(final),
            )
            if self._retry_queue is None:
                await self._store.enqueue_retry_task(task)
            else:
                await self._retry_queue.submit(task)
            await self._event(
                inv, "auto_retry_queued",
                f"step {step} rejected, retry {retry.attempt_count + 1}/{retry.max_attempts} queued",
                {"task_id": task.id, "changes": retry.delta.changes_made},
            )
            return AutoRetryTriggered(
                step=step,
                attempt=retry.attempt_count + 1,
                max_attempts=retry.max_attempts,
                task_id=task.id,
                reason=retry.reason,
            )

        await self._store.record_notification(
            Notification(
                owner=inv.owner,
                pipeline_id=pipeline.id,
                step=step,
                type="qa_blocked",
                title=f"Step {step} needs review",
                message=retry.reason or "All candidates were rejected by QA",
            )
        )
        await self._event(inv, "qa_fail_blocked", f"step {step} blocked for human review",
                          {"attempt_count": retry.attempt_count})
        return BlockedForHuman(
            step=step,
            attempt_count=retry.attempt_count,
            verdict=retry.verdict,
            reason=retry.reason,
        )

    # --- Failure ---

    async def _fail(self, inv: _Invocation, error: StepError) -> ErrorResult:
        logger.warning("Step %d of %s failed: %s", inv.step, inv.pipeline_id, error.last_error)

        fenced_off = isinstance(error, StaleResultDiscarded)
        if inv.locked:
            step = inv.step
            observed = {"fenced_off": False}

            def release(draft: Pipeline) -> None:
                observed["fenced_off"] = draft.reset_counter != inv.reset_counter
                if observed["fenced_off"]:
                    return
                if draft.phase == phases.running_phase(step):
                    draft.move_to(phases.pending_phase(step))
                draft.last_error = error.last_error

            try:
                await self._store.update(inv.pipeline_id, release, self._cas_max_retries)
                inv.locked = False
                fenced_off = fenced_off or observed["fenced_off"]
            except (StepError, VersionConflict) as e:
                logger.error("Could not release step %d of %s: %s", step, inv.pipeline_id, e)

        if not inv.committed:
            await self._discard_artifacts(inv)

        if fenced_off:
            # Events of a fenced-off run must not outlive the reset.
            inv.events.clear()
        elif inv.pipeline is not None and inv.pipeline.owner == inv.owner:
            try:
                await self._flush_events(inv)
                await self._event(inv, "step_error", error.last_error,
                                  {"code": error.code.value, "retryable": error.retryable})
            except StepError as e:
                logger.error("Could not record step_error event: %s", e)

        return ErrorResult(
            code=error.code.value,
            message=error.message,
            retryable=error.retryable,
            details=error.details,
        )

    # --- Events ---

    def _new_event(
        self, inv: _Invocation, type_: str, message: str, data: dict | None = None
    ) -> PipelineEvent:
        return PipelineEvent(
            pipeline_id=inv.pipeline_id,
            owner=inv.owner,
            step=inv.step,
            type=type_,
            message=message,
            data={k: v for k, v in (data or {}).items() if v is not None},
        )

    def _buffer_event(
        self, inv: _Invocation, type_: str, message: str, data: dict | None = None
    ) -> None:
        """Hold an in-flight event until the run commits or fails unfenced."""
        inv.events.append(self._new_event(inv, type_, message, data))

    async def _flush_events(self, inv: _Invocation) -> None:
        while inv.events:
            await self._store.record_event(inv.events.pop(0))

    async def _event(self, inv: _Invocation, type_: str, message: str, data: dict | None = None) -> None:
        await self._store.record_event(self._new_event(inv, type_, message, data))
