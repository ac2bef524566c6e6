# src/pipeline/retry_controller.py — v1
"""QA retry controller: accept, auto-retry or escalate after a judged run.

The controller mutates a draft Pipeline inside the executor's
compare-and-swap loop. Everything it decides is a pure function of the
draft and of a delta computed once beforehand, so re-applying it after a
lost race gives a consistent result.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass

from stagegate.core import phases
from stagegate.core.models import (
    JudgeOutcome,
    JudgeVerdict,
    Pipeline,
    RetryAttemptSummary,
    RetryDelta,
    StepDecision,
    StepRetryState,
    step_key,
)
from stagegate.pipeline.retry_delta import build_retry_delta

logger = logging.getLogger(__name__)


@dataclass
class RetryDecision:
    auto_retry: bool
    attempt_count: int
    max_attempts: int
    delta: RetryDelta | None
    verdict: JudgeVerdict | None
    reason: str = ""


def _first_verdict(outcomes: list[JudgeOutcome], decision: str | None = None) -> JudgeVerdict | None:
    for outcome in outcomes:
        if outcome.verdict is not None and (decision is None or outcome.decision == decision):
            return outcome.verdict
    return None


def _reason_text(outcomes: list[JudgeOutcome]) -> str:
    return "; ".join(o.reason_text for o in outcomes if o.reason_text)


class QARetryController:
    """Retry policy for the retry-controlled steps (1-3).

    Args:
        max_attempts: Consecutive rejections before a step is blocked.
        max_total_retries: Auto-retry budget shared by all steps of a pipeline.
        rng: Random source for retry seeds.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        max_total_retries: int = 20,
        rng: random.Random | None = None,
    ) -> None:
        self._max_attempts = max_attempts
        self._max_total_retries = max_total_retries
        self._rng = rng or random.Random()

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def _state(self, pipeline: Pipeline, step: int) -> StepRetryState:
        key = step_key(step)
        state = pipeline.step_retry_state.get(key)
        if state is None:
            state = StepRetryState(max_attempts=self._max_attempts)
            pipeline.step_retry_state[key] = state
        return state

    def plan_delta(self, pipeline: Pipeline, step: int, outcomes: list[JudgeOutcome]) -> RetryDelta:
        """Delta for the attempt following the current rejection."""
        state = pipeline.retry_state_for(step)
        next_attempt = (state.attempt_count if state else 0) + 1
        return build_retry_delta(outcomes, next_attempt, self._rng)

    def reset_for_manual_run(self, pipeline: Pipeline, step: int) -> None:
        """Start a fresh rejection series; history is kept."""
        state = pipeline.retry_state_for(step)
        if state is not None and state.status == "blocked_for_human":
            state.attempt_count = 0
            state.status = "pending"

    def record_acceptance(
        self,
        pipeline: Pipeline,
        step: int,
        decision: StepDecision,
        outcomes: list[JudgeOutcome],
        artifact_ids: list[str],
    ) -> None:
        """Mark the step ``qa_pass`` and move it to review, keeping history."""
        state = self._state(pipeline, step)
        state.status = "qa_pass"
        state.last_judge_result = _first_verdict(outcomes, "approved")
        state.attempts.append(
            RetryAttemptSummary(
                attempt_number=len(state.attempts) + 1,
                artifact_ids=artifact_ids,
                decision=decision,
                reason=_reason_text(outcomes),
            )
        )
        pipeline.move_to(phases.review_phase(step))

    def record_rejection(
        self,
        pipeline: Pipeline,
        step: int,
        outcomes: list[JudgeOutcome],
        artifact_ids: list[str],
        delta: RetryDelta | None,
        allow_auto_retry: bool = True,
    ) -> RetryDecision:
        """Count a full rejection and either schedule a retry or block.

        Auto-retry requires auto-retry to be enabled on the pipeline, the
        step to be under its attempt limit and the pipeline to be under its
        global retry budget.
        """
        state = self._state(pipeline, step)
        state.attempt_count += 1
        state.max_attempts = self._max_attempts
        verdict = _first_verdict(outcomes)
        state.last_judge_result = verdict
        state.last_retry_delta = delta
        reason = _reason_text(outcomes)
        codes = [r.code for o in outcomes for r in o.reasons]
        state.attempts.append(
            RetryAttemptSummary(
                attempt_number=len(state.attempts) + 1,
                artifact_ids=artifact_ids,
                decision="rejected",
                reason=reason,
                reason_codes=codes,
                retry_delta=delta,
            )
        )

        auto_retry = (
            allow_auto_retry
            and pipeline.auto_retry_enabled
            and state.attempt_count < state.max_attempts
            and pipeline.total_retry_count < self._max_total_retries
        )
        if auto_retry:
            state.status = "qa_fail"
            pipeline.total_retry_count += 1
            pipeline.move_to(phases.pending_phase(step))
        else:
            state.status = "blocked_for_human"
            pipeline.move_to(phases.blocked_phase(step))

        return RetryDecision(
            auto_retry=auto_retry,
            attempt_count=state.attempt_count,
            max_attempts=state.max_attempts,
            delta=delta if auto_retry else None,
            verdict=verdict,
            reason=reason,
        )
