# tests/unit/pipeline/test_retry_controller.py — v1
"""Tests for pipeline/retry_controller.py — accept, auto-retry, block."""

from __future__ import annotations

import random

import pytest

from stagegate.core.models import JudgeOutcome, JudgeReason, JudgeVerdict, Pipeline
from stagegate.pipeline.retry_controller import QARetryController


def _outcome(decision: str = "rejected", *codes: str) -> JudgeOutcome:
    return JudgeOutcome(
        verdict=JudgeVerdict(
            decision=decision,
            score=90 if decision == "approved" else 30,
            reasons=[JudgeReason(code=c, description=f"{c} seen") for c in codes],
        ),
        qa_executed=True,
    )


@pytest.fixture
def pipeline() -> Pipeline:
    return Pipeline(owner="alice", source_artifact_id="src", current_step=2, phase="style_running")


@pytest.fixture
def controller() -> QARetryController:
    return QARetryController(max_attempts=3, max_total_retries=10, rng=random.Random(7))


class TestAcceptance:
    def test_moves_to_review(self, controller, pipeline):
        controller.record_acceptance(pipeline, 2, "approved", [_outcome("approved")], ["a1"])
        state = pipeline.retry_state_for(2)
        assert pipeline.phase == "style_review"
        assert state.status == "qa_pass"
        assert state.last_judge_result.decision == "approved"
        assert state.attempts[0].artifact_ids == ["a1"]

    def test_partial_success_keeps_history(self, controller, pipeline):
        controller.record_rejection(pipeline, 2, [_outcome()], ["a0"], None)
        pipeline.move_to("style_running")
        controller.record_acceptance(
            pipeline, 2, "partial_success", [_outcome("approved"), _outcome()], ["a1", "a2"]
        )
        state = pipeline.retry_state_for(2)
        assert [a.attempt_number for a in state.attempts] == [1, 2]
        assert state.attempts[1].decision == "partial_success"
        assert state.artifact_ids == ["a0", "a1", "a2"]


class TestRejection:
    def test_auto_retry(self, controller, pipeline):
        delta = controller.plan_delta(pipeline, 2, [_outcome("rejected", "WALL_RECTIFICATION")])
        decision = controller.record_rejection(
            pipeline, 2, [_outcome("rejected", "WALL_RECTIFICATION")], ["a1"], delta
        )
        assert decision.auto_retry
        assert decision.attempt_count == 1
        assert decision.delta is delta
        assert delta.temperature == 0.6
        assert delta.categories == ["geometry"]
        assert pipeline.phase == "style_pending"
        assert pipeline.total_retry_count == 1
        state = pipeline.retry_state_for(2)
        assert state.status == "qa_fail"
        assert state.last_retry_delta == delta
        assert state.attempts[0].reason_codes == ["WALL_RECTIFICATION"]

    def test_blocks_at_max_attempts(self, controller, pipeline):
        for _ in range(2):
            assert controller.record_rejection(pipeline, 2, [_outcome()], ["a"], None).auto_retry
            pipeline.move_to("style_running")
        decision = controller.record_rejection(pipeline, 2, [_outcome()], ["a"], None)
        assert not decision.auto_retry
        assert decision.attempt_count == 3
        assert decision.delta is None
        assert pipeline.phase == "style_blocked"
        assert pipeline.retry_state_for(2).status == "blocked_for_human"
        assert pipeline.total_retry_count == 2

    def test_blocks_when_disabled(self, controller, pipeline):
        pipeline.auto_retry_enabled = False
        decision = controller.record_rejection(pipeline, 2, [_outcome()], ["a"], None)
        assert not decision.auto_retry
        assert pipeline.phase == "style_blocked"
        assert pipeline.total_retry_count == 0

    def test_blocks_when_not_allowed(self, controller, pipeline):
        decision = controller.record_rejection(
            pipeline, 2, [_outcome()], ["a"], None, allow_auto_retry=False
        )
        assert not decision.auto_retry
        assert pipeline.phase == "style_blocked"

    def test_global_budget(self, pipeline):
        controller = QARetryController(max_attempts=5, max_total_retries=2)
        pipeline.total_retry_count = 2
        decision = controller.record_rejection(pipeline, 2, [_outcome()], ["a"], None)
        assert not decision.auto_retry
        assert pipeline.phase == "style_blocked"

    def test_plan_delta_uses_next_attempt(self, controller, pipeline):
        controller.record_rejection(pipeline, 2, [_outcome()], ["a"], None)
        pipeline.move_to("style_running")
        delta = controller.plan_delta(pipeline, 2, [_outcome()])
        assert delta.temperature == 0.5


class TestManualReset:
    def test_resets_blocked_series(self, pipeline):
        controller = QARetryController(max_attempts=1)
        controller.record_rejection(pipeline, 2, [_outcome()], ["a"], None)
        controller.reset_for_manual_run(pipeline, 2)
        state = pipeline.retry_state_for(2)
        assert state.attempt_count == 0
        assert state.status == "pending"
        assert len(state.attempts) == 1

    def test_leaves_retrying_series(self, controller, pipeline):
        controller.record_rejection(pipeline, 2, [_outcome()], ["a"], None)
        controller.reset_for_manual_run(pipeline, 2)
        assert pipeline.retry_state_for(2).attempt_count == 1

    def test_no_state(self, controller, pipeline):
        controller.reset_for_manual_run(pipeline, 2)
        assert pipeline.retry_state_for(2) is None
