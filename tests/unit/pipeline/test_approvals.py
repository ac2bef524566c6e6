# tests/unit/pipeline/test_approvals.py — v1
"""Tests for pipeline/approvals.py — manual approval and continuation."""

from __future__ import annotations

import pytest


class TestApproveStep:
    @pytest.mark.asyncio
    async def test_approve_then_continue(self, orchestrator, store, make_pipeline):
        pipeline = await make_pipeline("top_down_3d_pending")
        run = await orchestrator.run_step(pipeline.id, 1, "alice")

        approved = await orchestrator.approve_step(pipeline.id, "alice", 1, notes="looks right")
        assert approved.phase == "top_down_3d_approved"
        output = approved.output_for(1)
        assert output.manual_approved
        assert output.selected_artifact_id == run.outputs[0].artifact_id
        assert output.approved_at is not None
        assert output.notes["approval"] == "looks right"

        continued = await orchestrator.continue_step(pipeline.id, "alice")
        assert continued.phase == "style_pending"
        assert continued.current_step == 2

        events = [e.type for e in await store.list_events(pipeline.id, step=1)]
        assert "manual_approval" in events
        assert [e.type for e in await store.list_events(pipeline.id, step=2)] == ["step_continue"]

        step2 = await orchestrator.run_step(pipeline.id, 2, "alice")
        assert step2.kind == "completed"

    @pytest.mark.asyncio
    async def test_select_candidate(self, orchestrator, make_pipeline, seed_output):
        pipeline = await make_pipeline("camera_renders_review")
        ids = await seed_output(pipeline.id, 3, count=2, manual_approved=False)
        approved = await orchestrator.approve_step(pipeline.id, "alice", 3, artifact_id=ids[1])
        assert approved.output_for(3).selected_artifact_id == ids[1]

    @pytest.mark.asyncio
    async def test_unknown_candidate(self, orchestrator, make_pipeline, seed_output):
        pipeline = await make_pipeline("camera_renders_review")
        await seed_output(pipeline.id, 3, manual_approved=False)
        result = await orchestrator.approve_step(pipeline.id, "alice", 3, artifact_id="nope")
        assert result.kind == "error"
        assert result.code == "INVALID_REQUEST"

    @pytest.mark.asyncio
    async def test_blocked_step_can_be_overridden(
        self, orchestrator, judge_client, make_pipeline, verdict
    ):
        pipeline = await make_pipeline("top_down_3d_pending", auto_retry_enabled=False)
        judge_client.script(verdict("rejected"))
        blocked = await orchestrator.run_step(pipeline.id, 1, "alice")
        assert blocked.kind == "blocked_for_human"

        approved = await orchestrator.approve_step(pipeline.id, "alice", 1)
        assert approved.phase == "top_down_3d_approved"
        assert approved.output_for(1).decision == "rejected"
        assert approved.output_for(1).manual_approved

    @pytest.mark.asyncio
    async def test_wrong_phase(self, orchestrator, store, make_pipeline, seed_output):
        pipeline = await make_pipeline("top_down_3d_pending")
        await seed_output(pipeline.id, 1, manual_approved=False)
        result = await orchestrator.approve_step(pipeline.id, "alice", 1)
        assert result.code == "PHASE_MISMATCH"
        assert result.details["phase"] == "top_down_3d_pending"
        assert not (await store.load(pipeline.id)).output_for(1).manual_approved

    @pytest.mark.asyncio
    async def test_no_output(self, orchestrator, make_pipeline):
        pipeline = await make_pipeline("style_review")
        result = await orchestrator.approve_step(pipeline.id, "alice", 2)
        assert result.code == "PHASE_MISMATCH"

    @pytest.mark.parametrize("step", [0, 8])
    @pytest.mark.asyncio
    async def test_invalid_step(self, orchestrator, make_pipeline, step):
        pipeline = await make_pipeline("space_analysis_complete")
        result = await orchestrator.approve_step(pipeline.id, "alice", step)
        assert result.code == "INVALID_REQUEST"

    @pytest.mark.asyncio
    async def test_wrong_owner(self, orchestrator, make_pipeline, seed_output):
        pipeline = await make_pipeline("style_review")
        await seed_output(pipeline.id, 2, manual_approved=False)
        result = await orchestrator.approve_step(pipeline.id, "mallory", 2)
        assert result.code == "AUTH_INVALID"

    @pytest.mark.asyncio
    async def test_unknown_pipeline(self, orchestrator):
        result = await orchestrator.approve_step("missing", "alice", 1)
        assert result.code == "PIPELINE_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_final_step_completes(self, orchestrator, make_pipeline, seed_output):
        pipeline = await make_pipeline("merging_review")
        await seed_output(pipeline.id, 7, manual_approved=False)
        approved = await orchestrator.approve_step(pipeline.id, "alice", 7)
        assert approved.phase == "completed"

        result = await orchestrator.continue_step(pipeline.id, "alice")
        assert result.code == "PHASE_MISMATCH"


class TestContinueStep:
    @pytest.mark.asyncio
    async def test_after_space_analysis(self, orchestrator, make_pipeline):
        pipeline = await make_pipeline("space_analysis_complete")
        continued = await orchestrator.continue_step(pipeline.id, "alice", from_step=0)
        assert continued.phase == "top_down_3d_pending"

    @pytest.mark.asyncio
    async def test_requires_approved_phase(self, orchestrator, make_pipeline):
        pipeline = await make_pipeline("style_review")
        result = await orchestrator.continue_step(pipeline.id, "alice")
        assert result.code == "PHASE_MISMATCH"

    @pytest.mark.asyncio
    async def test_from_step_must_match(self, orchestrator, store, make_pipeline):
        pipeline = await make_pipeline("style_approved")
        result = await orchestrator.continue_step(pipeline.id, "alice", from_step=1)
        assert result.code == "PHASE_MISMATCH"
        assert (await store.load(pipeline.id)).phase == "style_approved"

    @pytest.mark.asyncio
    async def test_wrong_owner(self, orchestrator, make_pipeline):
        pipeline = await make_pipeline("style_approved")
        result = await orchestrator.continue_step(pipeline.id, "mallory")
        assert result.code == "AUTH_INVALID"
