# tests/unit/pipeline/test_restart.py — v1
"""Tests for pipeline/restart.py — recovery of a step left running."""

from __future__ import annotations

import asyncio

import pytest

from stagegate.core.models import RetryDelta, RetryTask


async def _wait_for_phase(store, pipeline_id: str, phase: str) -> None:
    while (await store.load(pipeline_id)).phase != phase:
        await asyncio.sleep(0)


class TestRestartStep:
    @pytest.mark.asyncio
    async def test_running_step_back_to_pending(self, orchestrator, store, make_pipeline):
        pipeline = await make_pipeline("top_down_3d_running")
        result = await orchestrator.restart_step(pipeline.id, "alice")

        assert result.phase == "top_down_3d_pending"
        assert result.current_step == 1
        assert result.reset_counter == 1
        events = await store.list_events(pipeline.id, step=1)
        assert [e.type for e in events] == ["step_restart"]
        assert events[0].data == {
            "from_phase": "top_down_3d_running",
            "discarded_retry_tasks": 0,
            "reset_counter": 1,
        }

        rerun = await orchestrator.run_step(pipeline.id, 1, "alice")
        assert rerun.kind == "completed"

    @pytest.mark.asyncio
    async def test_batch_step_in_progress(self, orchestrator, make_pipeline):
        pipeline = await make_pipeline("renders_in_progress")
        result = await orchestrator.restart_step(pipeline.id, "alice", current_step=5)
        assert result.phase == "renders_pending"

    @pytest.mark.asyncio
    async def test_discards_queued_retries(self, orchestrator, store, make_pipeline):
        pipeline = await make_pipeline("top_down_3d_running")
        task = RetryTask(
            pipeline_id=pipeline.id,
            owner="alice",
            step=1,
            attempt=2,
            reset_counter=0,
            retry_delta=RetryDelta(seed=3, temperature=0.6),
        )
        await store.enqueue_retry_task(task)

        await orchestrator.restart_step(pipeline.id, "alice")

        [stored] = await store.list_retry_tasks(pipeline_id=pipeline.id)
        assert stored.status == "discarded"
        [event] = await store.list_events(pipeline.id, step=1)
        assert event.data["discarded_retry_tasks"] == 1

    @pytest.mark.asyncio
    async def test_orphaned_run_is_fenced_off(
        self, orchestrator, store, settings, generator, make_pipeline
    ):
        pipeline = await make_pipeline("top_down_3d_pending")
        generator.gate = asyncio.Event()
        running = asyncio.create_task(orchestrator.run_step(pipeline.id, 1, "alice"))
        while not generator.calls:
            await asyncio.sleep(0)

        restarted = await orchestrator.restart_step(pipeline.id, "alice")
        assert restarted.phase == "top_down_3d_pending"
        generator.gate.set()
        result = await running

        assert result.code == "STALE_RESULT_DISCARDED"
        loaded = await store.load(pipeline.id)
        assert loaded.phase == "top_down_3d_pending"
        assert loaded.output_for(1) is None
        assert await store.list_attempts(pipeline.id) == []
        step_dir = settings.storage_root / "pipelines" / pipeline.id / "step1"
        assert not step_dir.exists() or list(step_dir.iterdir()) == []
        events = await store.list_events(pipeline.id, step=1)
        assert [e.type for e in events] == ["step_restart"]

    @pytest.mark.asyncio
    async def test_space_analysis(self, orchestrator, make_pipeline):
        pipeline = await make_pipeline("space_analysis_running")
        result = await orchestrator.restart_step(pipeline.id, "alice", current_step=0)
        assert result.phase == "space_analysis_pending"

        rerun = await orchestrator.run_space_analysis(pipeline.id, "alice")
        assert rerun.phase == "space_analysis_complete"

    @pytest.mark.asyncio
    async def test_orphaned_space_analysis_is_fenced_off(
        self, orchestrator, store, analysis_client, make_pipeline, monkeypatch
    ):
        pipeline = await make_pipeline()
        gate = asyncio.Event()
        complete = analysis_client.complete_with_vision

        async def held(**kwargs):
            await gate.wait()
            return await complete(**kwargs)

        monkeypatch.setattr(analysis_client, "complete_with_vision", held)
        running = asyncio.create_task(orchestrator.run_space_analysis(pipeline.id, "alice"))
        await _wait_for_phase(store, pipeline.id, "space_analysis_running")

        await orchestrator.restart_step(pipeline.id, "alice")
        gate.set()
        result = await running

        assert result.code == "STALE_RESULT_DISCARDED"
        loaded = await store.load(pipeline.id)
        assert loaded.phase == "space_analysis_pending"
        assert loaded.space_analysis is None
        assert loaded.last_error is None

    @pytest.mark.asyncio
    async def test_not_running(self, orchestrator, store, make_pipeline):
        pipeline = await make_pipeline("top_down_3d_review")
        result = await orchestrator.restart_step(pipeline.id, "alice")

        assert result.kind == "error"
        assert result.code == "PHASE_MISMATCH"
        assert result.details["phase"] == "top_down_3d_review"
        loaded = await store.load(pipeline.id)
        assert loaded.phase == "top_down_3d_review"
        assert loaded.reset_counter == 0

    @pytest.mark.asyncio
    async def test_expected_step_must_match(self, orchestrator, make_pipeline):
        pipeline = await make_pipeline("style_running")
        result = await orchestrator.restart_step(pipeline.id, "alice", current_step=3)
        assert result.code == "PHASE_MISMATCH"

    @pytest.mark.asyncio
    async def test_wrong_owner(self, orchestrator, store, make_pipeline):
        pipeline = await make_pipeline("style_running")
        result = await orchestrator.restart_step(pipeline.id, "mallory")
        assert result.code == "AUTH_INVALID"
        assert (await store.load(pipeline.id)).phase == "style_running"

    @pytest.mark.asyncio
    async def test_unknown_pipeline(self, orchestrator):
        result = await orchestrator.restart_step("missing", "alice")
        assert result.code == "PIPELINE_NOT_FOUND"
