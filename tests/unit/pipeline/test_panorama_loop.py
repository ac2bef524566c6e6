# tests/unit/pipeline/test_panorama_loop.py — v1
"""Tests for pipeline/panorama_loop.py — bounded in-process retries."""

from __future__ import annotations

import pytest

from stagegate.core.models import (
    Artifact,
    AttemptRecord,
    CandidateSummary,
    JudgeOutcome,
    JudgeResultRecord,
    JudgeVerdict,
)
from stagegate.pipeline.candidates import CandidateRun, CandidateTarget
from stagegate.pipeline.panorama_loop import PanoramaRetryLoop, corrected_prompt


class ScriptedProducer:
    """Produce function whose decisions come from a per-candidate script."""

    def __init__(self, decisions: dict[int, list[str]], corrective: str = "Fix the seam.") -> None:
        self.decisions = decisions
        self.corrective = corrective
        self.calls: list[tuple[int, int, str, float, int | None]] = []

    async def __call__(self, target, attempt_index, prompt, temperature, seed) -> CandidateRun:
        self.calls.append((target.candidate_index, attempt_index, prompt, temperature, seed))
        decision = self.decisions[target.candidate_index].pop(0)
        aid = f"c{target.candidate_index}-a{attempt_index}"
        outcome = JudgeOutcome(
            verdict=JudgeVerdict(
                decision=decision,
                score=90 if decision == "approved" else 20,
                corrective_instruction="" if decision == "approved" else self.corrective,
            ),
            qa_executed=True,
        )
        return CandidateRun(
            target=target,
            attempt_index=attempt_index,
            artifact=Artifact(id=aid, pipeline_id="p", owner="o", path=f"{aid}.png", step=4),
            outcome=outcome,
            summary=CandidateSummary(artifact_id=aid, decision=decision),
            attempt=AttemptRecord(
                pipeline_id="p", step=4, attempt_index=attempt_index,
                candidate_index=target.candidate_index, artifact_id=aid,
                prompt=prompt, model="m", decision=decision,
            ),
            judge_record=JudgeResultRecord(
                pipeline_id="p", step=4, attempt_index=attempt_index,
                candidate_index=target.candidate_index, artifact_id=aid,
                judge_type="panorama", decision=decision,
            ),
        )


def _targets(n: int) -> list[CandidateTarget]:
    return [CandidateTarget(candidate_index=i, input_artifact_id="in") for i in range(n)]


class TestPanoramaRetryLoop:
    @pytest.mark.asyncio
    async def test_approved_first_time(self):
        produce = ScriptedProducer({0: ["approved"]})
        result = await PanoramaRetryLoop(4).run(_targets(1), produce, "Pano.", 1, 0.7, seed=5)
        assert result.attempts_used == 1
        assert len(result.runs) == 1
        assert produce.calls == [(0, 1, "Pano.", 0.7, 5)]

    @pytest.mark.asyncio
    async def test_approved_on_third_attempt(self):
        produce = ScriptedProducer({0: ["rejected", "rejected", "approved"]})
        result = await PanoramaRetryLoop(4).run(_targets(1), produce, "Pano.", 1, 0.7)
        assert result.attempts_used == 3
        assert result.final[0].approved
        assert [c[1] for c in produce.calls] == [1, 2, 3]
        assert [c[3] for c in produce.calls] == [0.7, 0.6, 0.5]
        assert produce.calls[1][2] == "Pano.\n\nCORRECTION FROM PREVIOUS ATTEMPT: Fix the seam."
        assert produce.calls[2][2] == produce.calls[1][2]

    @pytest.mark.asyncio
    async def test_only_rejected_candidates_regenerated(self):
        produce = ScriptedProducer({0: ["approved"], 1: ["rejected", "approved"]})
        result = await PanoramaRetryLoop(4).run(_targets(2), produce, "Pano.", 3, 0.7)
        assert [c[0] for c in produce.calls] == [0, 1, 1]
        assert [r.summary.artifact_id for r in result.final] == ["c0-a3", "c1-a4"]

    @pytest.mark.asyncio
    async def test_exhaustion(self):
        produce = ScriptedProducer({0: ["rejected"] * 4})
        result = await PanoramaRetryLoop(4).run(_targets(1), produce, "Pano.", 1, 0.7)
        assert result.attempts_used == 4
        assert len(result.runs) == 4
        assert not result.final[0].approved


class TestCorrectedPrompt:
    @pytest.mark.asyncio
    async def test_no_correction_keeps_prompt(self):
        produce = ScriptedProducer({0: ["rejected"]}, corrective="")
        run = await produce(_targets(1)[0], 1, "Pano.", 0.7, None)
        assert corrected_prompt("Pano.", run) == "Pano."
