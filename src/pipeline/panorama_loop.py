# src/pipeline/panorama_loop.py — v1
"""Bounded in-process retry loop for the panorama step.

Each rejected candidate is regenerated with the judge's corrective
instruction appended to its prompt, up to ``max_attempts`` attempts in
total. Candidates that were approved are not regenerated.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from stagegate.pipeline.candidates import CandidateRun, CandidateTarget
from stagegate.pipeline.retry_delta import temperature_for

logger = logging.getLogger(__name__)

ProduceFn = Callable[[CandidateTarget, int, str, float, "int | None"], Awaitable[CandidateRun]]


@dataclass
class PanoramaLoopResult:
    final: list[CandidateRun]
    runs: list[CandidateRun] = field(default_factory=list)
    attempts_used: int = 1


def corrected_prompt(prompt: str, run: CandidateRun) -> str:
    """Prompt for the next attempt of a rejected candidate."""
    verdict = run.outcome.verdict
    correction = verdict.corrective_instruction if verdict else ""
    if not correction:
        correction = run.outcome.reason_text
    if not correction:
        return prompt
    return f"{prompt.rstrip()}\n\nCORRECTION FROM PREVIOUS ATTEMPT: {correction}"


class PanoramaRetryLoop:
    def __init__(self, max_attempts: int = 4) -> None:
        self._max_attempts = max_attempts

    async def run(
        self,
        targets: list[CandidateTarget],
        produce: ProduceFn,
        prompt: str,
        first_attempt_index: int,
        temperature: float,
        seed: int | None = None,
    ) -> PanoramaLoopResult:
        final: dict[int, CandidateRun] = {}
        runs: list[CandidateRun] = []

        for target in targets:
            run = await produce(target, first_attempt_index, prompt, temperature, seed)
            final[target.candidate_index] = run
            runs.append(run)

        attempts_used = 1
        for attempt in range(2, self._max_attempts + 1):
            rejected = [r for r in final.values() if not r.approved]
            if not rejected:
                break
            attempts_used = attempt
            attempt_index = first_attempt_index + attempt - 1
            logger.info(
                "Panorama attempt %d/%d for %d rejected candidate(s)",
                attempt, self._max_attempts, len(rejected),
            )
            for previous in rejected:
                index = previous.target.candidate_index
                next_prompt = corrected_prompt(prompt, previous)
                run = await produce(
                    previous.target, attempt_index, next_prompt, temperature_for(attempt - 1), None
                )
                final[index] = run
                runs.append(run)

        ordered = [final[t.candidate_index] for t in targets]
        return PanoramaLoopResult(final=ordered, runs=runs, attempts_used=attempts_used)
