# src/gateway/judge.py — v1
"""QA judge gateway: fail-closed visual verdicts.

Every judge call has a hard timeout. A timeout, a provider error or an
unusable response yields a JudgeOutcome with ``qa_executed=False``, whose
decision is always ``rejected``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from pydantic import ValidationError

from stagegate.core.models import JudgeOutcome, JudgeReason, JudgeType, JudgeVerdict
from stagegate.gateway.json_parsing import parse_json_output
from stagegate.gateway.judge_prompts import JudgeContext, build_judge_prompt
from stagegate.llm.base_client import BaseLLMClient
from stagegate.llm.models import ImageInput, Message

logger = logging.getLogger(__name__)

_APPROVE_WORDS = frozenset({"approved", "approve", "pass", "passed"})


def normalize_verdict(data: dict[str, Any]) -> JudgeVerdict:
    """Build a JudgeVerdict from a parsed judge payload.

    Accepts the structured format and the older ``pass`` / ``issues``
    shape. Anything that does not clearly approve is a rejection.

    Raises:
        ValidationError: If the payload cannot form a verdict.
    """
    raw_decision = str(data.get("decision", "")).strip().lower()
    approved = raw_decision in _APPROVE_WORDS or (
        not raw_decision and data.get("pass") is True
    )

    reasons: list[JudgeReason] = []
    for item in data.get("reasons") or []:
        if isinstance(item, dict):
            reasons.append(
                JudgeReason(code=item.get("code"), description=str(item.get("description", "")))
            )
        elif isinstance(item, str):
            reasons.append(JudgeReason(code="UNKNOWN", description=item))
    for issue in data.get("issues") or []:
        if isinstance(issue, dict):
            reasons.append(
                JudgeReason(
                    code=issue.get("code") or issue.get("category"),
                    description=str(issue.get("short_reason") or issue.get("description") or ""),
                )
            )

    try:
        score = int(round(float(data.get("score", 0))))
    except (TypeError, ValueError):
        score = 0

    return JudgeVerdict(
        decision="approved" if approved else "rejected",
        score=max(0, min(100, score)),
        reasons=reasons,
        corrective_instruction=str(
            data.get("corrective_instruction") or data.get("corrected_instructions") or ""
        ),
    )


class QAJudgeGateway:
    """Runs the vision judge on one candidate."""

    def __init__(
        self,
        client: BaseLLMClient,
        timeout_s: float = 120.0,
        max_tokens: int = 2048,
    ) -> None:
        self._client = client
        self._timeout_s = timeout_s
        self._max_tokens = max_tokens

    @property
    def model_name(self) -> str:
        return self._client.model_name

    async def judge(
        self,
        candidate: ImageInput,
        judge_type: JudgeType,
        context: JudgeContext,
        references: list[ImageInput] | None = None,
    ) -> JudgeOutcome:
        """Judge ``candidate`` against ``references``. Never raises."""
        system, text = build_judge_prompt(judge_type, context)
        images = [*(references or []), candidate]
        model = self._client.model_name

        t0 = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.complete_with_vision(
                    messages=[Message(role="user", content=text)],
                    images=images,
                    system=system,
                    max_tokens=self._max_tokens,
                    temperature=0.0,
                    json_output=True,
                ),
                timeout=self._timeout_s,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Judge timed out after %.0fs (step %d, %s)",
                self._timeout_s, context.step, judge_type,
            )
            return JudgeOutcome(
                qa_executed=False,
                failure_code="TIMEOUT",
                failure_message=f"judge timed out after {self._timeout_s:.0f}s",
                retryable=True,
                model=model,
                latency_ms=int((time.monotonic() - t0) * 1000),
            )
        except Exception as e:
            logger.warning("Judge call failed (step %d): %s", context.step, e)
            return JudgeOutcome(
                qa_executed=False,
                failure_code="AI_API_ERROR",
                failure_message=f"judge call failed: {e}",
                retryable=True,
                model=model,
                latency_ms=int((time.monotonic() - t0) * 1000),
            )

        parsed = parse_json_output(response.content, truncated=response.truncated)
        if not parsed.success or not isinstance(parsed.data, dict):
            logger.warning(
                "Judge output unparseable (%s): %s", parsed.error_code, parsed.error
            )
            return JudgeOutcome(
                qa_executed=False,
                failure_code=parsed.error_code or "PARSE_FAILED",
                failure_message=parsed.error or "judge output is not a JSON object",
                raw_output=response.content,
                retryable=True,
                model=response.model,
                latency_ms=response.latency_ms,
            )

        try:
            verdict = normalize_verdict(parsed.data)
        except ValidationError as e:
            return JudgeOutcome(
                qa_executed=False,
                failure_code="SCHEMA_INVALID",
                failure_message=f"judge verdict invalid: {e.error_count()} errors",
                raw_output=response.content,
                retryable=True,
                model=response.model,
                latency_ms=response.latency_ms,
            )

        logger.info(
            "Judge %s: %s (score %d, %d reasons)",
            judge_type, verdict.decision, verdict.score, len(verdict.reasons),
        )
        return JudgeOutcome(
            verdict=verdict,
            qa_executed=True,
            raw_output=response.content,
            model=response.model,
            latency_ms=response.latency_ms,
        )
