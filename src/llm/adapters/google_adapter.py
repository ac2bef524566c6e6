# src/llm/adapters/google_adapter.py — v1
"""Google Gemini adapter implementing BaseLLMClient.

Uses the google-generativeai SDK for vision completions.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from stagegate.llm.base_client import BaseLLMClient
from stagegate.llm.models import ImageInput, LLMResponse, Message, StopReason

logger = logging.getLogger(__name__)

_FINISH_REASONS: dict[str, StopReason] = {
    "STOP": "end",
    "MAX_TOKENS": "max_tokens",
    "SAFETY": "safety",
}


class GoogleAdapter(BaseLLMClient):
    """Google Gemini adapter."""

    def __init__(self, model: str = "gemini-2.5-pro", api_key: str = "", **kwargs: Any):
        self._model = model
        self._api_key = api_key

    async def complete_with_vision(
        self,
        messages: list[Message],
        images: list[ImageInput],
        system: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.0,
        json_output: bool = False,
    ) -> LLMResponse:
        import google.generativeai as genai

        genai.configure(api_key=self._api_key)
        model = genai.GenerativeModel(self._model, system_instruction=system)

        parts: list[dict[str, Any]] = []
        for m in messages:
            parts.append({"text": m.content})
        for img in images:
            parts.append({"inline_data": {"mime_type": img.media_type, "data": img.data}})

        gen_config: dict[str, Any] = {
            "max_output_tokens": max_tokens,
            "temperature": temperature,
        }
        if json_output:
            gen_config["response_mime_type"] = "application/json"

        t0 = time.monotonic()
        resp = await model.generate_content_async(parts, generation_config=gen_config)
        latency = int((time.monotonic() - t0) * 1000)

        stop_reason: StopReason = "other"
        if resp.candidates:
            finish = getattr(resp.candidates[0].finish_reason, "name", "")
            stop_reason = _FINISH_REASONS.get(finish, "other")

        try:
            text = resp.text or ""
        except ValueError:
            # Raised by the SDK when the candidate has no text parts.
            logger.warning("Gemini returned no text (finish=%s)", stop_reason)
            text = ""

        usage = getattr(resp, "usage_metadata", None)
        return LLMResponse(
            content=text,
            input_tokens=getattr(usage, "prompt_token_count", 0) if usage else 0,
            output_tokens=getattr(usage, "candidates_token_count", 0) if usage else 0,
            model=self._model,
            provider="google",
            latency_ms=latency,
            stop_reason=stop_reason,
            raw_response=resp,
        )

    @property
    def provider_name(self) -> str:
        return "google"

    @property
    def model_name(self) -> str:
        return self._model
