# src/llm/models.py — v1
"""LLM-specific types: Message, ImageInput, LLMResponse."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel

StopReason = Literal["end", "max_tokens", "safety", "other"]


class Message(BaseModel):
    """Single message in a conversation."""

    role: Literal["user", "assistant", "system"]
    content: str


class ImageInput(BaseModel):
    """Image payload for vision completions."""

    data: bytes
    media_type: str
    source_id: str | None = None


class LLMResponse(BaseModel):
    """Normalized response from any LLM provider."""

    content: str
    input_tokens: int = 0
    output_tokens: int = 0
    model: str
    provider: str
    latency_ms: int = 0
    stop_reason: StopReason = "end"
    raw_response: Any = None

    @property
    def truncated(self) -> bool:
        """True when the provider stopped on its output token limit."""
        return self.stop_reason == "max_tokens"
