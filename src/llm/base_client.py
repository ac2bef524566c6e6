# src/llm/base_client.py — v1
"""Abstract vision-LLM client used by the QA judge and the space analysis."""

from __future__ import annotations

from abc import ABC, abstractmethod

from stagegate.llm.models import ImageInput, LLMResponse, Message


class BaseLLMClient(ABC):
    """Unified interface for vision-capable LLM providers."""

    @abstractmethod
    async def complete_with_vision(
        self,
        messages: list[Message],
        images: list[ImageInput],
        system: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.0,
        json_output: bool = False,
    ) -> LLMResponse:
        """Vision completion over text messages plus images.

        ``json_output`` asks the provider for a JSON-only response where it
        supports that; callers still parse defensively.
        """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider identifier (google, openai)."""

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Model identifier recorded on judge results."""
