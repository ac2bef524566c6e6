# src/gateway/base_image_generator.py — v1
"""Abstract image generator interface and its result type."""

from __future__ import annotations

from abc import ABC, abstractmethod

from pydantic import BaseModel

from stagegate.core.models import AspectRatio, QualityTier
from stagegate.llm.models import ImageInput


class GeneratedImage(BaseModel):
    """Raw image returned by a generator."""

    data: bytes
    mime_type: str = "image/png"
    model: str = ""
    latency_ms: int = 0


class BaseImageGenerator(ABC):
    """Unified interface for generative image providers."""

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        reference_images: list[ImageInput],
        quality_tier: QualityTier,
        aspect_ratio: AspectRatio,
        temperature: float,
        seed: int | None = None,
    ) -> GeneratedImage:
        """Generate one image from a prompt and reference images."""

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Model identifier recorded on attempts."""
