# src/gateway/generator_factory.py — v1
"""Factory: instantiate the image generator from configuration."""

from __future__ import annotations

from stagegate.config.settings import Settings
from stagegate.gateway.base_image_generator import BaseImageGenerator


def create_image_generator(settings: Settings) -> BaseImageGenerator:
    """Create the generator selected by GENERATION_PROVIDER.

    Raises:
        ValueError: If the provider is not supported.
    """
    if settings.generation_provider == "google":
        from stagegate.gateway.gemini_image_generator import GeminiImageGenerator

        return GeminiImageGenerator(
            model=settings.generation_model, api_key=settings.google_api_key
        )

    raise ValueError(
        f"Unsupported generation provider: {settings.generation_provider!r}"
    )
