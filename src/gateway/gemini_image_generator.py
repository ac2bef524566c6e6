# src/gateway/gemini_image_generator.py — v1
"""Gemini image generator using the google-genai SDK."""

from __future__ import annotations

import logging
import time
from typing import Any

from stagegate.core.errors import ErrorCode, GatewayError
from stagegate.core.models import AspectRatio, QualityTier
from stagegate.gateway.base_image_generator import BaseImageGenerator, GeneratedImage
from stagegate.llm.models import ImageInput

logger = logging.getLogger(__name__)


class GeminiImageGenerator(BaseImageGenerator):
    """Generate images with a Gemini image model."""

    def __init__(self, model: str = "gemini-2.5-flash-image", api_key: str = "") -> None:
        self._model = model
        self._api_key = api_key
        self._client: Any = None

    @property
    def model_name(self) -> str:
        return self._model

    def _get_client(self) -> Any:
        if not self._api_key:
            raise GatewayError(
                "GOOGLE_API_KEY is not configured", code=ErrorCode.AUTH_INVALID
            )
        if self._client is None:
            from google import genai

            self._client = genai.Client(api_key=self._api_key)
        return self._client

    async def generate(
        self,
        prompt: str,
        reference_images: list[ImageInput],
        quality_tier: QualityTier,
        aspect_ratio: AspectRatio,
        temperature: float,
        seed: int | None = None,
    ) -> GeneratedImage:
        from google.genai import types

        client = self._get_client()
        parts = [
            types.Part.from_bytes(data=img.data, mime_type=img.media_type)
            for img in reference_images
        ]
        parts.append(types.Part.from_text(text=prompt))

        config = types.GenerateContentConfig(
            response_modalities=["IMAGE"],
            temperature=temperature,
            seed=seed,
            image_config=types.ImageConfig(
                aspect_ratio=aspect_ratio, image_size=quality_tier
            ),
        )

        t0 = time.monotonic()
        response = await client.aio.models.generate_content(
            model=self._model,
            contents=[types.Content(role="user", parts=parts)],
            config=config,
        )
        latency = int((time.monotonic() - t0) * 1000)

        for candidate in response.candidates or []:
            if candidate.content is None or not candidate.content.parts:
                continue
            for part in candidate.content.parts:
                if part.inline_data and part.inline_data.data:
                    return GeneratedImage(
                        data=part.inline_data.data,
                        mime_type=part.inline_data.mime_type or "image/png",
                        model=self._model,
                        latency_ms=latency,
                    )
                if part.text:
                    logger.debug("Gemini text part: %.100s", part.text)

        raise GatewayError(
            "image model returned no image data",
            code=ErrorCode.PARSE_FAILED,
            retryable=True,
            details={"model": self._model, "latency_ms": latency},
        )
