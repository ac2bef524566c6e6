# src/gateway/generation.py — v1
"""Generation gateway: timeout and error classification around the generator."""

from __future__ import annotations

import asyncio
import logging

from stagegate.core.errors import ErrorCode, GatewayError, StepError
from stagegate.core.models import AspectRatio, QualityTier
from stagegate.gateway.base_image_generator import BaseImageGenerator, GeneratedImage
from stagegate.llm.models import ImageInput
from stagegate.llm.retry import RetryConfig, RetryExhausted, with_retry

logger = logging.getLogger(__name__)


class GenerationGateway:
    """Uniform entry point to the generative image service.

    Every call has an explicit timeout. Transient provider errors are
    retried with backoff; everything else surfaces as a coded GatewayError.
    """

    def __init__(
        self,
        generator: BaseImageGenerator,
        timeout_s: float = 180.0,
        retry_configs: dict[str, RetryConfig] | None = None,
    ) -> None:
        self._generator = generator
        self._timeout_s = timeout_s
        self._retry_configs = retry_configs

    @property
    def model_name(self) -> str:
        return self._generator.model_name

    async def _generate_once(self, **kwargs: object) -> GeneratedImage:
        return await asyncio.wait_for(
            self._generator.generate(**kwargs),  # type: ignore[arg-type]
            timeout=self._timeout_s,
        )

    async def generate(
        self,
        prompt: str,
        reference_images: list[ImageInput],
        quality_tier: QualityTier,
        aspect_ratio: AspectRatio,
        temperature: float,
        seed: int | None = None,
    ) -> GeneratedImage:
        """Generate one image.

        Raises:
            GatewayError: AI_API_ERROR on provider failure or timeout,
                AUTH_INVALID on missing credentials, PARSE_FAILED
                (retryable) when the response carries no image.
        """
        try:
            image = await with_retry(
                self._generate_once,
                operation="generate_image",
                retry_configs=self._retry_configs,
                prompt=prompt,
                reference_images=reference_images,
                quality_tier=quality_tier,
                aspect_ratio=aspect_ratio,
                temperature=temperature,
                seed=seed,
            )
        except RetryExhausted as e:
            if isinstance(e.last_error, StepError):
                raise e.last_error from None
            code = ErrorCode.AUTH_INVALID if e.error_type == "auth" else ErrorCode.AI_API_ERROR
            raise GatewayError(
                f"image generation failed: {e.last_error}",
                code=code,
                retryable=e.error_type in ("timeout", "rate_limit", "server_error"),
                details={"error_type": e.error_type, "attempts": e.attempts},
            ) from e

        if not image.data:
            raise GatewayError(
                "image generation returned empty data",
                code=ErrorCode.PARSE_FAILED,
                retryable=True,
            )
        logger.info(
            "Generated image (%s, %d bytes, %d ms)",
            image.mime_type, len(image.data), image.latency_ms,
        )
        return image
