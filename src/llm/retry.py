# src/llm/retry.py — v1
"""Transport-level retry with exponential backoff for provider calls.

Covers transient provider failures (rate limits, 5xx). This is separate
from QA retries, which are decided by the retry controller.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class RetryExhausted(Exception):
    """All retries exhausted for a provider call."""

    def __init__(self, operation: str, error_type: str, attempts: int, last_error: Exception):
        self.operation = operation
        self.error_type = error_type
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"'{operation}' failed after {attempts} attempts ({error_type}): {last_error}"
        )


@dataclass(frozen=True)
class RetryConfig:
    """Retry configuration for one error type."""

    max_retries: int
    base_delay_s: float
    backoff_factor: float = 2.0
    jitter: bool = True


DEFAULT_RETRY_CONFIGS: dict[str, RetryConfig] = {
    "rate_limit": RetryConfig(max_retries=3, base_delay_s=2.0),
    "server_error": RetryConfig(max_retries=2, base_delay_s=5.0),
}


def classify_error(error: Exception) -> str:
    """Classify an exception into a retry error type."""
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return "timeout"
    msg = str(error).lower()
    name = type(error).__name__.lower()

    if "401" in msg or "403" in msg or "api key" in msg or "permission" in name:
        return "auth"
    if "429" in msg or "rate" in msg or "resource_exhausted" in msg:
        return "rate_limit"
    if "timeout" in name or "timed out" in msg:
        return "timeout"
    if any(c in msg for c in ("500", "502", "503", "504", "unavailable", "server")):
        return "server_error"
    return "unknown"


def _compute_delay(config: RetryConfig, attempt: int) -> float:
    """Delay for a given attempt (0-based)."""
    delay = config.base_delay_s * (config.backoff_factor ** attempt)
    if config.jitter:
        delay *= 0.5 + random.random()  # noqa: S311
    return delay


async def with_retry(
    fn: Callable[..., Awaitable[Any]],
    *args: Any,
    operation: str = "unknown",
    retry_configs: dict[str, RetryConfig] | None = None,
    **kwargs: Any,
) -> Any:
    """Execute an async function, retrying the error types in ``retry_configs``.

    Raises:
        RetryExhausted: When the error type is not retryable or retries ran out.
    """
    configs = DEFAULT_RETRY_CONFIGS if retry_configs is None else retry_configs
    attempts = 0

    while True:
        try:
            return await fn(*args, **kwargs)
        except Exception as e:
            error_type = classify_error(e)
            attempts += 1
            config = configs.get(error_type)

            if config is None or attempts > config.max_retries:
                raise RetryExhausted(operation, error_type, attempts, e) from e

            delay = _compute_delay(config, attempts - 1)
            logger.warning(
                "%s: %s (attempt %d/%d), retrying in %.1fs",
                operation, error_type, attempts, config.max_retries, delay,
            )
            await asyncio.sleep(delay)
