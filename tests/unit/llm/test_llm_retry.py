# tests/unit/llm/test_llm_retry.py — v1
"""Tests for llm/retry.py — error classification and backoff."""

from __future__ import annotations

import asyncio

import pytest

from stagegate.llm.retry import (
    RetryConfig,
    RetryExhausted,
    _compute_delay,
    classify_error,
    with_retry,
)

_FAST = {
    "rate_limit": RetryConfig(max_retries=2, base_delay_s=0.0, jitter=False),
    "server_error": RetryConfig(max_retries=1, base_delay_s=0.0, jitter=False),
}


class TestClassifyError:
    @pytest.mark.parametrize(
        "error,expected",
        [
            (asyncio.TimeoutError(), "timeout"),
            (RuntimeError("HTTP 429 Too Many Requests"), "rate_limit"),
            (RuntimeError("RESOURCE_EXHAUSTED"), "rate_limit"),
            (RuntimeError("403 Forbidden"), "auth"),
            (RuntimeError("invalid API key"), "auth"),
            (RuntimeError("503 Service Unavailable"), "server_error"),
            (RuntimeError("request timed out"), "timeout"),
            (RuntimeError("boom"), "unknown"),
        ],
    )
    def test_classification(self, error, expected):
        assert classify_error(error) == expected


class TestComputeDelay:
    def test_exponential_without_jitter(self):
        config = RetryConfig(max_retries=3, base_delay_s=1.0, backoff_factor=2.0, jitter=False)
        assert [_compute_delay(config, i) for i in range(3)] == [1.0, 2.0, 4.0]

    def test_jitter_bounds(self):
        config = RetryConfig(max_retries=3, base_delay_s=2.0)
        for _ in range(20):
            assert 1.0 <= _compute_delay(config, 0) <= 3.0


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_success_first_try(self):
        async def ok(x):
            return x * 2

        assert await with_retry(ok, 21, operation="double") == 42

    @pytest.mark.asyncio
    async def test_recovers_after_transient_error(self):
        calls = {"n": 0}

        async def flaky():
            calls["n"] += 1
            if calls["n"] < 3:
                raise RuntimeError("429 rate limited")
            return "ok"

        assert await with_retry(flaky, operation="flaky", retry_configs=_FAST) == "ok"
        assert calls["n"] == 3

    @pytest.mark.asyncio
    async def test_exhausted(self):
        async def down():
            raise RuntimeError("502 bad gateway")

        with pytest.raises(RetryExhausted) as exc_info:
            await with_retry(down, operation="down", retry_configs=_FAST)
        assert exc_info.value.error_type == "server_error"
        assert exc_info.value.attempts == 2
        assert exc_info.value.operation == "down"

    @pytest.mark.asyncio
    async def test_unknown_error_fails_immediately(self):
        calls = {"n": 0}

        async def broken():
            calls["n"] += 1
            raise ValueError("bad input")

        with pytest.raises(RetryExhausted) as exc_info:
            await with_retry(broken, retry_configs=_FAST)
        assert calls["n"] == 1
        assert isinstance(exc_info.value.last_error, ValueError)
