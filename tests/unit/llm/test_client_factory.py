# tests/unit/llm/test_client_factory.py — v1
"""Tests for llm/client_factory.py and the provider adapters."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from stagegate.config.settings import load_settings
from stagegate.llm.adapters.google_adapter import GoogleAdapter
from stagegate.llm.adapters.openai_adapter import OpenAIAdapter
from stagegate.llm.client_factory import (
    UnsupportedProviderError,
    _PROVIDER_REGISTRY,
    create_llm_client,
    register_provider,
)
from stagegate.llm.models import ImageInput, LLMResponse, Message


class TestCreateLLMClient:
    def test_google_with_settings_key(self):
        settings = load_settings(_env_file=None, google_api_key="g-key")
        client = create_llm_client("google", "gemini-2.5-pro", settings)
        assert isinstance(client, GoogleAdapter)
        assert client.provider_name == "google"
        assert client.model_name == "gemini-2.5-pro"
        assert client._api_key == "g-key"

    def test_openai(self):
        settings = load_settings(_env_file=None, openai_api_key="o-key")
        client = create_llm_client("openai", "gpt-4o", settings)
        assert isinstance(client, OpenAIAdapter)
        assert client._api_key == "o-key"

    def test_explicit_key_wins(self):
        settings = load_settings(_env_file=None, openai_api_key="o-key")
        client = create_llm_client("openai", "gpt-4o", settings, api_key="override")
        assert client._api_key == "override"

    def test_unsupported(self):
        with pytest.raises(UnsupportedProviderError, match="Available: google, openai"):
            create_llm_client("mystery", "m")

    def test_register_provider(self):
        register_provider("custom", "stagegate.llm.adapters.openai_adapter.OpenAIAdapter")
        try:
            client = create_llm_client("custom", "custom-model")
            assert client.model_name == "custom-model"
        finally:
            _PROVIDER_REGISTRY.pop("custom", None)


class TestOpenAIAdapter:
    @pytest.mark.asyncio
    async def test_builds_vision_request(self):
        resp = SimpleNamespace(
            choices=[
                SimpleNamespace(
                    message=SimpleNamespace(content='{"decision": "approved"}'),
                    finish_reason="length",
                )
            ],
            usage=SimpleNamespace(prompt_tokens=120, completion_tokens=30),
        )
        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=resp)

        with patch("openai.AsyncOpenAI", return_value=client):
            result = await OpenAIAdapter(model="gpt-4o", api_key="k").complete_with_vision(
                messages=[Message(role="user", content="Judge this.")],
                images=[ImageInput(data=b"\x89PNG", media_type="image/png")],
                system="You are a judge.",
                max_tokens=256,
                json_output=True,
            )

        assert isinstance(result, LLMResponse)
        assert result.content == '{"decision": "approved"}'
        assert result.truncated
        assert result.input_tokens == 120
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["messages"][0] == {"role": "system", "content": "You are a judge."}
        parts = kwargs["messages"][1]["content"]
        assert parts[0] == {"type": "text", "text": "Judge this."}
        assert parts[1]["image_url"]["url"].startswith("data:image/png;base64,")
