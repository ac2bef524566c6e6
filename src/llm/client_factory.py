# src/llm/client_factory.py — v1
"""Factory: instantiate a vision-LLM client from provider name.

Used for the QA judge and the space analysis, each configured with its own
provider/model pair in Settings.
"""

from __future__ import annotations

import importlib
import logging

from stagegate.config.settings import Settings
from stagegate.llm.base_client import BaseLLMClient

logger = logging.getLogger(__name__)

# Provider name -> adapter class path (lazy import).
_PROVIDER_REGISTRY: dict[str, str] = {
    "google": "stagegate.llm.adapters.google_adapter.GoogleAdapter",
    "openai": "stagegate.llm.adapters.openai_adapter.OpenAIAdapter",
}

_API_KEY_FIELDS: dict[str, str] = {
    "google": "google_api_key",
    "openai": "openai_api_key",
}


class UnsupportedProviderError(ValueError):
    """Raised when a provider is not registered."""


def create_llm_client(
    provider: str,
    model: str,
    settings: Settings | None = None,
    **kwargs: object,
) -> BaseLLMClient:
    """Instantiate the adapter registered for ``provider``.

    Args:
        provider: Provider identifier (google, openai).
        model: Model name.
        settings: Application settings, used for the API key.
        **kwargs: Additional adapter arguments.

    Raises:
        UnsupportedProviderError: If provider is not registered.
    """
    if provider not in _PROVIDER_REGISTRY:
        raise UnsupportedProviderError(
            f"Unsupported LLM provider: {provider!r}. "
            f"Available: {', '.join(sorted(_PROVIDER_REGISTRY))}"
        )

    adapter_cls = _import_class(_PROVIDER_REGISTRY[provider])

    init_kwargs = dict(kwargs)
    init_kwargs["model"] = model
    key_field = _API_KEY_FIELDS.get(provider)
    if settings is not None and key_field:
        init_kwargs.setdefault("api_key", getattr(settings, key_field))

    logger.debug("Creating LLM client: provider=%s, model=%s", provider, model)
    return adapter_cls(**init_kwargs)


def register_provider(name: str, class_path: str) -> None:
    """Register a custom adapter implementing BaseLLMClient."""
    _PROVIDER_REGISTRY[name] = class_path
    logger.info("Registered LLM provider: %s -> %s", name, class_path)


def _import_class(class_path: str) -> type:
    module_path, class_name = class_path.rsplit(".", 1)
    module = importlib.import_module(module_path)
    return getattr(module, class_name)
