# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
from promptopt.providers.base import LLMProvider

__all__ = ["LLMProvider", "PROVIDER_REGISTRY", "create_provider", "provider_from_config"]


# Provider registry: maps provider name to module path and class name
PROVIDER_REGISTRY = {
    "openai": {
        "module": "promptopt.providers.openai",
        "class": "OpenAIProvider",
    },
    "anthropic": {
        "module": "promptopt.providers.anthropic",
        "class": "AnthropicProvider",
    },
    "ollama": {
        "module": "promptopt.providers.ollama",
        "class": "OllamaProvider",
    },
}


def create_provider(provider_name: str, **kwargs) -> LLMProvider:
    """Create an LLM provider by name using the registry.

    Falls back to OpenAI for unknown provider names.
    """
    import importlib

    entry = PROVIDER_REGISTRY.get(provider_name, PROVIDER_REGISTRY["openai"])
    mod = importlib.import_module(entry["module"])
    cls = getattr(mod, entry["class"])
    return cls(**kwargs)


def provider_from_config(config) -> LLMProvider:
    """Create a provider from an LLMConfig."""
    kwargs = {
        "api_key": config.api_key,
        "model": config.resolved_model,
        "temperature": config.temperature,
        "max_tokens": config.max_tokens,
        "timeout_s": config.timeout_s,
    }
    if config.base_url and config.provider != "anthropic":
        kwargs["base_url"] = config.base_url
    return create_provider(config.provider or "openai", **kwargs)
