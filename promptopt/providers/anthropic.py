# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Anthropic provider."""
import logging
from typing import Optional

from promptopt.providers.base import LLMProvider

logger = logging.getLogger(__name__)


class AnthropicProvider(LLMProvider):
    """Anthropic Messages API, one round, no tools. Seeds are not supported."""

    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-5-20250929",
        temperature: float = 0.7,
        max_tokens: int = 4096,
        timeout_s: float = 120.0,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._timeout_s = timeout_s
        self._client = None

    def __repr__(self) -> str:
        key_hint = "{}...".format(self._api_key[:4]) if self._api_key and len(self._api_key) > 4 else "***"
        return "AnthropicProvider(model={!r}, api_key={!r})".format(self._model, key_hint)

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        seed: Optional[int] = None,
    ) -> str:
        if self._client is None:
            import anthropic
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key, timeout=self._timeout_s,
            )
        client = self._client

        response = await client.messages.create(
            model=self._model,
            system=system_prompt,
            messages=[{"role": "user", "content": user_prompt}],
            max_tokens=max_tokens or self._max_tokens,
            temperature=self._temperature if temperature is None else temperature,
        )
        text_parts = [block.text for block in response.content if block.type == "text"]
        if response.stop_reason == "max_tokens":
            logger.warning("Completion truncated at max_tokens")
        return "\n".join(text_parts)
