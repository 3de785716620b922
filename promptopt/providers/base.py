# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Abstract LLM provider interface."""
from abc import ABC, abstractmethod
from typing import Optional


class LLMProvider(ABC):
    """Abstract base class for LLM providers (OpenAI, Anthropic, etc.).

    The optimizer only needs single-shot completions: one system prompt,
    one user message, one text reply.
    """

    @abstractmethod
    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        seed: Optional[int] = None,
    ) -> str:
        """Return the model's text reply.

        ``temperature`` and ``max_tokens`` override the provider defaults.
        ``seed`` is forwarded where the backend supports deterministic
        sampling and ignored otherwise.
        """
