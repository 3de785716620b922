# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Interfaces for the external collaborators the optimizer consumes.

Generation, scoring and patch writing are black boxes. The core only
relies on these contracts; LLM-backed implementations live in
promptopt.generator and promptopt.patcher.
"""
import json
import logging
import re
from abc import ABC, abstractmethod
from typing import List, Optional, Union

from pydantic import ValidationError

from promptopt.models import (
    GenerationFailure, GenerationSuccess, ScoreResult, StoryPack, Task,
)

logger = logging.getLogger(__name__)

GenerationOutcomeT = Union[GenerationSuccess, GenerationFailure]

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*\n(.*?)\n?```", re.DOTALL)


class Generator(ABC):
    """Produces one structured output for (prompt, task, seed)."""

    @abstractmethod
    async def generate(self, prompt_text: str, task: Task, seed: int) -> GenerationOutcomeT:
        """Return a GenerationSuccess or GenerationFailure.

        Implementations may also raise; the evaluator records a raised
        exception as a failed run.
        """


class Scorer(ABC):
    """Judges one output for a task."""

    @abstractmethod
    async def score(self, task: Task, output: StoryPack) -> ScoreResult:
        """Return score in [0, 1], pass flag and optional subscores."""


class PatchProposer(ABC):
    """Writes additive patch sections from contrastive pair context."""

    @abstractmethod
    async def propose(
        self,
        base_prompt: str,
        current_patch: str,
        pairs_context: str,
        count: int,
    ) -> List[str]:
        """Return up to ``count`` patch texts. Never a full prompt rewrite."""

    async def apply_operator(
        self,
        operator_text: str,
        base_prompt: str,
        current_patch: str,
        pairs_context: str,
    ) -> Optional[str]:
        """Apply one meta-evolution operator. Returns a patch or None.

        Proposers that do not support operators fall back to a single
        plain proposal.
        """
        patches = await self.propose(base_prompt, current_patch, pairs_context, 1)
        return patches[0] if patches else None


class OperatorRewriter(ABC):
    """Rewrites mutation operators (hypermutation)."""

    @abstractmethod
    async def rewrite(self, prompt: str) -> Optional[str]:
        """Return the rewritten operator text, or None on failure."""


def parse_generation_output(raw_text: str, task_id: str = "") -> GenerationOutcomeT:
    """Turn raw model text into a tagged, validated generation result.

    Accepts bare JSON or JSON inside a ```json fence. Anything that does
    not validate as a StoryPack becomes a GenerationFailure.
    """
    if not raw_text or not raw_text.strip():
        return GenerationFailure(error="empty output", raw_text=raw_text or "")

    candidate = raw_text.strip()
    m = _FENCED_JSON_RE.search(candidate)
    if m:
        candidate = m.group(1).strip()
    elif not candidate.startswith("{"):
        start, end = candidate.find("{"), candidate.rfind("}")
        if start >= 0 and end > start:
            candidate = candidate[start:end + 1]

    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as e:
        return GenerationFailure(error="invalid JSON: {}".format(e), raw_text=raw_text)

    if not isinstance(data, dict):
        return GenerationFailure(error="expected a JSON object", raw_text=raw_text)
    if task_id and not data.get("task_id"):
        data["task_id"] = task_id

    try:
        pack = StoryPack.model_validate(data)
    except ValidationError as e:
        logger.debug("Output failed validation: %s", e)
        return GenerationFailure(
            error="schema validation failed: {} error(s)".format(e.error_count()),
            raw_text=raw_text,
        )
    return GenerationSuccess(output=pack, raw_text=raw_text)
