# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""LLM patch engineer: proposes small additive patch sections.

The engineer sees the base prompt, the current patch and the contrastive
pairs, and answers with a replacement patch. It never rewrites the base.
"""
import asyncio
import logging
from typing import List, Optional

from promptopt.blocks import clean_patch
from promptopt.collaborators import OperatorRewriter, PatchProposer
from promptopt.providers.base import LLMProvider

logger = logging.getLogger(__name__)

PATCH_ENGINEER_INSTRUCTIONS = """\
You are a prompt optimization expert. Your task is to analyze contrastive pairs
of outputs (GOOD vs BAD) and propose a SMALL ADDITIVE PATCH to improve the prompt.

## Rules

1. **Output ONLY the patch text.** No markdown fences, no explanations.
2. **The patch must be additive rules.** Do NOT rewrite the base prompt.
3. **Keep it short:** max 10-15 lines of additional rules.
4. **Focus on patterns** that distinguish GOOD outputs from BAD outputs.
5. **Be specific and actionable.** Avoid vague directives like "be more careful".

## What to Fix (in priority order)

1. **Schema violations**: BAD outputs have structural issues
2. **Coverage gaps**: BAD outputs miss requirements from the task
3. **Hallucinations**: BAD outputs invent unsupported claims
4. **Testability**: BAD outputs have vague acceptance criteria
5. **Duplication**: BAD outputs repeat similar stories
6. **Story count**: BAD outputs have too few or too many stories

## Example Patch Format

Extra rule: If the task mentions specific personas, ensure each persona has at least one story addressing their needs.

Extra rule: Non-functional requirements (performance, security, compliance) must have dedicated acceptance criteria with measurable thresholds."""

META_PATCHER_INSTRUCTIONS = (
    "You are a prompt optimization expert applying a specific mutation strategy. "
    "Follow the mutation task exactly. Output only the patch text."
)

REWRITER_INSTRUCTIONS = (
    "You are a meta-optimization expert. You improve prompts that are used to "
    "improve other prompts. Output only the improved prompt text."
)

_MIN_TEMPERATURE = 0.1
_MAX_TEMPERATURE = 1.5
_TEMPERATURE_STEP = 0.05

_OPERATOR_BASE_CHARS = 1000
_OPERATOR_PAIRS_CHARS = 3000


def spread_temperatures(base: float, count: int) -> List[float]:
    """Temperatures around ``base`` in 0.05 steps, clamped to [0.1, 1.5]."""
    temps = []
    for i in range(count):
        t = base + (i - count / 2) * _TEMPERATURE_STEP
        temps.append(max(_MIN_TEMPERATURE, min(_MAX_TEMPERATURE, t)))
    return temps


def build_patch_request(base_prompt: str, current_patch: str, pairs_context: str) -> str:
    return "\n".join([
        "## BASE PROMPT (do not rewrite)",
        "```",
        base_prompt.strip(),
        "```",
        "",
        "## CURRENT PATCH",
        "```",
        current_patch.strip() or "(none)",
        "```",
        "",
        "## CONTRASTIVE PAIRS",
        "Analyze these pairs. GOOD outputs scored higher; BAD outputs scored lower.",
        "Your patch should push future outputs toward GOOD and away from BAD.",
        "",
        pairs_context,
        "",
        "## YOUR TASK",
        "Propose a NEW PATCH (replacing the current one) that improves the prompt.",
        "Output ONLY the patch text, no explanations.",
    ])


def build_operator_request(
    operator_text: str,
    base_prompt: str,
    current_patch: str,
    pairs_context: str,
) -> str:
    return (
        "## BASE PROMPT (context only, do not rewrite)\n"
        "{}...\n\n"
        "## CURRENT PATCH\n{}\n\n"
        "## CONTRASTIVE PAIRS\n{}\n\n"
        "## MUTATION TASK\n{}\n\n"
        "Output ONLY the new patch text (10-15 lines of rules)."
    ).format(
        base_prompt[:_OPERATOR_BASE_CHARS],
        current_patch or "(none)",
        pairs_context[:_OPERATOR_PAIRS_CHARS],
        operator_text,
    )


class LLMPatchEngineer(PatchProposer, OperatorRewriter):
    """PatchProposer and OperatorRewriter backed by an LLMProvider.

    Failed LLM calls are logged and skipped; they never raise into the loop.
    """

    def __init__(
        self,
        provider: LLMProvider,
        temperature: float = 0.6,
        timeout_s: Optional[float] = 120.0,
        operator_temperature: float = 0.7,
        rewrite_temperature: float = 0.8,
        max_tokens: int = 1024,
    ) -> None:
        self._provider = provider
        self._temperature = temperature
        self._timeout_s = timeout_s
        self._operator_temperature = operator_temperature
        self._rewrite_temperature = rewrite_temperature
        self._max_tokens = max_tokens

    async def propose(
        self,
        base_prompt: str,
        current_patch: str,
        pairs_context: str,
        count: int,
    ) -> List[str]:
        request = build_patch_request(base_prompt, current_patch, pairs_context)
        patches = []
        for temperature in spread_temperatures(self._temperature, count):
            text = await self._complete(
                PATCH_ENGINEER_INSTRUCTIONS, request, temperature, "patch proposal",
            )
            patch = clean_patch(text or "")
            if patch:
                patches.append(patch)
        logger.debug("Patch engineer returned %d/%d patches", len(patches), count)
        return patches

    async def apply_operator(
        self,
        operator_text: str,
        base_prompt: str,
        current_patch: str,
        pairs_context: str,
    ) -> Optional[str]:
        request = build_operator_request(operator_text, base_prompt, current_patch, pairs_context)
        text = await self._complete(
            META_PATCHER_INSTRUCTIONS, request, self._operator_temperature, "operator patch",
        )
        patch = clean_patch(text or "")
        return patch or None

    async def rewrite(self, prompt: str) -> Optional[str]:
        text = await self._complete(
            REWRITER_INSTRUCTIONS, prompt, self._rewrite_temperature, "operator rewrite",
        )
        if text is None:
            return None
        return clean_patch(text) or None

    async def _complete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        what: str,
    ) -> Optional[str]:
        try:
            call = self._provider.complete(
                system_prompt, user_prompt,
                temperature=temperature, max_tokens=self._max_tokens,
            )
            if self._timeout_s:
                return await asyncio.wait_for(call, timeout=self._timeout_s)
            return await call
        except Exception as e:
            logger.warning("LLM %s failed: %s", what, e)
            return None
