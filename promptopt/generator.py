# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""LLM-backed generator: prompt + task spec in, validated StoryPack out."""
import logging
from typing import Optional

from promptopt.collaborators import Generator, GenerationOutcomeT, parse_generation_output
from promptopt.errors import GenerationError
from promptopt.models import GenerationFailure, Task
from promptopt.providers.base import LLMProvider

logger = logging.getLogger(__name__)

OUTPUT_INSTRUCTIONS = (
    "Respond with a single JSON object with keys: task_id, stories "
    "(each with title, as_a, i_want, so_that, acceptance_criteria), "
    "assumptions, risks, follow_ups. No text outside the JSON."
)


class LLMGenerator(Generator):
    """Sends the prompt as system text and the task spec as the user turn.

    Provider errors become GenerationFailure results. Set ``raise_errors``
    to let them propagate instead.
    """

    def __init__(
        self,
        provider: LLMProvider,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        append_output_instructions: bool = True,
        raise_errors: bool = False,
    ) -> None:
        self._provider = provider
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._append_output_instructions = append_output_instructions
        self._raise_errors = raise_errors

    def _user_message(self, task: Task) -> str:
        text = task.spec_text()
        if self._append_output_instructions:
            text = "{}\n\n{}".format(text, OUTPUT_INSTRUCTIONS)
        return text

    async def generate(self, prompt_text: str, task: Task, seed: int) -> GenerationOutcomeT:
        try:
            raw = await self._provider.complete(
                prompt_text,
                self._user_message(task),
                temperature=self._temperature,
                max_tokens=self._max_tokens,
                seed=seed,
            )
        except Exception as e:
            if self._raise_errors:
                raise GenerationError("generation failed for task {}: {}".format(task.id, e)) from e
            logger.warning("Generation call failed for task %s: %s", task.id, e)
            return GenerationFailure(error="provider error: {}".format(str(e)[:200]))

        return parse_generation_output(raw, task_id=task.id)
