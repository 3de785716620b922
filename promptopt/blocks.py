# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Prompt composition: an immutable base plus one evolved patch section.

The base prompt is never rewritten. Optimization only ever replaces the
auto-generated patch section appended after it.
"""
import re
from typing import Tuple

PATCH_HEADER = "## PATCH SECTION (auto-generated)"

_FENCE_OPEN_RE = re.compile(r"^```[\w-]*\n?", re.MULTILINE)
_FENCE_CLOSE_RE = re.compile(r"\n?```$", re.MULTILINE)


def compose_prompt(base: str, patch: str) -> str:
    """Append the patch section to the base prompt.

    An empty patch returns the base unchanged.
    """
    if not patch or not patch.strip():
        return base
    return "{}\n\n{}\n{}\n".format(base.strip(), PATCH_HEADER, patch.strip())


def split_prompt(composed: str) -> Tuple[str, str]:
    """Inverse of compose_prompt: returns (base, patch)."""
    marker = "\n\n{}\n".format(PATCH_HEADER)
    idx = composed.rfind(marker)
    if idx < 0:
        return composed, ""
    return composed[:idx], composed[idx + len(marker):].strip()


def clean_patch(text: str) -> str:
    """Strip markdown code fences and surrounding whitespace from LLM output."""
    if not text:
        return ""
    text = _FENCE_OPEN_RE.sub("", text.strip())
    text = _FENCE_CLOSE_RE.sub("", text)
    return text.strip()
