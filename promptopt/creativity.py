# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Creativity profile and eligibility gate for patch candidates.

Characteristics:
  - Novelty: distance from reference prompts
  - Use-value: objective gain over the champion baseline
  - Surprise: lexical / structural variety heuristic (0-5)
  - Constraint-fit: schema compliance (pass rate, 0 if schema invalid)
  - Diversity: distance from the other prompts in the portfolio

Novelty alone never makes a candidate eligible: it must pass the
constraint-fit gate or show positive use-value.
"""
import math
import re
from typing import List, Optional, Sequence

from promptopt.models import CreativityProfile, GateResult
from promptopt.similarity import text_similarity

_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")
_MAX_SURPRISE = 5.0

# Ranking tolerances
USE_VALUE_TIE = 0.001
DIVERSITY_TIE = 0.01


def compute_novelty(candidate_prompt: str, reference_prompts: Sequence[str]) -> float:
    """1 - max similarity to any reference. 1.0 with no references."""
    if not reference_prompts:
        return 1.0
    return 1.0 - max(text_similarity(candidate_prompt, ref) for ref in reference_prompts)


def compute_use_value(candidate_objective: float, baseline_objective: float) -> float:
    return candidate_objective - baseline_objective


def compute_surprise(prompt_text: str) -> float:
    """Heuristic surprise: 2 * unique-word ratio + 1.5 * sentence-length CV, capped at 5."""
    if not prompt_text:
        return 0.0
    words = [w for w in prompt_text.lower().split() if len(w) > 2]
    if not words:
        return 0.0
    unique_ratio = len(set(words)) / len(words)

    sentences = [s for s in _SENTENCE_SPLIT_RE.split(prompt_text) if s.strip()]
    lengths = [len(s.split()) for s in sentences]
    length_cv = 0.0
    if len(lengths) > 1:
        mean = sum(lengths) / len(lengths)
        variance = sum((n - mean) ** 2 for n in lengths) / len(lengths)
        length_cv = math.sqrt(variance) / mean

    return min(_MAX_SURPRISE, unique_ratio * 2 + length_cv * 1.5)


def compute_constraint_fit(pass_rate: float, schema_valid: bool) -> float:
    if not schema_valid:
        return 0.0
    return pass_rate


def compute_diversity(candidate_prompt: str, portfolio_prompts: Sequence[str]) -> float:
    """Marginal diversity: 1 - max similarity to the rest of the portfolio."""
    if not portfolio_prompts:
        return 1.0
    return 1.0 - max(text_similarity(candidate_prompt, p) for p in portfolio_prompts)


def compute_creativity_profile(
    candidate_prompt: str,
    candidate_objective: float,
    baseline_objective: float,
    pass_rate: float,
    schema_valid: bool,
    reference_prompts: Optional[Sequence[str]] = None,
    portfolio_prompts: Optional[Sequence[str]] = None,
) -> CreativityProfile:
    return CreativityProfile(
        novelty=compute_novelty(candidate_prompt, reference_prompts or []),
        use_value=compute_use_value(candidate_objective, baseline_objective),
        surprise=compute_surprise(candidate_prompt),
        constraint_fit=compute_constraint_fit(pass_rate, schema_valid),
        diversity=compute_diversity(candidate_prompt, portfolio_prompts or []),
    )


def apply_creativity_gate(
    profile: CreativityProfile,
    constraint_fit_threshold: float = 1.0,
    use_value_threshold: float = 0.0,
) -> GateResult:
    """Eligible iff constraint_fit >= threshold OR use_value > threshold."""
    fit_ok = profile.constraint_fit >= constraint_fit_threshold
    value_ok = profile.use_value > use_value_threshold
    eligible = fit_ok or value_ok

    warnings: List[str] = []
    if profile.novelty > 0.7 and not eligible:
        warnings.append("High novelty ({:.2f}) but failed both gates".format(profile.novelty))
    if profile.novelty > 0.7 and profile.use_value < 0:
        warnings.append("Novel prompt performs worse than baseline (delta={:.3f})".format(
            profile.use_value,
        ))
    if 0.5 < profile.constraint_fit < 1.0:
        warnings.append("Partial constraint fit ({:.2f}) - some runs fail schema".format(
            profile.constraint_fit,
        ))

    if fit_ok and value_ok:
        reason = "Passes both gates: constraint_fit={:.2f}, use_value=+{:.3f}".format(
            profile.constraint_fit, profile.use_value,
        )
    elif fit_ok:
        reason = "Passes constraint gate: constraint_fit={:.2f}".format(profile.constraint_fit)
    elif value_ok:
        reason = "Passes use-value gate: +{:.3f} vs baseline".format(profile.use_value)
    else:
        reason = "Failed both gates: constraint_fit={:.2f} < {}, use_value={:.3f} <= {}".format(
            profile.constraint_fit, constraint_fit_threshold,
            profile.use_value, use_value_threshold,
        )

    return GateResult(profile=profile, eligible=eligible, reason=reason, warnings=warnings)


def compare_profiles(
    a: CreativityProfile,
    b: CreativityProfile,
    use_value_tie: float = USE_VALUE_TIE,
    diversity_tie: float = DIVERSITY_TIE,
) -> float:
    """Sort comparator: negative when ``a`` ranks first.

    Order: use-value (ties within 0.001 by default), diversity (ties within
    0.01), then novelty.
    """
    use_delta = b.use_value - a.use_value
    if abs(use_delta) > use_value_tie:
        return use_delta
    div_delta = b.diversity - a.diversity
    if abs(div_delta) > diversity_tie:
        return div_delta
    return b.novelty - a.novelty
