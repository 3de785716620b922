# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Meta-evolution: a self-improving population of mutation operators.

Operators are prompts that write prompt patches. Each patch request picks
an operator by fitness-proportional (roulette) selection; after the
tournament, operators whose patches beat the champion gain fitness through
an exponential moving average. Occasionally a hypermutation operator
rewrites the weakest regular operator.

Every function here returns a new population list; MutationPrompt records
are frozen and replaced, never edited.
"""
import logging
import random
import uuid
from typing import Dict, Iterable, List, Optional, Sequence

from promptopt.collaborators import OperatorRewriter
from promptopt.models import MutationPrompt, MutationType

logger = logging.getLogger(__name__)

META_TYPES = (MutationType.HYPERMUTATION, MutationType.ZERO_ORDER_HYPER)

MIN_SELECTION_WEIGHT = 0.1
MIN_EVOLVED_LENGTH = 30
RECENT_EXCLUSION = 2

EDA_HINT = "Analyze the statistical patterns in the pairs below."

_SEED_OPERATORS = [
    (MutationType.DIRECT_MUTATION, (
        "Analyze the prompt and identify ONE specific weakness that causes low-quality outputs.\n"
        "Propose a targeted rule to address this weakness.\n"
        "Output ONLY the new rule, nothing else."
    )),
    (MutationType.DIRECT_MUTATION, (
        "You are a prompt optimization expert. Review the current prompt for:\n"
        "1. Missing constraints that lead to schema violations\n"
        "2. Ambiguous instructions that cause inconsistency\n"
        "3. Gaps in coverage for edge cases\n\n"
        "Propose ONE additional rule that would have the biggest impact on quality.\n"
        "Be specific and actionable. Output ONLY the rule."
    )),
    (MutationType.DIRECT_MUTATION, (
        "Think step by step about what makes good user stories:\n"
        "- Independent: No dependencies between stories\n"
        "- Negotiable: Room for discussion\n"
        "- Valuable: Clear user value\n"
        "- Estimable: Can be sized\n"
        "- Small: Completable in one sprint\n"
        "- Testable: Verifiable acceptance criteria\n\n"
        "Which principle is the prompt weakest on? Add a rule to strengthen it.\n"
        "Output ONLY the new rule."
    )),
    (MutationType.EDA_MUTATION, (
        "Given these examples of GOOD outputs (that scored well) and BAD outputs (that scored poorly),\n"
        "identify the KEY PATTERN that distinguishes them.\n\n"
        "Express this pattern as a new rule that encourages the GOOD pattern.\n"
        "Be specific: reference the actual difference you observed.\n"
        "Output ONLY the rule."
    )),
    (MutationType.EDA_MUTATION, (
        "Analyze the contrastive pairs statistically:\n"
        "- What features appear more often in GOOD outputs?\n"
        "- What features appear more often in BAD outputs?\n\n"
        "Create a rule that maximizes the GOOD features and minimizes the BAD features.\n"
        "Output ONLY the rule, be specific about the pattern."
    )),
    (MutationType.LAMARCKIAN, (
        "A high-scoring output has been provided as a working example.\n"
        "Reverse-engineer what made it successful:\n"
        "- What structural patterns does it follow?\n"
        "- What makes its acceptance criteria testable?\n"
        "- How does it handle complexity?\n\n"
        "Create a rule that captures this success pattern for future outputs.\n"
        "Output ONLY the rule."
    )),
    (MutationType.LAMARCKIAN, (
        "You have a successful example output. Extract what made it work:\n"
        "- Why did this decomposition work well?\n"
        "- What implicit rules did it follow?\n\n"
        "Turn these implicit rules into an explicit instruction.\n"
        "Output ONLY the rule."
    )),
    (MutationType.HYPERMUTATION, (
        "You are improving a MUTATION PROMPT (a prompt that generates improvements to other prompts).\n\n"
        "The current mutation prompt is:\n{MUTATION_PROMPT}\n\n"
        "Its success rate is {SUCCESS_RATE}% (improvements achieved / applications).\n\n"
        "Make it MORE EFFECTIVE by:\n"
        "- Making it more specific about what to look for\n"
        "- Adding structure to guide the analysis\n"
        "- Focusing on high-impact improvements\n\n"
        "Output ONLY the improved mutation prompt."
    )),
    (MutationType.HYPERMUTATION, (
        "Meta-optimization task: Improve this prompt-improvement prompt.\n\n"
        "Current mutation prompt:\n{MUTATION_PROMPT}\n\n"
        "This mutation has been applied {USAGE_COUNT} times with {SUCCESS_RATE}% success.\n\n"
        "Analyze WHY it might be failing and create a better version.\n"
        "Output ONLY the improved mutation prompt."
    )),
    (MutationType.ZERO_ORDER_HYPER, (
        "Create a NEW mutation prompt from scratch that will help improve user story generation prompts.\n\n"
        "Consider these thinking styles:\n"
        "- Analytical: Break down problems systematically\n"
        "- Creative: Find novel approaches\n"
        "- Critical: Identify weaknesses ruthlessly\n"
        "- Synthetic: Combine ideas from different sources\n\n"
        "Create a mutation prompt that uses one of these styles to generate prompt improvements.\n"
        "Output ONLY the new mutation prompt."
    )),
    (MutationType.CROSSOVER, (
        "You have TWO successful prompt patches. Combine the best elements of both.\n\n"
        "Patch A (fitness={FITNESS_A}):\n{PATCH_A}\n\n"
        "Patch B (fitness={FITNESS_B}):\n{PATCH_B}\n\n"
        "Create a NEW patch that combines the strengths of both.\n"
        "Keep it concise; don't just concatenate them.\n"
        "Output ONLY the combined patch."
    )),
]


def create_seed_population() -> List[MutationPrompt]:
    """Initial operators with neutral fitness (0.5)."""
    return [
        MutationPrompt(
            id="mutation-{}-{}".format(mtype.value.lower(), idx),
            text=text,
            type=mtype,
        )
        for idx, (mtype, text) in enumerate(_SEED_OPERATORS)
    ]


def patch_operators(population: Sequence[MutationPrompt]) -> List[MutationPrompt]:
    """Operators that write patches (everything but the meta-level types)."""
    return [m for m in population if m.type not in META_TYPES]


def operators_by_type(
    population: Sequence[MutationPrompt],
    mtype: MutationType,
) -> List[MutationPrompt]:
    return [m for m in population if m.type == mtype]


def select_mutation(
    population: Sequence[MutationPrompt],
    rng: random.Random,
    exclude_ids: Iterable[str] = (),
) -> MutationPrompt:
    """Roulette-wheel selection over patch operators, weight max(0.1, fitness).

    Excluded ids are skipped unless that would leave nothing to pick.
    """
    pool = patch_operators(population)
    if not pool:
        raise ValueError("No patch operators in population")
    excluded = set(exclude_ids)
    eligible = [m for m in pool if m.id not in excluded] or pool

    total = sum(max(MIN_SELECTION_WEIGHT, m.fitness) for m in eligible)
    pick = rng.random() * total
    for m in eligible:
        pick -= max(MIN_SELECTION_WEIGHT, m.fitness)
        if pick <= 0:
            return m
    return eligible[-1]


def render_operator(
    operator: MutationPrompt,
    working_example: Optional[str] = None,
    patch_a: str = "",
    patch_b: str = "",
    fitness_a: float = 0.0,
    fitness_b: float = 0.0,
) -> str:
    """Operator text with its type-specific context filled in."""
    text = operator.text
    if operator.type == MutationType.LAMARCKIAN and working_example:
        text = "{}\n\n## WORKING EXAMPLE (high-scoring output)\n{}".format(
            text, working_example[:1500],
        )
    elif operator.type == MutationType.EDA_MUTATION:
        text = "{}\n\n{}".format(text, EDA_HINT)
    elif operator.type == MutationType.CROSSOVER:
        text = (
            text.replace("{PATCH_A}", patch_a or "(none)")
            .replace("{PATCH_B}", patch_b or "(none)")
            .replace("{FITNESS_A}", "{:.3f}".format(fitness_a))
            .replace("{FITNESS_B}", "{:.3f}".format(fitness_b))
        )
    return text


def record_usage(
    population: Sequence[MutationPrompt],
    used_ids: Iterable[str],
) -> List[MutationPrompt]:
    """Increment usage_count once per occurrence in used_ids."""
    counts: Dict[str, int] = {}
    for mid in used_ids:
        counts[mid] = counts.get(mid, 0) + 1
    return [
        m.model_copy(update={"usage_count": m.usage_count + counts[m.id]})
        if m.id in counts else m
        for m in population
    ]


def update_fitness(
    population: Sequence[MutationPrompt],
    outcomes: Sequence[tuple],
    alpha: float = 0.3,
) -> List[MutationPrompt]:
    """EMA update from (mutation_id, candidate_objective, champion_objective).

    success_rate <- alpha * improved + (1 - alpha) * success_rate, where
    improved means the candidate beat the champion. Fitness mirrors
    success_rate.
    """
    by_id = {m.id: m for m in population}
    for mutation_id, objective, champion_objective in outcomes:
        current = by_id.get(mutation_id)
        if current is None:
            continue
        improved = 1.0 if objective > champion_objective else 0.0
        rate = alpha * improved + (1.0 - alpha) * current.success_rate
        rate = max(0.0, min(1.0, rate))
        by_id[mutation_id] = current.model_copy(update={"success_rate": rate, "fitness": rate})
    return [by_id[m.id] for m in population]


def fill_hypermutation(hyper: MutationPrompt, target: MutationPrompt) -> str:
    return (
        hyper.text
        .replace("{MUTATION_PROMPT}", target.text)
        .replace("{SUCCESS_RATE}", "{:.0f}".format(target.success_rate * 100))
        .replace("{USAGE_COUNT}", str(target.usage_count))
    )


async def hypermutate(
    population: Sequence[MutationPrompt],
    rewriter: OperatorRewriter,
    rng: random.Random,
    generation: int,
) -> Optional[List[MutationPrompt]]:
    """Rewrite the weakest patch operator with a random hypermutation operator.

    Returns the new population, or None when nothing changed.
    """
    hypers = operators_by_type(population, MutationType.HYPERMUTATION)
    regular = patch_operators(population)
    if not hypers or not regular:
        return None

    weakest = min(regular, key=lambda m: m.fitness)
    hyper = hypers[rng.randrange(len(hypers))]

    try:
        text = await rewriter.rewrite(fill_hypermutation(hyper, weakest))
    except Exception as e:
        logger.warning("Hypermutation failed: %s", e)
        return None

    if not text or len(text.strip()) <= MIN_EVOLVED_LENGTH:
        logger.info("Hypermutation produced no usable operator for %s", weakest.id)
        return None

    evolved = MutationPrompt(
        id="mutation-evolved-{}-{}".format(generation, uuid.uuid4().hex[:8]),
        text=text.strip(),
        type=weakest.type,
        generation=generation,
        parent_id=weakest.id,
    )
    logger.info("Hypermutation replaced %s with %s", weakest.id, evolved.id)
    return [evolved if m.id == weakest.id else m for m in population]
