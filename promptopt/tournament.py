# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Tournament selection over evaluated patch candidates.

Two modes:
  simple: winner is the candidate with the highest objective
  nqd   : eligibility gate, Pareto front on (R_eff, use-value), winner by
           use-value with creativity tie-breaks, plus illumination telemetry

Illumination numbers describe the search space only; they never change
which candidate wins.
"""
import logging
from functools import cmp_to_key
from typing import List, Optional, Sequence

from promptopt.creativity import (
    DIVERSITY_TIE, USE_VALUE_TIE, apply_creativity_gate, compare_profiles,
    compute_creativity_profile,
)
from promptopt.models import (
    ArchiveEntry, Candidate, IlluminationTelemetry, NQDArchive, ParetoFront,
    ParetoStats, TournamentResult,
)

logger = logging.getLogger(__name__)


def run_simple_selection(candidates: List[Candidate]) -> TournamentResult:
    """Rank by objective; the first is the winner."""
    ranked = sorted(candidates, key=lambda c: c.objective, reverse=True)
    return TournamentResult(
        mode="simple",
        ranked=ranked,
        winner=ranked[0] if ranked else None,
    )


# =====================================================================
# Pareto front
# =====================================================================

def dominates(a: ArchiveEntry, b: ArchiveEntry) -> bool:
    """a >= b on both axes and strictly better on at least one."""
    if a.r_eff < b.r_eff or a.use_value < b.use_value:
        return False
    return a.r_eff > b.r_eff or a.use_value > b.use_value


def build_pareto_front(
    entries: List[ArchiveEntry],
    max_front_size: int = 10,
) -> ParetoFront:
    """Partition gated entries into front / dominated / ineligible."""
    eligible = [e for e in entries if e.gate.eligible]
    ineligible = [e for e in entries if not e.gate.eligible]

    front: List[ArchiveEntry] = []
    dominated: List[ArchiveEntry] = []
    for entry in eligible:
        if any(dominates(other, entry) for other in eligible if other is not entry):
            dominated.append(entry)
        else:
            front.append(entry)

    pruned = 0
    if len(front) > max_front_size:
        front.sort(key=lambda e: e.use_value, reverse=True)
        pruned = len(front) - max_front_size
        dominated.extend(front[max_front_size:])
        front = front[:max_front_size]

    return ParetoFront(
        front=front,
        dominated=dominated,
        ineligible=ineligible,
        stats=ParetoStats(
            total=len(entries),
            eligible=len(eligible),
            ineligible=len(ineligible),
            front_size=len(front),
            dominated=len(dominated),
            pruned=pruned,
        ),
    )


def compute_illumination(
    pareto: ParetoFront,
    entries: List[ArchiveEntry],
) -> IlluminationTelemetry:
    """Coverage, QD-score, average novelty/diversity and objective spread."""
    eligible_count = pareto.stats.eligible
    coverage = len(pareto.front) / eligible_count if eligible_count else 0.0
    qd_score = sum(e.use_value for e in pareto.front)

    novelties = [e.gate.profile.novelty for e in entries if e.gate.profile.novelty > 0]
    diversities = [e.gate.profile.diversity for e in entries if e.gate.profile.diversity > 0]
    objectives = [e.candidate.objective for e in entries]

    return IlluminationTelemetry(
        coverage=coverage,
        qd_score=qd_score,
        avg_novelty=sum(novelties) / len(novelties) if novelties else 0.0,
        avg_diversity=sum(diversities) / len(diversities) if diversities else 0.0,
        objective_spread=(max(objectives) - min(objectives)) if objectives else 0.0,
        front_size=len(pareto.front),
        eligible_count=eligible_count,
        total_candidates=len(entries),
    )


# =====================================================================
# NQD selection
# =====================================================================

def gate_candidates(
    candidates: List[Candidate],
    baseline_objective: float,
    reference_prompts: Optional[Sequence[str]] = None,
    constraint_fit_threshold: float = 1.0,
    use_value_threshold: float = 0.0,
) -> List[ArchiveEntry]:
    """Compute each candidate's creativity profile and gate decision."""
    entries = []
    for idx, cand in enumerate(candidates):
        portfolio = [c.prompt_text for j, c in enumerate(candidates) if j != idx]
        profile = compute_creativity_profile(
            cand.prompt_text,
            cand.objective,
            baseline_objective,
            cand.pass_rate,
            cand.schema_valid,
            reference_prompts=reference_prompts,
            portfolio_prompts=portfolio,
        )
        gate = apply_creativity_gate(profile, constraint_fit_threshold, use_value_threshold)
        r_eff = cand.r_eff if cand.r_eff is not None else cand.objective
        entries.append(ArchiveEntry(candidate=cand, gate=gate, r_eff=r_eff))
    return entries


def run_nqd_selection(
    candidates: List[Candidate],
    baseline_objective: float,
    reference_prompts: Optional[Sequence[str]] = None,
    constraint_fit_threshold: float = 1.0,
    use_value_threshold: float = 0.0,
    max_front_size: int = 10,
    use_value_tie: float = USE_VALUE_TIE,
    diversity_tie: float = DIVERSITY_TIE,
) -> NQDArchive:
    """Gate, build the Pareto front, pick the winner, report illumination."""
    if not candidates:
        return NQDArchive()

    entries = gate_candidates(
        candidates, baseline_objective, reference_prompts,
        constraint_fit_threshold, use_value_threshold,
    )
    pareto = build_pareto_front(entries, max_front_size)
    pareto.front.sort(key=cmp_to_key(
        lambda a, b: compare_profiles(a.gate.profile, b.gate.profile, use_value_tie, diversity_tie),
    ))
    pareto.dominated.sort(key=lambda e: e.candidate.objective, reverse=True)
    pareto.ineligible.sort(key=lambda e: e.candidate.objective, reverse=True)

    archive = NQDArchive(
        pareto_front=pareto,
        illumination=compute_illumination(pareto, entries),
        selected_winner=pareto.front[0] if pareto.front else None,
    )
    logger.debug(
        "NQD: %d candidates, %d eligible, front %d, winner %s",
        len(candidates), pareto.stats.eligible, len(pareto.front),
        archive.selected_winner.candidate.id if archive.selected_winner else None,
    )
    return archive


def order_candidates(archive: NQDArchive) -> List[Candidate]:
    """Front first, then dominated, then ineligible."""
    pf = archive.pareto_front
    return [e.candidate for e in pf.front + pf.dominated + pf.ineligible]


def run_tournament(
    candidates: List[Candidate],
    baseline_objective: float,
    mode: str = "nqd",
    reference_prompts: Optional[Sequence[str]] = None,
    constraint_fit_threshold: float = 1.0,
    use_value_threshold: float = 0.0,
    max_front_size: int = 10,
    use_value_tie: float = USE_VALUE_TIE,
    diversity_tie: float = DIVERSITY_TIE,
) -> TournamentResult:
    """Select a winner in the given mode.

    In nqd mode ``nqd_changed_winner`` reports whether the Pareto winner
    exists and differs from the naive max-objective pick.
    """
    simple = run_simple_selection(candidates)
    if mode != "nqd":
        return simple

    archive = run_nqd_selection(
        candidates, baseline_objective, reference_prompts,
        constraint_fit_threshold, use_value_threshold, max_front_size,
        use_value_tie, diversity_tie,
    )
    winner = archive.selected_winner.candidate if archive.selected_winner else None
    simple_id = simple.winner.id if simple.winner else None
    nqd_id = winner.id if winner else None

    return TournamentResult(
        mode="nqd",
        ranked=order_candidates(archive),
        winner=winner,
        archive=archive,
        nqd_changed_winner=nqd_id is not None and simple_id != nqd_id,
    )
