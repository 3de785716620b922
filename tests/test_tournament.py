# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Tests for creativity gating, Pareto fronts and tournament selection."""
import pytest

from promptopt.creativity import (
    apply_creativity_gate, compare_profiles, compute_constraint_fit,
    compute_creativity_profile, compute_diversity, compute_novelty,
    compute_surprise,
)
from promptopt.models import Candidate, CreativityProfile
from promptopt.tournament import (
    build_pareto_front, dominates, gate_candidates, run_nqd_selection,
    run_simple_selection, run_tournament,
)

TEXTS = [
    "Always write acceptance criteria as Given When Then scenarios.",
    "Split epics into stories that fit within one sprint each.",
    "Mention the persona explicitly in every story narrative.",
    "Avoid duplicate stories by merging overlapping requirements first.",
]


def _cand(cid, objective, text=None, r_eff=None, pass_rate=1.0, schema_valid=True):
    return Candidate(
        id=cid,
        patch=text or cid,
        prompt_text=text or "Candidate {} patch about {}".format(cid, cid),
        objective=objective,
        pass_rate=pass_rate,
        schema_valid=schema_valid,
        r_eff=r_eff,
    )


# =====================================================================
# Creativity profile and gate
# =====================================================================

class TestCreativity:

    def test_novelty_without_references(self):
        assert compute_novelty("anything at all", []) == 1.0

    def test_novelty_identical_reference(self):
        assert compute_novelty(TEXTS[0], [TEXTS[0]]) == pytest.approx(0.0, abs=1e-9)

    def test_diversity_against_portfolio(self):
        assert compute_diversity(TEXTS[0], []) == 1.0
        assert compute_diversity(TEXTS[0], [TEXTS[0], TEXTS[1]]) == pytest.approx(0.0, abs=1e-9)

    def test_surprise_bounds(self):
        assert compute_surprise("") == 0.0
        assert compute_surprise("a b c") == 0.0
        value = compute_surprise("Short one. This sentence is considerably longer than the first one!")
        assert 0.0 < value <= 5.0

    def test_constraint_fit(self):
        assert compute_constraint_fit(0.8, True) == 0.8
        assert compute_constraint_fit(0.8, False) == 0.0

    def test_profile_use_value(self):
        profile = compute_creativity_profile(TEXTS[0], 0.8, 0.7, 1.0, True)
        assert profile.use_value == pytest.approx(0.1)
        assert profile.constraint_fit == 1.0

    def test_gate_constraint_fit_alone(self):
        gate = apply_creativity_gate(CreativityProfile(constraint_fit=1.0, use_value=-0.1))
        assert gate.eligible
        assert gate.reason.startswith("Passes constraint gate")

    def test_gate_use_value_alone(self):
        gate = apply_creativity_gate(CreativityProfile(constraint_fit=0.6, use_value=0.05))
        assert gate.eligible
        assert gate.reason.startswith("Passes use-value gate")
        assert any("Partial constraint fit" in w for w in gate.warnings)

    def test_gate_zero_use_value_is_not_enough(self):
        gate = apply_creativity_gate(CreativityProfile(constraint_fit=0.5, use_value=0.0))
        assert not gate.eligible

    def test_novelty_alone_never_eligible(self):
        gate = apply_creativity_gate(
            CreativityProfile(novelty=0.95, constraint_fit=0.2, use_value=-0.2),
        )
        assert not gate.eligible
        assert gate.reason.startswith("Failed both gates")
        assert len(gate.warnings) == 2

    def test_compare_profiles_order(self):
        a = CreativityProfile(use_value=0.1000, diversity=0.2, novelty=0.9)
        b = CreativityProfile(use_value=0.1005, diversity=0.8, novelty=0.1)
        # use-value within tolerance, diversity decides
        assert compare_profiles(b, a) < 0
        c = CreativityProfile(use_value=0.2, diversity=0.0)
        assert compare_profiles(c, b) < 0
        d = CreativityProfile(use_value=0.1, diversity=0.205, novelty=0.95)
        # diversity within tolerance, novelty decides
        assert compare_profiles(d, a) < 0


# =====================================================================
# Pareto front
# =====================================================================

class TestParetoFront:

    def _entries(self, objectives, r_effs):
        cands = [
            _cand("c{}".format(i), obj, text=TEXTS[i], r_eff=r)
            for i, (obj, r) in enumerate(zip(objectives, r_effs))
        ]
        return gate_candidates(cands, baseline_objective=0.7)

    def test_dominates(self):
        a, b, c = self._entries([0.8, 0.75, 0.85], [0.9, 0.8, 0.8])
        assert dominates(a, b)
        assert not dominates(b, a)
        assert not dominates(a, c)
        assert not dominates(c, a)
        assert not dominates(a, a)

    def test_tradeoff_front(self):
        entries = self._entries([0.71, 0.72, 0.73, 0.74], [0.9, 0.85, 0.8, 0.75])
        pareto = build_pareto_front(entries)
        assert pareto.stats.front_size == 4
        assert pareto.stats.dominated == 0
        for a in pareto.front:
            for b in pareto.front:
                assert not dominates(a, b)

    def test_pruning(self):
        entries = self._entries([0.71, 0.72, 0.73, 0.74], [0.9, 0.85, 0.8, 0.75])
        pareto = build_pareto_front(entries, max_front_size=2)
        assert [e.candidate.id for e in pareto.front] == ["c3", "c2"]
        assert pareto.stats.pruned == 2
        assert pareto.stats.dominated == 2

    def test_ineligible_partition(self):
        cands = [
            _cand("ok", 0.8, text=TEXTS[0]),
            _cand("bad", 0.6, text=TEXTS[1], pass_rate=0.5),
        ]
        pareto = build_pareto_front(gate_candidates(cands, 0.7))
        assert [e.candidate.id for e in pareto.ineligible] == ["bad"]
        assert pareto.stats.total == 2
        assert pareto.stats.eligible == 1


# =====================================================================
# Selection
# =====================================================================

class TestSelection:

    def test_simple_selection(self):
        result = run_simple_selection([_cand("a", 0.75), _cand("b", 0.85), _cand("c", 0.80)])
        assert result.winner.id == "b"
        assert [c.id for c in result.ranked] == ["b", "c", "a"]

    def test_nqd_matches_simple_when_clear(self):
        cands = [
            _cand("a", 0.75, text=TEXTS[0]),
            _cand("b", 0.85, text=TEXTS[1]),
            _cand("c", 0.80, text=TEXTS[2]),
        ]
        result = run_tournament(cands, baseline_objective=0.7, mode="nqd")
        assert result.mode == "nqd"
        assert result.winner.id == "b"
        assert result.nqd_changed_winner is False
        assert result.ranked[0].id == "b"
        assert len(result.ranked) == 3

    def test_nqd_prefers_diverse_candidate_on_tie(self):
        dup = TEXTS[0]
        cands = [
            _cand("a", 0.8005, text=dup, r_eff=0.9),
            _cand("b", 0.8000, text=dup, r_eff=0.9),
            _cand("c", 0.8003, text=TEXTS[3], r_eff=0.95),
        ]
        result = run_tournament(cands, baseline_objective=0.7, mode="nqd")
        assert result.winner.id == "c"
        assert result.nqd_changed_winner is True
        front_ids = {e.candidate.id for e in result.archive.pareto_front.front}
        assert front_ids == {"a", "c"}

    def test_zero_tolerance_ranks_by_use_value(self):
        dup = TEXTS[0]
        cands = [
            _cand("a", 0.8005, text=dup, r_eff=0.9),
            _cand("c", 0.8003, text=TEXTS[3], r_eff=0.95),
        ]
        result = run_tournament(cands, baseline_objective=0.7, mode="nqd", use_value_tie=0.0)
        assert result.winner.id == "a"
        assert result.nqd_changed_winner is False

    def test_no_eligible_candidates(self):
        cands = [
            _cand("a", 0.5, text=TEXTS[0], pass_rate=0.4),
            _cand("b", 0.6, text=TEXTS[1], pass_rate=0.4),
        ]
        result = run_tournament(cands, baseline_objective=0.7, mode="nqd")
        assert result.winner is None
        assert result.nqd_changed_winner is False
        assert result.ranked[0].id == "b"
        assert [c.id for c in result.ranked] == ["b", "a"]

    def test_no_winner_is_not_a_changed_winner(self):
        cands = [_cand("only", 0.9, text=TEXTS[0], pass_rate=0.3)]
        result = run_tournament(cands, baseline_objective=0.95, mode="nqd")
        assert result.winner is None
        assert run_simple_selection(cands).winner.id == "only"
        assert result.nqd_changed_winner is False

    def test_illumination(self):
        cands = [
            _cand("a", 0.75, text=TEXTS[0]),
            _cand("b", 0.85, text=TEXTS[1]),
        ]
        archive = run_nqd_selection(cands, baseline_objective=0.7)
        ill = archive.illumination
        assert ill.total_candidates == 2
        assert ill.eligible_count == 2
        assert ill.front_size == 1
        assert ill.coverage == pytest.approx(0.5)
        assert ill.qd_score == pytest.approx(0.15)
        assert ill.objective_spread == pytest.approx(0.1)

    def test_simple_mode_has_no_archive(self):
        result = run_tournament([_cand("a", 0.8)], baseline_objective=0.7, mode="simple")
        assert result.mode == "simple"
        assert result.archive is None
        assert result.winner.id == "a"

    def test_empty(self):
        result = run_tournament([], baseline_objective=0.7)
        assert result.winner is None
        assert result.ranked == []
        assert result.nqd_changed_winner is False
