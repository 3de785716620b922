# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Contrastive pair mining: near-identical outputs with divergent quality.

If two outputs for the same task read almost the same but one scores much
higher, the difference points at what the prompt should encourage. The
patch engineer only ever sees these pairs.
"""
import json
import logging
import math
import re
from collections import Counter, OrderedDict
from functools import cmp_to_key
from typing import Dict, List, Optional

from promptopt.models import ContrastPair, GenerationRun, QualityTier, StoryPack
from promptopt.similarity import cosine, hash_vector

logger = logging.getLogger(__name__)

SUBSCORE_METRICS = ("coverage", "structural_completeness", "criteria_quality", "duplication")

_SUBSCORE_LABELS = {
    "coverage": "Low keyword coverage: {bad:.0f}% vs {good:.0f}%",
    "structural_completeness": "Poor structural completeness: {bad:.0f}% vs {good:.0f}%",
    "criteria_quality": "Weak acceptance criteria: {bad:.0f}% vs {good:.0f}%",
    "duplication": "Story duplication detected: {bad:.0f}% unique vs {good:.0f}%",
}

_SUBSCORE_GAP = 0.15
_MIN_CRITERIA = 3
_DELTA_TIE = 0.001
_DELTA_EPS = 1e-9

# Stratified selection shares: HIGH, MEDIUM, rest LOW
_HIGH_SHARE = 0.5
_MEDIUM_SHARE = 0.35


def compact_text(output: Optional[StoryPack]) -> str:
    """Titles, narratives and acceptance criteria only."""
    if output is None:
        return ""
    parts: List[str] = []
    for story in output.stories:
        parts.extend([story.title, story.as_a, story.i_want, story.so_that])
        parts.extend(story.acceptance_criteria)
    return "\n".join(parts)


# =====================================================================
# Plain mining
# =====================================================================

def mine_contrastive_pairs(
    runs: List[GenerationRun],
    min_sim: float = 0.86,
    min_delta: float = 0.15,
    max_pairs: Optional[int] = 8,
) -> List[ContrastPair]:
    """Find same-task run pairs with sim >= min_sim and delta >= min_delta.

    Sorted by delta (desc, 0.001 tolerance) then similarity (desc) and
    truncated to ``max_pairs`` (None keeps all).
    """
    by_task: Dict[str, List[GenerationRun]] = OrderedDict()
    for run in runs:
        by_task.setdefault(run.task_id, []).append(run)

    found: List[ContrastPair] = []
    for task_id, task_runs in by_task.items():
        vectors = [hash_vector(compact_text(r.output)) for r in task_runs]
        for i in range(len(task_runs)):
            for j in range(i + 1, len(task_runs)):
                a, b = task_runs[i], task_runs[j]
                if a.output is None and b.output is None:
                    continue

                sim = cosine(vectors[i], vectors[j])
                delta = abs(a.score - b.score)
                if sim < min_sim or delta < min_delta - _DELTA_EPS:
                    continue

                good, bad = (a, b) if a.score >= b.score else (b, a)
                found.append(ContrastPair(
                    task_id=task_id, sim=sim, delta=delta, good=good, bad=bad,
                ))

    found.sort(key=cmp_to_key(_compare_pairs))
    logger.debug("Mined %d contrastive pairs from %d runs", len(found), len(runs))
    if max_pairs is None:
        return found
    return found[:max_pairs]


def _compare_pairs(p: ContrastPair, q: ContrastPair) -> float:
    """Delta desc (ties within 0.001), then similarity desc."""
    diff = q.delta - p.delta
    if abs(diff) > _DELTA_TIE:
        return diff
    return q.sim - p.sim


# =====================================================================
# Tiered mining
# =====================================================================

def quality_tier(score: float, high: float = 0.75, medium: float = 0.50) -> QualityTier:
    if score >= high:
        return QualityTier.HIGH
    if score >= medium:
        return QualityTier.MEDIUM
    return QualityTier.LOW


def find_primary_metric(good: GenerationRun, bad: GenerationRun) -> Optional[str]:
    """Subscore with the largest absolute gap between good and bad."""
    if good.subscores is None or bad.subscores is None:
        return None
    primary = None
    max_gap = 0.0
    for metric in SUBSCORE_METRICS:
        g = getattr(good.subscores, metric)
        b = getattr(bad.subscores, metric)
        if g is None or b is None:
            continue
        gap = abs(g - b)
        if gap > max_gap:
            max_gap = gap
            primary = metric
    return primary


def analyze_errors(
    good: GenerationRun,
    bad: GenerationRun,
    count_min: int = 4,
    count_max: int = 8,
) -> List[str]:
    """Short diagnostics explaining why the bad output scored lower."""
    errors: List[str] = []

    if good.passed and not bad.passed:
        errors.append("Schema validation failed")

    good_count = len(good.output.stories) if good.output else 0
    bad_count = len(bad.output.stories) if bad.output else 0
    if count_min <= good_count <= count_max and not count_min <= bad_count <= count_max:
        errors.append(
            "Story count outside optimal range: {} (optimal: {}-{}, good had: {})".format(
                bad_count, count_min, count_max, good_count,
            )
        )

    if good.subscores is not None and bad.subscores is not None:
        for metric in SUBSCORE_METRICS:
            g = getattr(good.subscores, metric)
            b = getattr(bad.subscores, metric)
            if g is None or b is None:
                continue
            if g - b > _SUBSCORE_GAP:
                errors.append(_SUBSCORE_LABELS[metric].format(bad=b * 100, good=g * 100))

    if bad.output is not None:
        for story in bad.output.stories:
            if len(story.acceptance_criteria) < _MIN_CRITERIA:
                errors.append('Story "{}..." has only {} acceptance criteria'.format(
                    story.title[:30], len(story.acceptance_criteria),
                ))
                break

    return errors


def mine_tiered_pairs(
    runs: List[GenerationRun],
    min_sim: float = 0.86,
    min_delta: float = 0.15,
    max_pairs: int = 8,
    high: float = 0.75,
    medium: float = 0.50,
    multi_metric: bool = True,
    analyze: bool = True,
    stratify: bool = True,
    count_min: int = 4,
    count_max: int = 8,
) -> List[ContrastPair]:
    """Mine pairs and annotate them with tier, primary metric and diagnostics.

    With ``stratify`` and more than 3 pairs, the selection targets 50% HIGH,
    35% MEDIUM and 15% LOW, backfilling from the remaining pairs in rank
    order when a tier runs short.
    """
    pool = mine_contrastive_pairs(runs, min_sim, min_delta, max_pairs=None)

    annotated = []
    for pair in pool:
        update = {"tier": quality_tier(pair.good.score, high, medium)}
        if multi_metric:
            update["primary_metric"] = find_primary_metric(pair.good, pair.bad)
        if analyze:
            update["error_analysis"] = analyze_errors(
                pair.good, pair.bad, count_min, count_max,
            )
        annotated.append(pair.model_copy(update=update))

    if not stratify or len(annotated) <= 3:
        return annotated[:max_pairs]

    return stratify_pairs(annotated, max_pairs)


def stratify_pairs(pairs: List[ContrastPair], max_pairs: int) -> List[ContrastPair]:
    """Select up to max_pairs with tier quotas, then backfill."""
    by_tier: Dict[QualityTier, List[int]] = {t: [] for t in QualityTier}
    for idx, pair in enumerate(pairs):
        by_tier[pair.tier or QualityTier.MEDIUM].append(idx)

    high_count = int(math.ceil(max_pairs * _HIGH_SHARE))
    medium_count = int(math.ceil(max_pairs * _MEDIUM_SHARE))
    low_count = max(0, max_pairs - high_count - medium_count)

    chosen: List[int] = []
    chosen.extend(by_tier[QualityTier.HIGH][:high_count])
    chosen.extend(by_tier[QualityTier.MEDIUM][:medium_count])
    chosen.extend(by_tier[QualityTier.LOW][:low_count])

    remaining = max_pairs - len(chosen)
    if remaining > 0:
        taken = set(chosen)
        chosen.extend([i for i in range(len(pairs)) if i not in taken][:remaining])

    return [pairs[i] for i in chosen[:max_pairs]]


# =====================================================================
# Formatting for the patch engineer
# =====================================================================

def format_pairs_for_prompt(pairs: List[ContrastPair]) -> str:
    """Render pairs as GOOD/BAD blocks for the patch engineer."""
    if not pairs:
        return "No contrastive pairs found (outputs too different or scores too similar)."

    blocks = []
    for idx, p in enumerate(pairs):
        lines = [
            "### PAIR {}".format(idx + 1),
            "Task: {} | Similarity: {:.2f} | Delta: {:.3f}".format(p.task_id, p.sim, p.delta),
        ]
        if p.tier is not None:
            lines.append("Quality Tier: {}".format(p.tier.value))
        if p.primary_metric:
            lines.append("Primary Differentiator: {}".format(p.primary_metric))
        if p.error_analysis:
            lines.append("")
            lines.append("**Why BAD output failed:**")
            lines.extend("- {}".format(e) for e in p.error_analysis)
        lines.extend([
            "",
            "**GOOD** (score={:.3f}, seed={})".format(p.good.score, p.good.seed),
            "```json",
            _dump_output(p.good),
            "```",
            "",
            "**BAD** (score={:.3f}, seed={})".format(p.bad.score, p.bad.seed),
            "```json",
            _dump_output(p.bad),
            "```",
        ])
        blocks.append("\n".join(lines))

    return "\n\n---\n\n".join(blocks)


def format_tiered_pairs_for_prompt(pairs: List[ContrastPair]) -> str:
    """Tier counts and the most common issues, followed by the pairs."""
    if not pairs:
        return format_pairs_for_prompt(pairs)

    tiers = Counter(p.tier or QualityTier.MEDIUM for p in pairs)
    issues: Counter = Counter()
    for p in pairs:
        for err in p.error_analysis or []:
            issues[_normalize_issue(err)] += 1

    sections = [
        "## CONTRASTIVE PAIR ANALYSIS",
        "",
        "Total pairs: {}".format(len(pairs)),
        "- HIGH tier: {}".format(tiers[QualityTier.HIGH]),
        "- MEDIUM tier: {}".format(tiers[QualityTier.MEDIUM]),
        "- LOW tier: {}".format(tiers[QualityTier.LOW]),
    ]
    if issues:
        sections.append("")
        sections.append("### Common Issues in BAD Outputs:")
        for issue, count in issues.most_common(5):
            sections.append("- {} ({}x)".format(issue, count))

    sections.extend(["", "---", "", format_pairs_for_prompt(pairs)])
    return "\n".join(sections)


def _normalize_issue(error: str) -> str:
    """Drop concrete numbers and quoted titles so issues can be counted."""
    error = re.sub(r"\d+(?:\.\d+)?%?", "X", error)
    return re.sub(r'".+?"', '"..."', error)


def _dump_output(run: GenerationRun) -> str:
    if run.output is None:
        return "null"
    return json.dumps(run.output.model_dump(), ensure_ascii=False, indent=2)
