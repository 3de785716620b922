# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Distributional evaluator: score a prompt over replicate generations.

Every task is generated R times with seeds seed_base + i. Per-task
statistics capture reliability (pass rate, discoverability@K), worst-case
quality (p10) and consistency (std); the aggregate objective penalizes
inconsistency and failures so a reliably good prompt outranks one that is
occasionally brilliant.
"""
import asyncio
import inspect
import logging
import math
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence

import yaml

from promptopt.collaborators import Generator, Scorer
from promptopt.config import OptimizerConfig
from promptopt.errors import NoTasksError
from promptopt.models import (
    AggregateStats, DistributionReport, GenerationFailure, GenerationRun,
    Task, TaskReport,
)

logger = logging.getLogger(__name__)

ProgressFn = Callable[[int, int], Any]


# =====================================================================
# Statistics
# =====================================================================

def robust_objective(
    mean_of_means: float,
    mean_std: float,
    mean_pass_rate: float,
    std_lambda: float = 0.25,
    fail_penalty: float = 0.4,
) -> float:
    """objective = mean_of_means - std_lambda*mean_std - fail_penalty*(1 - mean_pass_rate)"""
    return mean_of_means - std_lambda * mean_std - fail_penalty * (1.0 - mean_pass_rate)


def percentile(values: Sequence[float], p: float) -> float:
    """Lower nearest-rank percentile: sorted[floor(p * (n - 1))]."""
    if not values:
        return 0.0
    ordered = sorted(values)
    idx = int(math.floor(p * (len(ordered) - 1)))
    return ordered[max(0, min(idx, len(ordered) - 1))]


def sample_std(values: Sequence[float]) -> float:
    """Sample standard deviation (n - 1). 0.0 for fewer than two values."""
    n = len(values)
    if n < 2:
        return 0.0
    mean = sum(values) / n
    return math.sqrt(sum((v - mean) ** 2 for v in values) / (n - 1))


def discoverability(pass_rate: float, k: int) -> float:
    """Probability that at least one of K independent tries passes."""
    return 1.0 - (1.0 - pass_rate) ** k


def summarize_task(task_id: str, runs: List[GenerationRun], k: int = 3) -> TaskReport:
    """Compute per-task statistics from its replicate runs."""
    if not runs:
        return TaskReport(task_id=task_id)
    scores = [r.score for r in runs]
    pass_rate = sum(1 for r in runs if r.passed) / len(runs)
    return TaskReport(
        task_id=task_id,
        runs=runs,
        pass_rate=pass_rate,
        mean_score=sum(scores) / len(scores),
        p10_score=percentile(scores, 0.1),
        std_score=sample_std(scores),
        discoverability_k=discoverability(pass_rate, k),
    )


def aggregate(
    per_task: List[TaskReport],
    std_lambda: float = 0.25,
    fail_penalty: float = 0.4,
) -> AggregateStats:
    """Average per-task statistics and compute the robust objective."""
    if not per_task:
        return AggregateStats()
    n = len(per_task)
    mean_pass_rate = sum(t.pass_rate for t in per_task) / n
    mean_of_means = sum(t.mean_score for t in per_task) / n
    mean_p10 = sum(t.p10_score for t in per_task) / n
    mean_std = sum(t.std_score for t in per_task) / n
    return AggregateStats(
        mean_pass_rate=mean_pass_rate,
        mean_of_means=mean_of_means,
        mean_p10=mean_p10,
        mean_std=mean_std,
        objective=robust_objective(
            mean_of_means, mean_std, mean_pass_rate, std_lambda, fail_penalty,
        ),
    )


# =====================================================================
# Evaluation
# =====================================================================

async def evaluate_distribution(
    prompt_text: str,
    tasks: List[Task],
    generator: Generator,
    scorer: Scorer,
    replicates: int = 5,
    seed_base: int = 12345,
    concurrency: Optional[int] = None,
    timeout_s: Optional[float] = None,
    on_progress: Optional[ProgressFn] = None,
    discoverability_k: int = 3,
    std_lambda: float = 0.25,
    fail_penalty: float = 0.4,
) -> DistributionReport:
    """Run R replicate generations per task and aggregate them.

    Parameters
    ----------
    prompt_text : str
        The full prompt under evaluation.
    tasks : list of Task
        Evaluation tasks. Must not be empty.
    concurrency : int, optional
        Max generations in flight. None means no limit.
    timeout_s : float, optional
        Per-generation timeout. A timeout counts as a failed run.
    on_progress : callable, optional
        Called with (completed, total) after every run, total = tasks x R.
    """
    if not tasks:
        raise NoTasksError("No tasks to evaluate")
    if replicates < 1:
        raise ValueError("replicates must be >= 1, got {}".format(replicates))

    total = len(tasks) * replicates
    completed = 0
    semaphore = asyncio.Semaphore(concurrency) if concurrency else None

    async def _bounded(task: Task, seed: int) -> GenerationRun:
        nonlocal completed
        if semaphore is not None:
            async with semaphore:
                run = await _run_one(prompt_text, task, seed, generator, scorer, timeout_s)
        else:
            run = await _run_one(prompt_text, task, seed, generator, scorer, timeout_s)
        completed += 1
        await _notify(on_progress, completed, total)
        return run

    per_task: List[TaskReport] = []
    coros = [
        _bounded(task, seed_base + i)
        for task in tasks
        for i in range(replicates)
    ]
    runs = await asyncio.gather(*coros)

    for t_idx, task in enumerate(tasks):
        task_runs = list(runs[t_idx * replicates:(t_idx + 1) * replicates])
        per_task.append(summarize_task(task.id, task_runs, discoverability_k))

    report = DistributionReport(
        per_task=per_task,
        agg=aggregate(per_task, std_lambda, fail_penalty),
    )
    logger.debug(
        "Evaluated %d runs: objective=%.4f pass=%.2f",
        total, report.agg.objective, report.agg.mean_pass_rate,
    )
    return report


async def evaluate_prompt(
    prompt_text: str,
    tasks: List[Task],
    generator: Generator,
    scorer: Scorer,
    config: OptimizerConfig,
    seed_base: Optional[int] = None,
    on_progress: Optional[ProgressFn] = None,
) -> DistributionReport:
    """evaluate_distribution with every knob taken from an OptimizerConfig."""
    return await evaluate_distribution(
        prompt_text, tasks, generator, scorer,
        replicates=config.replicates,
        seed_base=config.seed_base if seed_base is None else seed_base,
        concurrency=config.concurrency,
        timeout_s=config.generation_timeout_s,
        on_progress=on_progress,
        discoverability_k=config.discoverability_k,
        std_lambda=config.std_lambda,
        fail_penalty=config.fail_penalty,
    )


async def _run_one(
    prompt_text: str,
    task: Task,
    seed: int,
    generator: Generator,
    scorer: Scorer,
    timeout_s: Optional[float],
) -> GenerationRun:
    """Generate + score one replicate. Failures become failing runs."""
    try:
        if timeout_s:
            outcome = await asyncio.wait_for(
                generator.generate(prompt_text, task, seed), timeout=timeout_s,
            )
        else:
            outcome = await generator.generate(prompt_text, task, seed)
    except asyncio.TimeoutError:
        logger.warning("Generation timed out for task %s seed %d", task.id, seed)
        return GenerationRun(
            task_id=task.id, seed=seed,
            error="generation timed out after {}s".format(timeout_s),
        )
    except Exception as e:
        logger.warning("Generation failed for task %s seed %d: %s", task.id, seed, e)
        return GenerationRun(task_id=task.id, seed=seed, error=str(e)[:200])

    if isinstance(outcome, GenerationFailure):
        logger.debug("Invalid output for task %s seed %d: %s", task.id, seed, outcome.error)
        return GenerationRun(
            task_id=task.id, seed=seed,
            raw_text=outcome.raw_text, error=outcome.error,
        )

    try:
        result = await scorer.score(task, outcome.output)
    except Exception as e:
        logger.warning("Scoring failed for task %s seed %d: %s", task.id, seed, e)
        return GenerationRun(
            task_id=task.id, seed=seed,
            output=outcome.output, raw_text=outcome.raw_text,
            error="scoring failed: {}".format(str(e)[:200]),
        )

    return GenerationRun(
        task_id=task.id,
        seed=seed,
        score=result.score,
        passed=result.passed,
        output=outcome.output,
        raw_text=outcome.raw_text,
        gate_decision=result.gate_decision,
        subscores=result.subscores,
    )


async def _notify(on_progress: Optional[ProgressFn], completed: int, total: int) -> None:
    """Safely invoke the progress callback, awaiting it if it is async."""
    if on_progress is None:
        return
    try:
        result = on_progress(completed, total)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.debug("Progress callback error: %s", e)


# =====================================================================
# Helpers
# =====================================================================

def flatten_runs(report: DistributionReport) -> List[GenerationRun]:
    """All runs of a report, in task order."""
    return [run for task in report.per_task for run in task.runs]


def best_run(report: DistributionReport) -> Optional[GenerationRun]:
    """Highest-scoring passing run with an output, if any."""
    passing = [r for r in flatten_runs(report) if r.passed and r.output is not None]
    if not passing:
        return None
    return max(passing, key=lambda r: r.score)


def load_tasks(path: str) -> List[Task]:
    """Load evaluation tasks from a YAML file with a top-level ``tasks`` list."""
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError("Tasks not found: {}".format(path))

    with open(p, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    tasks = []
    for item in data.get("tasks", []):
        tasks.append(Task(**item))

    return tasks


def format_distribution_report(report: DistributionReport) -> str:
    """Human-readable summary of one evaluation."""
    agg = report.agg
    lines = [
        "Objective: {:.4f}  (mean {:.3f}, std {:.3f}, pass {:.0%}, p10 {:.3f})".format(
            agg.objective, agg.mean_of_means, agg.mean_std,
            agg.mean_pass_rate, agg.mean_p10,
        ),
    ]
    for t in report.per_task:
        lines.append("  {}: mean {:.3f}  p10 {:.3f}  std {:.3f}  pass {:.0%}  disc@K {:.2f}".format(
            t.task_id, t.mean_score, t.p10_score, t.std_score,
            t.pass_rate, t.discoverability_k,
        ))
    return "\n".join(lines)
