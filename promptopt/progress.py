# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Progress events and the pollable optimization task record.

The loop publishes ProgressEvents on a ProgressBus. Consumers either
register a callback or take a bounded asyncio.Queue; a slow queue consumer
loses the oldest events, never blocks the loop.

OptimizationTask records are replaced wholesale on every update, so a
reader never sees a half-written record.
"""
import asyncio
import inspect
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from promptopt.models import IlluminationTelemetry, IterationResult

logger = logging.getLogger(__name__)


class OptimizationStep(str, Enum):
    INITIALIZING = "initializing"
    EVALUATING_CHAMPION = "evaluating_champion"
    MINING_PAIRS = "mining_pairs"
    GENERATING_PATCHES = "generating_patches"
    TOURNAMENT = "tournament"
    PROMOTION = "promotion"
    META_EVOLUTION = "meta_evolution"
    CHECKPOINTING = "checkpointing"
    COMPLETED = "completed"
    FAILED = "failed"


STEP_LABELS: Dict[OptimizationStep, str] = {
    OptimizationStep.INITIALIZING: "Initializing",
    OptimizationStep.EVALUATING_CHAMPION: "Evaluating Champion",
    OptimizationStep.MINING_PAIRS: "Mining Contrastive Pairs",
    OptimizationStep.GENERATING_PATCHES: "Generating Patches",
    OptimizationStep.TOURNAMENT: "Running Tournament",
    OptimizationStep.PROMOTION: "Promotion Decision",
    OptimizationStep.META_EVOLUTION: "Meta-Evolution",
    OptimizationStep.CHECKPOINTING: "Saving Checkpoint",
    OptimizationStep.COMPLETED: "Completed",
    OptimizationStep.FAILED: "Failed",
}

TERMINAL_STEPS = (OptimizationStep.COMPLETED, OptimizationStep.FAILED)


# =====================================================================
# Events
# =====================================================================

class EvalProgress(BaseModel):
    completed: int = 0
    total: int = 0
    candidate_id: Optional[str] = None


class ProgressEvent(BaseModel):
    """One progress notification from the loop.

    kind: step (entered a step), eval (replicate finished),
    iteration (IterationResult appended), done (terminal state).
    """

    kind: str = "step"
    step: OptimizationStep
    iteration: int = 0
    max_iterations: int = 0
    champion_objective: float = 0.0
    eval_progress: Optional[EvalProgress] = None
    result: Optional[IterationResult] = None
    error: Optional[str] = None
    timestamp: float = Field(default_factory=time.time)

    @property
    def forces_persist(self) -> bool:
        """Iteration boundaries and terminal states always reach storage."""
        return self.kind in ("iteration", "done") or self.step in TERMINAL_STEPS


ProgressCallback = Callable[[ProgressEvent], Any]


class ProgressBus:
    """Observer list plus bounded queue subscriptions."""

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._callbacks: List[ProgressCallback] = []
        self._queues: List[asyncio.Queue] = []

    def subscribe(self, callback: ProgressCallback) -> ProgressCallback:
        self._callbacks.append(callback)
        return callback

    def unsubscribe(self, callback: ProgressCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def subscribe_queue(self, maxsize: Optional[int] = None) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize or self._queue_size)
        self._queues.append(queue)
        return queue

    def unsubscribe_queue(self, queue: asyncio.Queue) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    async def publish(self, event: ProgressEvent) -> None:
        """Deliver to every subscriber. Subscriber errors are logged, not raised."""
        for callback in list(self._callbacks):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning("Progress subscriber error: %s", e)

        for queue in list(self._queues):
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(event)


# =====================================================================
# Task record
# =====================================================================

class IterationSummary(BaseModel):
    """Compact IterationResult for the progress history."""

    iteration: int
    champion_objective: float = 0.0
    best_candidate_objective: float = 0.0
    promoted: bool = False
    pairs_found: int = 0
    candidates_generated: int = 0
    duration_s: float = 0.0
    error: Optional[str] = None


def to_iteration_summary(result: IterationResult) -> IterationSummary:
    return IterationSummary(
        iteration=result.iteration,
        champion_objective=result.champion_objective,
        best_candidate_objective=result.best_candidate_objective,
        promoted=result.promoted,
        pairs_found=result.pairs_found,
        candidates_generated=result.candidates_generated,
        duration_s=result.duration_s,
        error=result.error,
    )


class OptimizationProgress(BaseModel):
    iteration: int = 0
    max_iterations: int = 0
    step: OptimizationStep = OptimizationStep.INITIALIZING
    step_label: str = STEP_LABELS[OptimizationStep.INITIALIZING]
    eval_progress: Optional[EvalProgress] = None
    pairs_found: Optional[int] = None
    candidates_generated: Optional[int] = None
    champion_objective: float = 0.0
    best_candidate_objective: Optional[float] = None
    promoted: Optional[bool] = None
    illumination: Optional[IlluminationTelemetry] = None
    pareto_front_size: Optional[int] = None
    best_mutation_type: Optional[str] = None
    hypermutation_applied: Optional[bool] = None
    total_elapsed_s: float = 0.0
    history: List[IterationSummary] = Field(default_factory=list)


class OptimizationTaskResult(BaseModel):
    final_objective: float
    total_iterations: int
    improvement_vs_baseline: float
    champion_patch: str
    history: List[IterationSummary] = Field(default_factory=list)


class OptimizationTask(BaseModel):
    """Pollable record of one background optimization run."""

    id: str
    session_id: str
    status: str = "pending"  # pending, running, completed, failed, cancelled
    progress: OptimizationProgress = Field(default_factory=OptimizationProgress)
    result: Optional[OptimizationTaskResult] = None
    error: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    started_at: float = Field(default_factory=time.time)
    completed_at: Optional[float] = None

    @property
    def finished(self) -> bool:
        return self.status in ("completed", "failed", "cancelled")


def create_optimization_task(
    task_id: str,
    session_id: str,
    max_iterations: int,
    config: Optional[Dict[str, Any]] = None,
) -> OptimizationTask:
    return OptimizationTask(
        id=task_id,
        session_id=session_id,
        progress=OptimizationProgress(max_iterations=max_iterations),
        config=config or {},
    )


def _replace_progress(task: OptimizationTask, **updates) -> OptimizationTask:
    updates["total_elapsed_s"] = time.time() - task.started_at
    progress = task.progress.model_copy(update=updates)
    return task.model_copy(update={"progress": progress})


def with_step(task: OptimizationTask, step: OptimizationStep, **updates) -> OptimizationTask:
    """New record with the step (and any extra progress fields) replaced."""
    return _replace_progress(task, step=step, step_label=STEP_LABELS[step], **updates)


def with_eval_progress(task: OptimizationTask, eval_progress: EvalProgress) -> OptimizationTask:
    return _replace_progress(task, eval_progress=eval_progress)


def with_iteration(task: OptimizationTask, result: IterationResult) -> OptimizationTask:
    """New record with a completed iteration appended to the history."""
    p = task.progress
    updates = {
        "iteration": result.iteration,
        "history": p.history + [to_iteration_summary(result)],
        "champion_objective": (
            result.best_candidate_objective if result.promoted else result.champion_objective
        ),
        "promoted": result.promoted,
        "best_candidate_objective": result.best_candidate_objective,
        "pairs_found": result.pairs_found,
        "candidates_generated": result.candidates_generated,
        "eval_progress": None,
    }
    if result.illumination is not None:
        updates["illumination"] = result.illumination
    if result.pareto_front_size is not None:
        updates["pareto_front_size"] = result.pareto_front_size
    if result.best_mutation_type:
        updates["best_mutation_type"] = result.best_mutation_type
    if result.hypermutation_applied:
        updates["hypermutation_applied"] = True
    return _replace_progress(task, **updates)


def apply_event(task: OptimizationTask, event: ProgressEvent) -> OptimizationTask:
    """Fold one event into a task record."""
    if event.kind == "eval" and event.eval_progress is not None:
        return with_eval_progress(task, event.eval_progress)
    if event.kind == "iteration" and event.result is not None:
        return with_iteration(task, event.result)
    return with_step(
        task, event.step,
        iteration=event.iteration,
        max_iterations=event.max_iterations or task.progress.max_iterations,
        champion_objective=event.champion_objective,
    )
