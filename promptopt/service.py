# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Background optimization service.

Starts optimization loops as detached asyncio tasks and keeps a pollable
OptimizationTask record for each one. Records are kept in memory for fast
polling and written to the TaskStore at most once per persist interval,
except at iteration boundaries and terminal states which always persist.
"""
import asyncio
import logging
import time
import uuid
from typing import Dict, List, Optional, Set

from promptopt.collaborators import Generator, OperatorRewriter, PatchProposer, Scorer
from promptopt.config import OptimizerConfig
from promptopt.errors import PersistenceError
from promptopt.loop import OptimizationLoop, create_initial_state, resume_state
from promptopt.models import OptimizationState, Task
from promptopt.progress import (
    OptimizationTask, OptimizationTaskResult, ProgressBus, ProgressEvent,
    apply_event, create_optimization_task, to_iteration_summary,
)
from promptopt.store.tasks import CheckpointStore, TaskStore

logger = logging.getLogger(__name__)


class OptimizationService:
    """Fire-and-forget runner with polling, cancellation and TTL cleanup."""

    def __init__(
        self,
        task_store: TaskStore,
        checkpoints: CheckpointStore,
        tasks: List[Task],
        generator: Generator,
        scorer: Scorer,
        proposer: PatchProposer,
        rewriter: Optional[OperatorRewriter] = None,
        config: Optional[OptimizerConfig] = None,
    ) -> None:
        self._task_store = task_store
        self._checkpoints = checkpoints
        self._tasks = list(tasks)
        self._generator = generator
        self._scorer = scorer
        self._proposer = proposer
        self._rewriter = rewriter
        self._config = config or OptimizerConfig()

        self._records: Dict[str, OptimizationTask] = {}
        self._runners: Dict[str, asyncio.Task] = {}
        self._loops: Dict[str, OptimizationLoop] = {}
        self._cancelled: Set[str] = set()
        self._last_persist: Dict[str, float] = {}

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(
        self,
        base_prompt: str,
        patch: str = "",
        session_id: Optional[str] = None,
        config: Optional[OptimizerConfig] = None,
    ) -> str:
        """Start a new optimization in the background. Returns the task id."""
        cfg = config or self._config
        state = create_initial_state(base_prompt, patch, cfg, session_id)
        return await self._launch(state, cfg)

    async def resume(self, session_id: str, config: Optional[OptimizerConfig] = None) -> str:
        """Continue a session from its latest checkpoint. Returns the new task id.

        An explicit config also replaces the checkpoint's iteration budget.
        """
        state = await self._checkpoints.latest(session_id)
        if state is None:
            raise KeyError("No checkpoint for session {}".format(session_id))
        state = resume_state(state)
        if config is not None:
            state = state.model_copy(update={"max_iterations": config.max_iterations})
        logger.info("Resuming %s at iteration %d", session_id, state.iteration)
        return await self._launch(state, config or self._config)

    async def get(self, task_id: str) -> Optional[OptimizationTask]:
        """Latest record: in-memory first, then the store."""
        record = self._records.get(task_id)
        if record is not None:
            return record
        return await self._task_store.get(task_id)

    async def list_tasks(self, status: str) -> List[OptimizationTask]:
        return await self._task_store.list_by_status(status)

    def cancel(self, task_id: str) -> bool:
        """Request a cooperative stop. The current iteration still completes."""
        loop = self._loops.get(task_id)
        if loop is None:
            return False
        loop.request_stop()
        self._cancelled.add(task_id)
        logger.info("Cancellation requested for %s", task_id)
        return True

    async def wait(self, task_id: str) -> Optional[OptimizationTask]:
        """Wait for a running task to finish and return its final record."""
        runner = self._runners.get(task_id)
        if runner is not None:
            await asyncio.shield(runner)
        return await self.get(task_id)

    async def cleanup(self, now: Optional[float] = None) -> int:
        """Drop finished tasks older than the TTL from memory and storage."""
        now = time.time() if now is None else now
        ttl = self._config.task_ttl_s
        expired = [
            tid for tid, rec in self._records.items()
            if rec.finished and now - (rec.completed_at or rec.started_at) > ttl
        ]
        for tid in expired:
            self._records.pop(tid, None)
            self._last_persist.pop(tid, None)
            self._cancelled.discard(tid)
        removed = await self._task_store.cleanup_expired(ttl, now)
        return max(removed, len(expired))

    # ── Internals ─────────────────────────────────────────────

    async def _launch(self, state: OptimizationState, cfg: OptimizerConfig) -> str:
        task_id = "task-{}".format(uuid.uuid4().hex[:12])
        record = create_optimization_task(
            task_id, state.session_id, state.max_iterations,
            config={
                "max_iterations": state.max_iterations,
                "replicates": cfg.replicates,
                "patch_candidates": cfg.patch_candidates,
                "selection_mode": cfg.selection_mode,
                "meta_evolution": cfg.meta_evolution,
            },
        ).model_copy(update={"status": "running"})
        if state.history:
            # Resumed sessions keep the iterations already checkpointed.
            record = record.model_copy(update={"progress": record.progress.model_copy(update={
                "iteration": state.iteration,
                "champion_objective": state.champion_objective,
                "history": [to_iteration_summary(r) for r in state.history],
            })})
        await self._save(record, force=True)

        bus = ProgressBus()
        bus.subscribe(self._listener(task_id, cfg))
        loop = OptimizationLoop(
            cfg, self._tasks, self._generator, self._scorer, self._proposer,
            rewriter=self._rewriter, checkpoints=self._checkpoints, bus=bus,
        )
        self._loops[task_id] = loop
        self._runners[task_id] = asyncio.create_task(self._run(task_id, loop, state))
        logger.info("Started optimization %s (session %s)", task_id, state.session_id)
        return task_id

    def _listener(self, task_id: str, cfg: OptimizerConfig):
        async def _on_event(event: ProgressEvent) -> None:
            record = apply_event(self._records[task_id], event)
            await self._save(record, force=event.forces_persist, interval=cfg.persist_interval_s)
        return _on_event

    async def _run(
        self,
        task_id: str,
        loop: OptimizationLoop,
        state: OptimizationState,
    ) -> Optional[OptimizationState]:
        try:
            final = await loop.run(state)
        except Exception as e:
            logger.error("Optimization %s failed: %s", task_id, e)
            record = self._records[task_id].model_copy(update={
                "status": "failed",
                "error": str(e),
                "completed_at": time.time(),
            })
            await self._save_final(record)
            self._forget_runner(task_id)
            return None

        if final.status == "failed":
            status = "failed"
        elif task_id in self._cancelled:
            status = "cancelled"
        else:
            status = "completed"

        baseline = final.baseline_objective if final.baseline_objective is not None else 0.0
        record = self._records[task_id].model_copy(update={
            "status": status,
            "result": OptimizationTaskResult(
                final_objective=final.champion_objective,
                total_iterations=final.iteration,
                improvement_vs_baseline=final.champion_objective - baseline,
                champion_patch=final.champion.patch,
                history=[to_iteration_summary(r) for r in final.history],
            ),
            "error": final.last_error,
            "completed_at": final.completed_at or time.time(),
        })
        await self._save_final(record)
        self._forget_runner(task_id)
        return final

    def _forget_runner(self, task_id: str) -> None:
        self._loops.pop(task_id, None)
        self._runners.pop(task_id, None)

    async def _save_final(self, record: OptimizationTask) -> None:
        try:
            await self._save(record, force=True)
        except PersistenceError as e:
            # The in-memory record is already updated; polling still works.
            logger.error("Failed to persist final record %s: %s", record.id, e)

    async def _save(
        self,
        record: OptimizationTask,
        force: bool = False,
        interval: Optional[float] = None,
    ) -> bool:
        """Replace the in-memory record; write it through when due."""
        self._records[record.id] = record
        interval = self._config.persist_interval_s if interval is None else interval
        now = time.monotonic()
        last = self._last_persist.get(record.id)
        if not force and last is not None and now - last < interval:
            return False
        await self._task_store.put(record)
        self._last_persist[record.id] = now
        return True
