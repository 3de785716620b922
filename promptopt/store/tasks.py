# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Task records and loop checkpoints on top of a KVStore.

Key layout:
  task:<task_id>                          OptimizationTask JSON
  task-status:<status>:<task_id>          status index (value: task_id)
  checkpoint:<session_id>:<000042>        OptimizationState JSON
"""
import logging
import time
from typing import List, Optional

from pydantic import ValidationError

from promptopt.errors import PersistenceError
from promptopt.models import OptimizationState
from promptopt.progress import OptimizationTask
from promptopt.store.kv import KVStore

logger = logging.getLogger(__name__)

TASK_PREFIX = "task:"
STATUS_PREFIX = "task-status:"
CHECKPOINT_PREFIX = "checkpoint:"

FINISHED_STATUSES = ("completed", "failed", "cancelled")


def task_key(task_id: str) -> str:
    return "{}{}".format(TASK_PREFIX, task_id)


def status_key(status: str, task_id: str) -> str:
    return "{}{}:{}".format(STATUS_PREFIX, status, task_id)


def checkpoint_key(session_id: str, iteration: int) -> str:
    return "{}{}:{:06d}".format(CHECKPOINT_PREFIX, session_id, iteration)


class TaskStore:
    """get / put / list-by-status for OptimizationTask records."""

    def __init__(self, kv: KVStore) -> None:
        self._kv = kv

    async def put(self, task: OptimizationTask) -> None:
        """Write the record and its status index, dropping a stale index entry."""
        try:
            previous = await self.get(task.id)
            await self._kv.put_many([
                (task_key(task.id), task.model_dump_json()),
                (status_key(task.status, task.id), task.id),
            ])
            if previous is not None and previous.status != task.status:
                await self._kv.delete(status_key(previous.status, task.id))
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError("Failed to save task {}: {}".format(task.id, e)) from e

    async def get(self, task_id: str) -> Optional[OptimizationTask]:
        raw = await self._kv.get(task_key(task_id))
        if raw is None:
            return None
        try:
            return OptimizationTask.model_validate_json(raw)
        except ValidationError as e:
            raise PersistenceError("Corrupt task record {}: {}".format(task_id, e)) from e

    async def list_by_status(self, status: str) -> List[OptimizationTask]:
        tasks = []
        for _, task_id in await self._kv.list_by_prefix("{}{}:".format(STATUS_PREFIX, status)):
            task = await self.get(task_id)
            if task is not None and task.status == status:
                tasks.append(task)
        return tasks

    async def delete(self, task_id: str) -> bool:
        task = await self.get(task_id)
        if task is None:
            return False
        await self._kv.delete_many([task_key(task_id), status_key(task.status, task_id)])
        return True

    async def cleanup_expired(self, ttl_s: float, now: Optional[float] = None) -> int:
        """Delete finished tasks older than ttl_s. Returns the number removed."""
        now = time.time() if now is None else now
        removed = 0
        for status in FINISHED_STATUSES:
            for task in await self.list_by_status(status):
                finished_at = task.completed_at or task.started_at
                if now - finished_at > ttl_s:
                    await self.delete(task.id)
                    removed += 1
        if removed:
            logger.info("Removed %d expired optimization tasks", removed)
        return removed


class CheckpointStore:
    """OptimizationState snapshots, one per completed iteration."""

    def __init__(self, kv: KVStore) -> None:
        self._kv = kv

    async def save(self, state: OptimizationState) -> str:
        key = checkpoint_key(state.session_id, state.iteration)
        try:
            await self._kv.put(key, state.model_dump_json())
        except Exception as e:
            raise PersistenceError("Failed to save checkpoint {}: {}".format(key, e)) from e
        logger.debug("Saved checkpoint %s", key)
        return key

    async def list(self, session_id: str) -> List[OptimizationState]:
        """All checkpoints of a session in iteration order."""
        rows = await self._kv.list_by_prefix("{}{}:".format(CHECKPOINT_PREFIX, session_id))
        return [self._load(key, raw) for key, raw in rows]

    async def latest(self, session_id: str) -> Optional[OptimizationState]:
        rows = await self._kv.list_by_prefix("{}{}:".format(CHECKPOINT_PREFIX, session_id))
        if not rows:
            return None
        key, raw = rows[-1]
        return self._load(key, raw)

    async def cleanup(self, session_id: str, keep: int = 3) -> int:
        """Keep the newest ``keep`` checkpoints. Returns the number removed."""
        rows = await self._kv.list_by_prefix("{}{}:".format(CHECKPOINT_PREFIX, session_id))
        stale = [key for key, _ in rows[:max(0, len(rows) - keep)]]
        if stale:
            await self._kv.delete_many(stale)
        return len(stale)

    @staticmethod
    def _load(key: str, raw: str) -> OptimizationState:
        try:
            return OptimizationState.model_validate_json(raw)
        except ValidationError as e:
            raise PersistenceError("Corrupt checkpoint {}: {}".format(key, e)) from e
