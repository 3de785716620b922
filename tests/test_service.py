# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Tests for the background optimization service."""
import time

import pytest

from promptopt.collaborators import Generator, PatchProposer, Scorer
from promptopt.config import OptimizerConfig
from promptopt.models import GenerationSuccess, ScoreResult, Story, StoryPack, Task
from promptopt.service import OptimizationService
from promptopt.store.kv import InMemoryKVStore
from promptopt.store.tasks import CheckpointStore, TaskStore

BASE = "You decompose epics into user stories. Respond with JSON."
RULE = "RULE-A: Every story must name the persona from the task."
TASKS = [Task(id="E1", description="Users sign in with email.")]


class EchoGenerator(Generator):
    async def generate(self, prompt_text, task, seed):
        return GenerationSuccess(output=StoryPack(
            task_id=str(seed),
            stories=[Story(
                title="Sign in", as_a="member", i_want="to sign in",
                so_that="I reach my account", acceptance_criteria=["email login works"],
            )],
            assumptions=[prompt_text],
        ))


class RuleScorer(Scorer):
    """0.78 with the rule; otherwise 0.8 / 0.64 by seed parity."""

    async def score(self, task, output):
        if "RULE-A" in output.assumptions[0]:
            return ScoreResult(score=0.78, passed=True)
        even = int(output.task_id) % 2 == 0
        return ScoreResult(score=0.8 if even else 0.64, passed=True)


class RuleProposer(PatchProposer):
    async def propose(self, base_prompt, current_patch, pairs_context, count):
        return [RULE]


class CountingKV(InMemoryKVStore):
    def __init__(self):
        super().__init__()
        self.put_many_calls = 0

    async def put_many(self, items):
        self.put_many_calls += 1
        await super().put_many(items)


def _config(**overrides):
    values = dict(replicates=2, std_lambda=0.0, patch_candidates=1, max_iterations=1,
                  persist_interval_s=3600.0)
    values.update(overrides)
    return OptimizerConfig(**values)


def _service(kv=None, tasks=None, config=None):
    kv = kv if kv is not None else InMemoryKVStore()
    return OptimizationService(
        TaskStore(kv), CheckpointStore(kv), TASKS if tasks is None else tasks,
        EchoGenerator(), RuleScorer(), RuleProposer(), config=config or _config(),
    )


class TestOptimizationService:

    @pytest.mark.asyncio
    async def test_start_and_wait(self):
        service = _service()
        task_id = await service.start(BASE, session_id="s-start")
        assert task_id.startswith("task-")

        record = await service.wait(task_id)
        assert record.status == "completed"
        assert record.finished
        assert record.session_id == "s-start"
        assert record.completed_at is not None
        assert record.config["replicates"] == 2

        result = record.result
        assert result.total_iterations == 1
        assert result.final_objective == pytest.approx(0.78)
        assert result.improvement_vs_baseline == pytest.approx(0.06)
        assert result.champion_patch == RULE
        assert len(result.history) == 1
        assert record.progress.iteration == 1

    @pytest.mark.asyncio
    async def test_final_record_persisted(self):
        kv = InMemoryKVStore()
        service = _service(kv)
        task_id = await service.start(BASE)
        await service.wait(task_id)

        stored = await TaskStore(kv).get(task_id)
        assert stored.status == "completed"
        assert stored.result.champion_patch == RULE
        assert [t.id for t in await service.list_tasks("completed")] == [task_id]
        assert await service.list_tasks("running") == []

    @pytest.mark.asyncio
    async def test_throttled_writes_still_persist_boundaries(self):
        kv = CountingKV()
        service = _service(kv)
        task_id = await service.start(BASE)
        await service.wait(task_id)
        # launch, iteration boundary, done event, final record
        assert kv.put_many_calls == 4

    @pytest.mark.asyncio
    async def test_cancel_before_first_iteration(self):
        service = _service(config=_config(max_iterations=5))
        task_id = await service.start(BASE)
        assert service.cancel(task_id) is True

        record = await service.wait(task_id)
        assert record.status == "cancelled"
        assert record.result.total_iterations == 0
        assert service.cancel(task_id) is False

    @pytest.mark.asyncio
    async def test_cancel_unknown(self):
        assert _service().cancel("task-missing") is False

    @pytest.mark.asyncio
    async def test_failed_run(self):
        service = _service(tasks=[])
        record = await service.wait(await service.start(BASE))
        assert record.status == "failed"
        assert "No tasks" in record.error
        assert record.result is None

    @pytest.mark.asyncio
    async def test_resume_with_larger_budget(self):
        service = _service()
        first = await service.wait(await service.start(BASE, session_id="s-resume"))
        assert first.result.total_iterations == 1

        task_id = await service.resume("s-resume", config=_config(max_iterations=3))
        assert task_id != first.id
        record = await service.wait(task_id)
        assert record.status == "completed"
        assert record.session_id == "s-resume"
        # the promoted champion has no contrastive pairs left
        assert record.result.total_iterations == 2
        assert record.result.champion_patch == RULE

    @pytest.mark.asyncio
    async def test_resume_record_keeps_earlier_iterations(self):
        service = _service()
        await service.wait(await service.start(BASE, session_id="s-history"))

        task_id = await service.resume("s-history", config=_config(max_iterations=3))
        launched = await service.get(task_id)
        assert launched.status == "running"
        assert [h.iteration for h in launched.progress.history] == [1]
        assert launched.progress.iteration == 1
        assert launched.progress.champion_objective == pytest.approx(0.78)

        record = await service.wait(task_id)
        assert [h.iteration for h in record.progress.history] == [1, 2]
        assert [h.iteration for h in record.result.history] == [1, 2]

    @pytest.mark.asyncio
    async def test_resume_without_checkpoint(self):
        with pytest.raises(KeyError):
            await _service().resume("nothing-here")

    @pytest.mark.asyncio
    async def test_cleanup_expired(self):
        service = _service(config=_config(task_ttl_s=60))
        task_id = await service.start(BASE)
        await service.wait(task_id)

        assert await service.cleanup(now=time.time()) == 0
        assert await service.get(task_id) is not None

        assert await service.cleanup(now=time.time() + 120) == 1
        assert await service.get(task_id) is None

    @pytest.mark.asyncio
    async def test_get_unknown(self):
        assert await _service().get("task-missing") is None
