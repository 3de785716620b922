# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Tests for the KV backends, TaskStore and CheckpointStore.

SQLite tests use a real database file under tmp_path.
"""
import pytest
import pytest_asyncio

from promptopt.errors import PersistenceError
from promptopt.models import ChampionPrompt, OptimizationState
from promptopt.progress import create_optimization_task
from promptopt.store.kv import InMemoryKVStore
from promptopt.store.sqlite import SQLiteKVStore
from promptopt.store.tasks import CheckpointStore, TaskStore, checkpoint_key, status_key, task_key


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def kv(request, tmp_path):
    """Each KV contract test runs against both backends."""
    if request.param == "memory":
        store = InMemoryKVStore()
    else:
        store = SQLiteKVStore(db_path=str(tmp_path / "state.db"))
        await store.init()
    yield store
    await store.close()


def _state(session_id="s1", iteration=0, patch=""):
    return OptimizationState(
        session_id=session_id,
        iteration=iteration,
        champion=ChampionPrompt(base="Base prompt.", patch=patch),
        champion_objective=0.5 + iteration / 100,
    )


# =====================================================================
# KV contract
# =====================================================================

class TestKVStore:

    @pytest.mark.asyncio
    async def test_put_get_replace(self, kv):
        await kv.put("a", "1")
        assert await kv.get("a") == "1"
        await kv.put("a", "2")
        assert await kv.get("a") == "2"
        assert await kv.get("missing") is None

    @pytest.mark.asyncio
    async def test_delete(self, kv):
        await kv.put("a", "1")
        assert await kv.delete("a") is True
        assert await kv.delete("a") is False
        assert await kv.get("a") is None

    @pytest.mark.asyncio
    async def test_list_by_prefix_sorted(self, kv):
        await kv.put_many([("p:2", "b"), ("p:1", "a"), ("q:1", "x"), ("p:10", "c")])
        rows = await kv.list_by_prefix("p:")
        assert rows == [("p:1", "a"), ("p:10", "c"), ("p:2", "b")]

    @pytest.mark.asyncio
    async def test_prefix_wildcards_are_literal(self, kv):
        await kv.put("task_1", "underscore")
        await kv.put("taskX1", "letter")
        await kv.put("100%:a", "percent")
        await kv.put("100x:a", "other")
        assert [k for k, _ in await kv.list_by_prefix("task_")] == ["task_1"]
        assert [k for k, _ in await kv.list_by_prefix("100%")] == ["100%:a"]

    @pytest.mark.asyncio
    async def test_prefix_is_case_sensitive(self, kv):
        await kv.put("Task:1", "upper")
        await kv.put("task:1", "lower")
        assert await kv.list_by_prefix("task:") == [("task:1", "lower")]

    @pytest.mark.asyncio
    async def test_delete_many(self, kv):
        await kv.put_many([("a", "1"), ("b", "2"), ("c", "3")])
        await kv.delete_many(["a", "c", "zzz"])
        assert await kv.list_by_prefix("") == [("b", "2")]


class TestSQLiteKVStore:

    @pytest.mark.asyncio
    async def test_data_survives_reopen(self, tmp_path):
        path = str(tmp_path / "nested" / "state.db")
        first = SQLiteKVStore(db_path=path)
        await first.put("checkpoint:s1:000001", "{}")
        await first.close()

        second = SQLiteKVStore(db_path=path)
        await second.init()
        assert await second.get("checkpoint:s1:000001") == "{}"
        assert await second.count() == 1
        await second.close()


# =====================================================================
# TaskStore
# =====================================================================

class TestTaskStore:

    @pytest.mark.asyncio
    async def test_put_get(self, kv):
        store = TaskStore(kv)
        task = create_optimization_task("t1", "s1", 5, config={"replicates": 3})
        await store.put(task)
        loaded = await store.get("t1")
        assert loaded == task
        assert await store.get("nope") is None

    @pytest.mark.asyncio
    async def test_status_index_follows_status(self, kv):
        store = TaskStore(kv)
        task = create_optimization_task("t1", "s1", 5)
        await store.put(task.model_copy(update={"status": "running"}))
        assert [t.id for t in await store.list_by_status("running")] == ["t1"]

        await store.put(task.model_copy(update={"status": "completed", "completed_at": 100.0}))
        assert await store.list_by_status("running") == []
        assert [t.id for t in await store.list_by_status("completed")] == ["t1"]
        assert await kv.get(status_key("running", "t1")) is None

    @pytest.mark.asyncio
    async def test_delete(self, kv):
        store = TaskStore(kv)
        await store.put(create_optimization_task("t1", "s1", 5))
        assert await store.delete("t1") is True
        assert await store.delete("t1") is False
        assert await kv.list_by_prefix("") == []

    @pytest.mark.asyncio
    async def test_cleanup_expired(self, kv):
        store = TaskStore(kv)
        base = create_optimization_task("x", "s", 1)
        await store.put(base.model_copy(update={"id": "old", "status": "completed", "completed_at": 1000.0}))
        await store.put(base.model_copy(update={"id": "recent", "status": "failed", "completed_at": 4000.0}))
        await store.put(base.model_copy(update={"id": "live", "status": "running", "started_at": 0.0}))

        removed = await store.cleanup_expired(ttl_s=3600, now=5000.0)
        assert removed == 1
        assert await store.get("old") is None
        assert await store.get("recent") is not None
        assert await store.get("live") is not None

    @pytest.mark.asyncio
    async def test_corrupt_record(self, kv):
        await kv.put(task_key("bad"), "{not json")
        with pytest.raises(PersistenceError):
            await TaskStore(kv).get("bad")

    @pytest.mark.asyncio
    async def test_backend_errors_wrapped(self):
        class BrokenKV(InMemoryKVStore):
            async def put_many(self, items):
                raise OSError("read-only filesystem")

        with pytest.raises(PersistenceError):
            await TaskStore(BrokenKV()).put(create_optimization_task("t1", "s1", 5))


# =====================================================================
# CheckpointStore
# =====================================================================

class TestCheckpointStore:

    def test_key_format(self):
        assert checkpoint_key("opt-abc", 42) == "checkpoint:opt-abc:000042"

    @pytest.mark.asyncio
    async def test_save_and_latest(self, kv):
        store = CheckpointStore(kv)
        for i in (1, 2, 10):
            await store.save(_state(iteration=i, patch="patch {}".format(i)))
        await store.save(_state(session_id="other", iteration=99))

        latest = await store.latest("s1")
        assert latest.iteration == 10
        assert latest.champion.patch == "patch 10"
        assert [s.iteration for s in await store.list("s1")] == [1, 2, 10]
        assert await store.latest("missing") is None

    @pytest.mark.asyncio
    async def test_state_round_trip(self, kv):
        store = CheckpointStore(kv)
        state = _state(iteration=3, patch="Always name the persona.")
        state.history = []
        state.last_error = "previous failure"
        key = await store.save(state)
        assert key == "checkpoint:s1:000003"
        assert await store.latest("s1") == state

    @pytest.mark.asyncio
    async def test_cleanup_keeps_newest(self, kv):
        store = CheckpointStore(kv)
        for i in range(1, 6):
            await store.save(_state(iteration=i))
        assert await store.cleanup("s1", keep=2) == 3
        assert [s.iteration for s in await store.list("s1")] == [4, 5]

    @pytest.mark.asyncio
    async def test_corrupt_checkpoint(self, kv):
        await kv.put(checkpoint_key("s1", 1), "garbage")
        with pytest.raises(PersistenceError):
            await CheckpointStore(kv).latest("s1")
