# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Persistence: key-value backends plus task and checkpoint stores."""
from promptopt.store.kv import InMemoryKVStore, KVStore
from promptopt.store.sqlite import SQLiteKVStore
from promptopt.store.tasks import CheckpointStore, TaskStore

__all__ = ["KVStore", "InMemoryKVStore", "SQLiteKVStore", "TaskStore", "CheckpointStore"]
