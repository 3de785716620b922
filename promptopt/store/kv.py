# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Key-value store interface and the in-memory backend."""
import asyncio
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Tuple


class KVStore(ABC):
    """String keys to string values. Keys are ordered lexicographically."""

    @abstractmethod
    async def put(self, key: str, value: str) -> None:
        """Create or replace a value."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the value, or None if missing."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove a key. Returns True if it existed."""

    @abstractmethod
    async def list_by_prefix(self, prefix: str) -> List[Tuple[str, str]]:
        """(key, value) pairs whose key starts with prefix, sorted by key."""

    async def put_many(self, items: Iterable[Tuple[str, str]]) -> None:
        """Write several records. Backends with transactions commit once."""
        for key, value in items:
            await self.put(key, value)

    async def delete_many(self, keys: Iterable[str]) -> None:
        for key in keys:
            await self.delete(key)

    async def close(self) -> None:
        return None


class InMemoryKVStore(KVStore):
    """Dict-backed store guarded by an asyncio.Lock."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def put(self, key: str, value: str) -> None:
        async with self._lock:
            self._data[key] = value

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._data.pop(key, None) is not None

    async def list_by_prefix(self, prefix: str) -> List[Tuple[str, str]]:
        return sorted(
            (k, v) for k, v in self._data.items() if k.startswith(prefix)
        )

    async def put_many(self, items: Iterable[Tuple[str, str]]) -> None:
        async with self._lock:
            for key, value in items:
                self._data[key] = value

    async def delete_many(self, keys: Iterable[str]) -> None:
        async with self._lock:
            for key in keys:
                self._data.pop(key, None)

    def __len__(self) -> int:
        return len(self._data)
