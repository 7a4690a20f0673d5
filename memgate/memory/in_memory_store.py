"""
In-process vector store.

Used when no durable store is configured. Records live in a dict keyed by
owner; each owner's partition is guarded by its own lock so writes for one
owner never block another. Partitions are created only by writes; reads for
an unknown owner see an empty store. Nothing survives a restart.
"""

import logging
import threading
from typing import Any, Iterable, Optional

from .base import (
    MemoryRecord,
    SearchResult,
    VectorStore,
    cosine_similarities,
    matches_filters,
    rank_results,
)

logger = logging.getLogger("memgate.memory.in_memory")


class InMemoryVectorStore(VectorStore):
    """Dict-backed vector store with exact cosine search."""

    backend = "memory"

    def __init__(self):
        self._records: dict[str, dict[str, MemoryRecord]] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _partition(self, owner_id: str) -> tuple[threading.Lock, dict[str, MemoryRecord]]:
        """Return the lock and record dict for an owner, creating both on first use."""
        with self._guard:
            lock = self._locks.get(owner_id)
            if lock is None:
                lock = self._locks[owner_id] = threading.Lock()
                self._records[owner_id] = {}
            return lock, self._records[owner_id]

    def _existing(self, owner_id: str) -> tuple[threading.Lock, dict[str, MemoryRecord]] | None:
        """Return an owner's lock and records, or None if the owner never stored anything."""
        with self._guard:
            lock = self._locks.get(owner_id)
            if lock is None:
                return None
            return lock, self._records[owner_id]

    def _owners(self) -> list[str]:
        with self._guard:
            return list(self._records)

    async def initialize(self) -> None:
        logger.info("In-memory vector store initialized (memories are not persisted)")

    async def upsert(self, record: MemoryRecord) -> str:
        lock, records = self._partition(record.owner_id)
        with lock:
            records[record.id] = record
        return record.id

    async def query(
        self,
        owner_id: str,
        vector: Iterable[float],
        k: int,
        filters: dict[str, Any] | None = None,
    ) -> list[tuple[str, float]]:
        if k <= 0:
            return []
        partition = self._existing(owner_id)
        if partition is None:
            return []
        vector = list(vector)

        lock, records = partition
        with lock:
            candidates = [
                r for r in records.values()
                if r.embedding is not None and matches_filters(r.metadata, filters)
            ]

        mismatched = [r for r in candidates if len(r.embedding) != len(vector)]
        if mismatched:
            logger.debug(f"Skipping {len(mismatched)} memories with mismatched embedding dimensions")
            candidates = [r for r in candidates if len(r.embedding) == len(vector)]

        scores = cosine_similarities(vector, [r.embedding for r in candidates])
        ranked = rank_results(SearchResult(r, s) for r, s in zip(candidates, scores))
        return [(result.record.id, result.score) for result in ranked[:k]]

    async def get(self, owner_id: str, memory_id: str) -> Optional[MemoryRecord]:
        partition = self._existing(owner_id)
        if partition is None:
            return None
        lock, records = partition
        with lock:
            return records.get(memory_id)

    async def get_many(self, owner_id: str, memory_ids: list[str]) -> dict[str, MemoryRecord]:
        partition = self._existing(owner_id)
        if partition is None:
            return {}
        lock, records = partition
        with lock:
            return {i: records[i] for i in memory_ids if i in records}

    async def set_embedding(self, owner_id: str, memory_id: str, embedding: Iterable[float]) -> bool:
        partition = self._existing(owner_id)
        if partition is None:
            return False
        lock, records = partition
        with lock:
            record = records.get(memory_id)
            if record is None or record.embedding is not None:
                return False
            records[memory_id] = record.with_embedding(embedding)
        return True

    async def delete(self, owner_id: str, memory_id: str) -> bool:
        partition = self._existing(owner_id)
        if partition is None:
            return False
        lock, records = partition
        with lock:
            return records.pop(memory_id, None) is not None

    async def list_unembedded(self, owner_id: str | None = None, limit: int = 100) -> list[MemoryRecord]:
        owners = [owner_id] if owner_id is not None else self._owners()
        pending: list[MemoryRecord] = []
        for owner in owners:
            partition = self._existing(owner)
            if partition is None:
                continue
            lock, records = partition
            with lock:
                pending.extend(r for r in records.values() if r.embedding is None)
        pending.sort(key=lambda r: r.created_at)
        return pending[:limit]

    async def count(self, owner_id: str | None = None) -> int:
        owners = [owner_id] if owner_id is not None else self._owners()
        total = 0
        for owner in owners:
            partition = self._existing(owner)
            if partition is None:
                continue
            lock, records = partition
            with lock:
                total += len(records)
        return total

    async def close(self) -> None:
        pass
