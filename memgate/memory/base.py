"""
Base interfaces and data structures for vector memory.

Defines the memory record, the search result, and the abstract contract
that every vector store backend must implement. All store operations are
scoped to a single owner; no call ever returns another owner's records.
"""

import dataclasses
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

import numpy as np


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class MemoryRecord:
    """
    A single remembered piece of text belonging to one owner.

    Records without an embedding are stored but invisible to similarity
    search until a backfill embeds them.
    """
    id: str
    owner_id: str
    content: str
    embedding: tuple[float, ...] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(
        cls,
        owner_id: str,
        content: str,
        metadata: dict[str, Any] | None = None,
        embedding: Iterable[float] | None = None,
    ) -> "MemoryRecord":
        """Create a new record with a fresh id and the current timestamp."""
        if not owner_id:
            raise ValueError("owner_id is required")
        return cls(
            id=f"mem-{uuid.uuid4().hex}",
            owner_id=owner_id,
            content=content,
            embedding=tuple(float(x) for x in embedding) if embedding is not None else None,
            metadata=dict(metadata or {}),
        )

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None

    def with_embedding(self, embedding: Iterable[float]) -> "MemoryRecord":
        return dataclasses.replace(self, embedding=tuple(float(x) for x in embedding))

    def to_dict(self) -> dict[str, Any]:
        """Serialise for API responses. The vector itself is never exposed."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "content": self.content,
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat(),
            "has_embedding": self.has_embedding,
        }

    def to_context_string(self) -> str:
        """Format this memory for inclusion in LLM context."""
        return f"- {self.content}"


@dataclass
class SearchResult:
    """A search result from the memory engine."""
    record: MemoryRecord
    score: float  # Cosine similarity, higher is more similar

    def to_dict(self) -> dict[str, Any]:
        result = self.record.to_dict()
        result["score"] = self.score
        return result


def rank_results(results: Iterable[SearchResult]) -> list[SearchResult]:
    """Order by score descending, breaking ties by most recent creation time."""
    return sorted(
        results,
        key=lambda r: (-r.score, -r.record.created_at.timestamp()),
    )


def cosine_similarities(query: Iterable[float], candidates: list[Iterable[float]]) -> list[float]:
    """
    Cosine similarity of one query vector against many candidates.

    A zero-norm vector on either side scores 0.0 rather than NaN.
    """
    if not candidates:
        return []
    q = np.asarray(list(query), dtype=np.float64)
    matrix = np.asarray([list(c) for c in candidates], dtype=np.float64)

    denominators = np.linalg.norm(matrix, axis=1) * np.linalg.norm(q)
    dots = matrix @ q
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(denominators > 0, dots / denominators, 0.0)
    return np.clip(scores, -1.0, 1.0).tolist()


def matches_filters(metadata: dict[str, Any], filters: dict[str, Any] | None) -> bool:
    """True if every filter key is present in metadata with an equal value."""
    if not filters:
        return True
    return all(key in metadata and metadata[key] == value for key, value in filters.items())


class VectorStore(ABC):
    """
    Abstract interface for vector storage backends.

    Implementations: in-memory (default), pgvector (durable)
    """

    backend: str = ""

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize the vector store (create tables, indexes, etc.)."""
        pass

    @abstractmethod
    async def upsert(self, record: MemoryRecord) -> str:
        """
        Insert or replace a memory record.

        Args:
            record: The record to store. Its embedding may be None.

        Returns:
            The ID of the stored record
        """
        pass

    @abstractmethod
    async def query(
        self,
        owner_id: str,
        vector: Iterable[float],
        k: int,
        filters: dict[str, Any] | None = None,
    ) -> list[tuple[str, float]]:
        """
        Find the owner's records most similar to a vector.

        Only records with an embedding participate.

        Args:
            owner_id: Owner whose records are searched
            vector: Query embedding
            k: Maximum number of results
            filters: Optional exact-match constraints on metadata

        Returns:
            Up to k (record id, cosine similarity) pairs, best first
        """
        pass

    @abstractmethod
    async def get(self, owner_id: str, memory_id: str) -> Optional[MemoryRecord]:
        """Get a specific memory of an owner."""
        pass

    async def get_many(self, owner_id: str, memory_ids: list[str]) -> dict[str, MemoryRecord]:
        """Get several memories of an owner, keyed by id. Missing ids are omitted."""
        records = {}
        for memory_id in memory_ids:
            record = await self.get(owner_id, memory_id)
            if record is not None:
                records[memory_id] = record
        return records

    @abstractmethod
    async def set_embedding(self, owner_id: str, memory_id: str, embedding: Iterable[float]) -> bool:
        """
        Fill in the embedding of a stored record that has none.

        Never inserts: a record deleted in the meantime stays deleted.

        Returns:
            True if the record existed without an embedding and was updated
        """
        pass

    @abstractmethod
    async def delete(self, owner_id: str, memory_id: str) -> bool:
        """Delete a memory. Returns False if it did not exist."""
        pass

    @abstractmethod
    async def list_unembedded(self, owner_id: str | None = None, limit: int = 100) -> list[MemoryRecord]:
        """Oldest records still lacking an embedding, optionally for one owner."""
        pass

    @abstractmethod
    async def count(self, owner_id: str | None = None) -> int:
        """Get number of stored memories, optionally for one owner."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Clean up resources."""
        pass
