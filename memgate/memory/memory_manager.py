"""
Memory Engine - Orchestrates the vector memory system.

This is the high-level interface the proxy uses. It handles:
- Embedding and storing memories, degrading to unembedded storage on outage
- Owner-scoped similarity retrieval that never fails a chat turn
- Backfilling embeddings once the embedding service recovers
- Turning chat exchanges into memories and memories into prompt context
"""

import asyncio
import logging
from typing import Any, Literal, Optional

from ..errors import EmbeddingUnavailable
from .base import MemoryRecord, SearchResult, VectorStore, rank_results
from .embeddings import EmbeddingService, create_embedding_service
from .extractor import extract_facts, format_memories
from .in_memory_store import InMemoryVectorStore

logger = logging.getLogger("memgate.memory.engine")


class MemoryEngine:
    """
    High-level long-term memory for the gateway.

    Memory is an enhancement: embedding and store failures during retrieval
    are logged and turned into empty results.
    """

    def __init__(
        self,
        vector_store: VectorStore,
        embedding_service: EmbeddingService,
        embedding_timeout: float = 10.0,
        extract_facts: bool = True,
    ):
        self.vector_store = vector_store
        self.embedding_service = embedding_service
        self.embedding_timeout = embedding_timeout
        self.extract_facts = extract_facts
        self._initialized = False
        logger.info(f"MemoryEngine created ({vector_store.backend} store)")

    @property
    def backend(self) -> str:
        return self.vector_store.backend

    async def initialize(self) -> None:
        """Initialize the memory system."""
        await self.vector_store.initialize()
        self._initialized = True
        count = await self.vector_store.count()
        logger.info(f"MemoryEngine initialized with {count} stored memories")

    def _ensure_initialized(self) -> None:
        """Ensure the system is initialized."""
        if not self._initialized:
            raise RuntimeError("MemoryEngine not initialized. Call initialize() first.")

    async def _embed(self, text: str) -> tuple[float, ...]:
        """
        Embed text within the configured timeout.

        Raises:
            EmbeddingUnavailable: If the service errors, times out or returns nothing.
        """
        try:
            vector = await asyncio.wait_for(
                self.embedding_service.embed(text), timeout=self.embedding_timeout
            )
        except asyncio.TimeoutError as e:
            raise EmbeddingUnavailable(
                f"Embedding timed out after {self.embedding_timeout}s"
            ) from e
        except Exception as e:
            raise EmbeddingUnavailable(f"Embedding failed: {e}") from e

        if not vector:
            raise EmbeddingUnavailable("Embedding service returned an empty vector")
        return tuple(float(x) for x in vector)

    async def store(
        self,
        owner_id: str,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> MemoryRecord:
        """
        Store a memory, embedding it if possible.

        If the embedding service is unavailable the record is persisted without
        an embedding. It is then invisible to retrieval until backfill() runs.

        Args:
            owner_id: Owner of the memory
            content: Text to remember
            metadata: Optional metadata stored alongside the text

        Returns:
            The stored MemoryRecord
        """
        self._ensure_initialized()

        record = MemoryRecord.create(owner_id, content, metadata)
        try:
            record = record.with_embedding(await self._embed(content))
        except EmbeddingUnavailable as e:
            logger.warning(f"Storing memory {record.id} without embedding: {e.message}")

        await self.vector_store.upsert(record)
        if record.has_embedding:
            logger.info(f"Stored memory {record.id} with {len(record.embedding)}-dim embedding")
        else:
            logger.info(f"Stored memory {record.id} pending embedding")
        return record

    async def retrieve(
        self,
        owner_id: str,
        query: str,
        k: int = 5,
        min_score: float | None = None,
        filters: dict[str, Any] | None = None,
    ) -> list[SearchResult]:
        """
        Find an owner's memories most similar to a query.

        Never raises for embedding or store failures; those yield [].

        Args:
            owner_id: Owner whose memories are searched
            query: Text to search for
            k: Maximum number of results
            min_score: Minimum cosine similarity to include, or None for no filtering
            filters: Optional exact-match metadata constraints

        Returns:
            Up to k results ordered by score descending, newest first on ties
        """
        self._ensure_initialized()
        if k <= 0 or not query.strip():
            return []

        try:
            vector = await self._embed(query)
            hits = await self.vector_store.query(owner_id, vector, k, filters=filters)
            if min_score is not None:
                hits = [(memory_id, score) for memory_id, score in hits if score >= min_score]
            records = await self.vector_store.get_many(owner_id, [memory_id for memory_id, _ in hits])
        except EmbeddingUnavailable as e:
            logger.warning(f"Memory retrieval skipped for {owner_id}: {e.message}")
            return []
        except Exception as e:
            logger.warning(f"Memory retrieval failed for {owner_id}: {e}")
            return []

        results = rank_results(
            SearchResult(record=records[memory_id], score=score)
            for memory_id, score in hits
            if memory_id in records
        )[:k]

        logger.info(f"Retrieved {len(results)} memories for {owner_id}")
        for r in results:
            logger.debug(f"  - {r.record.id}: score={r.score:.3f}")
        return results

    async def forget(self, owner_id: str, memory_id: str) -> bool:
        """
        Delete a memory. Forgetting a missing memory is not an error.

        Returns:
            True if a memory was deleted
        """
        self._ensure_initialized()
        deleted = await self.vector_store.delete(owner_id, memory_id)
        if deleted:
            logger.info(f"Forgot memory {memory_id} for {owner_id}")
        return deleted

    async def get(self, owner_id: str, memory_id: str) -> Optional[MemoryRecord]:
        self._ensure_initialized()
        return await self.vector_store.get(owner_id, memory_id)

    async def count(self, owner_id: str | None = None) -> int:
        self._ensure_initialized()
        return await self.vector_store.count(owner_id)

    async def backfill(self, owner_id: str | None = None, limit: int = 100) -> int:
        """
        Embed records that were stored during an embedding outage.

        Stops at the first embedding failure, leaving the rest for a later run.

        Args:
            owner_id: Restrict to one owner, or None for all owners
            limit: Maximum records to process

        Returns:
            Number of records embedded
        """
        self._ensure_initialized()

        pending = await self.vector_store.list_unembedded(owner_id, limit)
        embedded = 0
        for record in pending:
            try:
                vector = await self._embed(record.content)
            except EmbeddingUnavailable as e:
                logger.warning(f"Backfill paused after {embedded} records: {e.message}")
                break
            # Update in place only: a memory forgotten while embedding stays forgotten
            if await self.vector_store.set_embedding(record.owner_id, record.id, vector):
                embedded += 1
            else:
                logger.debug(f"Memory {record.id} was deleted or embedded during backfill")

        logger.info(f"Backfilled {embedded} of {len(pending)} pending memories")
        return embedded

    async def remember_exchange(
        self,
        owner_id: str,
        user_text: str,
        assistant_text: str,
        metadata: dict[str, Any] | None = None,
    ) -> list[MemoryRecord]:
        """
        Store memories for one chat exchange.

        Facts extracted from the user's message are stored individually. When
        nothing matches, the exchange itself is stored as a single memory.
        """
        facts = extract_facts(user_text) if self.extract_facts else []
        base = dict(metadata or {})

        if facts:
            return [
                await self.store(owner_id, fact, {**base, "kind": "fact"})
                for fact in facts
            ]

        if not user_text.strip():
            return []
        content = f"User: {user_text}\nAssistant: {assistant_text}"
        return [await self.store(owner_id, content, {**base, "kind": "exchange"})]

    def format_memories(self, results: list[SearchResult]) -> str:
        """Format retrieved memories for inclusion in a system message."""
        return format_memories(r.record for r in results)

    async def close(self) -> None:
        """Clean up resources."""
        await self.vector_store.close()
        logger.info("MemoryEngine closed")


async def create_memory_engine(
    embedding_provider: Literal["openai", "google", "local"] = "openai",
    openai_api_key: str = "",
    google_api_key: str = "",
    embedding_model: str = "",
    embedding_dimensions: int | None = None,
    embedding_timeout: float = 10.0,
    postgres_url: str = "",
    table_name: str = "memories",
    extract_facts: bool = True,
) -> MemoryEngine:
    """
    Factory function to create a configured MemoryEngine.

    A postgres_url selects the durable pgvector store; without one, memories
    are kept in process.

    Args:
        embedding_provider: "openai", "google" or "local"
        openai_api_key: Required for OpenAI embeddings
        google_api_key: Required for Google embeddings
        embedding_model: Model name (optional, uses provider default)
        embedding_dimensions: Override output dimensions
        embedding_timeout: Seconds before an embedding call is abandoned
        postgres_url: Connection string for pgvector, or empty
        table_name: pgvector table name
        extract_facts: Store extracted facts instead of whole exchanges

    Returns:
        Initialized MemoryEngine

    Raises:
        ValueError: If the embedding provider cannot be configured.
        StoreUnavailable: If pgvector is configured but unreachable.
    """
    embedding_service = create_embedding_service(
        provider=embedding_provider,
        api_key=google_api_key if embedding_provider == "google" else openai_api_key,
        model=embedding_model,
        dimensions=embedding_dimensions,
    )

    if postgres_url:
        from .pgvector_store import PgVectorStore
        vector_store = PgVectorStore(
            connection_string=postgres_url,
            table_name=table_name,
            embedding_dimension=embedding_service.dimension,
        )
    else:
        vector_store = InMemoryVectorStore()

    engine = MemoryEngine(
        vector_store=vector_store,
        embedding_service=embedding_service,
        embedding_timeout=embedding_timeout,
        extract_facts=extract_facts,
    )

    await engine.initialize()
    return engine
