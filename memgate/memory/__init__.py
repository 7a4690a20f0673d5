"""
Long-Term Memory Module.

Owner-scoped semantic memory: text is embedded, stored in pgvector or in
process, and retrieved by cosine similarity to augment chat requests.
"""

from .base import MemoryRecord, VectorStore, SearchResult
from .embeddings import EmbeddingService, create_embedding_service
from .in_memory_store import InMemoryVectorStore
from .memory_manager import MemoryEngine, create_memory_engine

__all__ = [
    "MemoryRecord",
    "VectorStore",
    "SearchResult",
    "EmbeddingService",
    "create_embedding_service",
    "InMemoryVectorStore",
    "MemoryEngine",
    "create_memory_engine",
]
