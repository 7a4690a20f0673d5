"""
Test fixtures and sample data for memgate tests.
"""

import asyncio
import math
import re
from datetime import datetime, timedelta, timezone
from typing import Any

from memgate.memory.base import MemoryRecord
from memgate.memory.embeddings import EmbeddingService

STOPWORDS = {
    "a", "an", "and", "are", "be", "did", "do", "does", "for", "from", "i",
    "in", "is", "it", "my", "of", "on", "or", "that", "the", "this", "to",
    "was", "what", "with", "you",
}


class FakeEmbeddingService(EmbeddingService):
    """
    Deterministic bag-of-words embedder.

    Each distinct non-stopword gets its own axis in order of first appearance,
    so cosine similarity is the normalised word overlap between two texts.
    """

    def __init__(self, dimension: int = 128):
        self._dimension = dimension
        self._vocabulary: dict[str, int] = {}
        self.available = True
        self.delay = 0.0
        self.calls = 0

    @property
    def dimension(self) -> int:
        return self._dimension

    def _axis(self, word: str) -> int:
        if word not in self._vocabulary:
            self._vocabulary[word] = len(self._vocabulary) % self._dimension
        return self._vocabulary[word]

    def vector(self, text: str) -> list[float]:
        vector = [0.0] * self._dimension
        for word in re.findall(r"[a-z0-9]+", text.lower()):
            if word not in STOPWORDS:
                vector[self._axis(word)] += 1.0
        return vector

    async def embed(self, text: str) -> list[float]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.available:
            raise ConnectionError("embedding service unreachable")
        return self.vector(text)


def cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


def make_memory_record(
    owner_id: str = "user-1",
    content: str = "user prefers metric units",
    embedding: list[float] | None = None,
    metadata: dict[str, Any] | None = None,
    id: str | None = None,
    created_at: datetime | None = None,
) -> MemoryRecord:
    """Create a MemoryRecord for testing."""
    record = MemoryRecord.create(owner_id, content, metadata, embedding)
    return MemoryRecord(
        id=id or record.id,
        owner_id=record.owner_id,
        content=record.content,
        embedding=record.embedding,
        metadata=record.metadata,
        created_at=created_at or record.created_at,
    )


def make_unrelated_memories() -> list[str]:
    """Memories that share no vocabulary with questions about units."""
    return [
        "weather in paris is mild in spring",
        "project deadline moved to friday",
        "favourite colour is green",
        "dog named biscuit likes walks",
        "meeting notes from tuesday standup",
    ]


def timestamps(count: int, start: datetime | None = None) -> list[datetime]:
    """Strictly increasing timestamps one second apart."""
    start = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
    return [start + timedelta(seconds=i) for i in range(count)]


# =============================================================================
# Provider payloads
# =============================================================================


def make_openai_request(
    user: str = "What units should I use?",
    system: str | None = "You are a helpful assistant.",
    model: str = "gpt-4o",
    **extra: Any,
) -> dict[str, Any]:
    messages = []
    if system is not None:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": user})
    return {"model": model, "messages": messages, **extra}


def make_openai_response(
    content: str = "Use metric units.",
    finish_reason: str = "stop",
    model: str = "gpt-4o",
) -> dict[str, Any]:
    return {
        "id": "chatcmpl-123",
        "object": "chat.completion",
        "created": 1700000000,
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": finish_reason,
            }
        ],
        "usage": {"prompt_tokens": 12, "completion_tokens": 4, "total_tokens": 16},
    }


def make_anthropic_request(
    user: str = "What units should I use?",
    system: str | None = "You are a helpful assistant.",
    model: str = "claude-3-5-sonnet-latest",
    **extra: Any,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "model": model,
        "max_tokens": 1024,
        "messages": [{"role": "user", "content": user}],
    }
    if system is not None:
        payload["system"] = system
    payload.update(extra)
    return payload


def make_anthropic_response(
    content: str = "Use metric units.",
    stop_reason: str = "end_turn",
    model: str = "claude-3-5-sonnet-latest",
) -> dict[str, Any]:
    return {
        "id": "msg_123",
        "type": "message",
        "role": "assistant",
        "model": model,
        "content": [{"type": "text", "text": content}],
        "stop_reason": stop_reason,
        "usage": {"input_tokens": 12, "output_tokens": 4},
    }


def make_gemini_request(
    user: str = "What units should I use?",
    system: str | None = "You are a helpful assistant.",
    model: str = "gemini-2.0-flash",
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "model": model,
        "contents": [{"role": "user", "parts": [{"text": user}]}],
    }
    if system is not None:
        payload["systemInstruction"] = {"parts": [{"text": system}]}
    return payload


def make_gemini_response(
    content: str = "Use metric units.",
    finish_reason: str = "STOP",
    model: str = "gemini-2.0-flash",
) -> dict[str, Any]:
    """A generate_content response as dumped by the google-genai SDK."""
    return {
        "candidates": [
            {
                "content": {"role": "model", "parts": [{"text": content}]},
                "finish_reason": finish_reason,
                "index": 0,
            }
        ],
        "usage_metadata": {
            "prompt_token_count": 12,
            "candidates_token_count": 4,
            "total_token_count": 16,
        },
        "model_version": model,
    }


async def frames(*items: dict[str, Any]):
    """Async iterator over stream frames."""
    for item in items:
        yield item


async def collect(iterator) -> list:
    return [item async for item in iterator]
