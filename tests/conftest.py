"""
Shared pytest fixtures for memgate tests.

This module provides:
- A deterministic fake embedding service
- Initialized memory engines over the in-memory store
- Provider adapters with mocked transports
- Mock SDK clients (OpenAI, Anthropic, google-genai) and asyncpg
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio

from memgate.llm.anthropic_client import AnthropicAdapter
from memgate.llm.base import ProviderIdentity
from memgate.llm.google_client import GoogleAdapter
from memgate.llm.openai_client import OpenAIAdapter
from memgate.memory.in_memory_store import InMemoryVectorStore
from memgate.memory.memory_manager import MemoryEngine
from memgate.router import ProxyRouter
from tests.fixtures import (
    FakeEmbeddingService,
    make_anthropic_response,
    make_gemini_response,
    make_openai_response,
)


# =============================================================================
# Memory Fixtures
# =============================================================================


@pytest.fixture
def fake_embedder() -> FakeEmbeddingService:
    """Deterministic bag-of-words embedder."""
    return FakeEmbeddingService()


@pytest.fixture
def memory_store() -> InMemoryVectorStore:
    """Provide an empty in-memory vector store."""
    return InMemoryVectorStore()


@pytest_asyncio.fixture
async def memory_engine(memory_store, fake_embedder) -> MemoryEngine:
    """Provide an initialized MemoryEngine over the in-memory store."""
    engine = MemoryEngine(
        vector_store=memory_store,
        embedding_service=fake_embedder,
        embedding_timeout=0.5,
    )
    await engine.initialize()
    yield engine
    await engine.close()


# =============================================================================
# Adapter Fixtures
# =============================================================================


@pytest.fixture
def adapters() -> dict[ProviderIdentity, object]:
    """Configured adapters whose transports return canned responses."""
    openai_adapter = OpenAIAdapter(api_key="test-openai-key")
    openai_adapter.send = AsyncMock(return_value=make_openai_response())

    anthropic_adapter = AnthropicAdapter(api_key="test-anthropic-key")
    anthropic_adapter.send = AsyncMock(return_value=make_anthropic_response())

    google_adapter = GoogleAdapter(api_key="test-google-key")
    google_adapter.send = AsyncMock(return_value=make_gemini_response())

    return {
        ProviderIdentity.OPENAI: openai_adapter,
        ProviderIdentity.ANTHROPIC: anthropic_adapter,
        ProviderIdentity.GOOGLE: google_adapter,
    }


@pytest.fixture
def router(adapters) -> ProxyRouter:
    """ProxyRouter without memory."""
    return ProxyRouter(adapters=adapters, upstream_timeout=1.0)


@pytest.fixture
def memory_router(adapters, memory_engine) -> ProxyRouter:
    """ProxyRouter with an in-memory MemoryEngine."""
    return ProxyRouter(adapters=adapters, memory_engine=memory_engine, upstream_timeout=1.0)


# =============================================================================
# Mock External Services
# =============================================================================


@pytest.fixture
def mock_openai():
    """Mock AsyncOpenAI for OpenAI API tests."""
    # Patch at the module where it's imported, not where it's defined
    with patch("memgate.llm.openai_client.AsyncOpenAI") as mock_client_class:
        mock_client = MagicMock()

        mock_response = MagicMock()
        mock_response.model_dump.return_value = make_openai_response()

        mock_client.chat.completions.create = AsyncMock(return_value=mock_response)
        mock_client.close = AsyncMock()
        mock_client_class.return_value = mock_client
        yield mock_client_class


@pytest.fixture
def mock_anthropic():
    """Mock AsyncAnthropic for Anthropic API tests."""
    with patch("memgate.llm.anthropic_client.AsyncAnthropic") as mock_client_class:
        mock_client = MagicMock()

        mock_response = MagicMock()
        mock_response.model_dump.return_value = make_anthropic_response()

        mock_client.messages.create = AsyncMock(return_value=mock_response)
        mock_client.close = AsyncMock()
        mock_client_class.return_value = mock_client
        yield mock_client_class


@pytest.fixture
def mock_google_genai():
    """Mock google.genai.Client for Gemini API tests."""
    with patch("google.genai.Client") as mock_client_class:
        mock_client = MagicMock()

        mock_response = MagicMock()
        mock_response.model_dump.return_value = make_gemini_response()

        mock_aio = MagicMock()
        mock_aio.models.generate_content = AsyncMock(return_value=mock_response)
        mock_client.aio = mock_aio

        mock_client_class.return_value = mock_client
        yield mock_client_class


@pytest.fixture
def mock_asyncpg():
    """Mock asyncpg.create_pool with a connection whose calls can be inspected."""
    with patch("memgate.memory.pgvector_store.asyncpg.create_pool", new_callable=AsyncMock) as mock_create_pool:
        conn = MagicMock()
        conn.execute = AsyncMock(return_value="DELETE 1")
        conn.fetch = AsyncMock(return_value=[])
        conn.fetchrow = AsyncMock(return_value={"count": 0})
        conn.fetchval = AsyncMock(return_value="0.8.0")

        transaction = MagicMock()
        transaction.__aenter__ = AsyncMock(return_value=transaction)
        transaction.__aexit__ = AsyncMock(return_value=False)
        conn.transaction.return_value = transaction

        acquire = MagicMock()
        acquire.__aenter__ = AsyncMock(return_value=conn)
        acquire.__aexit__ = AsyncMock(return_value=False)

        pool = MagicMock()
        pool.acquire.return_value = acquire
        pool.close = AsyncMock()

        mock_create_pool.return_value = pool
        mock_create_pool.conn = conn
        mock_create_pool.pool = pool
        yield mock_create_pool


# =============================================================================
# Config Fixtures
# =============================================================================


@pytest.fixture
def mock_env_vars(monkeypatch):
    """Set mock environment variables for testing."""
    monkeypatch.setenv("OPENAI_API_KEY", "test-openai-key")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-anthropic-key")
    monkeypatch.setenv("GOOGLE_API_KEY", "test-google-key")
    monkeypatch.delenv("POSTGRES_URL", raising=False)
