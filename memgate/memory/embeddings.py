"""
Embedding services for the memory engine.

Memories and retrieval queries go through the same service so their cosine
scores are comparable. The vector size a service reports fixes the pgvector
column width, so it is known before the first call.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Literal

from ..errors import EmbeddingUnavailable

logger = logging.getLogger("memgate.memory.embeddings")

EmbeddingProvider = Literal["openai", "google", "local"]

DEFAULT_MODELS: dict[str, str] = {
    "openai": "text-embedding-3-small",
    "google": "text-embedding-004",
    "local": "all-MiniLM-L6-v2",
}

# Native output size per model; a smaller size can be requested from the API
NATIVE_DIMENSIONS: dict[str, int] = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
    "text-embedding-004": 768,
    "gemini-embedding-001": 3072,
    "all-MiniLM-L6-v2": 384,
}


class EmbeddingService(ABC):
    """Turns memory text and queries into vectors."""

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Length of every vector this service returns."""
        pass

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """
        Embed one text.

        Raises whatever the backend raises; MemoryEngine turns failures and
        timeouts into EmbeddingUnavailable.
        """
        pass


def _output_dimensions(model: str, fallback: int, requested: int | None) -> tuple[int, int | None]:
    """
    Work out the vector size for a hosted model.

    Returns:
        (size of returned vectors, size to ask the API for or None)
    """
    native = NATIVE_DIMENSIONS.get(model, fallback)
    if requested is None:
        return native, None
    if requested > native:
        logger.warning(f"{model} cannot return {requested} dimensions, keeping {native}")
        return native, None
    return requested, requested


class OpenAIEmbeddingService(EmbeddingService):
    """
    Embeddings from the OpenAI API.

    text-embedding-3 models accept a `dimensions` argument, which keeps large
    models under pgvector's 2000-dimension HNSW limit.
    """

    def __init__(self, api_key: str, model: str = DEFAULT_MODELS["openai"], dimensions: int | None = None):
        self.api_key = api_key
        self.model = model
        self._client = None
        self._dimension, self._requested_dimensions = _output_dimensions(model, 1536, dimensions)
        logger.info(f"OpenAI embeddings: {model} ({self._dimension} dims)")

    @property
    def dimension(self) -> int:
        return self._dimension

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            # MemoryEngine bounds each call with its own timeout
            self._client = AsyncOpenAI(api_key=self.api_key, max_retries=0)
        return self._client

    async def embed(self, text: str) -> list[float]:
        extra = {}
        if self._requested_dimensions is not None:
            extra["dimensions"] = self._requested_dimensions
        response = await self._get_client().embeddings.create(model=self.model, input=text, **extra)
        return response.data[0].embedding


class GoogleEmbeddingService(EmbeddingService):
    """Embeddings from the Gemini API via google-genai."""

    def __init__(self, api_key: str, model: str = DEFAULT_MODELS["google"], dimensions: int | None = None):
        self.api_key = api_key
        self.model = model
        self._client = None
        self._dimension, self._requested_dimensions = _output_dimensions(model, 768, dimensions)
        logger.info(f"Google embeddings: {model} ({self._dimension} dims)")

    @property
    def dimension(self) -> int:
        return self._dimension

    def _get_client(self):
        if self._client is None:
            from google import genai
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    async def embed(self, text: str) -> list[float]:
        config = None
        if self._requested_dimensions is not None:
            config = {"output_dimensionality": self._requested_dimensions}
        response = await self._get_client().aio.models.embed_content(
            model=self.model, contents=text, config=config
        )
        return list(response.embeddings[0].values)


class SentenceTransformerEmbeddingService(EmbeddingService):
    """
    Embeddings computed in process with sentence-transformers.

    Needs the `local` extra. The model loads on first use and encoding runs
    in a worker thread so requests keep being served meanwhile.
    """

    def __init__(self, model_name: str = DEFAULT_MODELS["local"]):
        self.model_name = model_name
        self._model = None
        self._dimension = NATIVE_DIMENSIONS.get(model_name, 384)

    @property
    def dimension(self) -> int:
        return self._dimension

    def _load_model(self):
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError as e:
                raise EmbeddingUnavailable(
                    "Local embeddings need sentence-transformers: pip install 'memgate[local]'"
                ) from e
            self._model = SentenceTransformer(self.model_name)
            self._dimension = self._model.get_sentence_embedding_dimension()
            logger.info(f"Loaded local embedding model {self.model_name} ({self._dimension} dims)")
        return self._model

    async def embed(self, text: str) -> list[float]:
        model = self._load_model()
        vector = await asyncio.to_thread(model.encode, text, convert_to_numpy=True)
        return vector.tolist()


def create_embedding_service(
    provider: EmbeddingProvider = "openai",
    api_key: str = "",
    model: str = "",
    dimensions: int | None = None,
) -> EmbeddingService:
    """
    Build the embedding service named in the memory config.

    Args:
        provider: "openai", "google" or "local"
        api_key: Key for a hosted provider; ignored for local
        model: Model name, or empty for the provider's default
        dimensions: Smaller vector size to request from hosted models

    Raises:
        ValueError: If the provider is unknown or a hosted provider has no key.
    """
    if provider not in DEFAULT_MODELS:
        raise ValueError(f"Unknown embedding provider: {provider}")
    model = model or DEFAULT_MODELS[provider]

    if provider == "local":
        return SentenceTransformerEmbeddingService(model_name=model)
    if not api_key:
        raise ValueError(f"{provider} embeddings need an API key")
    if provider == "google":
        return GoogleEmbeddingService(api_key=api_key, model=model, dimensions=dimensions)
    return OpenAIEmbeddingService(api_key=api_key, model=model, dimensions=dimensions)
