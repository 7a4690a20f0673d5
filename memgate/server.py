"""
memgate HTTP API - FastAPI surface for the gateway.

Chat endpoints accept OpenAI, Anthropic or Gemini shaped requests and answer
in the same shape, as JSON or Server-Sent Events. Memory endpoints expose the
memory engine directly.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from . import __version__
from .config import Config, config
from .errors import GatewayError, TranslationError
from .llm.base import ProviderIdentity, sse
from .llm.factory import create_adapters
from .memory.memory_manager import MemoryEngine, create_memory_engine
from .rate_limiter import RateLimiter
from .router import ProxyResult, ProxyRouter

logger = logging.getLogger("memgate.server")


class MemoryAddRequest(BaseModel):
    owner_id: str = Field(min_length=1)
    content: str = Field(min_length=1)
    metadata: dict[str, Any] = {}


class MemorySearchRequest(BaseModel):
    owner_id: str = Field(min_length=1)
    query: str
    k: int = Field(default=5, ge=0, le=100)
    min_score: Optional[float] = None
    filters: Optional[dict[str, Any]] = None


class BackfillRequest(BaseModel):
    owner_id: Optional[str] = None
    limit: int = Field(default=100, ge=1, le=1000)


async def build_router(app_config: Config) -> ProxyRouter:
    """Create adapters, the memory engine and the router from configuration."""
    adapters = create_adapters(
        openai_api_key=app_config.openai.api_key,
        openai_base_url=app_config.openai.base_url,
        anthropic_api_key=app_config.anthropic.api_key,
        anthropic_max_tokens=app_config.anthropic.default_max_tokens,
        google_api_key=app_config.google.api_key,
        timeout=app_config.proxy.upstream_timeout,
    )

    memory_engine = None
    if app_config.memory.enabled:
        try:
            memory_engine = await create_memory_engine(
                embedding_provider=app_config.memory.embedding_provider,
                openai_api_key=app_config.openai.api_key,
                google_api_key=app_config.google.api_key,
                embedding_model=app_config.memory.embedding_model,
                embedding_dimensions=app_config.memory.embedding_dimensions,
                embedding_timeout=app_config.memory.embedding_timeout,
                postgres_url=app_config.memory.postgres_url,
                table_name=app_config.memory.table_name,
                extract_facts=app_config.memory.extract_facts,
            )
        except ValueError as e:
            # Missing embedding credentials disable memory; an unreachable
            # durable store (StoreUnavailable) still fails startup
            logger.warning(f"Memory disabled: {e}")

    rate_limit = app_config.proxy.rate_limit
    rate_limiter = (
        RateLimiter(rate_limit.max_burst, rate_limit.refill_per_minute)
        if rate_limit.enabled
        else None
    )

    return ProxyRouter(
        adapters=adapters,
        memory_engine=memory_engine,
        priority=app_config.proxy.provider_priority,
        upstream_timeout=app_config.proxy.upstream_timeout,
        rate_limiter=rate_limiter,
        route_by_model=app_config.proxy.route_by_model,
        default_k=app_config.memory.default_k,
        default_min_score=app_config.memory.min_score,
    )


async def close_router(router: ProxyRouter) -> None:
    for adapter in router.adapters.values():
        await adapter.close()
    if router.memory_engine is not None:
        await router.memory_engine.close()


async def _guard_stream(frames: AsyncIterator[str]) -> AsyncIterator[str]:
    """Turn errors raised mid-stream into a final SSE error event."""
    try:
        async for frame in frames:
            yield frame
    except GatewayError as e:
        logger.warning(f"Stream aborted: {e.message}")
        yield sse(e.to_dict(), event="error")


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError:
        raise TranslationError("Request body is not valid JSON")
    if not isinstance(payload, dict):
        raise TranslationError("Request body must be a JSON object")
    return payload


def _render(result: ProxyResult) -> JSONResponse | StreamingResponse:
    headers = {
        "X-Trace-Id": result.context.trace_id,
        "X-Upstream-Provider": result.upstream.provider_name,
    }
    if result.stream is not None:
        headers["Cache-Control"] = "no-cache"
        return StreamingResponse(
            _guard_stream(result.stream),
            media_type="text/event-stream",
            headers=headers,
        )
    return JSONResponse(result.body, headers=headers)


def create_app(router: ProxyRouter | None = None, app_config: Config = config) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        router: Pre-built router. When omitted, one is built from app_config
            at startup and closed at shutdown.
        app_config: Configuration used to build the router.

    Returns:
        Configured FastAPI application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Application lifespan handler."""
        owned = app.state.router is None
        if owned:
            app.state.router = await build_router(app_config)
        logger.info("memgate started")
        yield
        logger.info("Shutting down memgate")
        if owned:
            await close_router(app.state.router)
            app.state.router = None

    app = FastAPI(
        title="memgate",
        description="LLM provider gateway with long-term memory",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.router = router

    @app.exception_handler(GatewayError)
    async def _gateway_error(request: Request, exc: GatewayError) -> JSONResponse:
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    def get_router(request: Request) -> ProxyRouter:
        return request.app.state.router

    def get_engine(request: Request) -> MemoryEngine:
        engine = get_router(request).memory_engine
        if engine is None:
            raise HTTPException(status_code=503, detail="Memory is not enabled")
        return engine

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint"""
        proxy = get_router(request)
        return {
            "status": "healthy",
            "version": __version__,
            "memory": proxy.memory_engine.backend if proxy.memory_engine else "disabled",
            "providers": {
                identity.value: adapter.is_configured()
                for identity, adapter in proxy.adapters.items()
            },
        }

    # Chat

    @app.post("/v1/chat")
    async def chat(
        request: Request,
        x_provider: Optional[str] = Header(default=None),
        x_upstream_provider: Optional[str] = Header(default=None),
    ):
        """Proxy a chat request in any supported shape."""
        payload = await _json_body(request)
        result = await get_router(request).handle(
            payload, provider=x_provider, target=x_upstream_provider
        )
        return _render(result)

    @app.post("/v1/chat/completions")
    async def openai_chat(
        request: Request,
        x_upstream_provider: Optional[str] = Header(default=None),
    ):
        """OpenAI-compatible chat completions."""
        payload = await _json_body(request)
        result = await get_router(request).handle(
            payload, provider=ProviderIdentity.OPENAI, target=x_upstream_provider
        )
        return _render(result)

    @app.post("/v1/messages")
    async def anthropic_messages(
        request: Request,
        x_upstream_provider: Optional[str] = Header(default=None),
    ):
        """Anthropic-compatible messages."""
        payload = await _json_body(request)
        result = await get_router(request).handle(
            payload, provider=ProviderIdentity.ANTHROPIC, target=x_upstream_provider
        )
        return _render(result)

    # Memory

    @app.post("/v1/memories", status_code=201)
    async def add_memory(body: MemoryAddRequest, request: Request):
        """Store a memory for an owner."""
        record = await get_engine(request).store(body.owner_id, body.content, body.metadata)
        return record.to_dict()

    @app.post("/v1/memories/search")
    async def search_memories(body: MemorySearchRequest, request: Request):
        """Find an owner's memories most similar to a query."""
        results = await get_engine(request).retrieve(
            body.owner_id,
            body.query,
            k=body.k,
            min_score=body.min_score,
            filters=body.filters,
        )
        return {"results": [r.to_dict() for r in results]}

    @app.delete("/v1/memories/{owner_id}/{memory_id}")
    async def forget_memory(owner_id: str, memory_id: str, request: Request):
        """Forget a memory. Forgetting an unknown memory succeeds."""
        deleted = await get_engine(request).forget(owner_id, memory_id)
        return {"id": memory_id, "deleted": deleted}

    @app.post("/v1/memories/backfill")
    async def backfill_memories(body: BackfillRequest, request: Request):
        """Embed memories stored while the embedding service was down."""
        embedded = await get_engine(request).backfill(body.owner_id, body.limit)
        return {"embedded": embedded}

    return app
