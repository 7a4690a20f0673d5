"""
Proxy router.

Takes an inbound chat payload, works out which provider shape it is in,
optionally augments it with retrieved memories, forwards it to the target
provider and renders the answer back in the caller's shape.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Sequence

from .config import trace_context
from .errors import (
    GatewayError,
    ProviderUnresolved,
    TranslationError,
    UpstreamError,
    UpstreamReason,
    new_trace_id,
)
from .llm.base import (
    CanonicalChatRequest,
    CanonicalChatResponse,
    ChatDelta,
    Message,
    ProviderAdapter,
    ProviderIdentity,
    Role,
    merge_deltas,
)
from .llm.factory import provider_for_model
from .memory.base import SearchResult
from .memory.memory_manager import MemoryEngine
from .rate_limiter import RateLimiter

logger = logging.getLogger("memgate.router")

DEFAULT_PRIORITY = (
    ProviderIdentity.ANTHROPIC,
    ProviderIdentity.OPENAI,
    ProviderIdentity.GOOGLE,
)


class RequestState(str, Enum):
    """Lifecycle of a proxied request."""
    RECEIVED = "received"
    PROVIDER_SELECTED = "provider_selected"
    MEMORY_AUGMENTED = "memory_augmented"
    FORWARDED = "forwarded"
    RESPONSE_TRANSLATED = "response_translated"
    COMPLETED = "completed"
    ERRORED = "errored"


TERMINAL_STATES = (RequestState.COMPLETED, RequestState.ERRORED)


@dataclass
class RequestContext:
    """Per-request state. Never shared between requests."""
    trace_id: str = field(default_factory=new_trace_id)
    state: RequestState = RequestState.RECEIVED
    history: list[RequestState] = field(default_factory=lambda: [RequestState.RECEIVED])
    memories: list[SearchResult] = field(default_factory=list)

    def advance(self, state: RequestState) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Request {self.trace_id} already {self.state.value}")
        self.state = state
        self.history.append(state)

    def fail(self) -> None:
        if self.state not in TERMINAL_STATES:
            self.advance(RequestState.ERRORED)


@dataclass
class MemoryOptions:
    """The optional `memory` block of an inbound request."""
    owner_id: str | None = None
    augment: bool = False
    remember: bool = False
    k: int | None = None
    min_score: float | None = None
    filters: dict[str, Any] | None = None

    @property
    def enabled(self) -> bool:
        return self.augment or self.remember

    @classmethod
    def from_payload(cls, block: Any) -> "MemoryOptions":
        """
        Parse and validate a memory block.

        Raises:
            TranslationError: If the block is malformed.
        """
        if block is None:
            return cls()
        if not isinstance(block, dict):
            raise TranslationError("'memory' must be an object")

        owner_id = block.get("owner_id")
        if owner_id is not None and (not isinstance(owner_id, str) or not owner_id):
            raise TranslationError("memory.owner_id must be a non-empty string")

        k = block.get("k")
        if k is not None and (isinstance(k, bool) or not isinstance(k, int) or k < 0):
            raise TranslationError("memory.k must be a non-negative integer")

        min_score = block.get("min_score")
        if min_score is not None and (isinstance(min_score, bool) or not isinstance(min_score, (int, float))):
            raise TranslationError("memory.min_score must be a number")

        filters = block.get("filters")
        if filters is not None and not isinstance(filters, dict):
            raise TranslationError("memory.filters must be an object")

        options = cls(
            owner_id=owner_id,
            augment=bool(block.get("augment", owner_id is not None)),
            remember=bool(block.get("remember", False)),
            k=k,
            min_score=float(min_score) if min_score is not None else None,
            filters=filters,
        )
        if options.enabled and not options.owner_id:
            raise TranslationError("memory.owner_id is required when memory is enabled")
        return options


@dataclass
class ProxyResult:
    """Outcome of a proxied request, already in the caller's shape."""
    context: RequestContext
    inbound: ProviderAdapter
    upstream: ProviderAdapter
    response: CanonicalChatResponse | None = None
    body: dict[str, Any] | None = None
    stream: AsyncIterator[str] | None = None


class ProxyRouter:
    """
    Routes chat requests between provider shapes with memory augmentation.

    One upstream call per request, bounded by upstream_timeout. Retries are
    left to the caller.
    """

    def __init__(
        self,
        adapters: dict[ProviderIdentity, ProviderAdapter],
        memory_engine: MemoryEngine | None = None,
        priority: Sequence[ProviderIdentity | str] = DEFAULT_PRIORITY,
        upstream_timeout: float = 60.0,
        rate_limiter: RateLimiter | None = None,
        route_by_model: bool = True,
        default_k: int = 5,
        default_min_score: float | None = None,
    ):
        self.adapters = dict(adapters)
        self.memory_engine = memory_engine
        self.priority = [ProviderIdentity.parse(p) for p in priority]
        self.upstream_timeout = upstream_timeout
        self.rate_limiter = rate_limiter
        self.route_by_model = route_by_model
        self.default_k = default_k
        self.default_min_score = default_min_score

    # Selection

    def _adapter(self, identity: ProviderIdentity) -> ProviderAdapter:
        adapter = self.adapters.get(identity)
        if adapter is None:
            raise ProviderUnresolved(f"No adapter registered for provider '{identity.value}'")
        return adapter

    def select_provider(
        self,
        payload: dict[str, Any],
        provider: ProviderIdentity | str | None = None,
    ) -> ProviderAdapter:
        """
        Choose the adapter for the inbound payload's shape.

        An explicit provider wins. Otherwise adapters are asked to detect the
        payload in priority order and the first match is used.

        Raises:
            ProviderUnresolved: If nothing matches.
        """
        if provider:
            return self._adapter(ProviderIdentity.parse(provider))

        for identity in self.priority:
            adapter = self.adapters.get(identity)
            if adapter is not None and adapter.detect(payload):
                return adapter

        raise ProviderUnresolved(
            "Could not determine the provider for this request; "
            "specify one explicitly or send an OpenAI, Anthropic or Gemini shaped payload"
        )

    def select_target(
        self,
        request: CanonicalChatRequest,
        inbound: ProviderAdapter,
        target: ProviderIdentity | str | None = None,
    ) -> ProviderAdapter:
        """Choose the upstream: explicit target, then model prefix, then the inbound provider."""
        if target:
            adapter = self._adapter(ProviderIdentity.parse(target))
        else:
            identity = provider_for_model(request.model) if self.route_by_model else None
            adapter = self._adapter(identity) if identity else inbound

        if not adapter.is_configured():
            raise ProviderUnresolved(
                f"Provider '{adapter.provider_name}' is not configured with an API key"
            )
        return adapter

    # Memory

    async def augment(
        self,
        request: CanonicalChatRequest,
        options: MemoryOptions,
        context: RequestContext,
    ) -> CanonicalChatRequest:
        """Add retrieved memories as a system message. Never fails the request."""
        if not options.augment:
            return request
        if self.memory_engine is None:
            logger.debug("Memory requested but no memory engine is configured")
            return request

        query = request.query_text
        if not query.strip():
            return request

        results = await self.memory_engine.retrieve(
            options.owner_id,
            query,
            k=options.k if options.k is not None else self.default_k,
            min_score=options.min_score if options.min_score is not None else self.default_min_score,
            filters=options.filters,
        )
        context.memories = results
        if not results:
            return request

        logger.info(f"Injecting {len(results)} memories for {options.owner_id}")
        memory = Message(role=Role.SYSTEM, content=self.memory_engine.format_memories(results))
        return request.with_memory(memory)

    async def remember(
        self,
        options: MemoryOptions,
        request: CanonicalChatRequest,
        response: CanonicalChatResponse,
        upstream: ProviderAdapter,
        context: RequestContext,
    ) -> None:
        """Store the exchange as memories. Failures are logged and swallowed."""
        if not options.remember or self.memory_engine is None:
            return
        try:
            await self.memory_engine.remember_exchange(
                options.owner_id,
                request.query_text,
                response.content,
                metadata={
                    "source": "chat",
                    "provider": upstream.provider_name,
                    "model": response.model or request.model,
                    "trace_id": context.trace_id,
                },
            )
        except Exception as e:
            logger.warning(f"Failed to store memory for {options.owner_id}: {e}")

    # Forwarding

    def _check_rate_limit(self, upstream: ProviderAdapter, context: RequestContext) -> None:
        if self.rate_limiter is None:
            return
        allowed, retry_after = self.rate_limiter.try_acquire(upstream.provider_name)
        if not allowed:
            logger.warning(
                f"Local rate limit reached for {upstream.provider_name}, retry in {retry_after}s"
            )
            raise UpstreamError(
                UpstreamReason.RATE_LIMITED,
                provider=upstream.provider_name,
                trace_id=context.trace_id,
            )

    def _upstream_failure(
        self,
        upstream: ProviderAdapter,
        exc: Exception,
        context: RequestContext,
    ) -> UpstreamError:
        reason = upstream.classify_error(exc)
        logger.warning(
            f"{upstream.provider_name} call failed ({reason.value}, trace {context.trace_id}): {exc!r}"
        )
        return UpstreamError(reason, provider=upstream.provider_name, trace_id=context.trace_id)

    async def _forward(
        self,
        upstream: ProviderAdapter,
        payload: dict[str, Any],
        context: RequestContext,
    ) -> CanonicalChatResponse:
        try:
            raw = await asyncio.wait_for(upstream.send(payload), timeout=self.upstream_timeout)
        except GatewayError:
            raise
        except Exception as e:
            raise self._upstream_failure(upstream, e, context) from e
        context.advance(RequestState.FORWARDED)
        return upstream.decode(raw)

    async def _stream_deltas(
        self,
        upstream: ProviderAdapter,
        payload: dict[str, Any],
        context: RequestContext,
    ) -> AsyncIterator[ChatDelta]:
        """Upstream deltas with errors normalised and each frame bounded by the timeout."""
        deltas = upstream.decode_stream(upstream.send_stream(payload))
        try:
            while True:
                try:
                    delta = await asyncio.wait_for(deltas.__anext__(), timeout=self.upstream_timeout)
                except StopAsyncIteration:
                    return
                except GatewayError:
                    raise
                except Exception as e:
                    raise self._upstream_failure(upstream, e, context) from e
                yield delta
                if delta.done:
                    return
        finally:
            await deltas.aclose()

    async def _relay(
        self,
        first: ChatDelta,
        deltas: AsyncIterator[ChatDelta],
        options: MemoryOptions,
        request: CanonicalChatRequest,
        upstream: ProviderAdapter,
        context: RequestContext,
    ) -> AsyncIterator[ChatDelta]:
        """
        Pass deltas through to the caller.

        The exchange is remembered before the terminal delta is released, since
        encoders stop iterating as soon as they see it. A caller that goes away
        mid-stream skips the remember step.
        """
        trace_context.set(context.trace_id)
        collected: list[ChatDelta] = []
        delta = first
        try:
            while not delta.done:
                collected.append(delta)
                yield delta
                try:
                    delta = await deltas.__anext__()
                except StopAsyncIteration:
                    delta = ChatDelta(done=True)
        except GatewayError:
            context.fail()
            raise
        finally:
            await deltas.aclose()

        collected.append(delta)
        response = merge_deltas(collected)
        context.advance(RequestState.RESPONSE_TRANSLATED)
        await self.remember(options, request, response, upstream, context)
        context.advance(RequestState.COMPLETED)
        logger.info(f"Stream completed via {upstream.provider_name} ({response.token_count} tokens)")
        yield delta

    # Entry point

    async def handle(
        self,
        payload: dict[str, Any],
        provider: ProviderIdentity | str | None = None,
        target: ProviderIdentity | str | None = None,
    ) -> ProxyResult:
        """
        Proxy one chat request.

        Args:
            payload: Inbound request body, optionally carrying a `memory` block.
            provider: Explicit inbound shape; detected when omitted.
            target: Explicit upstream provider; otherwise chosen by model name.

        Returns:
            ProxyResult with a JSON body, or an SSE stream for streaming requests.

        Raises:
            ProviderUnresolved, TranslationError, UpstreamError
        """
        context = RequestContext()
        token = trace_context.set(context.trace_id)
        try:
            if not isinstance(payload, dict):
                raise TranslationError("Request body must be a JSON object")
            payload = dict(payload)
            options = MemoryOptions.from_payload(payload.pop("memory", None))

            inbound = self.select_provider(payload, provider)
            context.advance(RequestState.PROVIDER_SELECTED)

            original = inbound.decode_request(payload)
            upstream = self.select_target(original, inbound, target)
            logger.info(
                f"Routing {inbound.provider_name}-shaped request to {upstream.provider_name}"
                f" (model={original.model or 'default'}, stream={original.stream})"
            )

            request = await self.augment(original, options, context)
            context.advance(RequestState.MEMORY_AUGMENTED)

            self._check_rate_limit(upstream, context)
            wire = upstream.encode(request)

            if request.stream:
                deltas = self._stream_deltas(upstream, wire, context)
                # Pull the first delta here so connection errors surface as HTTP errors
                try:
                    first = await deltas.__anext__()
                except StopAsyncIteration:
                    first = ChatDelta(done=True)
                context.advance(RequestState.FORWARDED)
                relay = self._relay(first, deltas, options, original, upstream, context)
                return ProxyResult(
                    context=context,
                    inbound=inbound,
                    upstream=upstream,
                    stream=inbound.encode_stream(relay),
                )

            response = await self._forward(upstream, wire, context)
            body = inbound.encode_response(response)
            context.advance(RequestState.RESPONSE_TRANSLATED)

            await self.remember(options, original, response, upstream, context)
            context.advance(RequestState.COMPLETED)
            logger.info(f"Request completed via {upstream.provider_name} ({response.token_count} tokens)")
            return ProxyResult(
                context=context,
                inbound=inbound,
                upstream=upstream,
                response=response,
                body=body,
            )
        except Exception:
            context.fail()
            raise
        finally:
            trace_context.reset(token)
