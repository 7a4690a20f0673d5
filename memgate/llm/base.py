"""
Canonical chat shapes and the abstract provider adapter.

Every adapter translates between these provider-agnostic dataclasses and one
provider's wire schema, allowing the proxy to accept any supported request
shape and forward it to any supported upstream.
"""

import asyncio
import dataclasses
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Iterable

import httpx

from ..errors import ProviderUnresolved, TranslationError, UpstreamError, UpstreamReason

logger = logging.getLogger("memgate.llm.base")

# Generation parameters carried through translation; anything else is dropped
RECOGNIZED_PARAMS = ("temperature", "max_tokens", "top_p", "stop")


class Role(str, Enum):
    """Speaker of a chat message."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class FinishReason(str, Enum):
    """Why the model stopped generating."""
    COMPLETED = "completed"
    LENGTH_LIMITED = "length_limited"
    FILTERED = "filtered"
    ERROR = "error"


class ProviderIdentity(str, Enum):
    """Supported LLM providers."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"

    @classmethod
    def parse(cls, value: "str | ProviderIdentity") -> "ProviderIdentity":
        """Parse a provider name, raising ProviderUnresolved if unknown."""
        if isinstance(value, ProviderIdentity):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ProviderUnresolved(f"Unknown provider: {value!r}") from None


@dataclass(frozen=True)
class Message:
    """A single chat message with plain-text content."""
    role: Role
    content: str

    def __post_init__(self):
        try:
            role = Role(self.role)
        except ValueError:
            raise TranslationError(f"Unsupported message role: {self.role!r}") from None
        if not isinstance(self.content, str):
            raise TranslationError("Message content must be text")
        object.__setattr__(self, "role", role)


@dataclass
class CanonicalChatRequest:
    """Provider-agnostic chat request."""
    messages: list[Message]
    model: str = ""
    generation_params: dict[str, Any] = field(default_factory=dict)
    stream: bool = False

    @property
    def query_text(self) -> str:
        """Content of the latest user message, used as the memory query."""
        for message in reversed(self.messages):
            if message.role is Role.USER:
                return message.content
        return ""

    def recognized_params(self) -> dict[str, Any]:
        """Generation parameters every adapter knows how to carry."""
        return {
            key: self.generation_params[key]
            for key in RECOGNIZED_PARAMS
            if self.generation_params.get(key) is not None
        }

    def with_memory(self, memory: Message) -> "CanonicalChatRequest":
        """Return a copy with a memory message placed ahead of the first system message."""
        index = next(
            (i for i, m in enumerate(self.messages) if m.role is Role.SYSTEM),
            0,
        )
        messages = list(self.messages)
        messages.insert(index, memory)
        return dataclasses.replace(self, messages=messages)


@dataclass
class CanonicalChatResponse:
    """Provider-agnostic chat completion."""
    message: Message
    model: str = ""
    finish_reason: FinishReason = FinishReason.COMPLETED
    usage: dict[str, int] | None = None
    id: str | None = None

    @property
    def content(self) -> str:
        return self.message.content

    @property
    def token_count(self) -> int:
        """Return total tokens used if available."""
        if self.usage:
            return self.usage.get("total_tokens", 0)
        return 0


@dataclass
class ChatDelta:
    """One incremental piece of a streamed completion."""
    content: str = ""
    finish_reason: FinishReason | None = None
    usage: dict[str, int] | None = None
    model: str | None = None
    id: str | None = None
    done: bool = False


def make_usage(
    prompt: int | None = None,
    completion: int | None = None,
    total: int | None = None,
) -> dict[str, int] | None:
    """Build a usage dict from whichever token counts the provider reported."""
    usage: dict[str, int] = {}
    if prompt is not None:
        usage["prompt_tokens"] = int(prompt)
    if completion is not None:
        usage["completion_tokens"] = int(completion)
    if total is not None:
        usage["total_tokens"] = int(total)
    elif usage:
        usage["total_tokens"] = sum(usage.values())
    return usage or None


def merge_usage(current: dict[str, int] | None, update: dict[str, int] | None) -> dict[str, int] | None:
    if not update:
        return current
    merged = dict(current or {})
    merged.update(update)
    if "prompt_tokens" in merged and "completion_tokens" in merged:
        merged["total_tokens"] = merged["prompt_tokens"] + merged["completion_tokens"]
    return merged


def merge_deltas(deltas: Iterable[ChatDelta]) -> CanonicalChatResponse:
    """
    Fold a sequence of stream deltas into the equivalent full response.

    Content is concatenated in order; the last reported model, id and finish
    reason win, and usage counts are merged as they arrive.
    """
    parts: list[str] = []
    model = ""
    response_id = None
    finish_reason = None
    usage = None

    for delta in deltas:
        parts.append(delta.content)
        if delta.model:
            model = delta.model
        if delta.id:
            response_id = delta.id
        if delta.finish_reason is not None:
            finish_reason = delta.finish_reason
        usage = merge_usage(usage, delta.usage)

    return CanonicalChatResponse(
        message=Message(role=Role.ASSISTANT, content="".join(parts)),
        model=model,
        finish_reason=finish_reason or FinishReason.COMPLETED,
        usage=usage,
        id=response_id,
    )


def flatten_text(content: Any) -> str:
    """
    Collapse message content into plain text.

    Accepts a string, None, or a list of text blocks ({"type": "text", "text": ...}
    or bare strings). Any non-text block raises TranslationError.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = []
        for block in content:
            if isinstance(block, str):
                texts.append(block)
            elif isinstance(block, dict) and block.get("type", "text") == "text":
                texts.append(str(block.get("text", "")))
            else:
                kind = block.get("type") if isinstance(block, dict) else type(block).__name__
                raise TranslationError(f"Unsupported content block: {kind!r}")
        return "".join(texts)
    raise TranslationError(f"Unsupported message content: {type(content).__name__}")


def as_stop_list(stop: Any) -> list[str]:
    if isinstance(stop, str):
        return [stop]
    return list(stop)


def sse(data: dict[str, Any], event: str | None = None) -> str:
    """Format a server-sent event frame."""
    payload = json.dumps(data, ensure_ascii=False)
    if event:
        return f"event: {event}\ndata: {payload}\n\n"
    return f"data: {payload}\n\n"


def reason_for_status(status: int | None) -> UpstreamReason:
    """Map an upstream HTTP status to a normalised failure reason."""
    if status == 429:
        return UpstreamReason.RATE_LIMITED
    if status == 408:
        return UpstreamReason.TIMEOUT
    if status is not None and 400 <= status < 500:
        return UpstreamReason.INVALID_REQUEST
    return UpstreamReason.SERVER_ERROR


class ProviderAdapter(ABC):
    """
    Abstract base class for provider adapters.

    An adapter owns everything provider-specific: recognising its wire shape,
    translating requests, responses and stream frames to and from the
    canonical model, and talking to the provider's API.

    Implement this interface to add support for new LLM services.
    """

    identity: ProviderIdentity

    @property
    def provider_name(self) -> str:
        """Return the name of the LLM provider."""
        return self.identity.value

    @abstractmethod
    def is_configured(self) -> bool:
        """Check if the provider is properly configured with API keys."""
        pass

    # Translation

    @abstractmethod
    def detect(self, payload: dict[str, Any]) -> bool:
        """Return True if the payload is shaped like this provider's requests."""
        pass

    @abstractmethod
    def decode_request(self, payload: dict[str, Any]) -> CanonicalChatRequest:
        """Translate an inbound request in this provider's shape to canonical form."""
        pass

    @abstractmethod
    def encode(self, request: CanonicalChatRequest) -> dict[str, Any]:
        """Translate a canonical request into this provider's request payload."""
        pass

    @abstractmethod
    def decode(self, payload: dict[str, Any]) -> CanonicalChatResponse:
        """
        Translate a provider response into canonical form.

        Raises:
            UpstreamError: If the payload is a provider error body.
            TranslationError: If the payload cannot be understood.
        """
        pass

    @abstractmethod
    def encode_response(self, response: CanonicalChatResponse) -> dict[str, Any]:
        """Translate a canonical response into this provider's response shape."""
        pass

    # Streaming

    @abstractmethod
    def decode_stream_frame(self, frame: dict[str, Any]) -> ChatDelta | None:
        """Translate one upstream stream frame. None means the frame carries nothing."""
        pass

    async def decode_stream(
        self, frames: AsyncIterator[dict[str, Any]]
    ) -> AsyncIterator[ChatDelta]:
        """
        Translate upstream frames into deltas, always ending with a done delta.
        """
        async for frame in frames:
            delta = self.decode_stream_frame(frame)
            if delta is None:
                continue
            yield delta
            if delta.done:
                return
        yield ChatDelta(done=True)

    @abstractmethod
    def encode_stream(self, deltas: AsyncIterator[ChatDelta]) -> AsyncIterator[str]:
        """Render canonical deltas as server-sent events in this provider's shape."""
        pass

    # Transport

    @abstractmethod
    async def send(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Send an encoded request and return the provider's response as a dict."""
        pass

    @abstractmethod
    def send_stream(self, payload: dict[str, Any]) -> AsyncIterator[dict[str, Any]]:
        """Send an encoded request and yield the provider's stream frames as dicts."""
        pass

    async def close(self) -> None:
        """Release the underlying SDK client, if any."""
        pass

    # Errors

    def classify_error(self, exc: BaseException) -> UpstreamReason:
        """Map an exception raised during a provider call to a normalised reason."""
        if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
            return UpstreamReason.TIMEOUT
        if isinstance(exc, httpx.HTTPStatusError):
            return reason_for_status(exc.response.status_code)
        status = getattr(exc, "status_code", None)
        if isinstance(status, int):
            return reason_for_status(status)
        return UpstreamReason.SERVER_ERROR

    def upstream_error(self, reason: UpstreamReason, detail: Any) -> UpstreamError:
        """Build an UpstreamError, logging the provider detail server-side."""
        error = UpstreamError(reason, provider=self.provider_name)
        logger.warning(
            f"{self.provider_name} returned an error ({reason.value}, trace {error.trace_id}): {detail}"
        )
        return error
