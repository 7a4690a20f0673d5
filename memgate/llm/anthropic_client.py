"""
Anthropic Provider Adapter.

Translates the Messages API schema to and from the canonical model. System
messages are hoisted out of the turn list into the top-level `system` field.
"""

import logging
import uuid
from typing import Any, AsyncIterator

import anthropic
from anthropic import AsyncAnthropic

from ..errors import TranslationError, UpstreamReason
from .base import (
    CanonicalChatRequest,
    CanonicalChatResponse,
    ChatDelta,
    FinishReason,
    Message,
    ProviderAdapter,
    ProviderIdentity,
    Role,
    as_stop_list,
    flatten_text,
    make_usage,
    sse,
)

logger = logging.getLogger("memgate.llm.anthropic")

# Top-level keys that only the Messages API uses
ANTHROPIC_MARKERS = ("system", "stop_sequences", "anthropic_version", "top_k")

MESSAGES_ROLES = ("user", "assistant")

STOP_REASONS = {
    "end_turn": FinishReason.COMPLETED,
    "stop_sequence": FinishReason.COMPLETED,
    "tool_use": FinishReason.COMPLETED,
    "pause_turn": FinishReason.COMPLETED,
    "max_tokens": FinishReason.LENGTH_LIMITED,
    "refusal": FinishReason.FILTERED,
}

WIRE_STOP_REASONS = {
    FinishReason.COMPLETED: "end_turn",
    FinishReason.LENGTH_LIMITED: "max_tokens",
    FinishReason.FILTERED: "refusal",
    FinishReason.ERROR: "end_turn",
}

ERROR_TYPES = {
    "rate_limit_error": UpstreamReason.RATE_LIMITED,
    "overloaded_error": UpstreamReason.SERVER_ERROR,
    "api_error": UpstreamReason.SERVER_ERROR,
    "timeout_error": UpstreamReason.TIMEOUT,
    "invalid_request_error": UpstreamReason.INVALID_REQUEST,
    "authentication_error": UpstreamReason.INVALID_REQUEST,
    "permission_error": UpstreamReason.INVALID_REQUEST,
    "not_found_error": UpstreamReason.INVALID_REQUEST,
    "request_too_large": UpstreamReason.INVALID_REQUEST,
}


def _is_messages_turn(turn: Any) -> bool:
    """True for a turn the Messages API accepts: user or assistant with text or blocks."""
    if not isinstance(turn, dict) or turn.get("role") not in MESSAGES_ROLES:
        return False
    content = turn.get("content")
    if isinstance(content, str):
        return True
    return isinstance(content, list) and all(
        isinstance(block, dict) and "type" in block for block in content
    )


class AnthropicAdapter(ProviderAdapter):
    """Anthropic Messages API adapter."""

    identity = ProviderIdentity.ANTHROPIC

    def __init__(self, api_key: str = "", default_max_tokens: int = 4096, timeout: float = 60.0):
        """
        Initialize the Anthropic adapter.

        Args:
            api_key: Anthropic API key. Translation works without one.
            default_max_tokens: Used when the canonical request has no max_tokens,
                since the Messages API requires one.
            timeout: Per-request timeout passed to the SDK.
        """
        self._api_key = api_key
        self._default_max_tokens = default_max_tokens
        self._timeout = timeout
        self._client: AsyncAnthropic | None = None

    def is_configured(self) -> bool:
        return bool(self._api_key)

    def _get_client(self) -> AsyncAnthropic:
        """Get or create the async Anthropic client."""
        if self._client is None:
            self._client = AsyncAnthropic(
                api_key=self._api_key,
                timeout=self._timeout,
                max_retries=0,
            )
        return self._client

    # Translation

    def detect(self, payload: dict[str, Any]) -> bool:
        turns = payload.get("messages")
        if not isinstance(turns, list):
            return False
        # System, developer and tool turns only exist in the chat-completions shape
        if not all(_is_messages_turn(turn) for turn in turns):
            return False
        if any(key in payload for key in ANTHROPIC_MARKERS):
            return True
        return str(payload.get("model", "")).lower().startswith("claude")

    def decode_request(self, payload: dict[str, Any]) -> CanonicalChatRequest:
        turns = payload.get("messages")
        if not isinstance(turns, list) or not turns:
            raise TranslationError("Anthropic request requires a non-empty 'messages' list")

        messages = []
        system = payload.get("system")
        if isinstance(system, str):
            messages.append(Message(role=Role.SYSTEM, content=system))
        elif isinstance(system, list):
            for block in system:
                messages.append(Message(role=Role.SYSTEM, content=flatten_text([block])))
        elif system is not None:
            raise TranslationError("Anthropic 'system' must be a string or a list of text blocks")

        for turn in turns:
            if not isinstance(turn, dict):
                raise TranslationError("Each message must be an object")
            messages.append(
                Message(role=turn.get("role"), content=flatten_text(turn.get("content")))
            )

        params: dict[str, Any] = {}
        for key in ("temperature", "top_p", "max_tokens"):
            if payload.get(key) is not None:
                params[key] = payload[key]
        if payload.get("stop_sequences") is not None:
            params["stop"] = as_stop_list(payload["stop_sequences"])

        return CanonicalChatRequest(
            messages=messages,
            model=payload.get("model", ""),
            generation_params=params,
            stream=bool(payload.get("stream", False)),
        )

    def encode(self, request: CanonicalChatRequest) -> dict[str, Any]:
        system_parts = [m.content for m in request.messages if m.role is Role.SYSTEM]
        params = request.recognized_params()

        payload: dict[str, Any] = {
            "model": request.model,
            "max_tokens": params.get("max_tokens", self._default_max_tokens),
            "messages": [
                {"role": m.role.value, "content": m.content}
                for m in request.messages
                if m.role is not Role.SYSTEM
            ],
        }
        if len(system_parts) == 1:
            payload["system"] = system_parts[0]
        elif system_parts:
            payload["system"] = [{"type": "text", "text": part} for part in system_parts]

        for key in ("temperature", "top_p"):
            if key in params:
                payload[key] = params[key]
        if "stop" in params:
            payload["stop_sequences"] = as_stop_list(params["stop"])
        if request.stream:
            payload["stream"] = True
        return payload

    def _raise_for_error(self, body: Any) -> None:
        if not isinstance(body, dict):
            body = {"message": str(body)}
        reason = ERROR_TYPES.get(body.get("type"), UpstreamReason.SERVER_ERROR)
        raise self.upstream_error(reason, body)

    def decode(self, payload: dict[str, Any]) -> CanonicalChatResponse:
        if payload.get("type") == "error" or "error" in payload:
            self._raise_for_error(payload.get("error"))

        blocks = payload.get("content")
        if not isinstance(blocks, list):
            raise TranslationError("Anthropic response has no content list")
        content = "".join(
            block.get("text", "") for block in blocks if block.get("type") == "text"
        )

        stop_reason = payload.get("stop_reason")
        usage = payload.get("usage") or {}
        return CanonicalChatResponse(
            message=Message(role=Role.ASSISTANT, content=content),
            model=payload.get("model", ""),
            finish_reason=(
                STOP_REASONS.get(stop_reason, FinishReason.ERROR)
                if stop_reason
                else FinishReason.COMPLETED
            ),
            usage=make_usage(usage.get("input_tokens"), usage.get("output_tokens")),
            id=payload.get("id"),
        )

    def encode_response(self, response: CanonicalChatResponse) -> dict[str, Any]:
        usage = response.usage or {}
        return {
            "id": response.id or f"msg_{uuid.uuid4().hex}",
            "type": "message",
            "role": "assistant",
            "model": response.model,
            "content": [{"type": "text", "text": response.content}],
            "stop_reason": WIRE_STOP_REASONS[response.finish_reason],
            "stop_sequence": None,
            "usage": {
                "input_tokens": usage.get("prompt_tokens", 0),
                "output_tokens": usage.get("completion_tokens", 0),
            },
        }

    # Streaming

    def decode_stream_frame(self, frame: dict[str, Any]) -> ChatDelta | None:
        kind = frame.get("type")

        if kind == "message_start":
            message = frame.get("message") or {}
            usage = message.get("usage") or {}
            return ChatDelta(
                model=message.get("model"),
                id=message.get("id"),
                usage=make_usage(usage.get("input_tokens"), usage.get("output_tokens")),
            )
        if kind == "content_block_delta":
            delta = frame.get("delta") or {}
            if delta.get("type") == "text_delta":
                return ChatDelta(content=delta.get("text", ""))
            return None
        if kind == "message_delta":
            delta = frame.get("delta") or {}
            usage = frame.get("usage") or {}
            stop_reason = delta.get("stop_reason")
            return ChatDelta(
                finish_reason=STOP_REASONS.get(stop_reason, FinishReason.ERROR) if stop_reason else None,
                usage=make_usage(completion=usage.get("output_tokens")),
            )
        if kind == "message_stop":
            return ChatDelta(done=True)
        if kind == "error":
            self._raise_for_error(frame.get("error"))
        # ping, content_block_start, content_block_stop
        return None

    async def encode_stream(self, deltas: AsyncIterator[ChatDelta]) -> AsyncIterator[str]:
        message_id = f"msg_{uuid.uuid4().hex}"
        started = False
        model = ""
        stop_reason = WIRE_STOP_REASONS[FinishReason.COMPLETED]
        output_tokens = 0

        async for delta in deltas:
            if delta.model:
                model = delta.model
            if delta.usage:
                output_tokens = delta.usage.get("completion_tokens", output_tokens)

            if not started:
                started = True
                input_tokens = (delta.usage or {}).get("prompt_tokens", 0)
                yield sse(
                    {
                        "type": "message_start",
                        "message": {
                            "id": message_id,
                            "type": "message",
                            "role": "assistant",
                            "model": model,
                            "content": [],
                            "stop_reason": None,
                            "stop_sequence": None,
                            "usage": {"input_tokens": input_tokens, "output_tokens": 0},
                        },
                    },
                    event="message_start",
                )
                yield sse(
                    {
                        "type": "content_block_start",
                        "index": 0,
                        "content_block": {"type": "text", "text": ""},
                    },
                    event="content_block_start",
                )

            if delta.finish_reason:
                stop_reason = WIRE_STOP_REASONS[delta.finish_reason]
            if delta.content:
                yield sse(
                    {
                        "type": "content_block_delta",
                        "index": 0,
                        "delta": {"type": "text_delta", "text": delta.content},
                    },
                    event="content_block_delta",
                )
            if delta.done:
                break

        yield sse({"type": "content_block_stop", "index": 0}, event="content_block_stop")
        yield sse(
            {
                "type": "message_delta",
                "delta": {"stop_reason": stop_reason, "stop_sequence": None},
                "usage": {"output_tokens": output_tokens},
            },
            event="message_delta",
        )
        yield sse({"type": "message_stop"}, event="message_stop")

    # Transport

    async def send(self, payload: dict[str, Any]) -> dict[str, Any]:
        client = self._get_client()
        logger.debug(f"Sending request to Anthropic ({payload.get('model')})")

        response = await client.messages.create(**payload)
        result = response.model_dump(exclude_none=True)

        logger.debug(f"Anthropic response received, usage: {result.get('usage')}")
        return result

    async def send_stream(self, payload: dict[str, Any]) -> AsyncIterator[dict[str, Any]]:
        client = self._get_client()
        logger.debug(f"Opening Anthropic stream ({payload.get('model')})")

        stream = await client.messages.create(**payload)
        try:
            async for event in stream:
                yield event.model_dump(exclude_none=True)
        finally:
            await stream.close()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    def classify_error(self, exc: BaseException) -> UpstreamReason:
        if isinstance(exc, anthropic.APITimeoutError):
            return UpstreamReason.TIMEOUT
        if isinstance(exc, anthropic.APIConnectionError):
            return UpstreamReason.SERVER_ERROR
        return super().classify_error(exc)
