"""
OpenAI Provider Adapter.

Translates the Chat Completions schema to and from the canonical model and
forwards requests through the official async SDK.
"""

import logging
import time
import uuid
from typing import Any, AsyncIterator

import openai
from openai import AsyncOpenAI

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

logger = logging.getLogger("memgate.llm.openai")

OPENAI_ROLES = {"system", "developer", "user", "assistant", "tool", "function"}

FINISH_REASONS = {
    "stop": FinishReason.COMPLETED,
    "tool_calls": FinishReason.COMPLETED,
    "function_call": FinishReason.COMPLETED,
    "length": FinishReason.LENGTH_LIMITED,
    "content_filter": FinishReason.FILTERED,
}

WIRE_FINISH_REASONS = {
    FinishReason.COMPLETED: "stop",
    FinishReason.LENGTH_LIMITED: "length",
    FinishReason.FILTERED: "content_filter",
    FinishReason.ERROR: "stop",
}

ERROR_TYPES = {
    "rate_limit_exceeded": UpstreamReason.RATE_LIMITED,
    "rate_limit_error": UpstreamReason.RATE_LIMITED,
    "insufficient_quota": UpstreamReason.RATE_LIMITED,
    "server_error": UpstreamReason.SERVER_ERROR,
    "api_error": UpstreamReason.SERVER_ERROR,
    "timeout": UpstreamReason.TIMEOUT,
}


class OpenAIAdapter(ProviderAdapter):
    """OpenAI Chat Completions adapter."""

    identity = ProviderIdentity.OPENAI

    def __init__(self, api_key: str = "", base_url: str = "", timeout: float = 60.0):
        """
        Initialize the OpenAI adapter.

        Args:
            api_key: OpenAI API key. Translation works without one.
            base_url: Optional API base URL for OpenAI-compatible servers.
            timeout: Per-request timeout passed to the SDK.
        """
        self._api_key = api_key
        self._base_url = base_url
        self._timeout = timeout
        self._client: AsyncOpenAI | None = None

    def is_configured(self) -> bool:
        return bool(self._api_key)

    def _get_client(self) -> AsyncOpenAI:
        """Get or create the async OpenAI client."""
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self._api_key,
                base_url=self._base_url or None,
                timeout=self._timeout,
                max_retries=0,
            )
        return self._client

    # Translation

    def detect(self, payload: dict[str, Any]) -> bool:
        messages = payload.get("messages")
        if not isinstance(messages, list) or not messages:
            return False
        return all(
            isinstance(m, dict) and m.get("role") in OPENAI_ROLES for m in messages
        )

    def decode_request(self, payload: dict[str, Any]) -> CanonicalChatRequest:
        messages = payload.get("messages")
        if not isinstance(messages, list) or not messages:
            raise TranslationError("OpenAI request requires a non-empty 'messages' list")

        canonical = []
        for m in messages:
            if not isinstance(m, dict):
                raise TranslationError("Each message must be an object")
            role = m.get("role")
            if role == "developer":
                role = Role.SYSTEM
            canonical.append(Message(role=role, content=flatten_text(m.get("content"))))

        params: dict[str, Any] = {}
        for key in ("temperature", "top_p"):
            if payload.get(key) is not None:
                params[key] = payload[key]
        max_tokens = payload.get("max_completion_tokens", payload.get("max_tokens"))
        if max_tokens is not None:
            params["max_tokens"] = max_tokens
        if payload.get("stop") is not None:
            params["stop"] = as_stop_list(payload["stop"])

        return CanonicalChatRequest(
            messages=canonical,
            model=payload.get("model", ""),
            generation_params=params,
            stream=bool(payload.get("stream", False)),
        )

    def encode(self, request: CanonicalChatRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": request.model,
            "messages": [
                {"role": m.role.value, "content": m.content} for m in request.messages
            ],
        }
        payload.update(request.recognized_params())
        if request.stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    def _raise_for_error(self, body: Any) -> None:
        if not isinstance(body, dict):
            body = {"message": str(body)}
        kind = body.get("code") or body.get("type")
        reason = ERROR_TYPES.get(kind)
        if reason is None:
            reason = (
                UpstreamReason.INVALID_REQUEST
                if body.get("type") == "invalid_request_error" or body.get("param")
                else UpstreamReason.SERVER_ERROR
            )
        raise self.upstream_error(reason, body)

    def decode(self, payload: dict[str, Any]) -> CanonicalChatResponse:
        if "error" in payload:
            self._raise_for_error(payload["error"])

        choices = payload.get("choices") or []
        if not choices:
            raise TranslationError("OpenAI response has no choices")
        choice = choices[0]
        message = choice.get("message") or {}

        finish = choice.get("finish_reason")
        if message.get("refusal") and not message.get("content"):
            finish_reason = FinishReason.FILTERED
        elif finish is None:
            finish_reason = FinishReason.COMPLETED
        else:
            finish_reason = FINISH_REASONS.get(finish, FinishReason.ERROR)

        usage = payload.get("usage") or {}
        return CanonicalChatResponse(
            message=Message(role=Role.ASSISTANT, content=flatten_text(message.get("content"))),
            model=payload.get("model", ""),
            finish_reason=finish_reason,
            usage=make_usage(
                usage.get("prompt_tokens"),
                usage.get("completion_tokens"),
                usage.get("total_tokens"),
            ),
            id=payload.get("id"),
        )

    def encode_response(self, response: CanonicalChatResponse) -> dict[str, Any]:
        body: dict[str, Any] = {
            "id": response.id or f"chatcmpl-{uuid.uuid4().hex}",
            "object": "chat.completion",
            "created": int(time.time()),
            "model": response.model,
            "choices": [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": response.content},
                    "finish_reason": WIRE_FINISH_REASONS[response.finish_reason],
                }
            ],
        }
        if response.usage:
            body["usage"] = dict(response.usage)
        return body

    # Streaming

    def decode_stream_frame(self, frame: dict[str, Any]) -> ChatDelta | None:
        if "error" in frame:
            self._raise_for_error(frame["error"])

        usage = frame.get("usage") or {}
        usage = make_usage(
            usage.get("prompt_tokens"),
            usage.get("completion_tokens"),
            usage.get("total_tokens"),
        )
        choices = frame.get("choices") or []
        if not choices:
            if usage:
                return ChatDelta(usage=usage, model=frame.get("model"), id=frame.get("id"))
            return None

        choice = choices[0]
        delta = choice.get("delta") or {}
        finish = choice.get("finish_reason")
        return ChatDelta(
            content=delta.get("content") or "",
            finish_reason=FINISH_REASONS.get(finish, FinishReason.ERROR) if finish else None,
            usage=usage,
            model=frame.get("model"),
            id=frame.get("id"),
        )

    async def encode_stream(self, deltas: AsyncIterator[ChatDelta]) -> AsyncIterator[str]:
        stream_id = f"chatcmpl-{uuid.uuid4().hex}"
        created = int(time.time())
        model = ""
        first = True

        async for delta in deltas:
            if delta.model:
                model = delta.model
            if delta.done:
                break
            if not (delta.content or delta.finish_reason or delta.usage) and not first:
                continue

            wire_delta: dict[str, Any] = {}
            if first:
                wire_delta["role"] = "assistant"
                first = False
            if delta.content:
                wire_delta["content"] = delta.content

            chunk: dict[str, Any] = {
                "id": stream_id,
                "object": "chat.completion.chunk",
                "created": created,
                "model": model,
                "choices": [
                    {
                        "index": 0,
                        "delta": wire_delta,
                        "finish_reason": (
                            WIRE_FINISH_REASONS[delta.finish_reason]
                            if delta.finish_reason
                            else None
                        ),
                    }
                ],
            }
            if delta.usage:
                chunk["usage"] = dict(delta.usage)
            yield sse(chunk)

        yield "data: [DONE]\n\n"

    # Transport

    async def send(self, payload: dict[str, Any]) -> dict[str, Any]:
        client = self._get_client()
        logger.debug(f"Sending request to OpenAI ({payload.get('model')})")

        response = await client.chat.completions.create(**payload)
        result = response.model_dump(exclude_none=True)

        logger.debug(f"OpenAI response received, tokens used: {result.get('usage')}")
        return result

    async def send_stream(self, payload: dict[str, Any]) -> AsyncIterator[dict[str, Any]]:
        client = self._get_client()
        logger.debug(f"Opening OpenAI stream ({payload.get('model')})")

        stream = await client.chat.completions.create(**payload)
        try:
            async for chunk in stream:
                yield chunk.model_dump(exclude_none=True)
        finally:
            await stream.close()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    def classify_error(self, exc: BaseException) -> UpstreamReason:
        if isinstance(exc, openai.APITimeoutError):
            return UpstreamReason.TIMEOUT
        if isinstance(exc, openai.APIConnectionError):
            return UpstreamReason.SERVER_ERROR
        return super().classify_error(exc)
