"""
Google Gemini Provider Adapter.

Translates the generateContent schema to and from the canonical model and
forwards requests through the google-genai SDK. Both the REST (camelCase) and
SDK (snake_case) spellings of field names are accepted on input.
"""

import logging
from typing import Any, AsyncIterator

from google import genai
from google.genai import errors as genai_errors

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
    make_usage,
    reason_for_status,
    sse,
)

logger = logging.getLogger("memgate.llm.google")

ROLE_TO_CANONICAL = {"user": Role.USER, "model": Role.ASSISTANT}
ROLE_TO_WIRE = {Role.USER: "user", Role.ASSISTANT: "model"}

FINISH_REASONS = {
    "STOP": FinishReason.COMPLETED,
    "MAX_TOKENS": FinishReason.LENGTH_LIMITED,
    "SAFETY": FinishReason.FILTERED,
    "RECITATION": FinishReason.FILTERED,
    "BLOCKLIST": FinishReason.FILTERED,
    "PROHIBITED_CONTENT": FinishReason.FILTERED,
    "SPII": FinishReason.FILTERED,
    "IMAGE_SAFETY": FinishReason.FILTERED,
}

WIRE_FINISH_REASONS = {
    FinishReason.COMPLETED: "STOP",
    FinishReason.LENGTH_LIMITED: "MAX_TOKENS",
    FinishReason.FILTERED: "SAFETY",
    FinishReason.ERROR: "OTHER",
}

ERROR_STATUSES = {
    "RESOURCE_EXHAUSTED": UpstreamReason.RATE_LIMITED,
    "DEADLINE_EXCEEDED": UpstreamReason.TIMEOUT,
    "INVALID_ARGUMENT": UpstreamReason.INVALID_REQUEST,
    "FAILED_PRECONDITION": UpstreamReason.INVALID_REQUEST,
    "PERMISSION_DENIED": UpstreamReason.INVALID_REQUEST,
    "UNAUTHENTICATED": UpstreamReason.INVALID_REQUEST,
    "NOT_FOUND": UpstreamReason.INVALID_REQUEST,
}

# (canonical name, wire names in SDK then REST spelling)
GENERATION_PARAMS = (
    ("temperature", "temperature", "temperature"),
    ("max_tokens", "max_output_tokens", "maxOutputTokens"),
    ("top_p", "top_p", "topP"),
    ("stop", "stop_sequences", "stopSequences"),
)


def _pick(mapping: dict[str, Any] | None, *keys: str, default: Any = None) -> Any:
    """Return the first present key, so snake_case and camelCase both work."""
    if not mapping:
        return default
    for key in keys:
        if mapping.get(key) is not None:
            return mapping[key]
    return default


def _parts_text(parts: Any) -> str:
    if not isinstance(parts, list):
        raise TranslationError("Gemini content 'parts' must be a list")
    texts = []
    for part in parts:
        if isinstance(part, str):
            texts.append(part)
        elif isinstance(part, dict) and "text" in part:
            # Thought summaries are not part of the answer
            if not part.get("thought"):
                texts.append(part["text"] or "")
        else:
            keys = ", ".join(part) if isinstance(part, dict) else type(part).__name__
            raise TranslationError(f"Unsupported Gemini part: {keys}")
    return "".join(texts)


class GoogleAdapter(ProviderAdapter):
    """Google Gemini generateContent adapter."""

    identity = ProviderIdentity.GOOGLE

    def __init__(self, api_key: str = ""):
        """
        Initialize the Google adapter.

        Args:
            api_key: Google API key. Translation works without one.
        """
        self._api_key = api_key
        self._client: genai.Client | None = None

    def is_configured(self) -> bool:
        return bool(self._api_key)

    def _get_client(self) -> genai.Client:
        """Get or create the google-genai client."""
        if self._client is None:
            self._client = genai.Client(api_key=self._api_key)
        return self._client

    # Translation

    def detect(self, payload: dict[str, Any]) -> bool:
        return isinstance(payload.get("contents"), list)

    def decode_request(self, payload: dict[str, Any]) -> CanonicalChatRequest:
        contents = payload.get("contents")
        if not isinstance(contents, list) or not contents:
            raise TranslationError("Gemini request requires a non-empty 'contents' list")

        generation = _pick(payload, "config", "generation_config", "generationConfig", default={})
        messages = []

        system = _pick(generation, "system_instruction", "systemInstruction")
        if system is None:
            system = _pick(payload, "system_instruction", "systemInstruction")
        if isinstance(system, str):
            messages.append(Message(role=Role.SYSTEM, content=system))
        elif isinstance(system, dict):
            for part in system.get("parts") or []:
                messages.append(Message(role=Role.SYSTEM, content=_parts_text([part])))
        elif system is not None:
            raise TranslationError("Gemini system instruction must be text or a content object")

        for content in contents:
            if not isinstance(content, dict):
                raise TranslationError("Each Gemini content must be an object")
            wire_role = content.get("role", "user")
            role = ROLE_TO_CANONICAL.get(wire_role)
            if role is None:
                raise TranslationError(f"Unsupported message role: {wire_role!r}")
            messages.append(Message(role=role, content=_parts_text(content.get("parts"))))

        params: dict[str, Any] = {}
        for canonical, sdk_key, rest_key in GENERATION_PARAMS:
            value = _pick(generation, sdk_key, rest_key)
            if value is not None:
                params[canonical] = as_stop_list(value) if canonical == "stop" else value

        return CanonicalChatRequest(
            messages=messages,
            model=payload.get("model", ""),
            generation_params=params,
            stream=bool(payload.get("stream", False)),
        )

    def encode(self, request: CanonicalChatRequest) -> dict[str, Any]:
        system_parts = [
            {"text": m.content} for m in request.messages if m.role is Role.SYSTEM
        ]
        contents = [
            {"role": ROLE_TO_WIRE[m.role], "parts": [{"text": m.content}]}
            for m in request.messages
            if m.role is not Role.SYSTEM
        ]

        generation: dict[str, Any] = {}
        if system_parts:
            generation["system_instruction"] = {"parts": system_parts}
        params = request.recognized_params()
        for canonical, sdk_key, _ in GENERATION_PARAMS:
            if canonical in params:
                value = params[canonical]
                generation[sdk_key] = as_stop_list(value) if canonical == "stop" else value

        payload: dict[str, Any] = {"model": request.model, "contents": contents}
        if generation:
            payload["config"] = generation
        return payload

    def _raise_for_error(self, body: Any) -> None:
        if not isinstance(body, dict):
            body = {"message": str(body)}
        reason = ERROR_STATUSES.get(body.get("status"))
        if reason is None:
            code = body.get("code")
            reason = reason_for_status(code if isinstance(code, int) else None)
        raise self.upstream_error(reason, body)

    def _decode_candidate(self, payload: dict[str, Any]) -> tuple[str, str | None]:
        """Return (text, wire finish reason) of the first candidate."""
        candidates = payload.get("candidates") or []
        if not candidates:
            feedback = _pick(payload, "prompt_feedback", "promptFeedback", default={})
            if _pick(feedback, "block_reason", "blockReason"):
                return "", "SAFETY"
            return "", None
        candidate = candidates[0]
        content = candidate.get("content") or {}
        text = _parts_text(content.get("parts") or [])
        return text, _pick(candidate, "finish_reason", "finishReason")

    def _decode_usage(self, payload: dict[str, Any]) -> dict[str, int] | None:
        usage = _pick(payload, "usage_metadata", "usageMetadata")
        if not usage:
            return None
        return make_usage(
            _pick(usage, "prompt_token_count", "promptTokenCount"),
            _pick(usage, "candidates_token_count", "candidatesTokenCount"),
            _pick(usage, "total_token_count", "totalTokenCount"),
        )

    def decode(self, payload: dict[str, Any]) -> CanonicalChatResponse:
        if "error" in payload:
            self._raise_for_error(payload["error"])
        if not payload.get("candidates") and not _pick(payload, "prompt_feedback", "promptFeedback"):
            raise TranslationError("Gemini response has no candidates")

        text, finish = self._decode_candidate(payload)
        return CanonicalChatResponse(
            message=Message(role=Role.ASSISTANT, content=text),
            model=_pick(payload, "model_version", "modelVersion", default=""),
            finish_reason=(
                FINISH_REASONS.get(finish, FinishReason.ERROR) if finish else FinishReason.COMPLETED
            ),
            usage=self._decode_usage(payload),
            id=_pick(payload, "response_id", "responseId"),
        )

    def encode_response(self, response: CanonicalChatResponse) -> dict[str, Any]:
        body: dict[str, Any] = {
            "candidates": [
                {
                    "content": {"role": "model", "parts": [{"text": response.content}]},
                    "finishReason": WIRE_FINISH_REASONS[response.finish_reason],
                    "index": 0,
                }
            ],
            "modelVersion": response.model,
        }
        if response.usage:
            body["usageMetadata"] = {
                "promptTokenCount": response.usage.get("prompt_tokens", 0),
                "candidatesTokenCount": response.usage.get("completion_tokens", 0),
                "totalTokenCount": response.usage.get("total_tokens", 0),
            }
        if response.id:
            body["responseId"] = response.id
        return body

    # Streaming

    def decode_stream_frame(self, frame: dict[str, Any]) -> ChatDelta | None:
        if "error" in frame:
            self._raise_for_error(frame["error"])

        text, finish = self._decode_candidate(frame)
        usage = self._decode_usage(frame)
        if not (text or finish or usage):
            return None
        return ChatDelta(
            content=text,
            finish_reason=FINISH_REASONS.get(finish, FinishReason.ERROR) if finish else None,
            usage=usage,
            model=_pick(frame, "model_version", "modelVersion"),
            id=_pick(frame, "response_id", "responseId"),
        )

    async def encode_stream(self, deltas: AsyncIterator[ChatDelta]) -> AsyncIterator[str]:
        model = ""
        async for delta in deltas:
            if delta.model:
                model = delta.model
            if delta.done:
                break
            candidate: dict[str, Any] = {
                "content": {"role": "model", "parts": [{"text": delta.content}]},
                "index": 0,
            }
            if delta.finish_reason:
                candidate["finishReason"] = WIRE_FINISH_REASONS[delta.finish_reason]
            chunk: dict[str, Any] = {"candidates": [candidate], "modelVersion": model}
            if delta.usage:
                chunk["usageMetadata"] = {
                    "promptTokenCount": delta.usage.get("prompt_tokens", 0),
                    "candidatesTokenCount": delta.usage.get("completion_tokens", 0),
                    "totalTokenCount": delta.usage.get("total_tokens", 0),
                }
            yield sse(chunk)

    # Transport

    async def send(self, payload: dict[str, Any]) -> dict[str, Any]:
        client = self._get_client()
        logger.debug(f"Sending request to Google ({payload.get('model')})")

        response = await client.aio.models.generate_content(
            model=payload["model"],
            contents=payload["contents"],
            config=payload.get("config"),
        )
        result = response.model_dump(mode="json", exclude_none=True)

        logger.debug(f"Google response received, usage: {result.get('usage_metadata')}")
        return result

    async def send_stream(self, payload: dict[str, Any]) -> AsyncIterator[dict[str, Any]]:
        client = self._get_client()
        logger.debug(f"Opening Google stream ({payload.get('model')})")

        stream = await client.aio.models.generate_content_stream(
            model=payload["model"],
            contents=payload["contents"],
            config=payload.get("config"),
        )
        async for chunk in stream:
            yield chunk.model_dump(mode="json", exclude_none=True)

    def classify_error(self, exc: BaseException) -> UpstreamReason:
        if isinstance(exc, genai_errors.APIError):
            reason = ERROR_STATUSES.get(getattr(exc, "status", None))
            return reason or reason_for_status(exc.code)
        return super().classify_error(exc)
