"""
Unit tests for memgate/llm/base.py

Tests canonical chat shapes, stream folding and shared adapter helpers.
"""

import asyncio

import httpx
import pytest

from memgate.errors import ProviderUnresolved, TranslationError, UpstreamReason
from memgate.llm.base import (
    CanonicalChatRequest,
    ChatDelta,
    FinishReason,
    Message,
    ProviderIdentity,
    Role,
    as_stop_list,
    flatten_text,
    make_usage,
    merge_deltas,
    reason_for_status,
    sse,
)


class TestProviderIdentity:
    """Tests for ProviderIdentity parsing."""

    def test_parse_is_case_insensitive(self):
        """Test that provider names are normalised."""
        assert ProviderIdentity.parse(" OpenAI ") is ProviderIdentity.OPENAI
        assert ProviderIdentity.parse("anthropic") is ProviderIdentity.ANTHROPIC

    def test_parse_passes_identity_through(self):
        """Test that an identity parses to itself."""
        assert ProviderIdentity.parse(ProviderIdentity.GOOGLE) is ProviderIdentity.GOOGLE

    def test_parse_unknown_raises(self):
        """Test that unknown providers raise ProviderUnresolved."""
        with pytest.raises(ProviderUnresolved):
            ProviderIdentity.parse("cohere")


class TestMessage:
    """Tests for Message validation."""

    def test_role_string_is_coerced(self):
        """Test that a role string becomes a Role."""
        message = Message(role="user", content="hi")
        assert message.role is Role.USER

    def test_unknown_role_raises(self):
        """Test that tool or function roles are rejected."""
        with pytest.raises(TranslationError):
            Message(role="tool", content="{}")

    def test_non_text_content_raises(self):
        """Test that content must be a string."""
        with pytest.raises(TranslationError):
            Message(role="user", content=["not", "text"])


class TestCanonicalChatRequest:
    """Tests for CanonicalChatRequest."""

    def test_query_text_is_last_user_message(self):
        """Test that the memory query is the latest user turn."""
        request = CanonicalChatRequest(messages=[
            Message(Role.USER, "first"),
            Message(Role.ASSISTANT, "reply"),
            Message(Role.USER, "second"),
        ])
        assert request.query_text == "second"

    def test_query_text_empty_without_user(self):
        request = CanonicalChatRequest(messages=[Message(Role.SYSTEM, "sys")])
        assert request.query_text == ""

    def test_recognized_params_drops_unknown_and_none(self):
        """Test that only carried parameters survive."""
        request = CanonicalChatRequest(
            messages=[Message(Role.USER, "hi")],
            generation_params={"temperature": 0.2, "top_p": None, "seed": 7},
        )
        assert request.recognized_params() == {"temperature": 0.2}

    def test_with_memory_goes_before_first_system(self):
        """Test that memory is inserted ahead of the original system prompt."""
        request = CanonicalChatRequest(messages=[
            Message(Role.SYSTEM, "You are helpful."),
            Message(Role.USER, "hi"),
        ])
        memory = Message(Role.SYSTEM, "memories")

        augmented = request.with_memory(memory)

        assert [m.content for m in augmented.messages] == ["memories", "You are helpful.", "hi"]
        # Original is untouched
        assert len(request.messages) == 2

    def test_with_memory_without_system_goes_first(self):
        """Test that memory becomes the first message when there is no system prompt."""
        request = CanonicalChatRequest(messages=[
            Message(Role.USER, "hi"),
            Message(Role.ASSISTANT, "hello"),
        ])

        augmented = request.with_memory(Message(Role.SYSTEM, "memories"))

        assert augmented.messages[0].content == "memories"
        assert augmented.messages[1].content == "hi"


class TestUsageHelpers:
    """Tests for usage construction."""

    def test_make_usage_sums_total(self):
        assert make_usage(10, 5) == {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}

    def test_make_usage_keeps_reported_total(self):
        assert make_usage(10, 5, 20)["total_tokens"] == 20

    def test_make_usage_empty_is_none(self):
        """Test that no counts means no usage."""
        assert make_usage() is None


class TestMergeDeltas:
    """Tests for folding stream deltas."""

    def test_concatenates_content_in_order(self):
        """Test that deltas fold into the full response."""
        response = merge_deltas([
            ChatDelta(model="gpt-4o", id="c1", usage={"prompt_tokens": 3}),
            ChatDelta(content="Use "),
            ChatDelta(content="metric."),
            ChatDelta(finish_reason=FinishReason.COMPLETED, usage={"completion_tokens": 2}),
            ChatDelta(done=True),
        ])

        assert response.content == "Use metric."
        assert response.model == "gpt-4o"
        assert response.id == "c1"
        assert response.finish_reason is FinishReason.COMPLETED
        assert response.usage == {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5}
        assert response.message.role is Role.ASSISTANT

    def test_last_finish_reason_wins(self):
        response = merge_deltas([
            ChatDelta(content="a", finish_reason=FinishReason.COMPLETED),
            ChatDelta(finish_reason=FinishReason.LENGTH_LIMITED),
        ])
        assert response.finish_reason is FinishReason.LENGTH_LIMITED

    def test_empty_stream_defaults_to_completed(self):
        response = merge_deltas([ChatDelta(done=True)])
        assert response.content == ""
        assert response.finish_reason is FinishReason.COMPLETED
        assert response.usage is None


class TestFlattenText:
    """Tests for content flattening."""

    def test_string_and_none(self):
        assert flatten_text("hi") == "hi"
        assert flatten_text(None) == ""

    def test_text_blocks_are_joined(self):
        """Test that text blocks and bare strings concatenate."""
        content = [{"type": "text", "text": "Hello "}, "world"]
        assert flatten_text(content) == "Hello world"

    def test_image_block_raises(self):
        """Test that non-text blocks are rejected."""
        with pytest.raises(TranslationError) as exc_info:
            flatten_text([{"type": "image_url", "image_url": {"url": "x"}}])
        assert "image_url" in str(exc_info.value)

    def test_unsupported_type_raises(self):
        with pytest.raises(TranslationError):
            flatten_text(42)


class TestSmallHelpers:
    """Tests for stop lists, SSE framing and status mapping."""

    def test_as_stop_list(self):
        assert as_stop_list("END") == ["END"]
        assert as_stop_list(("a", "b")) == ["a", "b"]

    def test_sse_without_event(self):
        assert sse({"a": 1}) == 'data: {"a": 1}\n\n'

    def test_sse_with_event(self):
        assert sse({"type": "ping"}, event="ping") == 'event: ping\ndata: {"type": "ping"}\n\n'

    @pytest.mark.parametrize(
        "status,reason",
        [
            (429, UpstreamReason.RATE_LIMITED),
            (408, UpstreamReason.TIMEOUT),
            (400, UpstreamReason.INVALID_REQUEST),
            (404, UpstreamReason.INVALID_REQUEST),
            (500, UpstreamReason.SERVER_ERROR),
            (None, UpstreamReason.SERVER_ERROR),
        ],
    )
    def test_reason_for_status(self, status, reason):
        """Test HTTP status to failure reason mapping."""
        assert reason_for_status(status) is reason


class TestClassifyError:
    """Tests for the default ProviderAdapter.classify_error."""

    def test_timeouts(self):
        """Test that asyncio and httpx timeouts classify as TIMEOUT."""
        from memgate.llm.google_client import GoogleAdapter

        adapter = GoogleAdapter()
        assert adapter.classify_error(asyncio.TimeoutError()) is UpstreamReason.TIMEOUT
        assert adapter.classify_error(httpx.ReadTimeout("slow")) is UpstreamReason.TIMEOUT

    def test_http_status_error(self):
        """Test that httpx status errors map by status code."""
        from memgate.llm.google_client import GoogleAdapter

        request = httpx.Request("POST", "https://example.test")
        response = httpx.Response(429, request=request)
        exc = httpx.HTTPStatusError("limited", request=request, response=response)

        assert GoogleAdapter().classify_error(exc) is UpstreamReason.RATE_LIMITED

    def test_status_code_attribute(self):
        """Test that SDK errors exposing status_code map by status."""
        from memgate.llm.google_client import GoogleAdapter

        exc = RuntimeError("bad")
        exc.status_code = 400
        assert GoogleAdapter().classify_error(exc) is UpstreamReason.INVALID_REQUEST

    def test_unknown_is_server_error(self):
        from memgate.llm.google_client import GoogleAdapter

        assert GoogleAdapter().classify_error(ValueError("x")) is UpstreamReason.SERVER_ERROR


ROUND_TRIP_PARAMS = {"temperature": 0.3, "max_tokens": 256, "top_p": 0.9, "stop": ["END"]}

ROUND_TRIP_CONVERSATIONS = {
    "single_system": [
        Message(Role.SYSTEM, "You are helpful."),
        Message(Role.USER, "What units should I use?"),
        Message(Role.ASSISTANT, "Which country are you in?"),
        Message(Role.USER, "France."),
    ],
    "no_system": [
        Message(Role.USER, "What units should I use?"),
    ],
    "several_systems": [
        Message(Role.SYSTEM, "You are helpful."),
        Message(Role.SYSTEM, "LONG-TERM MEMORY:\n- user prefers metric units"),
        Message(Role.SYSTEM, "Answer in one sentence."),
        Message(Role.USER, "What units should I use?"),
    ],
    "ends_on_assistant": [
        Message(Role.SYSTEM, "You are helpful."),
        Message(Role.USER, "Spell metric."),
        Message(Role.ASSISTANT, "M-E-T"),
    ],
}


class TestRoundTrip:
    """decode_request(encode(r)) preserves messages and recognised parameters."""

    @pytest.mark.parametrize("conversation", sorted(ROUND_TRIP_CONVERSATIONS))
    @pytest.mark.parametrize("adapter_path", [
        "memgate.llm.openai_client.OpenAIAdapter",
        "memgate.llm.anthropic_client.AnthropicAdapter",
        "memgate.llm.google_client.GoogleAdapter",
    ])
    def test_round_trip(self, adapter_path, conversation):
        """Test that every adapter round-trips a canonical request."""
        import importlib

        module_name, class_name = adapter_path.rsplit(".", 1)
        adapter = getattr(importlib.import_module(module_name), class_name)()
        request = CanonicalChatRequest(
            messages=list(ROUND_TRIP_CONVERSATIONS[conversation]),
            model="some-model",
            generation_params=dict(ROUND_TRIP_PARAMS),
        )

        decoded = adapter.decode_request(adapter.encode(request))

        assert decoded.messages == request.messages
        assert decoded.model == request.model
        assert decoded.recognized_params() == request.recognized_params()
