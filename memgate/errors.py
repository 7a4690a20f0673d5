"""
Error taxonomy for the gateway.

Translation and provider-selection errors surface to the caller with enough
detail to fix the request. Upstream failures are normalised to a small set of
reasons plus an opaque trace id. Memory errors are absorbed by the memory
engine and only ever logged.
"""

import uuid
from enum import Enum
from typing import Any

from .config import trace_context


class UpstreamReason(str, Enum):
    """Normalised reasons for a failed upstream provider call."""

    RATE_LIMITED = "rate_limited"
    INVALID_REQUEST = "invalid_request"
    SERVER_ERROR = "server_error"
    TIMEOUT = "timeout"

    @property
    def status_code(self) -> int:
        """HTTP status returned to the caller for this reason."""
        return {
            UpstreamReason.RATE_LIMITED: 429,
            UpstreamReason.INVALID_REQUEST: 400,
            UpstreamReason.SERVER_ERROR: 502,
            UpstreamReason.TIMEOUT: 504,
        }[self]


def new_trace_id() -> str:
    """Return a fresh opaque trace identifier."""
    return uuid.uuid4().hex


class GatewayError(Exception):
    """Base class for all gateway errors."""

    status_code: int = 500
    error_type: str = "gateway_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialise for an HTTP error body."""
        error: dict[str, Any] = {
            "type": self.error_type,
            "message": self.message,
        }
        if self.details:
            error["details"] = self.details
        return {"error": error}


class ProviderUnresolved(GatewayError):
    """No registered adapter recognised the inbound payload."""

    status_code = 400
    error_type = "provider_unresolved"


class TranslationError(GatewayError):
    """A payload could not be translated to or from the canonical shape."""

    status_code = 400
    error_type = "translation_error"


class UpstreamError(GatewayError):
    """
    A provider call failed.

    Only the normalised reason and the trace id leave the gateway; the
    provider-specific body is logged server-side under the same trace id.
    """

    error_type = "upstream_error"

    def __init__(
        self,
        reason: UpstreamReason,
        provider: str = "",
        trace_id: str | None = None,
    ):
        self.reason = UpstreamReason(reason)
        self.provider = provider
        self.trace_id = trace_id or trace_context.get() or new_trace_id()
        super().__init__(f"Upstream provider call failed: {self.reason.value}")

    @property
    def status_code(self) -> int:  # type: ignore[override]
        return self.reason.status_code

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["error"]["reason"] = self.reason.value
        body["error"]["trace_id"] = self.trace_id
        return body


class EmbeddingUnavailable(GatewayError):
    """The embedding service errored or timed out. Never fatal to a chat turn."""

    status_code = 503
    error_type = "embedding_unavailable"


class StoreUnavailable(GatewayError):
    """A durable vector store was configured but could not be reached."""

    status_code = 503
    error_type = "store_unavailable"
