"""Normalized error types shared by every provider client.

Vendor SDKs raise their own exception hierarchies. Provider clients translate
them into :class:`AIError` at the boundary so the orchestrator only ever has to
reason about one taxonomy. Cancellation is deliberately *not* an ``AIError``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

__all__ = ["AIError", "AIErrorType", "RequestCancelledError", "CANCELLED_MESSAGE"]

CANCELLED_MESSAGE = "Cancelled by user"


# -----------------------------------------------------------------------------
# Error taxonomy
# -----------------------------------------------------------------------------

class AIErrorType(str, Enum):
    """Categories a provider failure can be normalized into."""

    INVALID_API_KEY = "invalid_api_key"
    RATE_LIMIT = "rate_limit"
    NETWORK_ERROR = "network_error"
    SERVER_ERROR = "server_error"
    CONTEXT_EXCEEDED = "context_exceeded"
    UNKNOWN = "unknown"


@dataclass
class AIError(Exception):
    """Provider failure normalized into the shared taxonomy.

    Attributes:
        type: Category of the failure.
        message: Human-readable description suitable for the chat surface.
        retryable: Whether a later attempt may succeed without user action.
        provider: Name of the provider that raised the error.
    """

    type: AIErrorType
    message: str
    retryable: bool = False
    provider: str = ""

    def __post_init__(self) -> None:
        self.type = AIErrorType(self.type)
        Exception.__init__(self, self.message)

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "message": self.message,
            "retryable": self.retryable,
            "provider": self.provider,
        }


class RequestCancelledError(Exception):
    """Raised when a cancellation token fires during a request."""

    def __init__(self, message: str = CANCELLED_MESSAGE) -> None:
        super().__init__(message)
