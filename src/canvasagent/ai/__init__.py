"""AI layer: provider clients, prompt construction, and the agent orchestrator."""

from .ai_types import CacheMetrics, ImageContent, Message, StreamingAction, StreamOptions, TextContent
from .cancellation import CancellationToken
from .errors import AIError, AIErrorType, RequestCancelledError

__all__ = [
    "AIError",
    "AIErrorType",
    "CacheMetrics",
    "CancellationToken",
    "ImageContent",
    "Message",
    "RequestCancelledError",
    "StreamOptions",
    "StreamingAction",
    "TextContent",
]
