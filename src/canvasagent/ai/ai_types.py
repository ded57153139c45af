"""Shared typing contracts for the streaming action pipeline."""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field, replace
from typing import TYPE_CHECKING, Any, Callable, Literal, Mapping, Sequence, Union

if TYPE_CHECKING:  # pragma: no cover
    from .cancellation import CancellationToken

__all__ = [
    "CacheMetrics",
    "ConnectionResult",
    "ImageContent",
    "Message",
    "MessageContent",
    "ModelInfo",
    "Role",
    "StreamOptions",
    "StreamingAction",
    "TextContent",
    "content_length",
    "message_text",
    "parse_data_url",
]

Role = Literal["user", "assistant"]

_DATA_URL_PATTERN = re.compile(r"^data:([^;,]+)?(?:;[^,]*)?;base64,(.*)$", re.DOTALL)
_DEFAULT_IMAGE_MIME = "image/png"


# -----------------------------------------------------------------------------
# Message content
# -----------------------------------------------------------------------------

@dataclass(slots=True, frozen=True)
class TextContent:
    text: str
    type: Literal["text"] = "text"


@dataclass(slots=True, frozen=True)
class ImageContent:
    """Inline image carried as a ``data:`` URL."""

    image: str
    type: Literal["image"] = "image"

    @property
    def mime_type(self) -> str:
        return parse_data_url(self.image)[0]

    @property
    def base64_data(self) -> str:
        return parse_data_url(self.image)[1]


MessageContent = Union[TextContent, ImageContent]


@dataclass(slots=True, frozen=True)
class Message:
    """One conversation turn sent to a provider."""

    role: Role
    content: str | tuple[MessageContent, ...]

    @classmethod
    def user(cls, content: str | Sequence[MessageContent]) -> Message:
        return cls("user", content if isinstance(content, str) else tuple(content))

    @classmethod
    def assistant(cls, content: str | Sequence[MessageContent]) -> Message:
        return cls("assistant", content if isinstance(content, str) else tuple(content))


def parse_data_url(url: str) -> tuple[str, str]:
    """Split a base64 ``data:`` URL into ``(mime_type, payload)``.

    Anything that is not a data URL is treated as a raw base64 PNG payload.
    """

    match = _DATA_URL_PATTERN.match(url or "")
    if match is None:
        return _DEFAULT_IMAGE_MIME, url or ""
    return match.group(1) or _DEFAULT_IMAGE_MIME, match.group(2)


def content_length(content: str | Sequence[MessageContent]) -> int:
    """Approximate character weight of message content; images count as 100."""

    if isinstance(content, str):
        return len(content)
    total = 0
    for part in content:
        total += len(part.text) if isinstance(part, TextContent) else 100
    return total


def message_text(content: str | Sequence[MessageContent]) -> str:
    """Collapse message content to its text parts."""

    if isinstance(content, str):
        return content
    return "".join(part.text for part in content if isinstance(part, TextContent))


# -----------------------------------------------------------------------------
# Stream results
# -----------------------------------------------------------------------------

@dataclass(slots=True, frozen=True)
class CacheMetrics:
    """Provider-reported prompt cache usage in tokens."""

    created: int = 0
    read: int = 0


@dataclass(slots=True)
class StreamingAction:
    """A parsed action plus streaming bookkeeping.

    ``payload`` holds the raw action object produced by the model, including its
    ``_type`` discriminator. Incomplete actions may be re-emitted with more
    fields; exactly one complete emission follows per logical action.
    """

    payload: dict[str, Any]
    complete: bool
    time_ms: int = 0
    response_id: str | None = None
    cache_metrics: CacheMetrics | None = None

    @property
    def type(self) -> str | None:
        value = self.payload.get("_type")
        return value if isinstance(value, str) else None

    def get(self, key: str, default: Any = None) -> Any:
        return self.payload.get(key, default)

    def with_payload(self, payload: Mapping[str, Any]) -> StreamingAction:
        return replace(self, payload=dict(payload))

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.payload)
        data["complete"] = self.complete
        data["time"] = self.time_ms
        if self.response_id is not None:
            data["responseId"] = self.response_id
        if self.cache_metrics is not None:
            data["cacheMetrics"] = asdict(self.cache_metrics)
        return data


@dataclass(slots=True, frozen=True)
class ModelInfo:
    id: str
    display_name: str


@dataclass(slots=True)
class ConnectionResult:
    success: bool
    models: list[ModelInfo] = field(default_factory=list)
    error: str | None = None


# -----------------------------------------------------------------------------
# Provider request options
# -----------------------------------------------------------------------------

@dataclass(slots=True)
class StreamOptions:
    """Everything a provider client needs to issue one streaming request."""

    api_key: str
    model_id: str
    messages: Sequence[Message]
    system_prompt: str
    token: CancellationToken
    max_tokens: int = 8192
    temperature: float = 0.0
    base_url: str | None = None
    previous_response_id: str | None = None
    enable_caching: bool = True
    on_thinking: Callable[[str], None] | None = None
