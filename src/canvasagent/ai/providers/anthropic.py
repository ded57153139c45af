"""Anthropic Messages API provider with prompt caching and assistant prefill."""

from __future__ import annotations

import contextlib
import logging
import re
from typing import Any, AsyncIterator, Callable, Sequence

import anthropic
from anthropic import AsyncAnthropic

from ..ai_types import (
    CacheMetrics,
    ConnectionResult,
    ImageContent,
    Message,
    ModelInfo,
    StreamingAction,
    StreamOptions,
    TextContent,
    content_length,
)
from ..errors import AIError, AIErrorType
from .base import AIProvider, error_status, iterate_stream
from .parsing import ActionStreamAssembler
from .rate_limit import with_stream_retry

__all__ = ["ANTHROPIC_PREFILL", "AnthropicProvider", "format_claude_model_name"]

LOGGER = logging.getLogger(__name__)

ANTHROPIC_PREFILL = '{"actions": [{"_type":'
"""Assistant prefill that forces the response into the actions document."""

_MAX_CACHE_BREAKPOINTS = 3
_MIN_CACHEABLE_LENGTH = 100
_EPHEMERAL = {"type": "ephemeral"}
_DATE_SUFFIX = re.compile(r"-\d{8}$")

ClientFactory = Callable[[str], AsyncAnthropic]


def format_claude_model_name(model_id: str) -> str:
    """``claude-3-5-sonnet-20241022`` -> ``Claude 3.5 Sonnet``."""

    words = _DATE_SUFFIX.sub("", model_id).split("-")
    formatted = " ".join(word[:1].upper() + word[1:] for word in words if word)
    return re.sub(r"(\d) (\d)(?=\s|$)", r"\1.\2", formatted)


def _default_client(api_key: str) -> AsyncAnthropic:
    return AsyncAnthropic(api_key=api_key)


class AnthropicProvider(AIProvider):
    """Streams actions from Claude models.

    The request ends with an assistant turn containing :data:`ANTHROPIC_PREFILL`
    so Claude continues an already-open actions document. The prefill is seeded
    into the parser buffer before the first delta arrives.
    """

    name = "anthropic"

    def __init__(self, *, client_factory: ClientFactory | None = None) -> None:
        self._client_factory = client_factory or _default_client

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def build_messages(self, messages: Sequence[Message], *, enable_caching: bool) -> list[dict[str, Any]]:
        converted: list[dict[str, Any]] = []
        breakpoints = 0
        for message in messages:
            entry: dict[str, Any] = {"role": message.role, "content": self._convert_content(message.content)}
            if (
                enable_caching
                and message.role == "user"
                and breakpoints < _MAX_CACHE_BREAKPOINTS
                and content_length(message.content) >= _MIN_CACHEABLE_LENGTH
            ):
                entry["content"] = self._with_cache_control(entry["content"])
                breakpoints += 1
            converted.append(entry)
        converted.append({"role": "assistant", "content": ANTHROPIC_PREFILL})
        return converted

    def build_request(self, options: StreamOptions, *, enable_caching: bool) -> dict[str, Any]:
        system: Any = options.system_prompt
        if enable_caching:
            system = [{"type": "text", "text": options.system_prompt, "cache_control": dict(_EPHEMERAL)}]
        return {
            "model": options.model_id,
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "system": system,
            "messages": self.build_messages(options.messages, enable_caching=enable_caching),
            "stream": True,
        }

    def _convert_content(self, content: str | Sequence[Any]) -> str | list[dict[str, Any]]:
        if isinstance(content, str):
            return content
        blocks: list[dict[str, Any]] = []
        for part in content:
            if isinstance(part, TextContent):
                blocks.append({"type": "text", "text": part.text})
            elif isinstance(part, ImageContent):
                blocks.append(
                    {
                        "type": "image",
                        "source": {"type": "base64", "media_type": part.mime_type, "data": part.base64_data},
                    }
                )
        return blocks

    @staticmethod
    def _with_cache_control(content: str | list[dict[str, Any]]) -> list[dict[str, Any]]:
        if isinstance(content, str):
            return [{"type": "text", "text": content, "cache_control": dict(_EPHEMERAL)}]
        if not content:
            return content
        blocks = [dict(block) for block in content]
        blocks[-1]["cache_control"] = dict(_EPHEMERAL)
        return blocks

    @staticmethod
    def _is_cache_error(error: BaseException) -> bool:
        message = str(error).lower()
        return "cache_control" in message or "cache control" in message or "caching" in message

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def _stream(self, options: StreamOptions) -> AsyncIterator[StreamingAction]:
        client = self._client_factory(options.api_key)
        caching = options.enable_caching

        async def _open() -> Any:
            nonlocal caching
            try:
                return await client.messages.create(**self.build_request(options, enable_caching=caching))
            except Exception as exc:
                if not (caching and self._is_cache_error(exc)):
                    raise
                LOGGER.warning("Anthropic rejected prompt caching, retrying without it: %s", exc)
                caching = False
                return await client.messages.create(**self.build_request(options, enable_caching=False))

        stream = await with_stream_retry(_open, token=options.token)
        assembler = ActionStreamAssembler(ANTHROPIC_PREFILL)
        cache_metrics: CacheMetrics | None = None

        async with contextlib.aclosing(iterate_stream(stream, options.token)) as events:
            async for event in events:
                event_type = getattr(event, "type", None)
                if event_type == "message_start":
                    cache_metrics = self._cache_metrics(getattr(event, "message", None)) or cache_metrics
                    continue
                if event_type != "content_block_delta":
                    continue
                delta = getattr(event, "delta", None)
                if getattr(delta, "type", None) != "text_delta":
                    continue
                for action in assembler.feed(getattr(delta, "text", "") or ""):
                    yield action

        final = assembler.finish(cache_metrics=cache_metrics)
        if final is not None:
            yield final

    @staticmethod
    def _cache_metrics(message: Any) -> CacheMetrics | None:
        usage = getattr(message, "usage", None)
        created = getattr(usage, "cache_creation_input_tokens", None)
        read = getattr(usage, "cache_read_input_tokens", None)
        if created is None and read is None:
            return None
        return CacheMetrics(created=int(created or 0), read=int(read or 0))

    # ------------------------------------------------------------------
    # Connection test and errors
    # ------------------------------------------------------------------

    async def test_connection(self, api_key: str, base_url: str | None = None) -> ConnectionResult:
        if not api_key or not api_key.strip():
            return ConnectionResult(success=False, error="API key is required")
        client = self._client_factory(api_key.strip())
        try:
            models = [
                ModelInfo(id=model.id, display_name=format_claude_model_name(model.id))
                async for model in client.models.list()
                if str(model.id).startswith("claude")
            ]
        except Exception as exc:
            LOGGER.debug("Anthropic connection test failed", exc_info=True)
            return ConnectionResult(success=False, error=self.parse_error(exc).message)
        models.sort(key=lambda info: info.display_name)
        return ConnectionResult(success=True, models=models)

    def parse_error(self, error: BaseException) -> AIError:
        if isinstance(error, AIError):
            return error
        status = error_status(error)
        if isinstance(error, (anthropic.AuthenticationError, anthropic.PermissionDeniedError)) or status in (401, 403):
            return self._error(AIErrorType.INVALID_API_KEY, "Invalid API key. Please check your Anthropic API key in settings.")
        if isinstance(error, anthropic.RateLimitError) or status == 429:
            return self._error(AIErrorType.RATE_LIMIT, "Rate limit exceeded. Please wait a moment and try again.", retryable=True)
        if status is not None and status >= 500:
            return self._error(AIErrorType.SERVER_ERROR, "Anthropic server error. Please try again later.", retryable=True)
        message = str(error)
        lowered = message.lower()
        if "context_length" in lowered or "maximum context" in lowered or "too many tokens" in lowered:
            return self._error(AIErrorType.CONTEXT_EXCEEDED, "The conversation is too long. Please start a new conversation.")
        if isinstance(error, anthropic.APIConnectionError) or "network" in lowered or "fetch" in lowered:
            return self._error(AIErrorType.NETWORK_ERROR, "Network error. Please check your internet connection.", retryable=True)
        return self._error(AIErrorType.UNKNOWN, message or "An unknown error occurred.")
