"""OpenAI provider supporting chat completions and the stateful Responses API."""

from __future__ import annotations

import contextlib
import logging
import re
from typing import Any, AsyncIterator, Callable, Sequence

import openai
from openai import AsyncOpenAI

from ..ai_types import (
    CacheMetrics,
    ConnectionResult,
    ImageContent,
    Message,
    ModelInfo,
    StreamingAction,
    StreamOptions,
    TextContent,
    message_text,
)
from ..errors import AIError, AIErrorType, RequestCancelledError
from .base import AIProvider, error_status, iterate_stream
from .parsing import ActionStreamAssembler
from .rate_limit import with_stream_retry

__all__ = [
    "JSON_RESPONSE_INSTRUCTIONS",
    "OpenAIProvider",
    "format_openai_model_name",
    "is_reasoning_model",
    "json_system_prompt",
]

LOGGER = logging.getLogger(__name__)

JSON_RESPONSE_INSTRUCTIONS = (
    "\n\nIMPORTANT: You MUST respond with a valid JSON object containing an \"actions\" array. "
    "Each action in the array must have a \"_type\" field indicating the action type. Example format:\n"
    '{"actions": [{"_type": "message", "content": "Hello!"}, {"_type": "createShape", "shape": {...}}]}'
)

_REASONING_PREFIXES = ("gpt-5", "o1", "o3")
_LISTED_PREFIXES = ("gpt-4", "gpt-5", "o1", "o3")

ClientFactory = Callable[..., AsyncOpenAI]


def is_reasoning_model(model_id: str) -> bool:
    """Reasoning models reject ``temperature`` and use completion-token limits."""

    return model_id.startswith(_REASONING_PREFIXES)


def json_system_prompt(system_prompt: str) -> str:
    return system_prompt + JSON_RESPONSE_INSTRUCTIONS


def format_openai_model_name(model_id: str) -> str:
    """``gpt-4o-mini-2024-07-18`` -> ``GPT-4o Mini``."""

    base = re.sub(r"-\d{4}-\d{2}-\d{2}$", "", model_id)
    base = re.sub(r"^gpt-", "GPT-", base)
    parts = base.split("-")
    formatted = [parts[0]]
    for part in parts[1:]:
        formatted.append(part if part[:1].isdigit() else part[:1].upper() + part[1:])
    name = "-".join(formatted)
    name = re.sub(r"-mini", " Mini", name, flags=re.IGNORECASE)
    return re.sub(r"-preview", " Preview", name, flags=re.IGNORECASE)


def _default_client(api_key: str, base_url: str | None = None) -> AsyncOpenAI:
    return AsyncOpenAI(api_key=api_key, base_url=base_url)


class OpenAIProvider(AIProvider):
    """Streams actions from OpenAI models.

    Requests go to chat completions by default. When a previous response id is
    available the stateful Responses API is used instead so the server keeps
    the conversation; if that path fails before producing any action the same
    request is replayed against chat completions.
    """

    name = "openai"

    def __init__(self, *, client_factory: ClientFactory | None = None) -> None:
        self._client_factory = client_factory or _default_client

    # ------------------------------------------------------------------
    # Chat completions
    # ------------------------------------------------------------------

    def build_chat_messages(self, messages: Sequence[Message], system_prompt: str) -> list[dict[str, Any]]:
        converted: list[dict[str, Any]] = [{"role": "system", "content": json_system_prompt(system_prompt)}]
        for message in messages:
            if isinstance(message.content, str):
                converted.append({"role": message.role, "content": message.content})
            elif message.role == "assistant":
                converted.append({"role": "assistant", "content": message_text(message.content)})
            else:
                converted.append({"role": "user", "content": self._chat_parts(message.content)})
        return converted

    @staticmethod
    def _chat_parts(content: Sequence[Any]) -> list[dict[str, Any]]:
        parts: list[dict[str, Any]] = []
        for part in content:
            if isinstance(part, TextContent):
                parts.append({"type": "text", "text": part.text})
            elif isinstance(part, ImageContent):
                parts.append({"type": "image_url", "image_url": {"url": part.image, "detail": "auto"}})
        return parts

    def build_chat_request(self, options: StreamOptions) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": options.model_id,
            "messages": self.build_chat_messages(options.messages, options.system_prompt),
            "response_format": {"type": "json_object"},
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if is_reasoning_model(options.model_id):
            payload["max_completion_tokens"] = options.max_tokens
        else:
            payload["max_tokens"] = options.max_tokens
            payload["temperature"] = options.temperature
        return payload

    async def _stream_chat(self, client: AsyncOpenAI, options: StreamOptions) -> AsyncIterator[StreamingAction]:
        payload = self.build_chat_request(options)
        stream = await with_stream_retry(lambda: client.chat.completions.create(**payload), token=options.token)
        assembler = ActionStreamAssembler()
        cache_metrics: CacheMetrics | None = None

        async with contextlib.aclosing(iterate_stream(stream, options.token)) as chunks:
            async for chunk in chunks:
                usage = getattr(chunk, "usage", None)
                cached = getattr(getattr(usage, "prompt_tokens_details", None), "cached_tokens", None)
                if cached is not None:
                    cache_metrics = CacheMetrics(created=0, read=int(cached))
                choices = getattr(chunk, "choices", None) or []
                if not choices:
                    continue
                text = getattr(choices[0].delta, "content", None)
                if text:
                    for action in assembler.feed(text):
                        yield action

        final = assembler.finish(cache_metrics=cache_metrics)
        if final is not None:
            yield final

    # ------------------------------------------------------------------
    # Responses API
    # ------------------------------------------------------------------

    def build_responses_input(self, messages: Sequence[Message]) -> list[dict[str, Any]]:
        converted: list[dict[str, Any]] = []
        for message in messages:
            if isinstance(message.content, str):
                converted.append({"role": message.role, "content": message.content})
            elif message.role == "assistant":
                converted.append({"role": "assistant", "content": message_text(message.content)})
            else:
                parts: list[dict[str, Any]] = []
                for part in message.content:
                    if isinstance(part, TextContent):
                        parts.append({"type": "input_text", "text": part.text})
                    elif isinstance(part, ImageContent):
                        parts.append({"type": "input_image", "image_url": part.image})
                converted.append({"role": "user", "content": parts})
        return converted

    def build_responses_request(self, options: StreamOptions) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": options.model_id,
            "input": self.build_responses_input(options.messages),
            "instructions": json_system_prompt(options.system_prompt),
            "store": True,
            "previous_response_id": options.previous_response_id,
            "max_output_tokens": options.max_tokens,
            "text": {"format": {"type": "json_object"}},
            "stream": True,
        }
        if not is_reasoning_model(options.model_id):
            payload["temperature"] = options.temperature
        return payload

    async def _stream_responses(self, client: AsyncOpenAI, options: StreamOptions) -> AsyncIterator[StreamingAction]:
        payload = self.build_responses_request(options)
        stream = await with_stream_retry(lambda: client.responses.create(**payload), token=options.token)
        assembler = ActionStreamAssembler()
        response_id: str | None = None
        cache_metrics: CacheMetrics | None = None

        async with contextlib.aclosing(iterate_stream(stream, options.token)) as events:
            async for event in events:
                event_type = getattr(event, "type", None)
                if event_type in ("response.created", "response.completed"):
                    response = getattr(event, "response", None)
                    response_id = getattr(response, "id", None) or response_id
                    details = getattr(getattr(response, "usage", None), "input_tokens_details", None)
                    cached = getattr(details, "cached_tokens", None)
                    if cached is not None:
                        cache_metrics = CacheMetrics(created=0, read=int(cached))
                elif event_type == "response.output_text.delta":
                    for action in assembler.feed(getattr(event, "delta", "") or ""):
                        yield action

        final = assembler.finish(response_id=response_id, cache_metrics=cache_metrics)
        if final is not None:
            yield final

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _stream(self, options: StreamOptions) -> AsyncIterator[StreamingAction]:
        client = self._client_factory(options.api_key)
        if not options.previous_response_id:
            async with contextlib.aclosing(self._stream_chat(client, options)) as actions:
                async for action in actions:
                    yield action
            return

        emitted = False
        try:
            async with contextlib.aclosing(self._stream_responses(client, options)) as actions:
                async for action in actions:
                    emitted = True
                    yield action
            return
        except RequestCancelledError:
            raise
        except Exception as exc:
            if options.token.cancelled or emitted:
                raise
            LOGGER.warning("Responses API request failed, falling back to chat completions: %s", exc)

        async with contextlib.aclosing(self._stream_chat(client, options)) as actions:
            async for action in actions:
                yield action

    # ------------------------------------------------------------------
    # Connection test and errors
    # ------------------------------------------------------------------

    async def test_connection(self, api_key: str, base_url: str | None = None) -> ConnectionResult:
        if not api_key or not api_key.strip():
            return ConnectionResult(success=False, error="API key is required")
        client = self._client_factory(api_key.strip())
        try:
            models = [
                ModelInfo(id=model.id, display_name=format_openai_model_name(model.id))
                async for model in client.models.list()
                if str(model.id).startswith(_LISTED_PREFIXES)
            ]
        except Exception as exc:
            LOGGER.debug("OpenAI connection test failed", exc_info=True)
            return ConnectionResult(success=False, error=self.parse_error(exc).message)
        models.sort(key=lambda info: info.display_name)
        return ConnectionResult(success=True, models=models)

    def parse_error(self, error: BaseException) -> AIError:
        if isinstance(error, AIError):
            return error
        status = error_status(error)
        if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)) or status in (401, 403):
            return self._error(AIErrorType.INVALID_API_KEY, "Invalid API key. Please check your OpenAI API key in settings.")
        if isinstance(error, openai.RateLimitError) or status == 429:
            return self._error(AIErrorType.RATE_LIMIT, "Rate limit exceeded. Please wait a moment and try again.", retryable=True)
        if status is not None and status >= 500:
            return self._error(AIErrorType.SERVER_ERROR, "OpenAI server error. Please try again later.", retryable=True)
        message = str(error)
        lowered = message.lower()
        if any(marker in lowered for marker in ("context_length", "maximum context", "too many tokens", "max_tokens")):
            return self._error(AIErrorType.CONTEXT_EXCEEDED, "The conversation is too long. Please start a new conversation.")
        if isinstance(error, openai.APIConnectionError) or "network" in lowered or "fetch" in lowered:
            return self._error(AIErrorType.NETWORK_ERROR, "Network error. Please check your internet connection.", retryable=True)
        return self._error(AIErrorType.UNKNOWN, message or "An unknown error occurred.")
