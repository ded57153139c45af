"""Provider for self-hosted OpenAI-compatible servers such as Ollama."""

from __future__ import annotations

import contextlib
import json
import logging
import re
from typing import Any, AsyncIterator, Callable

import httpx
import openai
from openai import AsyncOpenAI

from ..ai_types import ConnectionResult, ModelInfo, StreamingAction, StreamOptions
from ..errors import AIError, AIErrorType, RequestCancelledError
from .base import error_status, iterate_stream
from .openai import OpenAIProvider
from .parsing import ActionStreamAssembler, ParsedActions, close_and_parse_json, repair_json
from .rate_limit import with_stream_retry

__all__ = [
    "ACTION_PREFIX",
    "DEFAULT_BASE_URL",
    "PLACEHOLDER_API_KEY",
    "OpenAICompatibleProvider",
    "parse_compatible_actions",
    "strip_code_fence",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:11434/v1"
PLACEHOLDER_API_KEY = "ollama"
REQUEST_TIMEOUT_SECONDS = 60.0

ACTION_PREFIX = re.compile(r"\[ACTION\]\s*:\s*")
_CODE_FENCE_OPEN = re.compile(r"^\s*```(?:json)?\s*\n?", re.IGNORECASE)
_CODE_FENCE_CLOSE = re.compile(r"\n?```\s*$")

ClientFactory = Callable[..., AsyncOpenAI]


def strip_code_fence(text: str) -> str:
    """Remove a surrounding Markdown code fence, including an unterminated one."""

    stripped, replaced = _CODE_FENCE_OPEN.subn("", text, count=1)
    if not replaced:
        return text
    return _CODE_FENCE_CLOSE.sub("", stripped)


def parse_compatible_actions(text: str) -> ParsedActions:
    """Parse either an ``{"actions": [...]}`` document or ``[ACTION]:`` lines."""

    cleaned = strip_code_fence(text)
    parsed = close_and_parse_json(cleaned) if cleaned.strip() else None
    if parsed is not None:
        actions = [item for item in parsed["actions"] if isinstance(item, dict) and "_type" in item]
        _, repaired = repair_json(cleaned)
        return actions, not repaired

    actions: list[Any] = []
    for chunk in ACTION_PREFIX.split(cleaned)[1:]:
        candidate = chunk.strip()
        if not candidate:
            continue
        repaired_text, _ = repair_json(candidate)
        try:
            value = json.loads(repaired_text)
        except (ValueError, RecursionError):
            continue
        if isinstance(value, dict) and "_type" in value:
            actions.append(value)
    return (actions or None), False


def _default_client(api_key: str, base_url: str | None = None) -> AsyncOpenAI:
    return AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=REQUEST_TIMEOUT_SECONDS)


def _valid_base_url(base_url: str) -> bool:
    try:
        url = httpx.URL(base_url)
    except (httpx.InvalidURL, TypeError, ValueError):
        return False
    return url.scheme in ("http", "https") and bool(url.host)


class OpenAICompatibleProvider(OpenAIProvider):
    """Chat-completions streaming against a configurable base URL.

    Local servers frequently lack JSON mode; when the server rejects
    ``response_format`` the request is retried once without it. Responses may
    use either the JSON document format or one ``[ACTION]:`` object per line.
    """

    name = "openai-compatible"

    def __init__(self, *, client_factory: ClientFactory | None = None) -> None:
        super().__init__(client_factory=client_factory or _default_client)

    @staticmethod
    def _is_json_mode_error(error: BaseException) -> bool:
        message = str(error).lower()
        return any(marker in message for marker in ("response_format", "json mode", "json", "unsupported"))

    async def _stream(self, options: StreamOptions) -> AsyncIterator[StreamingAction]:
        base_url = options.base_url or DEFAULT_BASE_URL
        client = self._client_factory(options.api_key or PLACEHOLDER_API_KEY, base_url)
        payload = self.build_chat_request(options)
        payload.pop("stream_options", None)

        async def _open() -> Any:
            try:
                return await client.chat.completions.create(**payload)
            except RequestCancelledError:
                raise
            except Exception as exc:
                if "response_format" not in payload or not self._is_json_mode_error(exc):
                    raise
                LOGGER.warning("Server rejected JSON mode, retrying without response_format: %s", exc)
                payload.pop("response_format", None)
                return await client.chat.completions.create(**payload)

        stream = await with_stream_retry(_open, token=options.token)
        assembler = ActionStreamAssembler(extract=parse_compatible_actions)

        async with contextlib.aclosing(iterate_stream(stream, options.token)) as chunks:
            async for chunk in chunks:
                choices = getattr(chunk, "choices", None) or []
                if not choices:
                    continue
                text = getattr(choices[0].delta, "content", None)
                if text:
                    for action in assembler.feed(text):
                        yield action

        final = assembler.finish()
        if final is not None:
            yield final

    # ------------------------------------------------------------------
    # Connection test and errors
    # ------------------------------------------------------------------

    async def test_connection(self, api_key: str, base_url: str | None = None) -> ConnectionResult:
        target = base_url or DEFAULT_BASE_URL
        if not _valid_base_url(target):
            return ConnectionResult(success=False, error="Invalid endpoint URL")
        client = self._client_factory(api_key or PLACEHOLDER_API_KEY, target)
        try:
            models = [ModelInfo(id=model.id, display_name=model.id) async for model in client.models.list()]
        except Exception as exc:
            LOGGER.debug("Connection test against %s failed", target, exc_info=True)
            return ConnectionResult(success=False, error=self.format_connection_error(exc))
        return ConnectionResult(success=True, models=models)

    @staticmethod
    def format_connection_error(error: BaseException) -> str:
        status = error_status(error) if isinstance(error, openai.APIError) else None
        if status in (401, 403):
            return "Invalid API key. Please check your API key in settings."
        if status == 404:
            return "Invalid endpoint URL"
        if status is not None and status >= 500:
            return "Server error. Please try again later."
        if isinstance(error, openai.APITimeoutError):
            return "Connection timed out. Is Ollama running?"
        message = str(error)
        lowered = message.lower()
        if "timeout" in lowered or "timed out" in lowered:
            return "Connection timed out. Is Ollama running?"
        if "invalid url" in lowered or "invalid uri" in lowered:
            return "Invalid endpoint URL"
        if isinstance(error, openai.APIConnectionError) or any(
            marker in lowered for marker in ("network", "fetch", "econnrefused", "connection")
        ):
            return "Cannot reach endpoint. Check if server is running."
        return message or "Connection failed. Please check your endpoint settings."

    def parse_error(self, error: BaseException) -> AIError:
        if isinstance(error, AIError):
            return error
        status = error_status(error)
        if status in (401, 403):
            return self._error(AIErrorType.INVALID_API_KEY, "Invalid API key. Please check your API key in settings.")
        if status == 429:
            return self._error(AIErrorType.RATE_LIMIT, "Rate limit exceeded. Please wait a moment and try again.", retryable=True)
        if status is not None and status >= 500:
            return self._error(AIErrorType.SERVER_ERROR, "Server error. Please try again later.", retryable=True)
        message = str(error)
        lowered = message.lower()
        if any(marker in lowered for marker in ("context_length", "maximum context", "too many tokens")):
            return self._error(AIErrorType.CONTEXT_EXCEEDED, "The conversation is too long. Please start a new conversation.")
        if isinstance(error, openai.APIConnectionError) or any(
            marker in lowered for marker in ("network", "fetch", "econnrefused", "timeout")
        ):
            return self._error(
                AIErrorType.NETWORK_ERROR,
                "Cannot reach endpoint. Check if server is running.",
                retryable=True,
            )
        return self._error(AIErrorType.UNKNOWN, message or "An unknown error occurred.")
