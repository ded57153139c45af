"""Google Gemini provider built on the ``google-genai`` SDK."""

from __future__ import annotations

import base64
import binascii
import contextlib
import logging
import re
from typing import Any, AsyncIterator, Callable, Sequence

import httpx
from google import genai
from google.genai import types

from ..ai_types import (
    ConnectionResult,
    ImageContent,
    Message,
    ModelInfo,
    StreamingAction,
    StreamOptions,
    TextContent,
)
from ..errors import AIError, AIErrorType
from .base import AIProvider, error_status, iterate_stream
from .parsing import ActionStreamAssembler
from .rate_limit import with_stream_retry

__all__ = ["GEMINI_MODELS_URL", "GeminiProvider", "format_gemini_model_name"]

LOGGER = logging.getLogger(__name__)

GEMINI_MODELS_URL = "https://generativelanguage.googleapis.com/v1beta/models"
_RATE_LIMIT_REASONS = ("RATE_LIMIT_EXCEEDED", "RESOURCE_EXHAUSTED")

ClientFactory = Callable[[str], genai.Client]


def format_gemini_model_name(model_id: str) -> str:
    """``gemini-2.5-flash`` -> ``Gemini 2.5 Flash``."""

    words = re.sub(r"^models/", "", model_id).split("-")
    return " ".join(word[:1].upper() + word[1:] for word in words if word)


def _default_client(api_key: str) -> genai.Client:
    return genai.Client(api_key=api_key)


def _response_schema() -> types.Schema:
    return types.Schema(
        type=types.Type.OBJECT,
        properties={
            "actions": types.Schema(
                type=types.Type.ARRAY,
                items=types.Schema(
                    type=types.Type.OBJECT,
                    properties={"_type": types.Schema(type=types.Type.STRING)},
                    required=["_type"],
                ),
            )
        },
        required=["actions"],
    )


class GeminiProvider(AIProvider):
    """Streams actions from Gemini models.

    Thinking models interleave ``thought`` parts with the answer. Those parts
    never reach the action parser; they are forwarded to ``on_thinking``.
    """

    name = "google"

    def __init__(
        self,
        *,
        client_factory: ClientFactory | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client_factory = client_factory or _default_client
        self._http_client = http_client

    def build_contents(self, messages: Sequence[Message]) -> list[types.Content]:
        contents: list[types.Content] = []
        for message in messages:
            role = "model" if message.role == "assistant" else "user"
            contents.append(types.Content(role=role, parts=self._parts(message.content)))
        return contents

    @staticmethod
    def _parts(content: str | Sequence[Any]) -> list[types.Part]:
        if isinstance(content, str):
            return [types.Part(text=content)]
        parts: list[types.Part] = []
        for part in content:
            if isinstance(part, TextContent):
                parts.append(types.Part(text=part.text))
            elif isinstance(part, ImageContent):
                try:
                    data = base64.b64decode(part.base64_data)
                except (binascii.Error, ValueError):
                    LOGGER.warning("Skipping image with invalid base64 payload")
                    continue
                parts.append(types.Part.from_bytes(data=data, mime_type=part.mime_type))
        return parts

    def build_config(self, options: StreamOptions) -> types.GenerateContentConfig:
        return types.GenerateContentConfig(
            system_instruction=options.system_prompt,
            temperature=options.temperature,
            max_output_tokens=options.max_tokens,
            response_mime_type="application/json",
            response_schema=_response_schema(),
        )

    async def _stream(self, options: StreamOptions) -> AsyncIterator[StreamingAction]:
        client = self._client_factory(options.api_key)
        contents = self.build_contents(options.messages)
        config = self.build_config(options)

        async def _open() -> Any:
            return await client.aio.models.generate_content_stream(
                model=options.model_id,
                contents=contents,
                config=config,
            )

        stream = await with_stream_retry(_open, token=options.token)
        assembler = ActionStreamAssembler()

        async with contextlib.aclosing(iterate_stream(stream, options.token)) as chunks:
            async for chunk in chunks:
                for part in self._chunk_parts(chunk):
                    text = getattr(part, "text", None)
                    if not text:
                        continue
                    if getattr(part, "thought", False):
                        if options.on_thinking is not None:
                            options.on_thinking(text)
                        continue
                    for action in assembler.feed(text):
                        yield action

        final = assembler.finish()
        if final is not None:
            yield final

    @staticmethod
    def _chunk_parts(chunk: Any) -> list[Any]:
        candidates = getattr(chunk, "candidates", None) or []
        if not candidates:
            return []
        content = getattr(candidates[0], "content", None)
        return list(getattr(content, "parts", None) or [])

    # ------------------------------------------------------------------
    # Connection test and errors
    # ------------------------------------------------------------------

    async def test_connection(self, api_key: str, base_url: str | None = None) -> ConnectionResult:
        if not api_key or not api_key.strip():
            return ConnectionResult(success=False, error="API key is required")
        client = self._http_client or httpx.AsyncClient(timeout=30.0)
        try:
            response = await client.get(GEMINI_MODELS_URL, params={"key": api_key.strip()})
            if response.status_code in (401, 403):
                return ConnectionResult(success=False, error="Invalid API key. Please check your Google API key.")
            if response.status_code >= 400:
                return ConnectionResult(success=False, error=f"Connection failed (HTTP {response.status_code})")
            payload = response.json()
        except httpx.HTTPError as exc:
            LOGGER.debug("Gemini connection test failed", exc_info=True)
            return ConnectionResult(success=False, error=self.parse_error(exc).message)
        finally:
            if self._http_client is None:
                await client.aclose()

        models: list[ModelInfo] = []
        for entry in payload.get("models", []) if isinstance(payload, dict) else []:
            name = str(entry.get("name", ""))
            if "gemini" not in name:
                continue
            model_id = re.sub(r"^models/", "", name)
            models.append(ModelInfo(id=model_id, display_name=entry.get("displayName") or format_gemini_model_name(model_id)))
        models.sort(key=lambda info: info.display_name)
        return ConnectionResult(success=True, models=models)

    @staticmethod
    def _error_reasons(error: BaseException) -> str:
        pieces = [str(getattr(error, "status", "") or "")]
        details = getattr(error, "details", None)
        if details:
            pieces.append(str(details))
        return " ".join(pieces)

    def parse_error(self, error: BaseException) -> AIError:
        if isinstance(error, AIError):
            return error
        status = error_status(error)
        if status in (401, 403):
            reasons = self._error_reasons(error)
            if any(reason in reasons for reason in _RATE_LIMIT_REASONS):
                return self._error(AIErrorType.RATE_LIMIT, "Rate limit exceeded. Please wait a moment and try again.", retryable=True)
            return self._error(AIErrorType.INVALID_API_KEY, "Invalid API key. Please check your Google API key in settings.")
        if status == 429:
            return self._error(AIErrorType.RATE_LIMIT, "Rate limit exceeded. Please wait a moment and try again.", retryable=True)
        if status is not None and status >= 500:
            return self._error(AIErrorType.SERVER_ERROR, "Google server error. Please try again later.", retryable=True)
        message = str(error)
        lowered = message.lower()
        if any(marker in lowered for marker in ("payload size", "too many tokens", "context length", "maximum")):
            return self._error(AIErrorType.CONTEXT_EXCEEDED, "The conversation is too long. Please start a new conversation.")
        if isinstance(error, httpx.TransportError) or any(
            marker in lowered for marker in ("network", "fetch", "econnrefused")
        ):
            return self._error(AIErrorType.NETWORK_ERROR, "Network error. Please check your internet connection.", retryable=True)
        return self._error(AIErrorType.UNKNOWN, message or "An unknown error occurred.")
