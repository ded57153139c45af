"""Provider client contract shared by every vendor backend."""

from __future__ import annotations

import abc
import asyncio
import contextlib
import inspect
import logging
from typing import Any, AsyncIterable, AsyncIterator, Literal, Mapping

from ..ai_types import ConnectionResult, StreamingAction, StreamOptions
from ..cancellation import CancellationToken
from ..errors import AIError, AIErrorType, RequestCancelledError
from .rate_limit import error_status, is_rate_limit_error, rate_limit_message

__all__ = [
    "AIProvider",
    "PROVIDER_DISPLAY_NAMES",
    "PROVIDER_NAMES",
    "ProviderName",
    "close_stream",
    "error_status",
    "iterate_stream",
]

LOGGER = logging.getLogger(__name__)

ProviderName = Literal["anthropic", "google", "openai", "openai-compatible"]

PROVIDER_NAMES: tuple[ProviderName, ...] = ("anthropic", "google", "openai", "openai-compatible")

PROVIDER_DISPLAY_NAMES: Mapping[str, str] = {
    "anthropic": "Anthropic (Claude)",
    "google": "Google (Gemini)",
    "openai": "OpenAI (GPT)",
    "openai-compatible": "OpenAI-Compatible (Ollama)",
}


async def close_stream(stream: Any) -> None:
    """Close an SDK stream object if it exposes ``close``/``aclose``."""

    for name in ("aclose", "close"):
        closer = getattr(stream, name, None)
        if closer is None:
            continue
        try:
            result = closer()
            if inspect.isawaitable(result):
                await result
        except Exception:  # pragma: no cover - closing is best effort
            LOGGER.debug("Failed to close provider stream", exc_info=True)
        return


async def iterate_stream(stream: AsyncIterable[Any], token: CancellationToken) -> AsyncIterator[Any]:
    """Yield events from ``stream`` until exhausted or ``token`` fires.

    The stream is always closed on exit so cancelling releases the underlying
    HTTP response.
    """

    try:
        async for event in stream:
            token.raise_if_cancelled()
            yield event
        token.raise_if_cancelled()
    finally:
        await close_stream(stream)


class AIProvider(abc.ABC):
    """Abstract streaming client for one vendor backend."""

    name: ProviderName

    @property
    def display_name(self) -> str:
        return PROVIDER_DISPLAY_NAMES[self.name]

    async def stream_actions(self, options: StreamOptions) -> AsyncIterator[StreamingAction]:
        """Stream normalized actions, translating failures into :class:`AIError`."""

        try:
            async with contextlib.aclosing(self._stream(options)) as actions:
                async for action in actions:
                    yield action
        except (RequestCancelledError, asyncio.CancelledError, AIError):
            raise
        except Exception as exc:
            if options.token.cancelled:
                raise RequestCancelledError(options.token.reason or str(exc)) from exc
            raise self.normalize_error(exc) from exc

    def normalize_error(self, error: BaseException) -> AIError:
        if isinstance(error, AIError):
            return error
        if is_rate_limit_error(error):
            return AIError(
                type=AIErrorType.RATE_LIMIT,
                message=rate_limit_message(error),
                retryable=True,
                provider=self.name,
            )
        return self.parse_error(error)

    @abc.abstractmethod
    def _stream(self, options: StreamOptions) -> AsyncIterator[StreamingAction]:
        """Vendor-specific stream implementation."""

    @abc.abstractmethod
    async def test_connection(self, api_key: str, base_url: str | None = None) -> ConnectionResult:
        """Validate credentials and list the models the key can use."""

    @abc.abstractmethod
    def parse_error(self, error: BaseException) -> AIError:
        """Map a vendor exception onto the shared taxonomy."""

    def _error(self, kind: AIErrorType, message: str, *, retryable: bool = False) -> AIError:
        return AIError(type=kind, message=message, retryable=retryable, provider=self.name)
