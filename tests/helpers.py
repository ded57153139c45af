"""Shared test helpers and stub classes.

Fake SDK clients and streams used by the provider and agent tests. Import from
here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any, AsyncIterator, Iterable

from canvasagent.ai.ai_types import StreamingAction, StreamOptions
from canvasagent.ai.cancellation import CancellationToken
from canvasagent.ai.errors import AIError, AIErrorType
from canvasagent.ai.providers.base import AIProvider


class FakeStream:
    """Async iterator over canned SDK events that records ``close`` calls."""

    def __init__(self, events: Iterable[Any], *, error: BaseException | None = None) -> None:
        self._events = list(events)
        self._iterator = iter(self._events)
        self._error = error
        self.closed = False

    def __aiter__(self) -> "FakeStream":
        return self

    async def __anext__(self) -> Any:
        try:
            return next(self._iterator)
        except StopIteration as exc:
            if self._error is not None:
                raise self._error
            raise StopAsyncIteration from exc

    async def close(self) -> None:
        self.closed = True


class FakeCreate:
    """Callable standing in for an SDK ``create`` method.

    Each call consumes the next entry of ``results``; exceptions are raised,
    anything else is returned.
    """

    def __init__(self, *results: Any) -> None:
        self._results = list(results)
        self.calls: list[dict[str, Any]] = []

    async def __call__(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        result = self._results.pop(0) if len(self._results) > 1 else self._results[0]
        if isinstance(result, BaseException):
            raise result
        return result


class FakeModelPage:
    """Async-iterable page of model entries like the SDK ``models.list()`` result."""

    def __init__(self, ids: Iterable[str]) -> None:
        self._models = [SimpleNamespace(id=model_id) for model_id in ids]

    def __aiter__(self) -> AsyncIterator[Any]:
        async def _iterate() -> AsyncIterator[Any]:
            for model in self._models:
                yield model

        return _iterate()


class StatusError(Exception):
    """Exception carrying an HTTP-like status the way SDK errors do."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def make_options(**overrides: Any) -> StreamOptions:
    values: dict[str, Any] = {
        "api_key": "test-key",
        "model_id": "test-model",
        "messages": [],
        "system_prompt": "system",
        "token": CancellationToken(),
    }
    values.update(overrides)
    return StreamOptions(**values)


async def collect(stream: AsyncIterator[StreamingAction]) -> list[StreamingAction]:
    return [action async for action in stream]


class ScriptedProvider(AIProvider):
    """Provider that replays scripted action lists, one per request."""

    name = "anthropic"

    def __init__(self, *scripts: Iterable[StreamingAction] | BaseException) -> None:
        self._scripts = list(scripts)
        self.options: list[StreamOptions] = []

    async def _stream(self, options: StreamOptions) -> AsyncIterator[StreamingAction]:
        self.options.append(options)
        script = self._scripts.pop(0) if self._scripts else []
        if isinstance(script, BaseException):
            raise script
        for action in script:
            options.token.raise_if_cancelled()
            yield action

    async def test_connection(self, api_key: str, base_url: str | None = None) -> Any:  # pragma: no cover
        raise NotImplementedError

    def parse_error(self, error: BaseException) -> AIError:
        return self._error(AIErrorType.UNKNOWN, str(error))


def action(payload: dict[str, Any], complete: bool = True, **extra: Any) -> StreamingAction:
    return StreamingAction(payload=payload, complete=complete, **extra)
