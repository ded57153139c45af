"""Tests for the OpenAI-compatible (Ollama-style) provider."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from canvasagent.ai.errors import AIErrorType
from canvasagent.ai.providers.openai_compatible import (
    DEFAULT_BASE_URL,
    PLACEHOLDER_API_KEY,
    OpenAICompatibleProvider,
    parse_compatible_actions,
    strip_code_fence,
)

from helpers import FakeCreate, FakeModelPage, FakeStream, StatusError, collect, make_options


def _chunk(text: str) -> SimpleNamespace:
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text))], usage=None)


class _Factory:
    """Records the arguments each client was created with."""

    def __init__(self, create: FakeCreate | None = None, models=None) -> None:
        self.calls: list[tuple[str, str | None]] = []
        self.client = SimpleNamespace(
            chat=SimpleNamespace(completions=SimpleNamespace(create=create or FakeCreate(FakeStream([])))),
            models=models or SimpleNamespace(list=lambda: FakeModelPage([])),
        )

    def __call__(self, api_key: str, base_url: str | None = None):
        self.calls.append((api_key, base_url))
        return self.client


# =============================================================================
# Parsing helpers
# =============================================================================


class TestParsing:
    def test_strip_code_fence(self):
        assert strip_code_fence('```json\n{"actions": []}\n```') == '{"actions": []}'
        assert strip_code_fence('```\n{"actions": [') == '{"actions": ['
        assert strip_code_fence('{"actions": []}') == '{"actions": []}'

    def test_json_document_filters_untyped_entries(self):
        actions, closed = parse_compatible_actions('{"actions": [{"_type": "message"}, {"text": "no type"}]}')
        assert actions == [{"_type": "message"}]
        assert closed is True

    def test_action_lines(self):
        text = '[ACTION]: {"_type": "message", "text": "a"}\n[ACTION]: {"_type": "think", "text": "b'
        actions, closed = parse_compatible_actions(text)
        assert actions == [{"_type": "message", "text": "a"}, {"_type": "think", "text": "b"}]
        assert closed is False

    def test_unparseable_text(self):
        assert parse_compatible_actions("Sure! Here is my answer.") == (None, False)


# =============================================================================
# Streaming
# =============================================================================


class TestStreaming:
    @pytest.mark.asyncio
    async def test_streams_action_lines(self):
        factory = _Factory(
            FakeCreate(
                FakeStream(
                    [
                        _chunk('[ACTION]: {"_type": "message", "text": "hi"}\n'),
                        _chunk('[ACTION]: {"_type": "think", "text": "ok"}\n'),
                    ]
                )
            )
        )
        provider = OpenAICompatibleProvider(client_factory=factory)

        actions = await collect(provider.stream_actions(make_options(api_key="", base_url=None)))

        assert [(a.type, a.complete) for a in actions] == [
            ("message", False),
            ("message", True),
            ("think", False),
            ("think", True),
        ]
        assert factory.calls == [(PLACEHOLDER_API_KEY, DEFAULT_BASE_URL)]

    @pytest.mark.asyncio
    async def test_retries_without_json_mode(self):
        stream = FakeStream([_chunk('{"actions": [{"_type": "message", "text": "x"}]}')])
        create = FakeCreate(StatusError("response_format is not supported by this model", 400), stream)
        provider = OpenAICompatibleProvider(client_factory=_Factory(create))

        actions = await collect(provider.stream_actions(make_options(base_url="http://gpu:8000/v1")))

        assert [a.payload["text"] for a in actions] == ["x"]
        assert "response_format" in create.calls[0]
        assert "response_format" not in create.calls[1]
        assert all("stream_options" not in call for call in create.calls)

    @pytest.mark.asyncio
    async def test_custom_base_url_is_used(self):
        factory = _Factory()
        provider = OpenAICompatibleProvider(client_factory=factory)

        await collect(provider.stream_actions(make_options(api_key="secret", base_url="http://gpu:8000/v1")))

        assert factory.calls == [("secret", "http://gpu:8000/v1")]


# =============================================================================
# Connection test and errors
# =============================================================================


class TestConnection:
    @pytest.mark.asyncio
    async def test_invalid_url(self):
        result = await OpenAICompatibleProvider(client_factory=_Factory()).test_connection("", "not a url")
        assert result.success is False
        assert result.error == "Invalid endpoint URL"

    @pytest.mark.asyncio
    async def test_lists_models_by_id(self):
        models = SimpleNamespace(list=lambda: FakeModelPage(["llama3.1", "qwen2.5"]))
        factory = _Factory(models=models)

        result = await OpenAICompatibleProvider(client_factory=factory).test_connection("")

        assert result.success is True
        assert [(m.id, m.display_name) for m in result.models] == [("llama3.1", "llama3.1"), ("qwen2.5", "qwen2.5")]
        assert factory.calls == [(PLACEHOLDER_API_KEY, DEFAULT_BASE_URL)]

    @pytest.mark.asyncio
    async def test_unreachable_server(self):
        def _fail():
            raise ConnectionError("Connection refused")

        provider = OpenAICompatibleProvider(client_factory=_Factory(models=SimpleNamespace(list=_fail)))

        result = await provider.test_connection("", "http://localhost:9999/v1")

        assert result.error == "Cannot reach endpoint. Check if server is running."

    def test_timeout_message(self):
        message = OpenAICompatibleProvider.format_connection_error(Exception("Request timed out"))
        assert message == "Connection timed out. Is Ollama running?"

    def test_parse_error_timeout_is_network(self):
        provider = OpenAICompatibleProvider(client_factory=_Factory())
        error = provider.parse_error(Exception("read timeout"))
        assert error.type is AIErrorType.NETWORK_ERROR
        assert error.message == "Cannot reach endpoint. Check if server is running."
