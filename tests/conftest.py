"""Shared pytest fixtures."""

from __future__ import annotations

import logging

import pytest

from canvasagent.ai.cancellation import CancellationToken
from canvasagent.document import InMemoryDocument, Rect
from canvasagent.services.settings import AISettings, ProviderSettings


@pytest.fixture
def document() -> InMemoryDocument:
    return InMemoryDocument(
        [{"id": "shape:a", "type": "geo", "x": 0, "y": 0}],
        viewport=Rect(0, 0, 800, 600),
    )


@pytest.fixture
def settings() -> AISettings:
    return AISettings(
        providers={
            "anthropic": ProviderSettings(api_key="sk-ant-test"),
            "openai": ProviderSettings(api_key="sk-openai-test"),
            "google": ProviderSettings(api_key="google-test"),
        }
    )


@pytest.fixture
def token() -> CancellationToken:
    return CancellationToken()


@pytest.fixture(autouse=True)
def _quiet_sdk_loggers():
    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)
    yield
