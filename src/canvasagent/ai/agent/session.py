"""Per-provider continuity state carried between requests."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass

from ..ai_types import CacheMetrics

__all__ = [
    "AnthropicSessionState",
    "OpenAISessionState",
    "ProviderSessionState",
    "SessionStateStore",
]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class AnthropicSessionState:
    cache_created: bool = False


@dataclass(slots=True)
class OpenAISessionState:
    response_id: str | None = None


@dataclass(slots=True)
class ProviderSessionState:
    """Ephemeral continuity metadata; never persisted."""

    anthropic: AnthropicSessionState | None = None
    openai: OpenAISessionState | None = None

    @property
    def previous_response_id(self) -> str | None:
        return self.openai.response_id if self.openai is not None else None

    @property
    def is_empty(self) -> bool:
        return self.anthropic is None and self.openai is None


class SessionStateStore:
    """Owns the session state for one agent."""

    def __init__(self) -> None:
        self._state = ProviderSessionState()

    def get(self) -> ProviderSessionState:
        return copy.deepcopy(self._state)

    def update(
        self,
        provider: str,
        *,
        response_id: str | None = None,
        cache_metrics: CacheMetrics | None = None,
    ) -> None:
        if provider == "openai" and response_id:
            self._state.openai = OpenAISessionState(response_id=response_id)
            LOGGER.debug("Stored OpenAI continuation id %s", response_id)
        elif provider == "anthropic" and cache_metrics is not None:
            # last observed value: false again once a request only reads the cache
            self._state.anthropic = AnthropicSessionState(cache_created=cache_metrics.created > 0)

    def reset(self) -> None:
        self._state = ProviderSessionState()
