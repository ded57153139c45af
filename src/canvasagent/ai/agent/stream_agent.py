"""Facade that turns an agent prompt into a provider action stream."""

from __future__ import annotations

import contextlib
import logging
from typing import AsyncIterator, Callable

from ...services.settings import AISettings
from ..ai_types import StreamingAction, StreamOptions
from ..cancellation import CancellationToken
from ..errors import AIError, AIErrorType
from ..models import AgentModelDefinition, get_model_definition
from .messages import AgentPrompt, build_messages
from ..prompt.system_prompt import build_system_prompt
from ..providers.base import PROVIDER_DISPLAY_NAMES
from ..providers.factory import ProviderRegistry

__all__ = ["StreamingAgent", "resolve_api_key"]

LOGGER = logging.getLogger(__name__)

_KEYLESS_PROVIDERS = frozenset({"openai-compatible"})


def resolve_api_key(settings: AISettings, provider: str) -> str:
    """Provider key from settings; Anthropic falls back to the legacy top-level key."""

    key = settings.provider(provider).api_key
    if not key and provider == "anthropic":
        key = settings.api_key
    return (key or "").strip()


class StreamingAgent:
    """Resolve model, credentials, and prompt, then stream from the provider.

    Args:
        registry: Provider registry to draw clients from. Each facade owns its
            own registry unless one is injected.
    """

    def __init__(self, registry: ProviderRegistry | None = None) -> None:
        self._registry = registry or ProviderRegistry()

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    def build_options(
        self,
        prompt: AgentPrompt,
        *,
        settings: AISettings,
        token: CancellationToken,
        model: AgentModelDefinition,
        on_thinking: Callable[[str], None] | None = None,
    ) -> StreamOptions:
        provider = model.provider
        api_key = resolve_api_key(settings, provider)
        if not api_key and provider not in _KEYLESS_PROVIDERS:
            display = PROVIDER_DISPLAY_NAMES.get(provider, provider)
            raise AIError(
                type=AIErrorType.INVALID_API_KEY,
                message=(
                    f"API key for {display} is not configured. "
                    f"Please add your {display} API key in Settings > AI."
                ),
                provider=provider,
            )

        session = settings.provider_session_state
        return StreamOptions(
            api_key=api_key,
            model_id=model.id,
            messages=build_messages(prompt),
            system_prompt=build_system_prompt(settings, prompt.action_prompts, prompt.action_schemas),
            token=token,
            max_tokens=settings.max_tokens or 8192,
            temperature=settings.temperature if settings.temperature is not None else 0.0,
            base_url=settings.provider(provider).base_url if provider == "openai-compatible" else None,
            previous_response_id=session.previous_response_id if session is not None else None,
            enable_caching=True,
            on_thinking=on_thinking,
        )

    async def stream(
        self,
        prompt: AgentPrompt,
        *,
        settings: AISettings,
        token: CancellationToken,
        model_name: str | None = None,
        on_thinking: Callable[[str], None] | None = None,
    ) -> AsyncIterator[StreamingAction]:
        model = get_model_definition(model_name or prompt.request.model_name)
        options = self.build_options(prompt, settings=settings, token=token, model=model, on_thinking=on_thinking)
        provider = self._registry.get(model.provider)
        LOGGER.debug(
            "Streaming %s via %s (continuation=%s)",
            model.id,
            model.provider,
            bool(options.previous_response_id),
        )
        async with contextlib.aclosing(provider.stream_actions(options)) as actions:
            async for action in actions:
                yield action
