"""Registry resolving provider names to cached client instances."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Mapping

from .base import PROVIDER_NAMES, AIProvider

__all__ = ["DEFAULT_PROVIDER_LOADERS", "ProviderRegistry", "UnsupportedProviderError"]

LOGGER = logging.getLogger(__name__)

ProviderLoader = Callable[[], AIProvider]


class UnsupportedProviderError(ValueError):
    """Raised when a provider name has no registered implementation."""


def _load_anthropic() -> AIProvider:
    from .anthropic import AnthropicProvider

    return AnthropicProvider()


def _load_google() -> AIProvider:
    from .gemini import GeminiProvider

    return GeminiProvider()


def _load_openai() -> AIProvider:
    from .openai import OpenAIProvider

    return OpenAIProvider()


def _load_openai_compatible() -> AIProvider:
    from .openai_compatible import OpenAICompatibleProvider

    return OpenAICompatibleProvider()


DEFAULT_PROVIDER_LOADERS: Mapping[str, ProviderLoader] = {
    "anthropic": _load_anthropic,
    "google": _load_google,
    "openai": _load_openai,
    "openai-compatible": _load_openai_compatible,
}


class ProviderRegistry:
    """Create-if-absent cache of provider clients.

    Implementations are imported lazily the first time a provider is requested,
    so a host that only uses one vendor never imports the other SDKs.
    """

    def __init__(self, loaders: Mapping[str, ProviderLoader] | None = None) -> None:
        self._loaders = dict(loaders if loaders is not None else DEFAULT_PROVIDER_LOADERS)
        self._instances: dict[str, AIProvider] = {}
        self._lock = threading.Lock()

    def supported_providers(self) -> tuple[str, ...]:
        return tuple(name for name in PROVIDER_NAMES if name in self._loaders) + tuple(
            name for name in self._loaders if name not in PROVIDER_NAMES
        )

    def is_supported(self, name: str) -> bool:
        return name in self._loaders

    def get(self, name: str) -> AIProvider:
        """Return the cached client for ``name``, creating it on first use."""

        with self._lock:
            provider = self._instances.get(name)
            if provider is not None:
                return provider
            loader = self._loaders.get(name)
            if loader is None:
                raise UnsupportedProviderError(f"Unsupported provider: {name}")
            LOGGER.debug("Loading provider %s", name)
            provider = loader()
            self._instances[name] = provider
            return provider

    def get_cached(self, name: str) -> AIProvider | None:
        with self._lock:
            return self._instances.get(name)

    def clear(self) -> None:
        with self._lock:
            self._instances.clear()
