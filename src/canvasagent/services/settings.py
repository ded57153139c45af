"""Settings consumed by the agent pipeline.

Persisting settings is the host application's job; this module only defines
the in-memory shape, a tolerant loader for host-provided mappings, and the
environment overrides used by scripts and tests.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Dict, Mapping

if TYPE_CHECKING:  # pragma: no cover
    from ..ai.agent.session import ProviderSessionState

__all__ = [
    "AISettings",
    "ProviderSettings",
    "apply_env_overrides",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)

_PROVIDER_KEY_ENV: Mapping[str, str] = {
    "CANVASAGENT_ANTHROPIC_API_KEY": "anthropic",
    "CANVASAGENT_OPENAI_API_KEY": "openai",
    "CANVASAGENT_GOOGLE_API_KEY": "google",
    "CANVASAGENT_OPENAI_COMPATIBLE_API_KEY": "openai-compatible",
}
_PROVIDER_BASE_URL_ENV: Mapping[str, str] = {
    "CANVASAGENT_OPENAI_COMPATIBLE_BASE_URL": "openai-compatible",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "CANVASAGENT_MAX_TOKENS": "max_tokens",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "CANVASAGENT_TEMPERATURE": "temperature",
}


@dataclass(slots=True)
class ProviderSettings:
    """Credentials and endpoint for one provider."""

    api_key: str = ""
    base_url: str | None = None


@dataclass(slots=True)
class AISettings:
    """Settings snapshot read once per request."""

    providers: dict[str, ProviderSettings] = field(default_factory=dict)
    api_key: str = ""
    max_tokens: int = 8192
    temperature: float = 0.0
    custom_system_prompt: str | None = None
    custom_json_schema: str | None = None
    provider_session_state: ProviderSessionState | None = None

    def provider(self, name: str) -> ProviderSettings:
        return self.providers.get(name) or ProviderSettings()

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any] | None) -> AISettings:
        """Build settings from a host mapping using camelCase or snake_case keys."""

        if not isinstance(payload, Mapping):
            return cls()
        providers: dict[str, ProviderSettings] = {}
        raw_providers = payload.get("providers")
        if isinstance(raw_providers, Mapping):
            for name, entry in raw_providers.items():
                if not isinstance(entry, Mapping):
                    continue
                providers[str(name)] = ProviderSettings(
                    api_key=str(_pick(entry, "api_key", "apiKey") or ""),
                    base_url=_pick(entry, "base_url", "baseUrl") or None,
                )
        settings = cls(
            providers=providers,
            api_key=str(_pick(payload, "api_key", "apiKey") or ""),
            custom_system_prompt=_pick(payload, "custom_system_prompt", "customSystemPrompt") or None,
            custom_json_schema=_pick(payload, "custom_json_schema", "customJsonSchema") or None,
        )
        max_tokens = _coerce(_pick(payload, "max_tokens", "maxTokens"), int, "max_tokens")
        if max_tokens is not None and max_tokens > 0:
            settings.max_tokens = max_tokens
        temperature = _coerce(_pick(payload, "temperature"), float, "temperature")
        if temperature is not None:
            settings.temperature = temperature
        return settings


def _pick(mapping: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in mapping and mapping[key] is not None:
            return mapping[key]
    return None


def _coerce(value: Any, kind: type, label: str) -> Any:
    if value is None or value == "":
        return None
    try:
        return kind(value)
    except (TypeError, ValueError):
        LOGGER.warning("Ignoring invalid %s setting: %r", label, value)
        return None


def apply_env_overrides(settings: AISettings, environ: Mapping[str, str] | None = None) -> AISettings:
    """Return a copy of ``settings`` with ``CANVASAGENT_*`` variables applied."""

    env = os.environ if environ is None else environ
    providers = {name: replace(entry) for name, entry in settings.providers.items()}
    overrides: Dict[str, Any] = {}

    for env_name, provider in _PROVIDER_KEY_ENV.items():
        value = env.get(env_name)
        if value is not None:
            providers.setdefault(provider, ProviderSettings()).api_key = value
    for env_name, provider in _PROVIDER_BASE_URL_ENV.items():
        value = env.get(env_name)
        if value is not None:
            providers.setdefault(provider, ProviderSettings()).base_url = value or None
    for env_name, field_name in _INT_ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value is None:
            continue
        try:
            overrides[field_name] = int(value, 10)
        except ValueError:
            LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
    for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value is None:
            continue
        try:
            overrides[field_name] = float(value)
        except ValueError:
            LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)

    if overrides:
        LOGGER.debug("Applying environment settings overrides: %s", sorted(overrides))
    return replace(settings, providers=providers, **overrides)


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
