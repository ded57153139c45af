"""Catalog of agent models and their backing providers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from .providers.base import ProviderName

__all__ = [
    "AGENT_MODEL_DEFINITIONS",
    "AgentModelDefinition",
    "DEFAULT_MODEL_NAME",
    "get_model_definition",
    "get_provider_for_model",
    "is_known_model",
    "normalize_model_name",
    "visible_models",
]


@dataclass(slots=True, frozen=True)
class AgentModelDefinition:
    """User-facing model name mapped onto a provider model id."""

    name: str
    id: str
    provider: ProviderName
    thinking: bool = False
    hidden: bool = False


_DEFINITIONS: tuple[AgentModelDefinition, ...] = (
    AgentModelDefinition("claude-4.5-sonnet", "claude-sonnet-4-5-20250929", "anthropic"),
    AgentModelDefinition("claude-4-sonnet", "claude-sonnet-4-20250514", "anthropic"),
    AgentModelDefinition("claude-3.7-sonnet", "claude-3-7-sonnet-20250219", "anthropic"),
    AgentModelDefinition("gemini-2.5-flash", "gemini-2.5-flash", "google", hidden=True),
    AgentModelDefinition("gemini-2.5-pro", "gemini-2.5-pro", "google", thinking=True, hidden=True),
    AgentModelDefinition("gpt-5", "gpt-5-2025-08-07", "openai"),
    AgentModelDefinition("gpt-4.1", "gpt-4.1-2025-04-14", "openai"),
    AgentModelDefinition("gpt-4o", "gpt-4o", "openai"),
)

AGENT_MODEL_DEFINITIONS: Mapping[str, AgentModelDefinition] = {
    definition.name: definition for definition in _DEFINITIONS
}

DEFAULT_MODEL_NAME = "claude-4.5-sonnet"


def normalize_model_name(name: str | None) -> str:
    """Trim whitespace; empty names fall back to :data:`DEFAULT_MODEL_NAME`."""

    cleaned = (name or "").strip()
    return cleaned or DEFAULT_MODEL_NAME


def is_known_model(name: str | None) -> bool:
    return normalize_model_name(name) in AGENT_MODEL_DEFINITIONS


def get_model_definition(name: str | None) -> AgentModelDefinition:
    """Resolve ``name``; unknown names are served by the OpenAI-compatible provider."""

    normalized = normalize_model_name(name)
    definition = AGENT_MODEL_DEFINITIONS.get(normalized)
    if definition is not None:
        return definition
    return AgentModelDefinition(normalized, normalized, "openai-compatible")


def get_provider_for_model(name: str | None) -> ProviderName:
    return get_model_definition(name).provider


def visible_models() -> list[AgentModelDefinition]:
    return [definition for definition in _DEFINITIONS if not definition.hidden]
