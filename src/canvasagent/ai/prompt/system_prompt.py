"""System prompt and response schema construction."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Mapping, Sequence

if TYPE_CHECKING:  # pragma: no cover
    from ...services.settings import AISettings

__all__ = [
    "DEFAULT_JSON_SCHEMA",
    "JSON_SCHEMA_PLACEHOLDER",
    "build_response_schema",
    "build_system_prompt",
    "default_system_prompt",
]

LOGGER = logging.getLogger(__name__)

JSON_SCHEMA_PLACEHOLDER = "{{JSON_SCHEMA}}"

DEFAULT_JSON_SCHEMA: Mapping[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "actions": {
            "type": "array",
            "items": {
                "anyOf": [
                    {
                        "title": "Message",
                        "description": "The AI sends a message to the user.",
                        "type": "object",
                        "properties": {
                            "_type": {"type": "string", "const": "message"},
                            "text": {"type": "string"},
                        },
                        "required": ["_type", "text"],
                        "additionalProperties": False,
                    }
                ]
            },
        }
    },
    "required": ["actions"],
    "additionalProperties": False,
}


def default_system_prompt(schema: Any | None = None) -> str:
    return (
        "# System Prompt\n"
        "You are an AI assistant for a drawing canvas.\n"
        "Respond with structured JSON data based on the schema provided.\n"
        'Your response must include an "actions" array.\n'
        'Use action type "message" with a "text" field to communicate with the user.\n'
        "## JSON Schema\n"
        f"{json.dumps(schema if schema is not None else DEFAULT_JSON_SCHEMA, indent=2)}"
    )


def _load_custom_schema(raw: str | None) -> Any | None:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        LOGGER.warning("Invalid custom JSON schema, using default")
        return None


def build_system_prompt(
    settings: AISettings | None,
    action_prompts: Sequence[str] = (),
    action_schemas: Sequence[Mapping[str, Any]] = (),
) -> str:
    """Compose the system prompt.

    A custom prompt replaces the default one. Its ``{{JSON_SCHEMA}}`` placeholder
    is substituted with the pretty-printed custom schema when that schema parses;
    otherwise the placeholder is left untouched. The default prompt embeds the
    response schema from :func:`build_response_schema`. Prompt fragments
    contributed by action utils are appended in order.
    """

    custom = settings.custom_system_prompt if settings is not None else None
    if custom:
        prompt = custom
        if JSON_SCHEMA_PLACEHOLDER in prompt and settings is not None and settings.custom_json_schema:
            schema = _load_custom_schema(settings.custom_json_schema)
            if schema is not None:
                prompt = prompt.replace(JSON_SCHEMA_PLACEHOLDER, json.dumps(schema, indent=2), 1)
    else:
        prompt = default_system_prompt(build_response_schema(settings, action_schemas))
    return prompt + "".join(fragment for fragment in action_prompts if fragment)


def build_response_schema(
    settings: AISettings | None,
    action_schemas: Sequence[Mapping[str, Any]] = (),
) -> Any | None:
    """Custom schema when valid, else a union of action schemas (needs two or more)."""

    custom = _load_custom_schema(settings.custom_json_schema if settings is not None else None)
    if custom is not None:
        return custom
    if len(action_schemas) < 2:
        return None
    return {
        "type": "object",
        "properties": {"actions": {"type": "array", "items": {"anyOf": [dict(schema) for schema in action_schemas]}}},
        "required": ["actions"],
        "additionalProperties": False,
    }
