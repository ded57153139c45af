"""Prompt assembly for provider requests."""

from .system_prompt import DEFAULT_JSON_SCHEMA, build_response_schema, build_system_prompt, default_system_prompt

__all__ = [
    "DEFAULT_JSON_SCHEMA",
    "build_response_schema",
    "build_system_prompt",
    "default_system_prompt",
]
