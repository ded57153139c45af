"""Translate an agent prompt snapshot into provider-neutral messages."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from ...document import Rect
from ..ai_types import ImageContent, Message, MessageContent, TextContent
from .context import context_item_to_dict
from .history import (
    Acceptance,
    ActionHistoryItem,
    ChatHistoryItem,
    ContinuationHistoryItem,
    PromptHistoryItem,
)
from .request import AgentRequest
from .todos import TodoItem

__all__ = ["AgentPrompt", "build_messages"]


@dataclass(slots=True)
class AgentPrompt:
    """Everything the streaming facade needs to render one request."""

    request: AgentRequest
    history: Sequence[ChatHistoryItem] = ()
    todos: Sequence[TodoItem] = ()
    viewport: Rect | None = None
    action_prompts: Sequence[str] = ()
    action_schemas: Sequence[Mapping[str, Any]] = ()
    metadata: dict[str, Any] = field(default_factory=dict)


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def _history_messages(history: Sequence[ChatHistoryItem]) -> list[Message]:
    messages: list[Message] = []
    pending_actions: list[dict[str, Any]] = []

    def _flush() -> None:
        if pending_actions:
            messages.append(Message.assistant(_dumps({"actions": list(pending_actions)})))
            pending_actions.clear()

    for item in history:
        if isinstance(item, ActionHistoryItem):
            if item.complete and item.acceptance is not Acceptance.REJECTED:
                pending_actions.append(dict(item.action.payload))
            continue
        _flush()
        if isinstance(item, PromptHistoryItem):
            if item.message:
                messages.append(Message.user(item.message))
        elif isinstance(item, ContinuationHistoryItem) and item.data:
            messages.append(Message.user(f"Continuation data: {_dumps(item.data)}"))
    _flush()
    return messages


def _request_content(prompt: AgentPrompt) -> list[MessageContent]:
    request = prompt.request
    parts: list[MessageContent] = []
    if request.type == "todo":
        parts.append(TextContent("Continue working on the remaining items in your todo list."))
    elif request.type == "schedule" and not request.messages:
        parts.append(TextContent("Continue with the work you scheduled for yourself."))
    for text in request.messages:
        parts.append(TextContent(text))

    if request.context_items:
        items = [context_item_to_dict(item) for item in request.context_items]
        parts.append(TextContent(f"Context items: {_dumps(items)}"))
    if request.selected_shapes:
        parts.append(TextContent(f"Selected shapes: {_dumps(list(request.selected_shapes))}"))
    bounds = request.bounds or prompt.viewport
    if bounds is not None:
        parts.append(TextContent(f"Current viewport bounds: {_dumps(bounds.to_dict())}"))
    if prompt.todos:
        todos = [{"id": item.id, "text": item.text, "status": item.status} for item in prompt.todos]
        parts.append(TextContent(f"Todo list: {_dumps(todos)}"))
    for value in request.data:
        if isinstance(value, ImageContent):
            parts.append(value)
        elif value is not None:
            parts.append(TextContent(f"Data: {_dumps(value)}"))
    return parts


def build_messages(prompt: AgentPrompt) -> list[Message]:
    """Prior conversation turns followed by a single user turn for the request."""

    messages = _history_messages(prompt.history)
    content = _request_content(prompt)
    if content:
        messages.append(Message.user(content))
    return messages
