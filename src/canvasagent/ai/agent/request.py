"""Agent requests and the normalization of the many input shapes hosts use."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Literal, Mapping, Sequence, Union

from ...document import Rect
from .context import ContextItem

__all__ = [
    "AgentInput",
    "AgentRequest",
    "RequestType",
    "merge_scheduled_request",
    "partial_request_from_input",
]

RequestType = Literal["user", "schedule", "todo"]

_FIELD_ALIASES: Mapping[str, str] = {
    "contextItems": "context_items",
    "selectedShapes": "selected_shapes",
    "modelName": "model_name",
}
_LIST_FIELDS = ("messages", "context_items", "selected_shapes", "data")
_KNOWN_FIELDS = ("type", "bounds", "model_name") + _LIST_FIELDS


@dataclass(slots=True, frozen=True)
class AgentRequest:
    """A fully specified request; immutable once submitted."""

    type: RequestType = "user"
    messages: tuple[str, ...] = ()
    context_items: tuple[ContextItem, ...] = ()
    selected_shapes: tuple[dict[str, Any], ...] = ()
    data: tuple[Any, ...] = ()
    bounds: Rect | None = None
    model_name: str = ""

    def with_type(self, request_type: RequestType) -> AgentRequest:
        return replace(self, type=request_type)


AgentInput = Union[str, Sequence[str], Mapping[str, Any], AgentRequest]


def _coerce_bounds(value: Any) -> Rect | None:
    if value is None or isinstance(value, Rect):
        return value
    if isinstance(value, Mapping):
        return Rect(
            float(value.get("x", 0)),
            float(value.get("y", 0)),
            float(value.get("w", 0)),
            float(value.get("h", 0)),
        )
    raise TypeError(f"Unsupported bounds value: {value!r}")


def partial_request_from_input(value: AgentInput) -> dict[str, Any]:
    """Normalize host input into a partial request keyed by field name.

    Accepted shapes::

        "Draw a cat"
        ["Draw a cat", "Draw a dog"]
        {"messages": "Draw a cat"}
        {"message": "Draw a cat", "messages": ["and a dog"]}
        AgentRequest(...)
    """

    if isinstance(value, AgentRequest):
        return {name: getattr(value, name) for name in _KNOWN_FIELDS}
    if isinstance(value, str):
        return {"messages": (value,)}
    if not isinstance(value, Mapping):
        return {"messages": tuple(str(item) for item in value)}

    partial: dict[str, Any] = {}
    for key, item in value.items():
        name = _FIELD_ALIASES.get(key, key)
        if name in _KNOWN_FIELDS:
            partial[name] = item

    messages = partial.get("messages")
    if isinstance(messages, str):
        messages = (messages,)
    elif messages is not None:
        messages = tuple(messages)
    message = value.get("message")
    if isinstance(message, str):
        messages = (message,) + (messages or ())
    if messages is not None:
        partial["messages"] = messages

    for name in ("context_items", "selected_shapes", "data"):
        if partial.get(name) is not None:
            partial[name] = tuple(partial[name])
    if "bounds" in partial:
        partial["bounds"] = _coerce_bounds(partial["bounds"])
    return {key: item for key, item in partial.items() if item is not None}


def merge_scheduled_request(current: AgentRequest, value: AgentInput) -> AgentRequest:
    """Append list fields from ``value``; scalars override only when supplied."""

    partial = partial_request_from_input(value)
    return AgentRequest(
        type="schedule",
        messages=current.messages + tuple(partial.get("messages", ())),
        context_items=current.context_items + tuple(partial.get("context_items", ())),
        selected_shapes=current.selected_shapes + tuple(partial.get("selected_shapes", ())),
        data=current.data + tuple(partial.get("data", ())),
        bounds=partial.get("bounds", current.bounds),
        model_name=partial.get("model_name") or current.model_name,
    )
