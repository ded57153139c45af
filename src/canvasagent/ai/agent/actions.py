"""Action utils: how each streamed action type is validated and applied.

Every util may be handed the same logical action several times while it is
still streaming. The orchestrator reverts the previous provisional diff before
calling :meth:`AgentActionUtil.apply_action` again, so implementations only
need to apply the action as it currently stands.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Iterable, Mapping

from ...document import CanvasDocument
from ..ai_types import StreamingAction
from .request import AgentRequest

if TYPE_CHECKING:  # pragma: no cover
    from .agent import CanvasAgent

__all__ = [
    "ActionContext",
    "ActionUtilRegistry",
    "AgentActionUtil",
    "CreateActionUtil",
    "DeleteActionUtil",
    "MessageActionUtil",
    "MoveActionUtil",
    "ReviewActionUtil",
    "ThinkActionUtil",
    "TodoListActionUtil",
    "UNKNOWN_ACTION_TYPE",
    "UnknownActionUtil",
    "UpdateActionUtil",
    "default_action_utils",
]

LOGGER = logging.getLogger(__name__)

UNKNOWN_ACTION_TYPE = "unknown"


@dataclass(slots=True)
class ActionContext:
    """What an action util may touch while applying an action."""

    agent: CanvasAgent
    document: CanvasDocument
    request: AgentRequest | None = None


def _shape_id(payload: Mapping[str, Any]) -> str | None:
    value = payload.get("shapeId") or payload.get("id")
    return str(value) if value else None


def _string_schema(type_name: str, title: str, description: str, **properties: Any) -> dict[str, Any]:
    props: dict[str, Any] = {"_type": {"type": "string", "const": type_name}}
    props.update(properties)
    return {
        "title": title,
        "description": description,
        "type": "object",
        "properties": props,
        "required": ["_type", *properties.keys()],
    }


# -----------------------------------------------------------------------------
# Base class
# -----------------------------------------------------------------------------

class AgentActionUtil:
    """Base class for action handlers."""

    type: str = UNKNOWN_ACTION_TYPE
    saves_to_history: bool = True

    def schema(self) -> dict[str, Any] | None:
        return None

    def system_prompt(self) -> str | None:
        return None

    def sanitize_action(self, action: StreamingAction, context: ActionContext) -> StreamingAction | None:
        """Return the action to apply, a corrected copy, or ``None`` to skip it."""

        return action

    def apply_action(self, action: StreamingAction, context: ActionContext) -> Awaitable[Any] | None:
        """Mutate the document for ``action``; may return an awaitable side effect."""

        return None


# -----------------------------------------------------------------------------
# Conversation actions
# -----------------------------------------------------------------------------

class MessageActionUtil(AgentActionUtil):
    type = "message"

    def schema(self) -> dict[str, Any]:
        return _string_schema("message", "Message", "The AI sends a message to the user.", text={"type": "string"})


class ThinkActionUtil(AgentActionUtil):
    type = "think"

    def schema(self) -> dict[str, Any]:
        return _string_schema("think", "Think", "The AI reasons about the task before acting.", text={"type": "string"})


class UnknownActionUtil(AgentActionUtil):
    """Fallback for actions whose type is missing or unregistered."""

    type = UNKNOWN_ACTION_TYPE
    saves_to_history = False

    def apply_action(self, action: StreamingAction, context: ActionContext) -> None:
        if action.complete:
            LOGGER.debug("Ignoring unsupported action type %r", action.type)
        return None


# -----------------------------------------------------------------------------
# Document actions
# -----------------------------------------------------------------------------

class CreateActionUtil(AgentActionUtil):
    type = "create"

    def schema(self) -> dict[str, Any]:
        return _string_schema("create", "Create", "The AI creates a new shape.", shape={"type": "object"})

    def sanitize_action(self, action: StreamingAction, context: ActionContext) -> StreamingAction | None:
        shape = action.get("shape")
        if not isinstance(shape, Mapping):
            return None
        return action

    def apply_action(self, action: StreamingAction, context: ActionContext) -> None:
        record = dict(action.get("shape"))
        shape_id = record.pop("shapeId", None)
        if shape_id and not record.get("id"):
            record["id"] = str(shape_id)
        context.document.create_record(record)
        return None


class UpdateActionUtil(AgentActionUtil):
    type = "update"

    def schema(self) -> dict[str, Any]:
        return _string_schema("update", "Update", "The AI updates an existing shape.", update={"type": "object"})

    def sanitize_action(self, action: StreamingAction, context: ActionContext) -> StreamingAction | None:
        update = action.get("update")
        if not isinstance(update, Mapping):
            return None
        shape_id = _shape_id(update)
        if shape_id is None or context.document.get_record(shape_id) is None:
            return None
        return action

    def apply_action(self, action: StreamingAction, context: ActionContext) -> None:
        update = dict(action.get("update"))
        shape_id = _shape_id(update)
        update.pop("shapeId", None)
        update.pop("id", None)
        if shape_id is not None and update:
            context.document.update_record(shape_id, update)
        return None


class MoveActionUtil(AgentActionUtil):
    type = "move"

    def schema(self) -> dict[str, Any]:
        return _string_schema(
            "move",
            "Move",
            "The AI moves a shape to a new position.",
            shapeId={"type": "string"},
            x={"type": "number"},
            y={"type": "number"},
        )

    def sanitize_action(self, action: StreamingAction, context: ActionContext) -> StreamingAction | None:
        shape_id = _shape_id(action.payload)
        if shape_id is None or context.document.get_record(shape_id) is None:
            return None
        return action

    def apply_action(self, action: StreamingAction, context: ActionContext) -> None:
        changes = {
            axis: action.get(axis) for axis in ("x", "y") if isinstance(action.get(axis), (int, float))
        }
        shape_id = _shape_id(action.payload)
        if shape_id is not None and changes:
            context.document.update_record(shape_id, changes)
        return None


class DeleteActionUtil(AgentActionUtil):
    type = "delete"

    def schema(self) -> dict[str, Any]:
        return _string_schema("delete", "Delete", "The AI deletes a shape.", shapeId={"type": "string"})

    def apply_action(self, action: StreamingAction, context: ActionContext) -> None:
        # a partially streamed id could name a different shape
        if not action.complete:
            return None
        shape_id = _shape_id(action.payload)
        if shape_id is not None:
            context.document.delete_record(shape_id)
        return None


# -----------------------------------------------------------------------------
# Agent bookkeeping actions
# -----------------------------------------------------------------------------

class TodoListActionUtil(AgentActionUtil):
    type = "update-todo-list"
    saves_to_history = False

    def schema(self) -> dict[str, Any]:
        return _string_schema(
            "update-todo-list",
            "Update Todo List",
            "The AI adds or updates an item on its todo list.",
            text={"type": "string"},
            status={"type": "string", "enum": ["todo", "in-progress", "done"]},
        )

    def apply_action(self, action: StreamingAction, context: ActionContext) -> None:
        if not action.complete:
            return None
        raw_id = action.get("id")
        item_id = raw_id if isinstance(raw_id, int) and not isinstance(raw_id, bool) else None
        text = action.get("text")
        context.agent.update_todo(
            item_id,
            text=text if isinstance(text, str) else None,
            status=action.get("status"),
        )
        return None


class ReviewActionUtil(AgentActionUtil):
    """Lets the model schedule a follow-up pass over its own work."""

    type = "review"
    saves_to_history = False

    def schema(self) -> dict[str, Any]:
        return _string_schema(
            "review",
            "Review",
            "The AI schedules a follow-up request to review its work.",
            intent={"type": "string"},
        )

    def apply_action(self, action: StreamingAction, context: ActionContext) -> None:
        if not action.complete:
            return None
        intent = action.get("intent")
        message = f"Review your work: {intent}" if isinstance(intent, str) and intent else "Review your work."
        context.agent.schedule({"message": message})
        return None


# -----------------------------------------------------------------------------
# Registry
# -----------------------------------------------------------------------------

def default_action_utils() -> list[AgentActionUtil]:
    return [
        MessageActionUtil(),
        ThinkActionUtil(),
        CreateActionUtil(),
        UpdateActionUtil(),
        MoveActionUtil(),
        DeleteActionUtil(),
        TodoListActionUtil(),
        ReviewActionUtil(),
        UnknownActionUtil(),
    ]


class ActionUtilRegistry:
    """Maps action types to utils, with an ``unknown`` fallback."""

    def __init__(self, utils: Iterable[AgentActionUtil] | None = None) -> None:
        self._utils: dict[str, AgentActionUtil] = {}
        for util in utils if utils is not None else default_action_utils():
            self._utils[util.type] = util
        self._utils.setdefault(UNKNOWN_ACTION_TYPE, UnknownActionUtil())

    def __iter__(self):
        return iter(self._utils.values())

    def get(self, action_type: str | None) -> AgentActionUtil:
        if action_type and action_type in self._utils:
            return self._utils[action_type]
        return self._utils[UNKNOWN_ACTION_TYPE]

    def system_prompts(self) -> list[str]:
        return [prompt for util in self._utils.values() if (prompt := util.system_prompt())]

    def schemas(self) -> list[dict[str, Any]]:
        return [schema for util in self._utils.values() if (schema := util.schema()) is not None]
