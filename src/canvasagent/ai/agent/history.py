"""Chat history items recorded by the agent."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from ...document import RecordsDiff
from ..ai_types import StreamingAction
from .context import ContextItem

__all__ = [
    "Acceptance",
    "ActionHistoryItem",
    "ChatHistoryItem",
    "ContinuationHistoryItem",
    "PromptHistoryItem",
]


class Acceptance(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass(slots=True)
class PromptHistoryItem:
    """A user prompt with the context that was attached to it."""

    message: str
    context_items: tuple[ContextItem, ...] = ()
    selected_shapes: tuple[dict[str, Any], ...] = ()
    type: str = field(default="prompt", init=False)


@dataclass(slots=True)
class ActionHistoryItem:
    """An applied action, the diff it produced, and the user's verdict on it."""

    action: StreamingAction
    diff: RecordsDiff
    acceptance: Acceptance = Acceptance.PENDING
    type: str = field(default="action", init=False)

    @property
    def complete(self) -> bool:
        return self.action.complete


@dataclass(slots=True)
class ContinuationHistoryItem:
    """Bridge between two requests carrying data resolved for the follow-up."""

    data: list[Any] = field(default_factory=list)
    type: str = field(default="continuation", init=False)


ChatHistoryItem = Union[PromptHistoryItem, ActionHistoryItem, ContinuationHistoryItem]
