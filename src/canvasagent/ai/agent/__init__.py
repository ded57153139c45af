"""Agent orchestration: requests, history, actions, and the streaming facade."""

from .actions import ActionContext, ActionUtilRegistry, AgentActionUtil, default_action_utils
from .agent import CanvasAgent
from .context import AreaContextItem, ContextItem, PointContextItem, ShapeContextItem, ShapesContextItem
from .history import Acceptance, ActionHistoryItem, ChatHistoryItem, ContinuationHistoryItem, PromptHistoryItem
from .messages import AgentPrompt, build_messages
from .request import AgentInput, AgentRequest
from .session import ProviderSessionState, SessionStateStore
from .stream_agent import StreamingAgent
from .todos import TodoItem, TodoList

__all__ = [
    "Acceptance",
    "ActionContext",
    "ActionHistoryItem",
    "ActionUtilRegistry",
    "AgentActionUtil",
    "AgentInput",
    "AgentPrompt",
    "AgentRequest",
    "AreaContextItem",
    "CanvasAgent",
    "ChatHistoryItem",
    "ContextItem",
    "ContinuationHistoryItem",
    "PointContextItem",
    "PromptHistoryItem",
    "ProviderSessionState",
    "SessionStateStore",
    "ShapeContextItem",
    "ShapesContextItem",
    "StreamingAgent",
    "TodoItem",
    "TodoList",
    "build_messages",
    "default_action_utils",
]
