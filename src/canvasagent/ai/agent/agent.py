"""Request/action orchestrator driving one canvas agent."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from dataclasses import replace
from typing import Any, Awaitable, Callable, Iterable, Sequence

from ...document import CanvasDocument, RecordsDiff, Rect
from ...services.settings import AISettings
from ..ai_types import CacheMetrics, StreamingAction
from ..cancellation import CancellationToken
from ..errors import RequestCancelledError
from ..models import DEFAULT_MODEL_NAME, get_model_definition
from .messages import AgentPrompt
from .actions import ActionContext, ActionUtilRegistry, AgentActionUtil
from .context import ContextItem, ShapesContextItem, context_items_equal, dedupe_shapes_item
from .history import (
    Acceptance,
    ActionHistoryItem,
    ChatHistoryItem,
    ContinuationHistoryItem,
    PromptHistoryItem,
)
from .request import AgentInput, AgentRequest, merge_scheduled_request, partial_request_from_input
from .session import ProviderSessionState, SessionStateStore
from .stream_agent import StreamingAgent
from .todos import TodoItem, TodoList

__all__ = ["CanvasAgent", "DEFAULT_MAX_CONTINUATIONS"]

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_CONTINUATIONS = 25

ErrorCallback = Callable[[BaseException], None]
ActionCallback = Callable[[StreamingAction, RecordsDiff], None]


class CanvasAgent:
    """Owns the conversation with the model and applies its actions to a document.

    At most one request streams at a time. Each streamed action is applied as
    it arrives; an incomplete action's diff is kept provisional and reverted
    before the next emission of that action is applied.

    Args:
        document: Host document the actions are applied to.
        get_settings: Returns the settings snapshot used for each request.
        on_error: Receives any terminal, non-cancellation failure.
        on_action: Called once per completed action with the diff it produced.
        on_thinking: Receives reasoning text from providers that stream it.
        streaming_agent: Facade used to reach the providers.
        action_utils: Action handlers; defaults to the built-in set.
        model_name: Model used when a request does not name one.
        max_continuations: Upper bound on automatic follow-up requests issued
            by a single :meth:`prompt` call.
    """

    def __init__(
        self,
        document: CanvasDocument,
        *,
        get_settings: Callable[[], AISettings],
        on_error: ErrorCallback | None = None,
        on_action: ActionCallback | None = None,
        on_thinking: Callable[[str], None] | None = None,
        streaming_agent: StreamingAgent | None = None,
        action_utils: Iterable[AgentActionUtil] | None = None,
        model_name: str = DEFAULT_MODEL_NAME,
        max_continuations: int = DEFAULT_MAX_CONTINUATIONS,
    ) -> None:
        self._document = document
        self._get_settings = get_settings
        self._on_error = on_error
        self._on_action = on_action
        self._on_thinking = on_thinking
        self._streaming_agent = streaming_agent or StreamingAgent()
        self._utils = ActionUtilRegistry(action_utils)
        self.model_name = model_name
        self._max_continuations = max(0, max_continuations)

        self._active_request: AgentRequest | None = None
        self._scheduled_request: AgentRequest | None = None
        self._chat_history: list[ChatHistoryItem] = []
        self._chat_origin: Rect = document.get_viewport_bounds()
        self._todos = TodoList()
        self._context_items: list[ContextItem] = []
        self._session = SessionStateStore()

        self._active_task: asyncio.Task[bool] | None = None
        self._cancel_token: CancellationToken | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def document(self) -> CanvasDocument:
        return self._document

    @property
    def active_request(self) -> AgentRequest | None:
        return self._active_request

    @property
    def scheduled_request(self) -> AgentRequest | None:
        return self._scheduled_request

    @property
    def chat_history(self) -> list[ChatHistoryItem]:
        return list(self._chat_history)

    @property
    def chat_origin(self) -> Rect:
        return self._chat_origin

    @property
    def todo_list(self) -> list[TodoItem]:
        return self._todos.items

    @property
    def context_items(self) -> list[ContextItem]:
        return list(self._context_items)

    @property
    def action_utils(self) -> ActionUtilRegistry:
        return self._utils

    def is_generating(self) -> bool:
        return self._active_request is not None

    # ------------------------------------------------------------------
    # Request construction
    # ------------------------------------------------------------------

    def get_full_request_from_input(self, value: AgentInput) -> AgentRequest:
        """Fill in a partial input with defaults from the active request and document."""

        partial = partial_request_from_input(value)
        active = self._active_request
        bounds = partial.get("bounds") or (active.bounds if active else None) or self._document.get_viewport_bounds()
        model_name = partial.get("model_name") or (active.model_name if active else None) or self.model_name
        return AgentRequest(
            type=partial.get("type", "user"),
            messages=tuple(partial.get("messages", ())),
            context_items=tuple(partial.get("context_items", ())),
            selected_shapes=tuple(partial.get("selected_shapes", ())),
            data=tuple(partial.get("data", ())),
            bounds=bounds,
            model_name=model_name,
        )

    def prepare_prompt(self, request: AgentRequest) -> AgentPrompt:
        return AgentPrompt(
            request=request,
            history=list(self._chat_history),
            todos=self._todos.items,
            viewport=self._document.get_viewport_bounds(),
            action_prompts=self._utils.system_prompts(),
            action_schemas=self._utils.schemas(),
        )

    # ------------------------------------------------------------------
    # Prompting and scheduling
    # ------------------------------------------------------------------

    async def prompt(self, value: AgentInput) -> bool:
        """Run a request, then keep going while work is scheduled or todos remain.

        Returns ``True`` when the chain stopped because a request was cancelled.
        """

        request = self.get_full_request_from_input(value)
        continuations = 0
        while True:
            if await self.request(request):
                return True

            scheduled = self._scheduled_request
            if scheduled is None:
                remaining = self._todos.remaining()
                if not remaining:
                    return False
                LOGGER.debug("%s todo items remain, continuing", len(remaining))
                scheduled = request.with_type("todo")

            if continuations >= self._max_continuations:
                LOGGER.warning("Stopping after %s continuation requests", continuations)
                self._scheduled_request = None
                return False
            continuations += 1

            data = await self._resolve_data(scheduled.data)
            self._chat_history.append(ContinuationHistoryItem(data=data))
            self._scheduled_request = None
            request = self.get_full_request_from_input(replace(scheduled, data=tuple(data)))

    @staticmethod
    async def _resolve_data(data: Sequence[Any]) -> list[Any]:
        async def _resolve(item: Any) -> Any:
            return await item if inspect.isawaitable(item) else item

        return list(await asyncio.gather(*(_resolve(item) for item in data)))

    def schedule(self, value: AgentInput) -> None:
        """Queue work for after the current request, merging with anything queued."""

        if self._scheduled_request is None:
            self.set_scheduled_request(value)
            return
        self._scheduled_request = merge_scheduled_request(self._scheduled_request, value)

    def set_scheduled_request(self, value: AgentInput | None) -> None:
        if value is None:
            self._scheduled_request = None
            return
        self._scheduled_request = self.get_full_request_from_input(value).with_type("schedule")

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def request(self, value: AgentInput) -> bool:
        """Stream a single request and apply its actions; return ``True`` if cancelled."""

        request = self.get_full_request_from_input(value)
        if self._active_request is not None:
            self.cancel()
        self._active_request = request

        token = CancellationToken()
        self._cancel_token = token
        task = asyncio.create_task(self._run_request(request, token))
        self._active_task = task
        try:
            return await task
        except asyncio.CancelledError:
            if token.cancelled:
                return True
            token.cancel()
            raise
        finally:
            if self._active_task is task:
                self._active_task = None
                self._cancel_token = None
                self._active_request = None

    async def _run_request(self, request: AgentRequest, token: CancellationToken) -> bool:
        settings = replace(self._get_settings(), provider_session_state=self._session.get())
        prompt = self.prepare_prompt(request)
        if request.type == "user":
            self._chat_history.append(
                PromptHistoryItem(
                    message="\n".join(request.messages),
                    context_items=request.context_items,
                    selected_shapes=request.selected_shapes,
                )
            )

        provider = get_model_definition(request.model_name).provider
        context = ActionContext(agent=self, document=self._document, request=request)
        incomplete_diff: RecordsDiff | None = None
        side_effects: list[Awaitable[Any]] = []
        response_id: str | None = None
        cache_metrics: CacheMetrics | None = None

        try:
            stream = self._streaming_agent.stream(
                prompt,
                settings=settings,
                token=token,
                model_name=request.model_name,
                on_thinking=self._on_thinking,
            )
            # closed on break so the provider releases its HTTP response right away
            async with contextlib.aclosing(stream) as actions:
                async for action in actions:
                    if token.cancelled:
                        break
                    if action.complete:
                        response_id = action.response_id or response_id
                        cache_metrics = action.cache_metrics or cache_metrics

                    util = self._utils.get(action.type)
                    sanitized = util.sanitize_action(action, context)
                    if incomplete_diff is not None:
                        self._document.apply_inverse_diff(incomplete_diff)
                        incomplete_diff = None
                    if sanitized is None:
                        self._drop_incomplete_history()
                        continue

                    diff, side_effect = self.act(sanitized, context)
                    if side_effect is not None:
                        side_effects.append(side_effect)
                    if not sanitized.complete:
                        incomplete_diff = diff

            if side_effects:
                await asyncio.gather(*side_effects)
            if token.cancelled:
                return True
            if response_id is not None or cache_metrics is not None:
                self.update_session_state(provider, response_id=response_id, cache_metrics=cache_metrics)
            return False
        except RequestCancelledError:
            return True
        except Exception as exc:
            if token.cancelled:
                return True
            LOGGER.error("Agent request failed: %s", exc, exc_info=True)
            self._report_error(exc)
            return False

    def _report_error(self, error: BaseException) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error(error)
        except Exception:  # pragma: no cover - host callback failure
            LOGGER.debug("on_error callback raised", exc_info=True)

    # ------------------------------------------------------------------
    # Action application
    # ------------------------------------------------------------------

    def act(
        self,
        action: StreamingAction,
        context: ActionContext | None = None,
    ) -> tuple[RecordsDiff, Awaitable[Any] | None]:
        """Apply ``action`` through its util and record it in chat history."""

        context = context or ActionContext(agent=self, document=self._document, request=self._active_request)
        util = self._utils.get(action.type)
        results: list[Awaitable[Any] | None] = []
        diff = self._document.extract_diff(lambda: results.append(util.apply_action(action, context)))
        side_effect = results[0] if results else None

        if util.saves_to_history:
            item = ActionHistoryItem(action=action, diff=diff)
            last = self._chat_history[-1] if self._chat_history else None
            if isinstance(last, ActionHistoryItem) and not last.complete:
                self._chat_history[-1] = item
            else:
                self._chat_history.append(item)

        if action.complete and self._on_action is not None:
            self._on_action(action, diff)
        return diff, side_effect

    def _drop_incomplete_history(self) -> None:
        last = self._chat_history[-1] if self._chat_history else None
        if isinstance(last, ActionHistoryItem) and not last.complete:
            self._chat_history.pop()

    def accept_action(self, item: ActionHistoryItem) -> None:
        if item.acceptance is Acceptance.REJECTED:
            self._document.apply_diff(item.diff)
        item.acceptance = Acceptance.ACCEPTED

    def reject_action(self, item: ActionHistoryItem) -> None:
        if item.acceptance is not Acceptance.REJECTED:
            self._document.apply_inverse_diff(item.diff)
        item.acceptance = Acceptance.REJECTED

    # ------------------------------------------------------------------
    # Cancellation and reset
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Abort the active request and drop any scheduled one. Idempotent."""

        token = self._cancel_token
        if token is not None:
            token.cancel()
        task = self._active_task
        if task is not None and not task.done():
            LOGGER.debug("Cancelling active agent request")
            task.cancel()
        self._active_request = None
        self._scheduled_request = None

    def reset(self) -> None:
        """Cancel and start a fresh conversation."""

        self.cancel()
        self._context_items.clear()
        self._todos.clear()
        self._session.reset()
        self._chat_history.clear()
        self._chat_origin = self._document.get_viewport_bounds()

    async def aclose(self) -> None:
        task = self._active_task
        self.cancel()
        if task is not None and not task.done():
            with contextlib.suppress(asyncio.CancelledError):
                await task

    # ------------------------------------------------------------------
    # Todos
    # ------------------------------------------------------------------

    def add_todo(self, text: str) -> TodoItem:
        return self._todos.add(text)

    def update_todo(self, item_id: int | None, *, text: str | None = None, status: str | None = None) -> TodoItem:
        return self._todos.upsert(item_id, text=text, status=status)

    # ------------------------------------------------------------------
    # Context items
    # ------------------------------------------------------------------

    def add_to_context(self, item: ContextItem) -> None:
        if isinstance(item, ShapesContextItem):
            self._context_items.extend(dedupe_shapes_item(item, self._context_items))
            return
        if self.has_context_item(item):
            return
        self._context_items.append(item)

    def remove_from_context(self, item: ContextItem) -> None:
        self._context_items = [existing for existing in self._context_items if existing is not item]

    def has_context_item(self, item: ContextItem) -> bool:
        """True when ``item`` is in context on its own or inside a shapes group."""

        if any(context_items_equal(existing, item) for existing in self._context_items):
            return True
        if item.type == "shape":
            target = getattr(item, "shape_id", None)
            return any(
                isinstance(existing, ShapesContextItem) and target in existing.shape_ids
                for existing in self._context_items
            )
        return False

    # ------------------------------------------------------------------
    # Session state
    # ------------------------------------------------------------------

    def get_session_state(self) -> ProviderSessionState:
        return self._session.get()

    def update_session_state(
        self,
        provider: str,
        *,
        response_id: str | None = None,
        cache_metrics: CacheMetrics | None = None,
    ) -> None:
        self._session.update(provider, response_id=response_id, cache_metrics=cache_metrics)
