"""Tests for the CanvasAgent request/action orchestrator."""

from __future__ import annotations

import asyncio
import logging

import pytest

from canvasagent.ai.agent.actions import AgentActionUtil, UnknownActionUtil
from canvasagent.ai.agent.agent import CanvasAgent
from canvasagent.ai.agent.context import ShapeContextItem, ShapesContextItem
from canvasagent.ai.agent.history import (
    Acceptance,
    ActionHistoryItem,
    ContinuationHistoryItem,
    PromptHistoryItem,
)
from canvasagent.ai.agent.stream_agent import StreamingAgent
from canvasagent.ai.ai_types import CacheMetrics, TextContent
from canvasagent.ai.errors import AIError, AIErrorType
from canvasagent.ai.providers.factory import ProviderRegistry
from canvasagent.document import Rect
from canvasagent.services.settings import AISettings

from helpers import ScriptedProvider, action


class _BlockingProvider(ScriptedProvider):
    """Emits one incomplete action on its first request, then waits for cancellation."""

    def __init__(self, *scripts):
        super().__init__(*scripts)
        self.started = asyncio.Event()
        self.block_next = True

    async def _stream(self, options):
        if not self.block_next:
            async for item in super()._stream(options):
                yield item
            return
        self.block_next = False
        self.options.append(options)
        yield action({"_type": "message", "text": "wor"}, complete=False)
        self.started.set()
        await options.token.wait()
        options.token.raise_if_cancelled()


class _CancellingProvider(ScriptedProvider):
    """Cancels the request after its first action and records when it is closed."""

    def __init__(self):
        super().__init__()
        self.closed = False
        self.resumed = False

    async def _stream(self, options):
        self.options.append(options)
        try:
            options.token.cancel()
            yield action({"_type": "message", "text": "wor"}, complete=False)
            self.resumed = True
            yield action({"_type": "message", "text": "world"})
        finally:
            self.closed = True


def _make_agent(document, settings, provider, **kwargs) -> CanvasAgent:
    registry = ProviderRegistry({"anthropic": lambda: provider, "openai": lambda: provider})
    return CanvasAgent(
        document,
        get_settings=lambda: settings,
        streaming_agent=StreamingAgent(registry),
        **kwargs,
    )


def _last_user_texts(options) -> list[str]:
    content = options.messages[-1].content
    return [part.text for part in content if isinstance(part, TextContent)]


# =============================================================================
# Streaming application
# =============================================================================


class TestProvisionalActions:
    @pytest.mark.asyncio
    async def test_incomplete_emissions_are_replaced(self, document, settings):
        completed = []
        provider = ScriptedProvider(
            [
                action({"_type": "create", "shape": {"id": "shape:b", "x": 0}}, complete=False),
                action({"_type": "create", "shape": {"id": "shape:b", "x": 5}}, complete=False),
                action({"_type": "create", "shape": {"id": "shape:b", "x": 10}}),
            ]
        )
        agent = _make_agent(
            document, settings, provider, on_action=lambda item, diff: completed.append((item.payload, diff))
        )

        cancelled = await agent.request("Draw a box")

        assert cancelled is False
        assert document.get_record("shape:b") == {"id": "shape:b", "x": 10}
        assert set(document.records) == {"shape:a", "shape:b"}
        history = agent.chat_history
        assert isinstance(history[0], PromptHistoryItem)
        assert history[0].message == "Draw a box"
        assert len(history) == 2
        assert isinstance(history[1], ActionHistoryItem)
        assert history[1].complete is True
        assert len(completed) == 1
        assert set(completed[0][1].added) == {"shape:b"}

    @pytest.mark.asyncio
    async def test_action_sanitized_away_reverts_provisional_change(self, document, settings):
        provider = ScriptedProvider(
            [
                action({"_type": "create", "shape": {"id": "shape:b"}}, complete=False),
                action({"_type": "create"}),
            ]
        )
        agent = _make_agent(document, settings, provider)

        await agent.request("Draw")

        assert document.get_record("shape:b") is None
        assert [item.type for item in agent.chat_history] == ["prompt"]

    @pytest.mark.asyncio
    async def test_unknown_actions_are_not_recorded(self, document, settings):
        provider = ScriptedProvider([action({"_type": "teleport"}), action({"text": "no type"})])
        agent = _make_agent(document, settings, provider)

        await agent.request("Go")

        assert [item.type for item in agent.chat_history] == ["prompt"]

    @pytest.mark.asyncio
    async def test_side_effects_are_awaited_after_the_stream(self, document, settings):
        finished: list[str] = []

        class _SlowUtil(AgentActionUtil):
            type = "slow"
            saves_to_history = False

            def apply_action(self, item, context):
                if not item.complete:
                    return None

                async def _effect():
                    await asyncio.sleep(0)
                    finished.append(item.payload["name"])

                return _effect()

        provider = ScriptedProvider([action({"_type": "slow", "name": "a"}), action({"_type": "slow", "name": "b"})])
        agent = _make_agent(document, settings, provider, action_utils=[_SlowUtil(), UnknownActionUtil()])

        await agent.request("Go")

        assert sorted(finished) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_history_snapshot_excludes_current_prompt(self, document, settings):
        provider = ScriptedProvider([action({"_type": "message", "text": "hi"})], [])
        agent = _make_agent(document, settings, provider)

        await agent.request("First")
        await agent.request("Second")

        roles = [message.role for message in provider.options[1].messages]
        assert roles == ["user", "assistant", "user"]
        assert provider.options[1].messages[0].content == "First"
        assert _last_user_texts(provider.options[1])[0] == "Second"


# =============================================================================
# Errors
# =============================================================================


class TestErrors:
    @pytest.mark.asyncio
    async def test_provider_error_goes_to_on_error(self, document, settings, caplog):
        errors: list[BaseException] = []
        failure = AIError(type=AIErrorType.SERVER_ERROR, message="down", provider="anthropic")
        agent = _make_agent(document, settings, ScriptedProvider(failure), on_error=errors.append)

        with caplog.at_level(logging.ERROR):
            cancelled = await agent.request("Draw")

        assert cancelled is False
        assert errors == [failure]
        assert agent.is_generating() is False
        assert "Agent request failed" in caplog.text

    @pytest.mark.asyncio
    async def test_unexpected_error_is_normalized(self, document, settings):
        errors: list[BaseException] = []
        agent = _make_agent(document, settings, ScriptedProvider(RuntimeError("kaboom")), on_error=errors.append)

        await agent.request("Draw")

        assert isinstance(errors[0], AIError)
        assert errors[0].message == "kaboom"

    @pytest.mark.asyncio
    async def test_missing_api_key(self, document):
        errors: list[BaseException] = []
        provider = ScriptedProvider([])
        agent = _make_agent(document, AISettings(), provider, on_error=errors.append)

        await agent.request("Draw")

        assert errors[0].type is AIErrorType.INVALID_API_KEY
        assert provider.options == []


# =============================================================================
# Cancellation
# =============================================================================


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_returns_true_without_error(self, document, settings):
        errors: list[BaseException] = []
        provider = _BlockingProvider()
        agent = _make_agent(document, settings, provider, on_error=errors.append)

        task = asyncio.create_task(agent.request("Write"))
        await asyncio.wait_for(provider.started.wait(), 1)
        assert agent.is_generating() is True

        agent.cancel()
        agent.cancel()

        assert await asyncio.wait_for(task, 1) is True
        assert agent.is_generating() is False
        assert errors == []
        assert provider.options[0].token.cancelled is True

    def test_cancel_when_idle_clears_schedule(self, document, settings):
        agent = _make_agent(document, settings, ScriptedProvider())
        agent.schedule("later")

        agent.cancel()

        assert agent.scheduled_request is None

    @pytest.mark.asyncio
    async def test_new_request_cancels_active_one(self, document, settings):
        provider = _BlockingProvider([action({"_type": "message", "text": "second"})])
        agent = _make_agent(document, settings, provider)

        first = asyncio.create_task(agent.request("first"))
        await asyncio.wait_for(provider.started.wait(), 1)

        assert await agent.request("second") is False
        assert await asyncio.wait_for(first, 1) is True
        assert provider.options[0].token.cancelled is True
        assert provider.options[1].token.cancelled is False
        assert agent.is_generating() is False

    @pytest.mark.asyncio
    async def test_aclose_cancels_running_request(self, document, settings):
        provider = _BlockingProvider()
        agent = _make_agent(document, settings, provider)

        task = asyncio.create_task(agent.request("Write"))
        await asyncio.wait_for(provider.started.wait(), 1)
        await agent.aclose()

        assert await asyncio.wait_for(task, 1) is True

    @pytest.mark.asyncio
    async def test_provider_stream_is_closed_when_cancelled_mid_stream(self, document, settings):
        provider = _CancellingProvider()
        agent = _make_agent(document, settings, provider)

        assert await agent.request("Write") is True

        assert provider.closed is True
        assert provider.resumed is False


# =============================================================================
# Session state
# =============================================================================


class TestSessionState:
    @pytest.mark.asyncio
    async def test_response_id_feeds_next_request_until_reset(self, document, settings):
        provider = ScriptedProvider(
            [action({"_type": "message", "text": "a"}, response_id="resp_1")],
            [action({"_type": "message", "text": "b"}, response_id="resp_2")],
            [],
        )
        agent = _make_agent(document, settings, provider, model_name="gpt-4o")

        await agent.request("one")
        assert agent.get_session_state().previous_response_id == "resp_1"

        await agent.request("two")
        assert provider.options[1].previous_response_id == "resp_1"

        agent.reset()
        await agent.request("three")
        assert provider.options[2].previous_response_id is None

    @pytest.mark.asyncio
    async def test_anthropic_cache_metrics(self, document, settings):
        provider = ScriptedProvider([action({"_type": "message"}, cache_metrics=CacheMetrics(created=100, read=0))])
        agent = _make_agent(document, settings, provider)

        await agent.request("hi")

        assert agent.get_session_state().anthropic.cache_created is True


# =============================================================================
# Prompt continuation and scheduling
# =============================================================================


class TestPrompt:
    @pytest.mark.asyncio
    async def test_remaining_todos_trigger_follow_up(self, document, settings):
        provider = ScriptedProvider(
            [action({"_type": "update-todo-list", "text": "draw box", "status": "todo"})],
            [action({"_type": "update-todo-list", "id": 0, "status": "done"})],
        )
        agent = _make_agent(document, settings, provider)

        assert await agent.prompt("Plan and draw") is False

        assert len(provider.options) == 2
        assert _last_user_texts(provider.options[1])[0] == (
            "Continue working on the remaining items in your todo list."
        )
        assert [item.status for item in agent.todo_list] == ["done"]
        assert any(isinstance(item, ContinuationHistoryItem) for item in agent.chat_history)

    @pytest.mark.asyncio
    async def test_review_action_schedules_follow_up(self, document, settings):
        provider = ScriptedProvider(
            [action({"_type": "review", "intent": "alignment"})],
            [action({"_type": "message", "text": "looks good"})],
        )
        agent = _make_agent(document, settings, provider)

        await agent.prompt("Draw")

        assert len(provider.options) == 2
        assert "Review your work: alignment" in _last_user_texts(provider.options[1])
        assert agent.scheduled_request is None

    @pytest.mark.asyncio
    async def test_scheduled_data_is_resolved(self, document, settings):
        provider = ScriptedProvider([], [])
        agent = _make_agent(document, settings, provider)
        agent.schedule({"message": "use this", "data": [asyncio.sleep(0, result={"found": 1})]})

        await agent.prompt("Start")

        continuation = [item for item in agent.chat_history if isinstance(item, ContinuationHistoryItem)]
        assert continuation[0].data == [{"found": 1}]
        assert 'Data: {"found": 1}' in _last_user_texts(provider.options[1])

    @pytest.mark.asyncio
    async def test_continuations_are_bounded(self, document, settings, caplog):
        provider = ScriptedProvider()
        agent = _make_agent(document, settings, provider, max_continuations=2)
        agent.add_todo("never done")

        with caplog.at_level(logging.WARNING):
            await agent.prompt("Go")

        assert len(provider.options) == 3
        assert "Stopping after 2 continuation requests" in caplog.text

    @pytest.mark.asyncio
    async def test_cancelled_prompt_does_not_continue(self, document, settings):
        provider = _BlockingProvider()
        agent = _make_agent(document, settings, provider)
        agent.add_todo("pending")

        task = asyncio.create_task(agent.prompt("Go"))
        await asyncio.wait_for(provider.started.wait(), 1)
        agent.cancel()
        assert await asyncio.wait_for(task, 1) is True

        assert len(provider.options) == 1

    def test_schedule_merges(self, document, settings):
        agent = _make_agent(document, settings, ScriptedProvider())

        agent.schedule("a")
        agent.schedule({"messages": ["b"], "data": [1]})

        scheduled = agent.scheduled_request
        assert scheduled.type == "schedule"
        assert scheduled.messages == ("a", "b")
        assert scheduled.data == (1,)
        assert scheduled.bounds == document.get_viewport_bounds()

        agent.set_scheduled_request(None)
        assert agent.scheduled_request is None

    def test_full_request_defaults(self, document, settings):
        agent = _make_agent(document, settings, ScriptedProvider(), model_name="gpt-4o")
        request = agent.get_full_request_from_input({"message": "hi", "bounds": {"x": 1, "y": 1, "w": 2, "h": 2}})
        assert request.type == "user"
        assert request.model_name == "gpt-4o"
        assert request.bounds == Rect(1, 1, 2, 2)


# =============================================================================
# Review, reset, and context
# =============================================================================


class TestReview:
    @pytest.mark.asyncio
    async def test_reject_and_accept(self, document, settings):
        provider = ScriptedProvider([action({"_type": "create", "shape": {"id": "shape:b"}})])
        agent = _make_agent(document, settings, provider)
        await agent.request("Draw")
        item = agent.chat_history[-1]

        agent.reject_action(item)
        agent.reject_action(item)
        assert item.acceptance is Acceptance.REJECTED
        assert document.get_record("shape:b") is None

        agent.accept_action(item)
        assert item.acceptance is Acceptance.ACCEPTED
        assert document.get_record("shape:b") == {"id": "shape:b"}

    def test_act_outside_a_request(self, document, settings):
        agent = _make_agent(document, settings, ScriptedProvider())
        diff, side_effect = agent.act(action({"_type": "move", "shapeId": "shape:a", "x": 9}))
        assert side_effect is None
        assert diff.updated["shape:a"][1]["x"] == 9
        assert isinstance(agent.chat_history[-1], ActionHistoryItem)


class TestResetAndContext:
    @pytest.mark.asyncio
    async def test_reset_clears_conversation(self, document, settings):
        provider = ScriptedProvider([action({"_type": "message", "text": "hi"})])
        agent = _make_agent(document, settings, provider)
        await agent.request("hello")
        agent.add_todo("x")
        agent.add_to_context(ShapeContextItem({"shapeId": "shape:a"}))
        document.set_viewport_bounds(Rect(10, 10, 50, 50))

        agent.reset()

        assert agent.chat_history == []
        assert agent.todo_list == []
        assert agent.context_items == []
        assert agent.get_session_state().is_empty is True
        assert agent.chat_origin == Rect(10, 10, 50, 50)

    def test_context_deduplication(self, document, settings):
        agent = _make_agent(document, settings, ScriptedProvider())
        shape = ShapeContextItem({"shapeId": "a"})

        agent.add_to_context(shape)
        agent.add_to_context(ShapeContextItem({"shapeId": "a"}, source="agent"))
        agent.add_to_context(ShapesContextItem(({"shapeId": "a"}, {"shapeId": "b"}, {"shapeId": "c"})))

        items = agent.context_items
        assert len(items) == 2
        assert isinstance(items[1], ShapesContextItem)
        assert items[1].shape_ids == ["b", "c"]
        assert agent.has_context_item(ShapeContextItem({"shapeId": "c"})) is True

        agent.remove_from_context(shape)
        assert agent.has_context_item(shape) is False
