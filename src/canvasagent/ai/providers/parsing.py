"""Incremental parsing of a streamed ``{"actions": [...]}`` document.

Models emit the action document token by token. :func:`close_and_parse_json`
speculatively closes whatever strings and containers are still open so the
partial buffer can be parsed, and :class:`ActionStreamAssembler` turns the
sequence of partial parses into emissions that follow a one-behind completion
rule: an action is only known to be finished once its next sibling appears, the
document closes, or the stream ends.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Optional

from ..ai_types import CacheMetrics, StreamingAction

__all__ = [
    "ActionStreamAssembler",
    "close_and_parse_json",
    "parse_action_buffer",
    "repair_json",
]

LOGGER = logging.getLogger(__name__)

ParsedActions = tuple[Optional[list[Any]], bool]
"""Raw actions found in a buffer plus whether the document is already closed."""

ActionExtractor = Callable[[str], ParsedActions]

_NORMAL = 0
_IN_STRING = 1
_ESCAPE_PENDING = 2
_CLOSERS = {"{": "}", "[": "]"}


def repair_json(buffer: str) -> tuple[str, bool]:
    """Close open strings and containers in ``buffer``.

    Returns the repaired text and whether any repair was necessary. Containers
    are closed innermost first.
    """

    state = _NORMAL
    stack: list[str] = []
    for char in buffer:
        if state == _ESCAPE_PENDING:
            state = _IN_STRING
        elif state == _IN_STRING:
            if char == "\\":
                state = _ESCAPE_PENDING
            elif char == '"':
                state = _NORMAL
        elif char == '"':
            state = _IN_STRING
        elif char in _CLOSERS:
            stack.append(_CLOSERS[char])
        elif char in "}]":
            if stack and stack[-1] == char:
                stack.pop()

    if state == _NORMAL and not stack:
        return buffer, False

    repaired = buffer
    if state == _ESCAPE_PENDING:
        # a lone trailing backslash would escape the quote appended below
        repaired = repaired[:-1]
    if state != _NORMAL:
        repaired += '"'
    repaired += "".join(reversed(stack))
    return repaired, True


def _load_actions_document(text: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(text)
    except (ValueError, RecursionError):
        return None
    if isinstance(parsed, dict) and isinstance(parsed.get("actions"), list):
        return parsed
    return None


def close_and_parse_json(buffer: str) -> dict[str, Any] | None:
    """Repair a truncated JSON object and parse it.

    Returns the parsed object when it carries an ``actions`` list, otherwise
    ``None``. Never raises.
    """

    if not buffer or not buffer.strip():
        return None
    repaired, _ = repair_json(buffer)
    return _load_actions_document(repaired)


def parse_action_buffer(buffer: str) -> ParsedActions:
    """Default extractor: the ``actions`` array plus a closed-document flag."""

    if not buffer or not buffer.strip():
        return None, False
    repaired, was_repaired = repair_json(buffer)
    parsed = _load_actions_document(repaired)
    if parsed is None:
        return None, False
    return parsed["actions"], not was_repaired


class ActionStreamAssembler:
    """Track the cursor/pending state for one streamed response.

    Args:
        prefix: Text already considered part of the buffer before any chunk
            arrives (used for assistant prefill).
        extract: Callable turning the accumulated buffer into raw actions and
            a flag telling whether the document can no longer grow.
    """

    def __init__(self, prefix: str = "", *, extract: ActionExtractor = parse_action_buffer) -> None:
        self._buffer = prefix
        self._extract = extract
        self._cursor = 0
        self._pending: dict[str, Any] | None = None
        self._started_at: float | None = None

    @property
    def buffer(self) -> str:
        return self._buffer

    @property
    def finalized_count(self) -> int:
        return self._cursor

    @property
    def pending(self) -> dict[str, Any] | None:
        return self._pending

    def feed(self, text: str) -> list[StreamingAction]:
        """Append ``text`` and return the emissions it unlocks, in order."""

        if not text:
            return []
        self._buffer += text
        raw, closed = self._extract(self._buffer)
        if not raw:
            return []
        actions = [item for item in raw if isinstance(item, dict)]
        if len(actions) <= self._cursor:
            return []

        emitted: list[StreamingAction] = []
        while self._cursor < len(actions) - 1:
            emitted.append(self._emit(actions[self._cursor], complete=True))
            self._pending = None
            self._started_at = None
            self._cursor += 1

        if self._started_at is None:
            self._started_at = time.monotonic()
        self._pending = actions[-1]
        if not closed:
            emitted.append(self._emit(self._pending, complete=False))
        # a closed document cannot grow; the trailing action is finalized by
        # finish() so it can carry the end-of-stream metadata
        return emitted

    def finish(
        self,
        *,
        response_id: str | None = None,
        cache_metrics: CacheMetrics | None = None,
    ) -> StreamingAction | None:
        """Finalize the trailing action, attaching end-of-stream metadata."""

        if self._pending is None:
            return None
        action = self._emit(self._pending, complete=True)
        action.response_id = response_id
        action.cache_metrics = cache_metrics
        self._pending = None
        self._started_at = None
        self._cursor += 1
        return action

    def _emit(self, payload: dict[str, Any], *, complete: bool) -> StreamingAction:
        started = self._started_at if self._started_at is not None else time.monotonic()
        elapsed = int((time.monotonic() - started) * 1000)
        return StreamingAction(payload=dict(payload), complete=complete, time_ms=elapsed)
