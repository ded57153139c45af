"""Cooperative cancellation shared across the request pipeline."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from .errors import CANCELLED_MESSAGE, RequestCancelledError

__all__ = ["CancellationToken"]

LOGGER = logging.getLogger(__name__)


class CancellationToken:
    """One-shot cancellation signal threaded through retries, sleeps, and streams.

    The token is created per request by the orchestrator and passed explicitly to
    every suspension point. Callbacks registered with :meth:`add_callback` run
    synchronously when the token fires so provider clients can tear down the
    network stream they own.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = CANCELLED_MESSAGE) -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:  # pragma: no cover - callbacks are best effort
                LOGGER.debug("Cancellation callback failed", exc_info=True)

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register ``callback`` to run on cancel; returns a remover."""

        if self._event.is_set():
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def _remove() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

        return _remove

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RequestCancelledError(self._reason or CANCELLED_MESSAGE)

    async def wait(self, timeout: float | None = None) -> bool:
        """Wait until cancelled or ``timeout`` seconds elapse; return ``cancelled``."""

        if timeout is not None and timeout <= 0:
            return self._event.is_set()
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True
