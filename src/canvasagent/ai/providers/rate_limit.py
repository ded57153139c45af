"""Rate-limit detection and cancellable exponential backoff."""

from __future__ import annotations

import asyncio
import functools
import logging
import math
import re
from typing import Any, AsyncIterable, Awaitable, Callable, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from ..cancellation import CancellationToken
from ..errors import RequestCancelledError

__all__ = [
    "DEFAULT_BASE_DELAY_MS",
    "DEFAULT_MAX_DELAY_MS",
    "DEFAULT_MAX_RETRIES",
    "compute_retry_delay",
    "error_status",
    "extract_retry_delay",
    "is_rate_limit_error",
    "rate_limit_message",
    "sleep",
    "with_retry",
    "with_stream_retry",
]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
RetryCallback = Callable[[int, int, BaseException], None]

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_MS = 1000
DEFAULT_MAX_DELAY_MS = 60_000

_RATE_LIMIT_PATTERNS = (
    re.compile(r"429"),
    re.compile(r"rate.?limit", re.IGNORECASE),
    re.compile(r"too.?many.?requests", re.IGNORECASE),
    re.compile(r"quota.?exceeded", re.IGNORECASE),
    re.compile(r"exceeded.*quota", re.IGNORECASE),
)
_RETRY_IN_PATTERN = re.compile(r"retry\s+in\s+([\d.]+)s", re.IGNORECASE)
_RETRY_DELAY_PATTERN = re.compile(r'"retryDelay"\s*:\s*"([\d.]+)s?"', re.IGNORECASE)
_RETRY_AFTER_PATTERN = re.compile(r"Retry-After[:\s]+(\d+)", re.IGNORECASE)


# -----------------------------------------------------------------------------
# Classification
# -----------------------------------------------------------------------------

def error_status(error: BaseException) -> int | None:
    """Best-effort HTTP status for SDK exceptions of any vendor."""

    for attribute in ("status_code", "status", "code"):
        value = getattr(error, attribute, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def is_rate_limit_error(error: BaseException) -> bool:
    """Return ``True`` when ``error`` looks like a 429 or quota failure."""

    if isinstance(error, RequestCancelledError):
        return False
    if error_status(error) == 429:
        return True
    message = str(error)
    return any(pattern.search(message) for pattern in _RATE_LIMIT_PATTERNS)


def _parse_seconds(raw: str) -> float | None:
    try:
        return float(raw)
    except ValueError:
        return None


def extract_retry_delay(message: str) -> int | None:
    """Pull a server-suggested retry delay (milliseconds) out of an error message.

    Patterns are tried in order; a hint of zero seconds or less is skipped so
    the caller falls back to the next pattern or to exponential backoff.
    """

    for pattern in (_RETRY_IN_PATTERN, _RETRY_DELAY_PATTERN, _RETRY_AFTER_PATTERN):
        match = pattern.search(message)
        if not match:
            continue
        seconds = _parse_seconds(match.group(1))
        if seconds is not None and seconds > 0:
            return math.ceil(seconds * 1000)
    return None


def compute_retry_delay(
    error: BaseException,
    attempt: int,
    *,
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
    max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
) -> int:
    """Delay before retry number ``attempt + 1`` (``attempt`` is zero-based)."""

    delay = extract_retry_delay(str(error))
    if delay is None:
        delay = min(base_delay_ms * (2**attempt), max_delay_ms)
    return min(delay, max_delay_ms)


def rate_limit_message(error: BaseException) -> str:
    """User-facing message for a rate limit hit after the stream started."""

    delay = extract_retry_delay(str(error))
    hint = f" (retry after {math.ceil(delay / 1000)}s)" if delay is not None else ""
    return f"Rate limit exceeded{hint}. Please try again later."


# -----------------------------------------------------------------------------
# Waiting and retrying
# -----------------------------------------------------------------------------

async def sleep(delay_ms: float, token: CancellationToken | None = None) -> None:
    """Sleep for ``delay_ms``; raise :class:`RequestCancelledError` if cancelled."""

    if token is None:
        await asyncio.sleep(max(0.0, delay_ms) / 1000)
        return
    token.raise_if_cancelled()
    if await token.wait(max(0.0, delay_ms) / 1000):
        token.raise_if_cancelled()


async def _sleep_seconds(seconds: float, *, token: CancellationToken | None) -> None:
    await sleep(seconds * 1000, token)


def _retry_wait(base_delay_ms: int, max_delay_ms: int) -> Callable[[RetryCallState], float]:
    def _wait(retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        if error is None:  # pragma: no cover - only exceptions are retried
            return 0.0
        attempt = retry_state.attempt_number - 1
        delay_ms = compute_retry_delay(
            error, attempt, base_delay_ms=base_delay_ms, max_delay_ms=max_delay_ms
        )
        return delay_ms / 1000

    return _wait


def _before_sleep(on_retry: RetryCallback | None) -> Callable[[RetryCallState], None]:
    def _log(retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        if error is None:  # pragma: no cover - only exceptions are retried
            return
        delay_ms = int(round((retry_state.next_action.sleep if retry_state.next_action else 0) * 1000))
        LOGGER.warning(
            "Rate limited (attempt %s), retrying in %sms: %s",
            retry_state.attempt_number,
            delay_ms,
            error,
        )
        if on_retry is not None:
            on_retry(retry_state.attempt_number, delay_ms, error)

    return _log


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
    max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
    token: CancellationToken | None = None,
    on_retry: RetryCallback | None = None,
) -> T:
    """Call ``fn`` and retry rate-limit failures with exponential backoff.

    Only rate-limit errors are retried; anything else propagates from the first
    attempt. After ``max_retries`` retries the last error is re-raised as-is.
    Cancellation is checked before every attempt and interrupts backoff waits.
    """

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(0, max_retries) + 1),
        wait=_retry_wait(base_delay_ms, max_delay_ms),
        retry=retry_if_exception(is_rate_limit_error),
        before_sleep=_before_sleep(on_retry),
        sleep=functools.partial(_sleep_seconds, token=token),
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            if token is not None:
                token.raise_if_cancelled()
            try:
                return await fn()
            except RequestCancelledError:
                raise
            except Exception as exc:
                if token is not None and token.cancelled:
                    raise RequestCancelledError(token.reason or str(exc)) from exc
                raise
    raise AssertionError("unreachable")  # pragma: no cover


async def with_stream_retry(
    create: Callable[[], Awaitable[AsyncIterable[Any]]],
    **retry_options: Any,
) -> AsyncIterable[Any]:
    """Open a stream with :func:`with_retry`; failures after opening are not retried."""

    return await with_retry(create, **retry_options)
