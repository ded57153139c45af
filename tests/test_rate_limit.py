"""Tests for rate-limit detection and cancellable retry/backoff."""

from __future__ import annotations

import asyncio

import pytest

from canvasagent.ai.errors import RequestCancelledError
from canvasagent.ai.providers.rate_limit import (
    compute_retry_delay,
    extract_retry_delay,
    is_rate_limit_error,
    rate_limit_message,
    sleep,
    with_retry,
    with_stream_retry,
)

from helpers import FakeStream, StatusError


# =============================================================================
# Classification
# =============================================================================


class TestIsRateLimitError:
    @pytest.mark.parametrize(
        "error",
        [
            StatusError("boom", 429),
            Exception("HTTP 429 returned"),
            Exception("Rate limit reached for requests"),
            Exception("rate_limit_error"),
            Exception("Too Many Requests"),
            Exception("Quota exceeded for metric"),
            Exception("You exceeded your current quota"),
        ],
    )
    def test_detects_rate_limits(self, error):
        assert is_rate_limit_error(error) is True

    def test_ignores_other_errors(self):
        assert is_rate_limit_error(ValueError("bad request")) is False
        assert is_rate_limit_error(StatusError("server", 500)) is False

    def test_cancellation_is_never_a_rate_limit(self):
        assert is_rate_limit_error(RequestCancelledError("429")) is False


class TestExtractRetryDelay:
    def test_retry_in_seconds_rounds_up(self):
        assert extract_retry_delay("Please retry in 48.704091131s.") == 48705

    def test_retry_delay_field(self):
        assert extract_retry_delay('{"retryDelay": "48s"}') == 48000

    def test_retry_after_header(self):
        assert extract_retry_delay("Retry-After: 30") == 30000

    def test_no_hint(self):
        assert extract_retry_delay("rate limited") is None

    @pytest.mark.parametrize(
        "message",
        ["Please retry in 0s.", '{"retryDelay": "0s"}', "Retry-After: 0"],
    )
    def test_zero_hint_is_ignored(self, message):
        assert extract_retry_delay(message) is None

    def test_zero_hint_falls_through_to_next_pattern(self):
        assert extract_retry_delay('retry in 0s {"retryDelay": "3s"}') == 3000


class TestComputeRetryDelay:
    def test_exponential_backoff_without_hint(self):
        error = StatusError("Too many requests", 429)
        assert compute_retry_delay(error, 0) == 1000
        assert compute_retry_delay(error, 2) == 4000

    def test_backoff_is_capped(self):
        error = StatusError("Too many requests", 429)
        assert compute_retry_delay(error, 10, base_delay_ms=1000, max_delay_ms=5000) == 5000

    def test_server_hint_wins_but_is_capped(self):
        error = Exception("429: retry in 2s")
        assert compute_retry_delay(error, 5) == 2000
        assert compute_retry_delay(Exception("retry in 120s"), 0, max_delay_ms=60_000) == 60_000

    def test_zero_hint_uses_backoff(self):
        error = Exception("429 Too Many Requests. Please retry in 0s.")
        assert compute_retry_delay(error, 2) == 4000


def test_rate_limit_message_includes_delay_when_known():
    assert rate_limit_message(Exception("retry in 48.2s")) == (
        "Rate limit exceeded (retry after 49s). Please try again later."
    )
    assert rate_limit_message(Exception("429")) == "Rate limit exceeded. Please try again later."


# =============================================================================
# sleep / with_retry
# =============================================================================


class TestSleep:
    @pytest.mark.asyncio
    async def test_sleep_completes_without_token(self):
        await sleep(1)

    @pytest.mark.asyncio
    async def test_sleep_raises_when_already_cancelled(self, token):
        token.cancel()
        with pytest.raises(RequestCancelledError):
            await sleep(10_000, token)

    @pytest.mark.asyncio
    async def test_cancel_interrupts_sleep(self, token):
        task = asyncio.create_task(sleep(10_000, token))
        await asyncio.sleep(0.01)
        token.cancel()
        with pytest.raises(RequestCancelledError):
            await asyncio.wait_for(task, 1)


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_returns_result_without_retrying(self):
        calls = 0

        async def fn():
            nonlocal calls
            calls += 1
            return "ok"

        assert await with_retry(fn) == "ok"
        assert calls == 1

    @pytest.mark.asyncio
    async def test_retries_rate_limits_then_reraises(self):
        calls = 0
        retries: list[tuple[int, int]] = []
        error = StatusError("Too many requests", 429)

        async def fn():
            nonlocal calls
            calls += 1
            raise error

        with pytest.raises(StatusError) as excinfo:
            await with_retry(
                fn,
                max_retries=3,
                base_delay_ms=1,
                on_retry=lambda attempt, delay, exc: retries.append((attempt, delay)),
            )

        assert excinfo.value is error
        assert calls == 4
        assert [attempt for attempt, _ in retries] == [1, 2, 3]
        assert [delay for _, delay in retries] == [1, 2, 4]

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_rate_limit(self):
        outcomes = [StatusError("rate limit", 429), "done"]

        async def fn():
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        assert await with_retry(fn, base_delay_ms=1) == "done"

    @pytest.mark.asyncio
    async def test_other_errors_propagate_immediately(self):
        calls = 0

        async def fn():
            nonlocal calls
            calls += 1
            raise ValueError("bad request")

        with pytest.raises(ValueError):
            await with_retry(fn, base_delay_ms=1)
        assert calls == 1

    @pytest.mark.asyncio
    async def test_cancelled_token_skips_the_call(self, token):
        called = False

        async def fn():
            nonlocal called
            called = True

        token.cancel()
        with pytest.raises(RequestCancelledError):
            await with_retry(fn, token=token)
        assert called is False

    @pytest.mark.asyncio
    async def test_cancellation_interrupts_backoff(self, token):
        calls = 0

        async def fn():
            nonlocal calls
            calls += 1
            raise StatusError("Too many requests", 429)

        task = asyncio.create_task(with_retry(fn, base_delay_ms=10_000, token=token))
        await asyncio.sleep(0.05)
        token.cancel()

        with pytest.raises(RequestCancelledError):
            await asyncio.wait_for(task, 1)
        assert calls == 1

    @pytest.mark.asyncio
    async def test_stream_retry_only_wraps_creation(self):
        stream = FakeStream([1, 2], error=StatusError("Too many requests", 429))
        attempts = 0

        async def create():
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise StatusError("Too many requests", 429)
            return stream

        opened = await with_stream_retry(create, base_delay_ms=1)
        assert opened is stream
        assert attempts == 2

        seen = []
        with pytest.raises(StatusError):
            async for item in opened:
                seen.append(item)
        assert seen == [1, 2]
        assert attempts == 2
