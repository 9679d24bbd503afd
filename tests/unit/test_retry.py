"""Unit tests for the retry helpers in ``roombot.engine.retry``.

Tests cover:
- Success on a later attempt logs one warning per failed attempt.
- Exhaustion returns the default and logs exactly one error.
- ``ConfigError`` / ``CredentialInvalidError`` propagate on first occurrence.
- Cancellation before the first attempt and during the delay.
- Custom failure predicates and the ``RetryPolicy`` wrapper.
"""

from __future__ import annotations

import asyncio
import logging

import pytest

from roombot.core.exceptions import (
    ConfigError,
    CredentialInvalidError,
    TransientTransportError,
)
from roombot.core.run_context import CancelToken
from roombot.engine.retry import RetryPolicy, retry_async, retry_bool, retry_optional

_RETRY_LOGGER = "roombot.engine.retry"


def _records(caplog: pytest.LogCaptureFixture, level: int) -> list[logging.LogRecord]:
    return [r for r in caplog.records if r.name == _RETRY_LOGGER and r.levelno == level]


class _Flaky:
    """Callable that fails *failures* times, then returns *value*."""

    def __init__(self, failures: int, value: object = "ok", *, exc: Exception | None = None):
        self.failures = failures
        self.value = value
        self.exc = exc or TransientTransportError("http", "timed out")
        self.calls = 0

    async def __call__(self) -> object:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return self.value


class TestRetryAsync:
    @pytest.mark.asyncio
    async def test_first_attempt_success_logs_nothing(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        op = _Flaky(0)
        assert await retry_async(op, "op", delay=0) == "ok"
        assert op.calls == 1
        assert _records(caplog, logging.WARNING) == []

    @pytest.mark.asyncio
    async def test_fails_twice_then_succeeds(self, caplog: pytest.LogCaptureFixture) -> None:
        op = _Flaky(2)

        result = await retry_async(op, "claim room R1", max_attempts=3, delay=0)

        assert result == "ok"
        assert op.calls == 3
        warnings = _records(caplog, logging.WARNING)
        assert len(warnings) == 2
        assert "attempt 1/3 failed" in warnings[0].getMessage()
        assert "TransientTransportError" in warnings[0].getMessage()
        assert _records(caplog, logging.ERROR) == []

    @pytest.mark.asyncio
    async def test_exhaustion_returns_default_with_one_error(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        op = _Flaky(99)

        result = await retry_async(op, "op", max_attempts=3, delay=0, default="fallback")

        assert result == "fallback"
        assert op.calls == 3
        assert len(_records(caplog, logging.WARNING)) == 3
        errors = _records(caplog, logging.ERROR)
        assert len(errors) == 1
        assert "all 3 attempts failed" in errors[0].getMessage()

    @pytest.mark.asyncio
    async def test_none_result_is_retried(self) -> None:
        results = iter([None, None, "id-7"])

        async def op() -> str | None:
            return next(results)

        assert await retry_optional(op, "resolve applicant", delay=0) == "id-7"

    @pytest.mark.asyncio
    async def test_custom_failure_predicate(self) -> None:
        results = iter([[], ["R1"]])
        calls = 0

        async def op() -> list[str]:
            nonlocal calls
            calls += 1
            return next(results)

        result = await retry_async(op, "resolve", delay=0, is_failure=lambda ids: not ids)
        assert result == ["R1"]
        assert calls == 2

    @pytest.mark.asyncio
    async def test_retry_bool_false_after_exhaustion(self) -> None:
        async def op() -> bool:
            return False

        assert await retry_bool(op, "check", max_attempts=2, delay=0) is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "exc",
        [ConfigError("bad config"), CredentialInvalidError("login page")],
    )
    async def test_fatal_errors_propagate_immediately(self, exc: Exception) -> None:
        op = _Flaky(99, exc=exc)
        with pytest.raises(type(exc)):
            await retry_async(op, "op", max_attempts=3, delay=0)
        assert op.calls == 1

    @pytest.mark.asyncio
    async def test_cancelled_before_first_attempt(self) -> None:
        token = CancelToken()
        token.cancel("user stop")
        op = _Flaky(0)

        assert await retry_async(op, "op", cancel=token, default="none") == "none"
        assert op.calls == 0

    @pytest.mark.asyncio
    async def test_cancel_interrupts_delay(self) -> None:
        token = CancelToken()
        op = _Flaky(99)
        asyncio.get_running_loop().call_later(0.05, token.cancel, "user stop")

        result = await asyncio.wait_for(
            retry_async(op, "op", max_attempts=5, delay=30, cancel=token, default="none"),
            timeout=5,
        )

        assert result == "none"
        assert op.calls == 1

    @pytest.mark.asyncio
    async def test_invalid_max_attempts(self) -> None:
        with pytest.raises(ValueError):
            await retry_async(_Flaky(0), "op", max_attempts=0)


class TestRetryPolicy:
    @pytest.mark.asyncio
    async def test_run_uses_policy_attempts(self) -> None:
        op = _Flaky(99)
        policy = RetryPolicy(max_attempts=2, delay_s=0)

        assert await policy.run(op, "op", default="x") == "x"
        assert op.calls == 2

    def test_defaults(self) -> None:
        policy = RetryPolicy()
        assert policy.max_attempts == 3
        assert policy.delay_s == pytest.approx(0.2)
