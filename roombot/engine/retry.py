"""Bounded, cancellable retry for engine operations.

Wraps :class:`tenacity.AsyncRetrying` with the semantics the selection
engine needs during the allocation window:

* **Fixed delay** between attempts (200 ms by default).
* **Two kinds of failure.**  A raised exception and a "no result" return value
  (``None`` or ``False`` by default) are both retried, and are logged with
  different wording so the log shows which one happened.
* **Never raises on exhaustion.**  After the last attempt one error line is
  logged and the caller's ``default`` is returned.
* **Fatal errors pass straight through.**  :class:`ConfigError` and
  :class:`CredentialInvalidError` are raised on the first occurrence.
* **Cancellation.**  A fired :class:`~roombot.core.run_context.CancelToken`
  stops the loop before the next attempt, including in the middle of the
  inter-attempt delay, and ``default`` is returned.

Typical usage::

    from roombot.engine.retry import retry_optional

    applicant_id = await retry_optional(
        lambda: transport.resolve_applicant(name),
        "resolve applicant",
        cancel=ctx.cancel,
    )
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    retry_if_result,
    stop_after_attempt,
    wait_fixed,
)

from roombot.core.exceptions import FATAL_ERRORS
from roombot.core.run_context import CancelToken

__all__ = [
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_DELAY_S",
    "RetryPolicy",
    "retry_async",
    "retry_optional",
    "retry_bool",
    "is_no_result",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")

#: Attempts per operation, including the first.
DEFAULT_MAX_ATTEMPTS: int = 3

#: Pause between attempts in seconds.
DEFAULT_DELAY_S: float = 0.2


class _RetryAborted(Exception):
    """Internal: raised from the sleep hook when the token fires mid-delay.

    Never escapes :func:`retry_async`.
    """


def is_no_result(value: object) -> bool:
    """Default failure predicate: ``None`` and ``False`` mean "no result"."""
    return value is None or value is False


def _is_retryable_exception(exc: BaseException) -> bool:
    # Only ordinary exceptions; CancelledError and KeyboardInterrupt propagate.
    return isinstance(exc, Exception) and not isinstance(exc, FATAL_ERRORS)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    name: str,
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    delay: float = DEFAULT_DELAY_S,
    cancel: CancelToken | None = None,
    is_failure: Callable[[Any], bool] = is_no_result,
    default: T | None = None,
) -> T | None:
    """Run *operation* until it succeeds, attempts run out, or *cancel* fires.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        name: Label used in every log line.
        max_attempts: Total attempts including the first (≥ 1).
        delay: Fixed pause between attempts in seconds.
        cancel: Optional token checked before each attempt and during delays.
        is_failure: Predicate marking a returned value as "no result".
        default: Value returned on exhaustion or cancellation.

    Returns:
        The first successful result, or *default*.

    Raises:
        ConfigError: Propagated untouched from *operation*.
        CredentialInvalidError: Propagated untouched from *operation*.
        ValueError: If *max_attempts* is less than 1.
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be ≥ 1, got {max_attempts!r}.")

    if cancel is not None and cancel.cancelled:
        logger.info("%s: cancelled before the first attempt.", name)
        return default

    async def _sleep(seconds: float) -> None:
        if cancel is None:
            await asyncio.sleep(seconds)
        elif await cancel.wait(seconds):
            raise _RetryAborted

    def _stop_when_cancelled(_: RetryCallState) -> bool:
        return cancel is not None and cancel.cancelled

    def _log_failed_attempt(rs: RetryCallState) -> None:
        outcome = rs.outcome
        if outcome is not None and outcome.failed:
            exc = outcome.exception()
            logger.warning(
                "%s: attempt %d/%d failed: %s: %s",
                name,
                rs.attempt_number,
                max_attempts,
                type(exc).__name__,
                exc,
            )
        else:
            logger.warning(
                "%s: attempt %d/%d returned no result.",
                name,
                rs.attempt_number,
                max_attempts,
            )

    def _on_exhausted(rs: RetryCallState) -> T | None:
        if _stop_when_cancelled(rs):
            logger.info("%s: cancelled after %d attempt(s).", name, rs.attempt_number)
        else:
            logger.error("%s: all %d attempts failed.", name, rs.attempt_number)
        return default

    retrying = AsyncRetrying(
        sleep=_sleep,
        stop=stop_after_attempt(max_attempts) | _stop_when_cancelled,
        wait=wait_fixed(delay),
        retry=retry_if_exception(_is_retryable_exception) | retry_if_result(is_failure),
        after=_log_failed_attempt,
        retry_error_callback=_on_exhausted,
    )

    attempts = 0

    async def _attempt() -> T:
        nonlocal attempts
        attempts += 1
        return await operation()

    try:
        result = await retrying(_attempt)
    except _RetryAborted:
        logger.info("%s: cancelled while waiting to retry.", name)
        return default

    if attempts > 1 and not is_failure(result):
        logger.info("%s: succeeded on attempt %d/%d.", name, attempts, max_attempts)
    return result


async def retry_optional(
    operation: Callable[[], Awaitable[T | None]],
    name: str,
    **kwargs: Any,
) -> T | None:
    """:func:`retry_async` for operations whose "no result" is ``None``."""
    return await retry_async(operation, name, default=None, **kwargs)


async def retry_bool(
    operation: Callable[[], Awaitable[bool]],
    name: str,
    **kwargs: Any,
) -> bool:
    """:func:`retry_async` for operations that report success as a bool."""
    result = await retry_async(operation, name, default=False, **kwargs)
    return bool(result)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Retry settings shared by the orchestrator and the pre-fetch cache.

    Attributes:
        max_attempts: Attempts per operation, including the first.
        delay_s: Fixed pause between attempts in seconds.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    delay_s: float = DEFAULT_DELAY_S

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        name: str,
        *,
        cancel: CancelToken | None = None,
        is_failure: Callable[[Any], bool] = is_no_result,
        default: T | None = None,
    ) -> T | None:
        """Call :func:`retry_async` with this policy's attempts and delay."""
        return await retry_async(
            operation,
            name,
            max_attempts=self.max_attempts,
            delay=self.delay_s,
            cancel=cancel,
            is_failure=is_failure,
            default=default,
        )
