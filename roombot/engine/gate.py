"""Start-time gate.

Blocks a run until the allocation start instant, polling once per second
and reporting the remaining time on the event bus.  The gate opens as soon
as the remaining time drops to ``early_start_s`` or below, so the first
request leaves a moment before the portal opens rather than a moment after.

All times are naive local wall-clock times, which is how the portal
announces them.

Typical usage::

    from roombot.engine.gate import GateResult, StartTimeGate, parse_start_time

    gate = StartTimeGate(events)
    result = await gate.wait(parse_start_time("2026-03-01 10:00:00"), token)
    if result is GateResult.CANCELLED:
        return
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from enum import StrEnum

from roombot.core import events
from roombot.core.events import EventBus
from roombot.core.exceptions import ConfigError
from roombot.core.run_context import CancelToken

__all__ = ["START_TIME_FORMAT", "GateResult", "StartTimeGate", "parse_start_time"]

logger = logging.getLogger(__name__)

#: Accepted start-time format.
START_TIME_FORMAT: str = "%Y-%m-%d %H:%M:%S"


def parse_start_time(value: str) -> datetime:
    """Parse ``YYYY-MM-DD HH:MM:SS`` into a naive local :class:`datetime`.

    Raises:
        ConfigError: If *value* is blank or in any other format.
    """
    if not value or not value.strip():
        raise ConfigError("Start time is empty; expected 'YYYY-MM-DD HH:MM:SS'.")
    try:
        return datetime.strptime(value.strip(), START_TIME_FORMAT)
    except ValueError as exc:
        raise ConfigError(
            f"Malformed start time {value!r}; expected 'YYYY-MM-DD HH:MM:SS'."
        ) from exc


class GateResult(StrEnum):
    """Why :meth:`StartTimeGate.wait` returned."""

    REACHED = "reached"
    CANCELLED = "cancelled"


class StartTimeGate:
    """Wait for a wall-clock instant, abortable through a :class:`CancelToken`.

    Args:
        events: Bus that receives the waiting, tick and open events.
        poll_interval: Seconds between remaining-time checks.
        early_start_s: Open once this many seconds or fewer remain.
        clock: Returns the current local time; injectable for tests.
    """

    def __init__(
        self,
        events: EventBus,
        *,
        poll_interval: float = 1.0,
        early_start_s: float = 1.0,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError(f"poll_interval must be > 0, got {poll_interval!r}.")
        self._events = events
        self._poll_interval = poll_interval
        self._early_start_s = early_start_s
        self._clock = clock

    def remaining(self, start_at: datetime) -> float:
        """Seconds left until *start_at* (negative once it has passed)."""
        return (start_at - self._clock()).total_seconds()

    async def wait(self, start_at: datetime, cancel: CancelToken) -> GateResult:
        """Block until *start_at* is (almost) reached or *cancel* fires.

        A start instant already in the past opens the gate immediately.
        """
        if cancel.cancelled:
            return GateResult.CANCELLED

        remaining = self.remaining(start_at)
        if remaining > self._early_start_s:
            self._events.emit(
                events.GATE_WAITING,
                f"Waiting for start time {start_at:%Y-%m-%d %H:%M:%S} "
                f"({remaining:.0f} s remaining)",
                remaining_s=remaining,
            )

        while remaining > self._early_start_s:
            self._events.emit(
                events.GATE_TICK,
                f"{remaining:.0f} s until start",
                remaining_s=remaining,
            )
            # Never sleep past the opening threshold.
            pause = min(self._poll_interval, remaining - self._early_start_s)
            if await cancel.wait(pause):
                logger.info("Start-time gate cancelled with %.1f s remaining.", remaining)
                return GateResult.CANCELLED
            remaining = self.remaining(start_at)

        if cancel.cancelled:
            return GateResult.CANCELLED
        self._events.emit(
            events.GATE_OPEN,
            f"Start time reached ({remaining:.2f} s remaining)",
            remaining_s=remaining,
        )
        return GateResult.REACHED
