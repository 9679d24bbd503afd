"""Engine event names, the immutable :class:`EngineEvent`, and the event bus.

Every observable transition of the selection engine is published as an
:class:`EngineEvent` on an :class:`EventBus`.  Any number of subscribers may
listen; the runner always attaches :func:`log_subscriber`, which forwards
each event to the :mod:`logging` hierarchy with an ``event`` field (passed
via ``extra={"event": ...}``).  A graphical front end would subscribe its own
callback and marshal onto its UI thread itself; the engine never assumes one.

Using named constants instead of raw strings keeps every event greppable
(``grep 'CLAIM_CONTESTED' run.log``) and lets JSON-mode log queries filter
on ``extra.event``.

Usage example::

    from roombot.core import events
    from roombot.core.events import EventBus, EventLevel

    bus = EventBus()
    bus.emit(events.CLAIM_SUCCEEDED, "Claimed room 1234", EventLevel.SUCCESS,
             room_id="1234")
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from types import MappingProxyType
from typing import Any

__all__ = [
    "EventLevel",
    "EngineEvent",
    "EventBus",
    "Subscriber",
    "log_subscriber",
    # Run lifecycle
    "RUN_START",
    "RUN_COMPLETE",
    "RUN_ABORT",
    "APPLICANT_RESOLVED",
    "CREDENTIAL_INVALID",
    # Gate
    "GATE_WAITING",
    "GATE_TICK",
    "GATE_OPEN",
    # Resolution
    "CONDITION_START",
    "CANDIDATES_RESOLVED",
    "CANDIDATES_FROM_SNAPSHOT",
    "NO_CANDIDATE",
    "FALLBACK_SELECTED",
    # Claims
    "CLAIM_ATTEMPT",
    "CLAIM_SUCCEEDED",
    "CLAIM_CONTESTED",
    "CLAIM_FAILED",
    "CLAIM_PENDING",
    # Pre-fetch
    "PREFETCH_START",
    "PREFETCH_CONDITION",
    "PREFETCH_COMPLETE",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Run lifecycle
# ---------------------------------------------------------------------------

#: Emitted once when :meth:`SelectionOrchestrator.run` starts.
RUN_START: str = "RUN_START"

#: Emitted once with the terminal outcome of a run.
RUN_COMPLETE: str = "RUN_COMPLETE"

#: Emitted when a run ends before the gate (configuration problem).
RUN_ABORT: str = "RUN_ABORT"

#: The applicant identifier was looked up successfully.
APPLICANT_RESOLVED: str = "APPLICANT_RESOLVED"

#: The portal rejected the session; the run stops.
CREDENTIAL_INVALID: str = "CREDENTIAL_INVALID"

# ---------------------------------------------------------------------------
# Start-time gate
# ---------------------------------------------------------------------------

#: The gate started waiting for the start instant.
GATE_WAITING: str = "GATE_WAITING"

#: One polling tick; carries ``remaining_s``.
GATE_TICK: str = "GATE_TICK"

#: The start instant was reached (within the early-start window).
GATE_OPEN: str = "GATE_OPEN"

# ---------------------------------------------------------------------------
# Candidate resolution
# ---------------------------------------------------------------------------

#: The orchestrator moved on to a new condition.
CONDITION_START: str = "CONDITION_START"

#: A live listing query produced candidate room ids.
CANDIDATES_RESOLVED: str = "CANDIDATES_RESOLVED"

#: Candidate room ids came from the pre-fetched snapshot.
CANDIDATES_FROM_SNAPSHOT: str = "CANDIDATES_FROM_SNAPSHOT"

#: No room matched the current condition.
NO_CANDIDATE: str = "NO_CANDIDATE"

#: The browser transport chose a row by one of the fallback tiers.
FALLBACK_SELECTED: str = "FALLBACK_SELECTED"

# ---------------------------------------------------------------------------
# Claims
# ---------------------------------------------------------------------------

#: A claim for one room id is about to be sent.
CLAIM_ATTEMPT: str = "CLAIM_ATTEMPT"

#: The portal confirmed the claim.
CLAIM_SUCCEEDED: str = "CLAIM_SUCCEEDED"

#: Another applicant won the room.
CLAIM_CONTESTED: str = "CLAIM_CONTESTED"

#: Retries for a claim were exhausted without a definitive answer.
CLAIM_FAILED: str = "CLAIM_FAILED"

#: The room is provisionally held and awaits manual confirmation.
CLAIM_PENDING: str = "CLAIM_PENDING"

# ---------------------------------------------------------------------------
# Pre-fetch
# ---------------------------------------------------------------------------

#: Pre-fetch started.
PREFETCH_START: str = "PREFETCH_START"

#: One condition was resolved during pre-fetch; carries ``count``.
PREFETCH_CONDITION: str = "PREFETCH_CONDITION"

#: Pre-fetch finished; carries ``stored`` and ``total``.
PREFETCH_COMPLETE: str = "PREFETCH_COMPLETE"


# ---------------------------------------------------------------------------
# Event type and bus
# ---------------------------------------------------------------------------


class EventLevel(StrEnum):
    """Severity shown by a presentation layer."""

    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


_LOG_LEVELS: dict[EventLevel, int] = {
    EventLevel.INFO: logging.INFO,
    EventLevel.SUCCESS: logging.INFO,
    EventLevel.WARNING: logging.WARNING,
    EventLevel.ERROR: logging.ERROR,
}


@dataclass(frozen=True, slots=True)
class EngineEvent:
    """One immutable engine notification.

    Attributes:
        name: One of the module-level event constants.
        message: Human-readable description.
        level: Presentation severity.
        data: Read-only structured payload (room id, remaining seconds, ...).
        timestamp: Local wall-clock time the event was created.
    """

    name: str
    message: str
    level: EventLevel = EventLevel.INFO
    data: Mapping[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)


#: Callback signature accepted by :meth:`EventBus.subscribe`.
Subscriber = Callable[[EngineEvent], None]


def log_subscriber(event: EngineEvent) -> None:
    """Forward *event* to the ``roombot.events`` logger."""
    logging.getLogger("roombot.events").log(
        _LOG_LEVELS[event.level],
        event.message,
        extra={
            "event": event.name,
            "event_level": str(event.level),
            "data": dict(event.data),
        },
    )


class EventBus:
    """Synchronous fan-out of :class:`EngineEvent` objects.

    Subscribers run in registration order on the emitting task.  A
    subscriber that raises is logged and skipped so that a broken display
    cannot stop a claim in flight.

    Args:
        log_events: Attach :func:`log_subscriber` on construction.
    """

    def __init__(self, *, log_events: bool = True) -> None:
        self._subscribers: list[Subscriber] = []
        if log_events:
            self._subscribers.append(log_subscriber)

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register *subscriber* and return a function that removes it."""
        self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return _unsubscribe

    def emit(
        self,
        name: str,
        message: str,
        level: EventLevel = EventLevel.INFO,
        **data: Any,
    ) -> EngineEvent:
        """Build an :class:`EngineEvent` and deliver it to every subscriber.

        Returns:
            The delivered event.
        """
        event = EngineEvent(
            name=name,
            message=message,
            level=level,
            data=MappingProxyType(dict(data)),
        )
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:
                logger.exception("Event subscriber %r failed on %s", subscriber, name)
        return event
