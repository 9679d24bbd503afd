"""Selection orchestrator: the state machine of one allocation run.

:class:`SelectionOrchestrator` drives a :class:`~roombot.transports.base.BaseTransport`
through the run::

    IDLE ──► WAITING_FOR_START ──► RESOLVING ──► CLAIMING ──► CLAIMED
      │              │                 ▲            │
      │              │                 └────────────┘  contested / failed /
      ▼              ▼                                  no candidate
    CONFIG_ERROR  CANCELLED                         ──► EXHAUSTED

Rules:

* Conditions are tried strictly in the order given.  For each condition the
  candidates are the pre-fetched room ids when the snapshot has any,
  otherwise the result of a live listing query.
* Every transport call is wrapped by the :class:`~roombot.engine.retry.RetryPolicy`.
  Only a *transient* claim result is retried; a *contested* claim moves on
  to the next candidate immediately.
* The first ``CLAIMED`` ends the run.  ``PENDING_CONFIRMATION`` (browser
  transport without auto-confirm) leaves the applicant a grace period to
  confirm by hand and then ends the run as claimed.
* The cancel token is checked at every loop boundary and interrupts every
  wait.
* :class:`~roombot.core.exceptions.CredentialInvalidError` from any call ends
  the run as ``CREDENTIAL_INVALID``.

Every transition is published on the :class:`~roombot.core.events.EventBus`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from functools import partial
from typing import TYPE_CHECKING

from roombot.core import events
from roombot.core.events import EventBus, EventLevel
from roombot.core.exceptions import ConfigError, CredentialInvalidError, TransportError
from roombot.core.ids import condition_key
from roombot.core.models import (
    ClaimAttempt,
    ClaimOutcome,
    Condition,
    RunOutcome,
    RunResult,
    RunState,
)
from roombot.core.run_context import RunContext
from roombot.engine.gate import GateResult, StartTimeGate
from roombot.engine.prefetch import RoomIdSnapshot
from roombot.engine.retry import RetryPolicy

if TYPE_CHECKING:
    from roombot.transports.base import BaseTransport

__all__ = ["SelectionOrchestrator", "DEFAULT_GRACE_PERIOD_S"]

logger = logging.getLogger(__name__)

#: Seconds left for manual confirmation after a provisional selection.
DEFAULT_GRACE_PERIOD_S: float = 30.0

_TERMINAL_LEVELS: dict[RunOutcome, EventLevel] = {
    RunOutcome.CLAIMED: EventLevel.SUCCESS,
    RunOutcome.EXHAUSTED: EventLevel.WARNING,
    RunOutcome.CANCELLED: EventLevel.WARNING,
    RunOutcome.CONFIG_ERROR: EventLevel.ERROR,
    RunOutcome.CREDENTIAL_INVALID: EventLevel.ERROR,
}


def _no_candidates(room_ids: list[str] | None) -> bool:
    return not room_ids


def _is_transient(outcome: ClaimOutcome | None) -> bool:
    return outcome is None or outcome is ClaimOutcome.TRANSIENT


class SelectionOrchestrator:
    """Run the selection state machine against one transport.

    Args:
        transport: Open transport.
        events: Bus receiving every engine event.
        retry: Attempts and delay for every transport call.
        gate: Start-time gate; a default 1 s polling gate is built on *events*
            when omitted.
        grace_period_s: Manual-confirmation window for
            ``PENDING_CONFIRMATION``.
        snapshot: Pre-fetched room ids; ``None`` forces live queries.
        clock: Used to report the age of pre-fetched ids.
    """

    def __init__(
        self,
        transport: BaseTransport,
        events: EventBus,
        *,
        retry: RetryPolicy | None = None,
        gate: StartTimeGate | None = None,
        grace_period_s: float = DEFAULT_GRACE_PERIOD_S,
        snapshot: RoomIdSnapshot | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._transport = transport
        self._events = events
        self._retry = retry or RetryPolicy()
        self._gate = gate or StartTimeGate(events)
        self._grace_period_s = grace_period_s
        self._snapshot = snapshot or RoomIdSnapshot()
        self._clock = clock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(self, ctx: RunContext) -> RunResult:
        """Execute one run and return its terminal result.

        Never raises for configuration, credential, transport or
        cancellation problems; each maps to a :class:`RunOutcome`.
        """
        attempts: list[ClaimAttempt] = []
        self._events.emit(
            events.RUN_START,
            f"Run started via {self._transport.name} transport: {ctx}",
            transport=self._transport.name,
        )
        try:
            result = await self._run(ctx, attempts)
        except ConfigError as exc:
            ctx.state = RunState.CONFIG_ERROR
            self._events.emit(events.RUN_ABORT, f"Configuration error: {exc}", EventLevel.ERROR)
            result = RunResult(RunOutcome.CONFIG_ERROR, str(exc), attempts=tuple(attempts))
        except CredentialInvalidError as exc:
            ctx.state = RunState.CREDENTIAL_INVALID
            self._events.emit(
                events.CREDENTIAL_INVALID, f"Session rejected: {exc}", EventLevel.ERROR
            )
            result = RunResult(
                RunOutcome.CREDENTIAL_INVALID, str(exc), attempts=tuple(attempts)
            )

        self._events.emit(
            events.RUN_COMPLETE,
            f"Run finished: {result.outcome}"
            + (f" (room {result.room_id})" if result.room_id else "")
            + (f": {result.reason}" if result.reason else ""),
            _TERMINAL_LEVELS[result.outcome],
            outcome=str(result.outcome),
            room_id=result.room_id,
            attempts=len(result.attempts),
        )
        return result

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _run(self, ctx: RunContext, attempts: list[ClaimAttempt]) -> RunResult:
        if not ctx.applicant_name.strip():
            raise ConfigError("Applicant name is empty.")
        if not ctx.conditions and not ctx.manual_room_ids:
            raise ConfigError("No conditions and no manual room ids to try.")

        # IDLE → WAITING_FOR_START
        applicant_id = await self._retry.run(
            partial(self._transport.resolve_applicant, ctx.applicant_name),
            "resolve applicant",
            cancel=ctx.cancel,
        )
        if ctx.cancel.cancelled:
            return self._cancelled(ctx, attempts)
        if applicant_id is None:
            raise ConfigError(f"Applicant {ctx.applicant_name!r} could not be resolved.")
        ctx.applicant_id = applicant_id
        self._events.emit(
            events.APPLICANT_RESOLVED,
            f"Applicant {ctx.applicant_name} resolved to {applicant_id}",
            applicant_id=applicant_id,
        )

        ctx.state = RunState.WAITING_FOR_START
        if ctx.start_at is not None:
            if await self._gate.wait(ctx.start_at, ctx.cancel) is GateResult.CANCELLED:
                return self._cancelled(ctx, attempts)
        try:
            await self._transport.on_gate_open(ctx.cancel)
        except TransportError as exc:
            logger.error("Opening the selection failed: %s", exc)
        if ctx.cancel.cancelled:
            return self._cancelled(ctx, attempts)

        if ctx.manual_mode:
            return await self._claim_manual(ctx, attempts)
        return await self._claim_conditions(ctx, attempts)

    async def _claim_conditions(
        self, ctx: RunContext, attempts: list[ClaimAttempt]
    ) -> RunResult:
        total = len(ctx.conditions)
        for index, condition in enumerate(ctx.conditions, start=1):
            if ctx.cancel.cancelled:
                return self._cancelled(ctx, attempts)

            # → RESOLVING
            ctx.state = RunState.RESOLVING
            ctx.current_condition = condition
            key = condition_key(condition)
            self._events.emit(
                events.CONDITION_START,
                f"Condition {index}/{total}: {condition}",
                condition_key=key,
                index=index,
            )

            room_ids = await self._candidates(ctx, condition, key)
            if ctx.cancel.cancelled:
                return self._cancelled(ctx, attempts)
            if not room_ids:
                self._events.emit(
                    events.NO_CANDIDATE,
                    f"No room matches condition {index} ({condition.community_name})",
                    EventLevel.WARNING,
                    condition_key=key,
                )
                continue

            # → CLAIMING
            for room_id in room_ids:
                if ctx.cancel.cancelled:
                    return self._cancelled(ctx, attempts)
                result = await self._claim(ctx, room_id, key, condition, attempts)
                if result is not None:
                    return result

        ctx.state = RunState.EXHAUSTED
        return RunResult(
            RunOutcome.EXHAUSTED,
            f"All {total} condition(s) tried without a claim.",
            attempts=tuple(attempts),
        )

    async def _claim_manual(self, ctx: RunContext, attempts: list[ClaimAttempt]) -> RunResult:
        for room_id in ctx.manual_room_ids:
            if ctx.cancel.cancelled:
                return self._cancelled(ctx, attempts)
            result = await self._claim(ctx, room_id, None, None, attempts)
            if result is not None:
                return result

        ctx.state = RunState.EXHAUSTED
        return RunResult(
            RunOutcome.EXHAUSTED,
            f"All {len(ctx.manual_room_ids)} manual room id(s) tried without a claim.",
            attempts=tuple(attempts),
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _candidates(self, ctx: RunContext, condition: Condition, key: str) -> list[str]:
        cached = self._snapshot.get(key)
        if cached:
            updated = self._snapshot.last_updated(key)
            age = (self._clock() - updated).total_seconds() if updated else 0.0
            self._events.emit(
                events.CANDIDATES_FROM_SNAPSHOT,
                f"Using {len(cached)} pre-fetched room id(s) for "
                f"{condition.community_name} ({age:.0f} s old)",
                condition_key=key,
                count=len(cached),
                age_s=age,
            )
            return list(cached)

        room_ids = await self._retry.run(
            partial(self._transport.resolve_candidates, condition),
            f"resolve {condition.community_name}",
            cancel=ctx.cancel,
            is_failure=_no_candidates,
            default=[],
        )
        room_ids = list(room_ids or [])
        if room_ids:
            self._events.emit(
                events.CANDIDATES_RESOLVED,
                f"Found {len(room_ids)} candidate(s) for {condition.community_name}",
                condition_key=key,
                room_ids=room_ids,
            )
        return room_ids

    async def _claim(
        self,
        ctx: RunContext,
        room_id: str,
        key: str | None,
        condition: Condition | None,
        attempts: list[ClaimAttempt],
    ) -> RunResult | None:
        """Claim one room.  Returns a terminal result, or ``None`` to move on."""
        ctx.state = RunState.CLAIMING
        self._events.emit(events.CLAIM_ATTEMPT, f"Claiming room {room_id}", room_id=room_id)

        outcome = await self._retry.run(
            partial(self._transport.attempt_claim, room_id),
            f"claim room {room_id}",
            cancel=ctx.cancel,
            is_failure=_is_transient,
            default=ClaimOutcome.TRANSIENT,
        )
        outcome = outcome or ClaimOutcome.TRANSIENT
        if ctx.cancel.cancelled and outcome is ClaimOutcome.TRANSIENT:
            return self._cancelled(ctx, attempts)
        attempts.append(ClaimAttempt(key, room_id, outcome))

        if outcome is ClaimOutcome.CLAIMED:
            return self._claimed(ctx, room_id, condition, attempts)

        if outcome is ClaimOutcome.PENDING_CONFIRMATION:
            self._events.emit(
                events.CLAIM_PENDING,
                f"Room {room_id} is held; confirm it in the browser within "
                f"{self._grace_period_s:.0f} s",
                EventLevel.WARNING,
                room_id=room_id,
            )
            if await ctx.cancel.wait(self._grace_period_s):
                ctx.claimed_room_id = room_id
                return self._cancelled(ctx, attempts, room_id=room_id)
            return self._claimed(ctx, room_id, condition, attempts)

        if outcome is ClaimOutcome.CONTESTED:
            self._events.emit(
                events.CLAIM_CONTESTED,
                f"Room {room_id} was taken by another applicant",
                EventLevel.WARNING,
                room_id=room_id,
            )
        else:
            self._events.emit(
                events.CLAIM_FAILED,
                f"Claim of room {room_id} failed after retries",
                EventLevel.WARNING,
                room_id=room_id,
            )
        return None

    # ------------------------------------------------------------------
    # Terminal results
    # ------------------------------------------------------------------

    def _claimed(
        self,
        ctx: RunContext,
        room_id: str,
        condition: Condition | None,
        attempts: list[ClaimAttempt],
    ) -> RunResult:
        ctx.state = RunState.CLAIMED
        ctx.claimed_room_id = room_id
        self._events.emit(
            events.CLAIM_SUCCEEDED,
            f"Claimed room {room_id}",
            EventLevel.SUCCESS,
            room_id=room_id,
        )
        return RunResult(
            RunOutcome.CLAIMED,
            room_id=room_id,
            condition=condition,
            attempts=tuple(attempts),
        )

    def _cancelled(
        self,
        ctx: RunContext,
        attempts: list[ClaimAttempt],
        *,
        room_id: str | None = None,
    ) -> RunResult:
        ctx.state = RunState.CANCELLED
        return RunResult(
            RunOutcome.CANCELLED,
            ctx.cancel.reason or "cancelled",
            room_id=room_id,
            attempts=tuple(attempts),
        )
