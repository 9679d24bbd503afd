"""Runtime context for a single selection run.

A :class:`RunContext` is created once per run by the runner and handed to
:meth:`~roombot.engine.orchestrator.SelectionOrchestrator.run`.  Its inputs
(conditions, applicant name, start instant, manual room ids) are fixed for
the lifetime of the run; the progress fields (:attr:`RunContext.state`,
:attr:`RunContext.current_condition`, :attr:`RunContext.claimed_room_id`)
are written only by the orchestrator and may be read by anything else as a
best-effort snapshot.

:class:`CancelToken` is the single cancellation signal threaded through
every suspension point of a run: the start-time gate, the retry delay, and
the confirmation grace period all wait on it instead of sleeping.

Typical usage::

    from roombot.core.run_context import CancelToken, RunContext

    token = CancelToken()
    ctx = RunContext(
        conditions=tuple(settings.conditions),
        applicant_name=settings.applicant_name,
        start_at=parse_start_time(settings.start_time),
        cancel=token,
    )
    loop.add_signal_handler(signal.SIGINT, token.cancel)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime

from roombot.core.models import Condition, RunState

__all__ = ["CancelToken", "RunContext"]

logger = logging.getLogger(__name__)


class CancelToken:
    """One-shot cancellation flag backed by :class:`asyncio.Event`.

    Cancelling is idempotent.  Once set, the token stays set.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str = ""

    @property
    def cancelled(self) -> bool:
        """``True`` once :meth:`cancel` has been called."""
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        """Fire the token.  Later calls keep the first reason."""
        if not self._event.is_set():
            self.reason = reason
            logger.info("Cancellation requested: %s", reason)
            self._event.set()

    async def wait(self, timeout: float | None = None) -> bool:
        """Wait up to *timeout* seconds for cancellation.

        Args:
            timeout: Maximum wait in seconds; ``None`` waits indefinitely.
                Non-positive values only check the current state.

        Returns:
            ``True`` if the token is cancelled, ``False`` if the timeout
            elapsed first.
        """
        if self._event.is_set():
            return True
        if timeout is not None and timeout <= 0:
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True


@dataclass
class RunContext:
    """Inputs and best-effort progress of one selection run.

    Attributes:
        conditions: Ordered conditions; index 0 is the most preferred.
        applicant_name: Applicant name as the portal shows it.
        start_at: Local start instant; ``None`` skips the gate.
        cancel: Cancellation token for this run.
        manual_room_ids: Explicit room ids to claim in order.  When
            non-empty, condition resolution is skipped.
        applicant_id: Portal applicant identifier, set once resolved.
        state: Current orchestrator state.
        current_condition: Condition being worked on, if any.
        claimed_room_id: Room id claimed by this run, if any.
    """

    conditions: tuple[Condition, ...]
    applicant_name: str
    start_at: datetime | None = None
    cancel: CancelToken = field(default_factory=CancelToken)
    manual_room_ids: tuple[str, ...] = ()

    applicant_id: str | None = None
    state: RunState = RunState.IDLE
    current_condition: Condition | None = None
    claimed_room_id: str | None = None

    @property
    def manual_mode(self) -> bool:
        """``True`` when explicit room ids replace condition resolution."""
        return bool(self.manual_room_ids)

    def __str__(self) -> str:
        return (
            f"RunContext(applicant={self.applicant_name!r}, "
            f"conditions={len(self.conditions)}, "
            f"manual_room_ids={len(self.manual_room_ids)}, state={self.state})"
        )
