"""Transport interface contract for the selection engine.

A transport is the only part of Roombot that talks to the portal.  Two
implementations exist:

* :class:`~roombot.transports.http.HttpTransport` posts the portal's forms
  directly with :mod:`httpx`.
* :class:`~roombot.transports.browser.BrowserTransport` drives a real
  browser page with Playwright and clicks through the selection dialog.

Both subclass :class:`BaseTransport`, so the
:class:`~roombot.engine.orchestrator.SelectionOrchestrator` is written once
against this contract.

Design decisions
----------------
* **Abstract base class (ABC)** rather than a ``Protocol``: subclasses share
  the lifecycle helpers and the default candidate strategies.
* **``name`` as a class variable** so logs and errors can label the
  transport without an instance.
* **Async context manager built-in**: entering calls :meth:`open`, leaving
  calls :meth:`close`.
* **One call, one attempt.**  Transports never retry; the engine wraps every
  call in :func:`~roombot.engine.retry.retry_async`.

Typical usage::

    async with HttpTransport(settings) as transport:
        applicant_id = await transport.resolve_applicant("张三")
        room_ids = await transport.resolve_candidates(condition)
        outcome = await transport.attempt_claim(room_ids[0])
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from types import TracebackType
from typing import ClassVar

from roombot.core.models import ClaimOutcome, Condition, ListingRecord
from roombot.core.run_context import CancelToken
from roombot.engine.resolver import all_matches, first_match

__all__ = ["BaseTransport"]

logger = logging.getLogger(__name__)


class BaseTransport(ABC):
    """Abstract base for portal transports.

    Subclasses **must** declare :attr:`name` and implement
    :meth:`resolve_applicant`, :meth:`fetch_listing` and
    :meth:`attempt_claim`.

    Attributes:
        name: Short transport label (``"http"`` or ``"browser"``).
        applicant_id: Portal applicant identifier once
            :meth:`resolve_applicant` succeeded, else ``None``.
    """

    name: ClassVar[str]

    def __init__(self) -> None:
        self.applicant_id: str | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:  # noqa: B027
        """Acquire resources (connection pool, browser, login).  No-op here."""

    async def close(self) -> None:  # noqa: B027
        """Release resources.  Safe to call more than once.  No-op here."""

    async def __aenter__(self) -> BaseTransport:
        """Open the transport and return ``self``."""
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Close the transport."""
        await self.close()

    # ------------------------------------------------------------------
    # Core contract
    # ------------------------------------------------------------------

    @abstractmethod
    async def resolve_applicant(self, applicant_name: str) -> str | None:
        """Look up the portal identifier of *applicant_name*.

        Implementations store the result in :attr:`applicant_id`.

        Returns:
            The identifier, or ``None`` if the applicant is not listed.

        Raises:
            CredentialInvalidError: If the session is not accepted.
            TransportError: For recoverable network or page failures.
        """

    @abstractmethod
    async def fetch_listing(self, condition: Condition) -> list[ListingRecord]:
        """Query the listing for *condition*'s community and parse every row.

        Returns:
            Parsed records in page order, possibly empty.

        Raises:
            CredentialInvalidError: If the session is not accepted.
            TransportError: For recoverable network or page failures.
        """

    @abstractmethod
    async def attempt_claim(self, room_id: str) -> ClaimOutcome:
        """Submit one claim for *room_id* and classify the answer.

        Raises:
            CredentialInvalidError: If the session is not accepted.
            TransportError: For recoverable network or page failures.
        """

    async def on_gate_open(self, cancel: CancelToken) -> None:  # noqa: B027
        """Hook run once, right after the start-time gate opens.

        Long-running implementations must return promptly once *cancel*
        fires.
        """

    # ------------------------------------------------------------------
    # Candidate strategies
    # ------------------------------------------------------------------

    async def resolve_candidates(self, condition: Condition) -> list[str]:
        """Room ids to claim for *condition*, best first.

        The default is the single first match of a live listing query.
        """
        room_id = first_match(await self.fetch_listing(condition), condition)
        return [room_id] if room_id is not None else []

    async def resolve_all(self, condition: Condition) -> list[str]:
        """Every room id matching *condition*, in page order (pre-fetch)."""
        return all_matches(await self.fetch_listing(condition), condition)
