"""Roombot exception taxonomy.

Every custom exception inherits from :class:`RoombotError`.  Exceptions are
organised by architectural layer so callers can catch at the right granularity:

    Layer hierarchy
    ---------------
    RoombotError
    ├── ConfigError
    ├── CredentialInvalidError
    ├── StorageError
    ├── TransportError
    │   ├── TransientTransportError
    │   ├── ListingParseError
    │   └── BrowserTransportError
    └── OrchestratorError

Two members of the tree are *fatal for a run* and must never be retried:
:class:`ConfigError` (the run cannot start) and
:class:`CredentialInvalidError` (retrying with a dead session wastes the
allocation window).  Everything under :class:`TransportError` is recoverable
by the retry policy.

A contested claim is **not** an exception; it is a
:class:`~roombot.core.models.ClaimOutcome` value.  Cancellation is not an
exception either; it is a terminal :class:`~roombot.core.models.RunOutcome`.

Usage::

    from roombot.core.exceptions import TransientTransportError

    raise TransientTransportError("http", "HTTP 502 from portal") from exc
"""

from __future__ import annotations

import logging

__all__ = [
    "RoombotError",
    "ConfigError",
    "CredentialInvalidError",
    "StorageError",
    "TransportError",
    "TransientTransportError",
    "ListingParseError",
    "BrowserTransportError",
    "OrchestratorError",
    "FATAL_ERRORS",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class RoombotError(Exception):
    """Root exception for all Roombot errors."""


# ---------------------------------------------------------------------------
# Run-fatal errors
# ---------------------------------------------------------------------------


class ConfigError(RoombotError):
    """Raised when the run configuration is invalid or incomplete.

    Examples:
        - Empty applicant name or empty condition list.
        - A start time that does not match ``YYYY-MM-DD HH:MM:SS``.
        - A floor range such as ``"3-,x"``.
        - A missing session cookie for the HTTP transport.
    """


class CredentialInvalidError(RoombotError):
    """Raised when the portal rejects the session credential.

    Detected from a redirect to the login surface or from login markers in
    the response body.  Never retried.

    Args:
        message: Human-readable description of how invalidity was detected.
    """


# ---------------------------------------------------------------------------
# Storage layer
# ---------------------------------------------------------------------------


class StorageError(RoombotError):
    """Raised when the persistence collaborator fails to load or save."""


# ---------------------------------------------------------------------------
# Transport layer
# ---------------------------------------------------------------------------


class TransportError(RoombotError):
    """Base class for all transport-level errors.

    Args:
        transport: Short name of the transport (``"http"`` or ``"browser"``).
        message: Human-readable error description.
    """

    def __init__(self, transport: str, message: str) -> None:
        self.transport = transport
        super().__init__(f"[{transport}] {message}")


class TransientTransportError(TransportError):
    """Raised for timeouts, connection failures, and 5xx responses."""


class ListingParseError(TransportError):
    """Raised when a listing page cannot be interpreted at all.

    Individual malformed rows are skipped, not raised; this error means the
    whole page lacked the expected structure.
    """


class BrowserTransportError(TransportError):
    """Raised for failures specific to the Playwright-driven transport.

    Examples:
        - Browser launch failure.
        - The selection dialog iframe never appeared.
        - A required button was not found before its wait expired.
    """


# ---------------------------------------------------------------------------
# Orchestrator layer
# ---------------------------------------------------------------------------


class OrchestratorError(RoombotError):
    """Raised when the selection engine detects a violated invariant."""


#: Exceptions the retry policy must let through untouched.
FATAL_ERRORS: tuple[type[RoombotError], ...] = (ConfigError, CredentialInvalidError)
