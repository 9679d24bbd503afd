"""Runner: assemble all components and execute one run.

This module provides the two top-level coroutines invoked by
:mod:`roombot.__main__`:

* :func:`run_selection` waits for the start instant and claims a room.
* :func:`run_prefetch` resolves every condition ahead of time and stores the
  room ids for a later :func:`run_selection`.

A third, :func:`run_fetch_cookie`, logs in through the browser once and
returns the session cookie for the HTTP transport.

Component wiring
----------------
Each call:

1. Tags every log line of the run with a fresh run id.
2. Opens the SQLite database via :func:`~roombot.storage.database.open_db`.
   Conditions given in the settings replace the stored ones once the
   configuration validates; an empty ``CONDITIONS`` reuses what the last
   run stored.  Pre-fetched room ids and manual room ids apply to the HTTP
   transport only.
3. Builds the transport and enters its async context manager.  The HTTP
   transport first checks that the portal still accepts the session cookie.
4. Installs ``SIGINT``/``SIGTERM`` handlers that fire the run's
   :class:`~roombot.core.run_context.CancelToken`, so an interrupt ends the
   run cleanly as ``CANCELLED`` instead of tearing the event loop down.
5. Tears down every resource on exit, including on exceptions.

Typical usage::

    import asyncio
    from roombot.core.settings import Settings
    from roombot.engine.runner import run_selection

    result = asyncio.run(run_selection(Settings()))
    print(result.outcome, result.room_id)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import time
import uuid
from collections.abc import Iterator, Sequence
from contextlib import AsyncExitStack

from roombot.core.events import EventBus
from roombot.core.exceptions import (
    ConfigError,
    CredentialInvalidError,
    StorageError,
    TransportError,
)
from roombot.core.logging_config import RUN_ID_CTX
from roombot.core.models import Condition, RunOutcome, RunResult
from roombot.core.run_context import CancelToken, RunContext
from roombot.core.settings import Settings, validate_conditions
from roombot.engine.gate import StartTimeGate, parse_start_time
from roombot.engine.orchestrator import SelectionOrchestrator
from roombot.engine.prefetch import PrefetchCache, RoomIdSnapshot
from roombot.engine.retry import RetryPolicy
from roombot.storage.database import open_db
from roombot.storage.repository import StateRepository
from roombot.transports.base import BaseTransport
from roombot.transports.browser import BrowserTransport
from roombot.transports.http import HttpTransport
from roombot.transports.http_client import PortalHttpClient

__all__ = [
    "build_transport",
    "exit_code_for",
    "run_fetch_cookie",
    "run_prefetch",
    "run_selection",
    "EXIT_OK",
    "EXIT_CONFIG",
    "EXIT_EXHAUSTED",
    "EXIT_CANCELLED",
]

logger = logging.getLogger(__name__)

#: Process exit codes.
EXIT_OK: int = 0
EXIT_CONFIG: int = 1
EXIT_EXHAUSTED: int = 2
EXIT_CANCELLED: int = 130

_EXIT_CODES: dict[RunOutcome, int] = {
    RunOutcome.CLAIMED: EXIT_OK,
    RunOutcome.CONFIG_ERROR: EXIT_CONFIG,
    RunOutcome.CREDENTIAL_INVALID: EXIT_CONFIG,
    RunOutcome.EXHAUSTED: EXIT_EXHAUSTED,
    RunOutcome.CANCELLED: EXIT_CANCELLED,
}


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def build_transport(settings: Settings, events: EventBus | None = None) -> BaseTransport:
    """Instantiate the transport named by ``settings.transport``.

    Raises:
        ConfigError: If the transport cannot be built from *settings*
            (e.g. the http transport without a session cookie).
    """
    if settings.transport == "browser":
        return BrowserTransport(settings, events)
    return HttpTransport(settings)


def exit_code_for(result: RunResult) -> int:
    """Map a run outcome to the process exit code."""
    return _EXIT_CODES[result.outcome]


def _new_run_id() -> str:
    return uuid.uuid4().hex[:8]


@contextlib.contextmanager
def _cancel_on_signals(token: CancelToken) -> Iterator[None]:
    """Fire *token* on SIGINT/SIGTERM while the block runs."""
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        # add_signal_handler is not available on every platform.
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, token.cancel, f"received {sig.name}")
            installed.append(sig)
    try:
        yield
    finally:
        for sig in installed:
            with contextlib.suppress(Exception):
                loop.remove_signal_handler(sig)


async def _load_conditions(
    settings: Settings, repo: StateRepository
) -> list[Condition]:
    """Return the configured conditions, or the stored ones when none are set."""
    if settings.conditions:
        return list(settings.conditions)
    stored = await repo.load_conditions()
    if stored:
        logger.info("CONDITIONS is empty; using %d stored condition(s).", len(stored))
    return stored


async def _store_conditions(settings: Settings, repo: StateRepository) -> None:
    """Persist the configured conditions once they have been validated."""
    if settings.conditions:
        await repo.save_conditions(settings.conditions)


async def _load_snapshot(repo: StateRepository) -> RoomIdSnapshot:
    try:
        snapshot = RoomIdSnapshot.from_mappings(await repo.load_mappings())
    except StorageError as exc:
        logger.warning("Pre-fetched room ids unavailable, using live queries: %s", exc)
        return RoomIdSnapshot()
    logger.info("Loaded pre-fetched room ids for %d condition(s).", len(snapshot))
    return snapshot


async def _session_accepted(transport: BaseTransport) -> bool:
    """Check the session cookie of an HTTP transport before the run starts.

    Other transports log in when they are opened and always pass.  A portal
    that cannot be reached does not fail the run; the engine retries later.
    """
    if not isinstance(transport, HttpTransport):
        return True
    try:
        return await transport.check_session()
    except TransportError as exc:
        logger.warning("Could not verify the session cookie, continuing: %s", exc)
        return True


# ---------------------------------------------------------------------------
# Public entry-points
# ---------------------------------------------------------------------------


async def run_selection(
    settings: Settings,
    *,
    manual_room_ids: Sequence[str] | None = None,
    cancel: CancelToken | None = None,
    events: EventBus | None = None,
    transport: BaseTransport | None = None,
) -> RunResult:
    """Execute one selection run.

    Args:
        settings: Loaded settings.
        manual_room_ids: Room ids overriding ``settings.manual_room_ids``.
        cancel: Token to cancel the run from outside; one is created (and
            wired to SIGINT/SIGTERM) when omitted.
        events: Bus receiving every engine event.
        transport: Pre-built transport (tests); built from *settings* when
            omitted.

    Returns:
        The terminal :class:`~roombot.core.models.RunResult`.  Configuration
        and credential problems are reported as outcomes, not raised.

    Raises:
        TransportError: If the transport cannot be opened for a reason other
            than a rejected credential (e.g. the browser fails to launch).
    """
    RUN_ID_CTX.set(_new_run_id())
    events = events or EventBus()
    token = cancel or CancelToken()
    manual = list(settings.manual_room_ids if manual_room_ids is None else manual_room_ids)
    t0 = time.monotonic()

    logger.info(
        "run_selection starting: transport=%s db=%s manual_room_ids=%d",
        settings.transport,
        settings.database_path,
        len(manual),
    )

    conn = await open_db(settings.database_path_resolved)
    try:
        repo = StateRepository(conn)
        conditions = await _load_conditions(settings, repo)

        try:
            for warning in settings.validate_for_run(conditions, manual):
                logger.warning("Configuration warning: %s", warning)
            start_at = parse_start_time(settings.start_time)
            if transport is None:
                transport = build_transport(settings, events)
        except ConfigError as exc:
            logger.critical("Configuration error: %s", exc)
            return RunResult(RunOutcome.CONFIG_ERROR, str(exc))
        await _store_conditions(settings, repo)

        # The browser claims only rows it found by searching the dialog.
        snapshot = RoomIdSnapshot()
        if settings.transport != "http":
            logger.info(
                "Pre-fetched room ids are not used by the %s transport.", settings.transport
            )
        elif settings.use_prefetched and not manual:
            snapshot = await _load_snapshot(repo)

        ctx = RunContext(
            conditions=tuple(conditions),
            applicant_name=settings.applicant_name.strip(),
            start_at=start_at,
            cancel=token,
            manual_room_ids=tuple(manual),
        )

        async with AsyncExitStack() as stack:
            stack.enter_context(_cancel_on_signals(token))
            try:
                active = await stack.enter_async_context(transport)
            except CredentialInvalidError as exc:
                logger.critical("Login failed: %s", exc)
                return RunResult(RunOutcome.CREDENTIAL_INVALID, str(exc))
            if not await _session_accepted(active):
                reason = "The portal rejected the session cookie."
                logger.critical("%s Run roombot --fetch-cookie for a new one.", reason)
                return RunResult(RunOutcome.CREDENTIAL_INVALID, reason)

            orchestrator = SelectionOrchestrator(
                active,
                events,
                retry=RetryPolicy(settings.retry_max_attempts, settings.retry_delay_s),
                gate=StartTimeGate(
                    events,
                    poll_interval=settings.gate_poll_interval_s,
                    early_start_s=settings.gate_early_start_s,
                ),
                grace_period_s=settings.grace_period_s,
                snapshot=snapshot,
            )
            result = await orchestrator.run(ctx)

        logger.info(
            "run_selection finished in %.1f s: %s",
            time.monotonic() - t0,
            result.outcome,
        )
        return result

    finally:
        await conn.close()
        logger.debug("Database connection closed.")


async def run_prefetch(
    settings: Settings,
    *,
    cancel: CancelToken | None = None,
    events: EventBus | None = None,
    transport: BaseTransport | None = None,
) -> RoomIdSnapshot:
    """Resolve every condition now and store the room ids.

    Pre-fetch always queries over HTTP: the browser listing is only
    reachable once the selection dialog opens at the start instant.

    Args:
        settings: Loaded settings; needs ``SESSION_COOKIE`` and
            ``APPLICANT_NAME``.
        cancel: Token to stop early; one is created (and wired to
            SIGINT/SIGTERM) when omitted.
        events: Bus receiving every pre-fetch event.
        transport: Pre-built transport (tests).

    Returns:
        The stored snapshot.

    Raises:
        ConfigError: If no conditions are available or the applicant cannot
            be resolved.
        CredentialInvalidError: If the session cookie is rejected.
        StorageError: If the snapshot cannot be stored.
    """
    RUN_ID_CTX.set(_new_run_id())
    events = events or EventBus()
    token = cancel or CancelToken()

    conn = await open_db(settings.database_path_resolved)
    try:
        repo = StateRepository(conn)
        conditions = await _load_conditions(settings, repo)
        if not conditions:
            raise ConfigError("Pre-fetch needs at least one condition.")
        validate_conditions(conditions)
        await _store_conditions(settings, repo)
        if transport is None:
            transport = HttpTransport(settings)

        async with AsyncExitStack() as stack:
            stack.enter_context(_cancel_on_signals(token))
            active = await stack.enter_async_context(transport)
            if not await _session_accepted(active):
                raise CredentialInvalidError("The portal rejected the session cookie.")
            cache = PrefetchCache(
                active,
                events,
                retry=RetryPolicy(settings.retry_max_attempts, settings.retry_delay_s),
            )
            snapshot = await cache.prefetch(
                conditions, token, applicant_name=settings.applicant_name.strip()
            )

        if token.cancelled:
            # Partial results only add to what is stored.
            written = await repo.save_mappings(snapshot.to_mappings())
        else:
            written = await repo.replace_mappings(snapshot.to_mappings())
        logger.info("Stored %d room-id mapping(s).", written)
        return snapshot

    finally:
        await conn.close()
        logger.debug("Database connection closed.")


async def run_fetch_cookie(
    settings: Settings,
    *,
    browser: BrowserTransport | None = None,
    http_client: PortalHttpClient | None = None,
) -> str:
    """Log in with the portal account and return the session cookie.

    The browser window opens for the applicant to solve the login captcha.
    The cookie it yields is then checked once over HTTP, the way the next
    run would use it.  A failed check is logged, not raised, so the value
    is still printed for the applicant to inspect.

    Args:
        settings: Loaded settings; needs ``PORTAL_ACCOUNT`` and
            ``PORTAL_PASSWORD``.  A configured ``SESSION_COOKIE`` is ignored.
        browser: Pre-built browser transport (tests).
        http_client: Client for the validation request (tests).

    Returns:
        The ``SYS_USER_COOKIE_KEY`` value.

    Raises:
        ConfigError: If the account or password is missing.
        CredentialInvalidError: If the login fails or sets no cookie.
        BrowserTransportError: If the browser cannot be launched.
    """
    RUN_ID_CTX.set(_new_run_id())
    if not (settings.portal_account.strip() and settings.portal_password):
        raise ConfigError("--fetch-cookie needs PORTAL_ACCOUNT and PORTAL_PASSWORD.")

    if browser is None:
        login_settings = settings.model_copy(
            update={"session_cookie": "", "transport": "browser"}
        )
        browser = BrowserTransport(login_settings)
    async with browser:
        cookie = await browser.read_session_cookie()

    checker = HttpTransport(
        settings.model_copy(update={"session_cookie": cookie}), http_client=http_client
    )
    async with checker:
        try:
            accepted = await checker.check_session()
        except TransportError as exc:
            logger.warning("Could not verify the new session cookie: %s", exc)
        else:
            if not accepted:
                logger.warning("The portal did not accept the new session cookie.")
    return cookie
