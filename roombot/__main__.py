"""Roombot process entry-point.

Usage:
    python -m roombot [--prefetch | --fetch-cookie] [--transport {http,browser}]
                      [--room-ids IDS] [--log-level LEVEL] [--log-format FORMAT]

The orchestration logic lives in :mod:`roombot.engine`.  This module is thin:
it calls ``configure_logging()`` first so that every subsequent import
already has a working logger, then hands off to the runner.

Exit codes:

* ``0``: room claimed (or pre-fetch stored, or cookie printed).
* ``1``: configuration error or rejected credentials.
* ``2``: every condition and candidate tried without a claim.
* ``130``: cancelled (Ctrl+C / SIGTERM).
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from pydantic import ValidationError

from roombot.core import configure_logging
from roombot.core.exceptions import ConfigError, CredentialInvalidError, RoombotError
from roombot.core.settings import Settings, parse_manual_room_ids


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="roombot",
        description="Claim a room on the housing-allocation portal at the start instant.",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--prefetch",
        action="store_true",
        help=(
            "Resolve every condition now and store the room ids for the next "
            "run instead of claiming."
        ),
    )
    mode.add_argument(
        "--fetch-cookie",
        action="store_true",
        help=(
            "Log in with PORTAL_ACCOUNT in a browser window and print the "
            "session cookie for SESSION_COOKIE."
        ),
    )
    parser.add_argument(
        "--transport",
        choices=("http", "browser"),
        default=None,
        help="Override TRANSPORT env var.",
    )
    parser.add_argument(
        "--room-ids",
        default=None,
        metavar="IDS",
        help="Comma-separated room ids to claim in order; skips condition matching.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        metavar="LEVEL",
        help="Override LOG_LEVEL env var (DEBUG|INFO|WARNING|ERROR).",
    )
    parser.add_argument(
        "--log-format",
        default=None,
        metavar="FORMAT",
        help="Override LOG_FORMAT env var (text|json).",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry-point registered in ``pyproject.toml``."""
    args = _build_parser().parse_args(argv)

    # Configure logging BEFORE any other roombot imports so that every module
    # obtains a correctly-configured logger on first import.
    try:
        configure_logging(level=args.log_level, fmt=args.log_format)
    except ValueError as exc:
        print(f"roombot: configuration error: {exc}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    logger = logging.getLogger(__name__)
    logger.info("Roombot starting up")

    # Lazy import keeps startup fast when module is imported without running.
    from roombot.engine.runner import (  # noqa: PLC0415
        EXIT_CANCELLED,
        EXIT_CONFIG,
        EXIT_OK,
        exit_code_for,
        run_fetch_cookie,
        run_prefetch,
        run_selection,
    )

    try:
        settings = Settings()
    except ValidationError as exc:
        logger.critical("Configuration error: %s", exc)
        sys.exit(EXIT_CONFIG)
    if args.transport:
        settings = settings.model_copy(update={"transport": args.transport})
    manual_room_ids = (
        parse_manual_room_ids(args.room_ids) if args.room_ids is not None else None
    )

    try:
        if args.prefetch:
            logger.info("Running pre-fetch (--prefetch mode).")
            snapshot = asyncio.run(run_prefetch(settings))
            logger.info("Pre-fetch complete: %s", snapshot)
            sys.exit(EXIT_OK)

        if args.fetch_cookie:
            logger.info("Fetching a session cookie (--fetch-cookie mode).")
            cookie = asyncio.run(run_fetch_cookie(settings))
            print(f"SESSION_COOKIE={cookie}")  # noqa: T201
            sys.exit(EXIT_OK)

        result = asyncio.run(run_selection(settings, manual_room_ids=manual_room_ids))
    except (ConfigError, CredentialInvalidError) as exc:
        logger.critical("Configuration error: %s", exc)
        sys.exit(EXIT_CONFIG)
    except RoombotError as exc:
        logger.critical("Run aborted: %s", exc)
        sys.exit(EXIT_CONFIG)
    except KeyboardInterrupt:
        logger.info("Interrupted, exiting.")
        sys.exit(EXIT_CANCELLED)

    if result.succeeded:
        logger.info("Claimed room %s.", result.room_id)
    else:
        logger.warning("No room claimed: %s (%s)", result.outcome, result.reason)
    sys.exit(exit_code_for(result))


if __name__ == "__main__":
    main()
