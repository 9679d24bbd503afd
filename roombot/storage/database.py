"""SQLite database initialisation for Roombot.

This module is responsible for:

* Opening (or creating) the SQLite file.
* Configuring PRAGMA settings (WAL journal mode).
* Bootstrapping the schema via ``CREATE TABLE IF NOT EXISTS``, which is safe
  on every startup.

Consumers call :func:`open_db` once and hand the connection to
:class:`~roombot.storage.repository.StateRepository`.  The caller closes it.

Typical usage::

    from roombot.storage.database import open_db

    conn = await open_db(settings.database_path_resolved)
    try:
        repo = StateRepository(conn)
        ...
    finally:
        await conn.close()
"""

from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

__all__ = [
    "DEFAULT_DB_PATH",
    "MEMORY_DB",
    "open_db",
    "create_schema",
]

logger = logging.getLogger(__name__)

#: Fallback database path when no explicit path is passed to :func:`open_db`.
DEFAULT_DB_PATH: Path = Path("roombot.db")

#: Special path for a private in-memory database (tests).
MEMORY_DB: str = ":memory:"

# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

#: ``conditions`` holds the applicant's ordered condition list.
#:
#: position     0-based priority; the list is replaced as a whole on save.
#: unit_type    :class:`~roombot.core.models.UnitType` ordinal.
_DDL_CONDITIONS = """\
CREATE TABLE IF NOT EXISTS conditions (
    position        INTEGER  NOT NULL,
    community_name  TEXT     NOT NULL,
    building_no     INTEGER  NOT NULL DEFAULT 0,
    floor_range     TEXT     NOT NULL DEFAULT '',
    max_price       INTEGER  NOT NULL DEFAULT 0,
    min_area        INTEGER  NOT NULL DEFAULT 0,
    unit_type       INTEGER  NOT NULL DEFAULT 0,
    PRIMARY KEY (position)
)"""

#: ``room_id_mappings`` holds pre-fetched room ids per condition key.
#:
#: room_ids      JSON array of room id strings, in listing order.
#: last_updated  ISO-8601 local timestamp of the pre-fetch.
_DDL_ROOM_ID_MAPPINGS = """\
CREATE TABLE IF NOT EXISTS room_id_mappings (
    condition_key   TEXT     NOT NULL,
    community_name  TEXT     NOT NULL,
    unit_type       INTEGER  NOT NULL DEFAULT 0,
    building_no     INTEGER  NOT NULL DEFAULT 0,
    floor_range     TEXT     NOT NULL DEFAULT '',
    max_price       INTEGER  NOT NULL DEFAULT 0,
    min_area        INTEGER  NOT NULL DEFAULT 0,
    room_ids        TEXT     NOT NULL DEFAULT '[]',
    last_updated    TEXT     NOT NULL,
    PRIMARY KEY (condition_key)
)"""

# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def open_db(path: Path | str | None = None) -> aiosqlite.Connection:
    """Open (or create) the SQLite database.

    Steps performed on every call:

    1. Create parent directories for the DB file if they do not exist.
    2. Open the ``aiosqlite`` connection with ``row_factory = aiosqlite.Row``.
    3. Enable WAL journal mode.
    4. Call :func:`create_schema` (idempotent).

    Args:
        path: Filesystem path for the SQLite file, or :data:`MEMORY_DB`.
            Defaults to :data:`DEFAULT_DB_PATH`.

    Returns:
        An open :class:`aiosqlite.Connection`.  The caller must close it.

    Raises:
        aiosqlite.OperationalError: If the file cannot be opened or created.
    """
    target: Path | str = path or DEFAULT_DB_PATH
    if str(target) != MEMORY_DB:
        target = Path(target)
        target.parent.mkdir(parents=True, exist_ok=True)

    logger.debug("Opening SQLite database at %s", target)

    conn: aiosqlite.Connection = await aiosqlite.connect(target)
    conn.row_factory = aiosqlite.Row

    await _configure_pragmas(conn)
    await create_schema(conn)

    logger.info("SQLite database ready at %s", target)
    return conn


async def create_schema(conn: aiosqlite.Connection) -> None:
    """Create all required tables if they do not already exist."""
    await conn.execute(_DDL_CONDITIONS)
    await conn.execute(_DDL_ROOM_ID_MAPPINGS)
    await conn.commit()
    logger.debug("Schema bootstrap complete (conditions, room_id_mappings)")


# ---------------------------------------------------------------------------
# Internals
# ---------------------------------------------------------------------------


async def _configure_pragmas(conn: aiosqlite.Connection) -> None:
    """Apply PRAGMA settings that must be set immediately after opening."""
    result = await conn.execute("PRAGMA journal_mode=WAL")
    row = await result.fetchone()
    mode = row[0] if row else "unknown"
    if mode != "wal":
        logger.debug("SQLite journal_mode is %r (expected for in-memory databases).", mode)
    else:
        logger.debug("SQLite journal_mode set to WAL")
