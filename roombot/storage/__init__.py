"""SQLite-backed persistence for conditions and pre-fetched room ids."""

from roombot.storage.database import DEFAULT_DB_PATH, MEMORY_DB, create_schema, open_db
from roombot.storage.repository import StateRepository

__all__ = [
    "DEFAULT_DB_PATH",
    "MEMORY_DB",
    "open_db",
    "create_schema",
    "StateRepository",
]
