"""State repository for conditions and pre-fetched room ids.

Provides :class:`StateRepository`, the single data-access object for the
``conditions`` and ``room_id_mappings`` tables.  It is the persistence
collaborator of the engine: the engine itself never touches SQLite.

Every method wraps :class:`aiosqlite.Error` in
:class:`~roombot.core.exceptions.StorageError` so callers deal with one
exception family.

Typical usage::

    conn = await open_db()
    repo = StateRepository(conn)

    await repo.save_conditions(settings.conditions)
    snapshot = RoomIdSnapshot.from_mappings(await repo.load_mappings())
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Sequence
from datetime import datetime

import aiosqlite

from roombot.core.exceptions import StorageError
from roombot.core.models import Condition, RoomIdMapping, UnitType

__all__ = ["StateRepository"]

logger = logging.getLogger(__name__)


class StateRepository:
    """Data-access object for conditions and room-id mappings.

    Owns no connection lifecycle; the caller supplies an open
    :class:`aiosqlite.Connection` (see :func:`~roombot.storage.database.open_db`)
    and closes it when done.

    Args:
        conn: Open :class:`aiosqlite.Connection` with the schema created.
    """

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    # ------------------------------------------------------------------
    # Conditions
    # ------------------------------------------------------------------

    async def save_conditions(self, conditions: Sequence[Condition]) -> None:
        """Replace the stored condition list, preserving order.

        Raises:
            StorageError: If the write fails.
        """
        rows = [
            (
                position,
                condition.community_name,
                condition.building_no,
                condition.floor_range,
                condition.max_price,
                condition.min_area,
                int(condition.unit_type),
            )
            for position, condition in enumerate(conditions)
        ]
        try:
            await self._conn.execute("DELETE FROM conditions")
            await self._conn.executemany(
                """
                INSERT INTO conditions
                    (position, community_name, building_no, floor_range,
                     max_price, min_area, unit_type)
                VALUES
                    (?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            await self._conn.commit()
        except aiosqlite.Error as exc:
            await self._conn.rollback()
            raise StorageError(f"Saving conditions failed: {exc}") from exc
        logger.debug("Saved %d condition(s)", len(rows))

    async def load_conditions(self) -> list[Condition]:
        """Return the stored conditions in priority order.

        Raises:
            StorageError: If the read fails.
        """
        try:
            cursor = await self._conn.execute(
                """
                SELECT community_name, building_no, floor_range,
                       max_price, min_area, unit_type
                FROM conditions
                ORDER BY position
                """
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise StorageError(f"Loading conditions failed: {exc}") from exc

        return [
            Condition(
                community_name=row["community_name"],
                building_no=row["building_no"],
                floor_range=row["floor_range"],
                max_price=row["max_price"],
                min_area=row["min_area"],
                unit_type=UnitType(row["unit_type"]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Room-id mappings
    # ------------------------------------------------------------------

    async def save_mappings(self, mappings: Iterable[RoomIdMapping]) -> int:
        """Insert or overwrite mappings by condition key.

        Returns:
            Number of mappings written.

        Raises:
            StorageError: If the write fails.
        """
        return await self._write_mappings(mappings, replace=False)

    async def replace_mappings(self, mappings: Iterable[RoomIdMapping]) -> int:
        """Replace every stored mapping with *mappings* in one transaction.

        On failure the previous mappings are kept.

        Returns:
            Number of mappings written.

        Raises:
            StorageError: If the write fails.
        """
        return await self._write_mappings(mappings, replace=True)

    async def _write_mappings(self, mappings: Iterable[RoomIdMapping], *, replace: bool) -> int:
        rows = [
            (
                mapping.condition_key,
                mapping.community_name,
                int(mapping.unit_type),
                mapping.building_no,
                mapping.floor_range,
                mapping.max_price,
                mapping.min_area,
                json.dumps(mapping.room_ids, ensure_ascii=False),
                mapping.last_updated.isoformat(),
            )
            for mapping in mappings
        ]
        try:
            if replace:
                await self._conn.execute("DELETE FROM room_id_mappings")
            await self._conn.executemany(
                """
                INSERT OR REPLACE INTO room_id_mappings
                    (condition_key, community_name, unit_type, building_no,
                     floor_range, max_price, min_area, room_ids, last_updated)
                VALUES
                    (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            await self._conn.commit()
        except aiosqlite.Error as exc:
            await self._conn.rollback()
            raise StorageError(f"Saving room-id mappings failed: {exc}") from exc
        logger.debug("Saved %d room-id mapping(s) (replace=%s)", len(rows), replace)
        return len(rows)

    async def load_mappings(self) -> list[RoomIdMapping]:
        """Return every stored mapping.

        Rows that cannot be read back, such as an unknown unit type or a
        malformed timestamp, are skipped with a warning.

        Raises:
            StorageError: If the read fails.
        """
        try:
            cursor = await self._conn.execute(
                """
                SELECT condition_key, community_name, unit_type, building_no,
                       floor_range, max_price, min_area, room_ids, last_updated
                FROM room_id_mappings
                ORDER BY condition_key
                """
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise StorageError(f"Loading room-id mappings failed: {exc}") from exc

        mappings: list[RoomIdMapping] = []
        for row in rows:
            try:
                room_ids = json.loads(row["room_ids"])
                if not isinstance(room_ids, list):
                    raise ValueError("room_ids is not a list")
                # pydantic's ValidationError is a ValueError too.
                mapping = RoomIdMapping(
                    condition_key=row["condition_key"],
                    community_name=row["community_name"],
                    unit_type=UnitType(row["unit_type"]),
                    building_no=row["building_no"],
                    floor_range=row["floor_range"],
                    max_price=row["max_price"],
                    min_area=row["min_area"],
                    room_ids=[str(room_id) for room_id in room_ids],
                    last_updated=datetime.fromisoformat(row["last_updated"]),
                )
            except (TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable mapping %s: %s", row["condition_key"], exc)
                continue
            mappings.append(mapping)
        return mappings

    async def clear_mappings(self) -> int:
        """Delete every stored mapping.

        Returns:
            Number of rows deleted.

        Raises:
            StorageError: If the delete fails.
        """
        try:
            cursor = await self._conn.execute("DELETE FROM room_id_mappings")
            await self._conn.commit()
        except aiosqlite.Error as exc:
            raise StorageError(f"Clearing room-id mappings failed: {exc}") from exc
        logger.debug("Cleared %d room-id mapping(s)", cursor.rowcount)
        return cursor.rowcount
