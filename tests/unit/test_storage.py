"""Unit tests for the SQLite storage layer, run against an in-memory database."""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import datetime
from pathlib import Path

import aiosqlite
import pytest
import pytest_asyncio

from roombot.core.exceptions import StorageError
from roombot.core.models import Condition, RoomIdMapping, UnitType
from roombot.storage.database import MEMORY_DB, open_db
from roombot.storage.repository import StateRepository

_NOW = datetime(2030, 5, 1, 8, 0, 0, 125000)


@pytest_asyncio.fixture()
async def conn() -> AsyncIterator[aiosqlite.Connection]:
    connection = await open_db(MEMORY_DB)
    try:
        yield connection
    finally:
        await connection.close()


@pytest.fixture()
def repo(conn: aiosqlite.Connection) -> StateRepository:
    return StateRepository(conn)


def _mapping(key: str, room_ids: list[str], **kwargs) -> RoomIdMapping:  # type: ignore[no-untyped-def]
    kwargs.setdefault("community_name", "社区A")
    kwargs.setdefault("last_updated", _NOW)
    return RoomIdMapping(condition_key=key, room_ids=room_ids, **kwargs)


class TestDatabase:
    @pytest.mark.asyncio
    async def test_creates_parent_directories(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "dir" / "roombot.db"
        connection = await open_db(path)
        await connection.close()
        assert path.exists()

    @pytest.mark.asyncio
    async def test_schema_is_idempotent(self, tmp_path: Path) -> None:
        path = tmp_path / "roombot.db"
        for _ in range(2):
            connection = await open_db(path)
            await connection.close()


class TestConditions:
    @pytest.mark.asyncio
    async def test_order_is_preserved(self, repo: StateRepository) -> None:
        conditions = [
            Condition(community_name="社区B", floor_range="3-5", unit_type=UnitType.TWO_ROOM),
            Condition(community_name="社区A", building_no=2, max_price=2500, min_area=40),
        ]
        await repo.save_conditions(conditions)
        assert await repo.load_conditions() == conditions

    @pytest.mark.asyncio
    async def test_save_replaces_previous_list(self, repo: StateRepository) -> None:
        await repo.save_conditions([Condition(community_name="旧")] * 3)
        await repo.save_conditions([Condition(community_name="新")])
        assert await repo.load_conditions() == [Condition(community_name="新")]

    @pytest.mark.asyncio
    async def test_empty_database(self, repo: StateRepository) -> None:
        assert await repo.load_conditions() == []

    @pytest.mark.asyncio
    async def test_sqlite_errors_are_wrapped(
        self, conn: aiosqlite.Connection, repo: StateRepository
    ) -> None:
        await conn.execute("DROP TABLE conditions")
        with pytest.raises(StorageError):
            await repo.load_conditions()


class TestMappings:
    @pytest.mark.asyncio
    async def test_save_and_load(self, repo: StateRepository) -> None:
        mapping = _mapping(
            "社区A_1_0__0_0", ["R1", "R2"], unit_type=UnitType.TWO_ROOM, floor_range="3"
        )

        assert await repo.save_mappings([mapping]) == 1
        assert await repo.load_mappings() == [mapping]

    @pytest.mark.asyncio
    async def test_same_key_is_overwritten(self, repo: StateRepository) -> None:
        await repo.save_mappings([_mapping("k", ["OLD"])])
        await repo.save_mappings([_mapping("k", ["NEW"])])

        (loaded,) = await repo.load_mappings()
        assert loaded.room_ids == ["NEW"]

    @pytest.mark.asyncio
    async def test_clear(self, repo: StateRepository) -> None:
        await repo.save_mappings([_mapping("k1", ["R1"]), _mapping("k2", ["R2"])])
        assert await repo.clear_mappings() == 2
        assert await repo.load_mappings() == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("unit_type", "room_ids", "last_updated"),
        [
            (0, "not json", _NOW.isoformat()),
            (0, '{"R1": 1}', _NOW.isoformat()),
            (7, '["R1"]', _NOW.isoformat()),
            (0, '["R1"]', "yesterday"),
        ],
    )
    async def test_unreadable_row_is_skipped(
        self,
        conn: aiosqlite.Connection,
        repo: StateRepository,
        unit_type: int,
        room_ids: str,
        last_updated: str,
    ) -> None:
        await repo.save_mappings([_mapping("good", ["R1"])])
        await conn.execute(
            "INSERT INTO room_id_mappings"
            " (condition_key, community_name, unit_type, room_ids, last_updated)"
            " VALUES (?, ?, ?, ?, ?)",
            ("bad", "社区A", unit_type, room_ids, last_updated),
        )
        await conn.commit()

        assert [m.condition_key for m in await repo.load_mappings()] == ["good"]

    @pytest.mark.asyncio
    async def test_replace_drops_keys_not_written(self, repo: StateRepository) -> None:
        await repo.save_mappings([_mapping("k1", ["R1"]), _mapping("k2", ["R2"])])

        assert await repo.replace_mappings([_mapping("k3", ["R3"])]) == 1
        assert [m.condition_key for m in await repo.load_mappings()] == ["k3"]

    @pytest.mark.asyncio
    async def test_failed_replace_keeps_previous_mappings(
        self, conn: aiosqlite.Connection, repo: StateRepository
    ) -> None:
        await repo.save_mappings([_mapping("k1", ["R1"])])
        await conn.execute(
            "CREATE TRIGGER reject_new BEFORE INSERT ON room_id_mappings"
            " BEGIN SELECT RAISE(ABORT, 'disk full'); END"
        )
        await conn.commit()

        with pytest.raises(StorageError):
            await repo.replace_mappings([_mapping("k2", ["R2"])])

        assert [m.condition_key for m in await repo.load_mappings()] == ["k1"]
