"""Unit tests for ``PrefetchCache`` and ``RoomIdSnapshot``."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

import pytest

from roombot.core import events as ev
from roombot.core.events import EngineEvent, EventBus
from roombot.core.exceptions import ConfigError
from roombot.core.ids import condition_key
from roombot.core.models import Condition, ListingRecord, RoomIdMapping
from roombot.core.run_context import CancelToken
from roombot.engine.prefetch import PrefetchCache, RoomIdSnapshot
from roombot.engine.retry import RetryPolicy

_NOW = datetime(2030, 5, 1, 8, 0, 0)
_COND_A = Condition(community_name="社区A", max_price=2500)
_COND_B = Condition(community_name="社区B")


def _cache(transport, events: EventBus) -> PrefetchCache:  # type: ignore[no-untyped-def]
    return PrefetchCache(
        transport, events, retry=RetryPolicy(max_attempts=2, delay_s=0), clock=lambda: _NOW
    )


class TestPrefetchCache:
    @pytest.mark.asyncio
    async def test_resolves_every_matching_room(
        self,
        events: EventBus,
        recorded: list[EngineEvent],
        cancel: CancelToken,
        fake_transport: Callable[..., object],
        record: Callable[..., ListingRecord],
    ) -> None:
        transport = fake_transport(
            listings={
                "社区A": [
                    record("社区A", "A1", price=2000),
                    record("社区A", "A2", price=3000),
                    record("社区A", "A3", price=2500),
                ],
            }
        )

        snapshot = await _cache(transport, events).prefetch(
            [_COND_A, _COND_B], cancel, applicant_name="张三"
        )

        assert transport.applicant_id == "A1"
        assert snapshot.get(condition_key(_COND_A)) == ("A1", "A3")
        assert snapshot.last_updated(condition_key(_COND_A)) == _NOW
        # Conditions without a match are left out.
        assert condition_key(_COND_B) not in snapshot
        assert len(snapshot) == 1

        names = [e.name for e in recorded]
        assert names[0] == ev.PREFETCH_START
        assert names.count(ev.PREFETCH_CONDITION) == 2
        assert names[-1] == ev.PREFETCH_COMPLETE
        assert recorded[-1].data == {"stored": 1, "total": 2}

    @pytest.mark.asyncio
    async def test_mapping_carries_condition_fields(
        self,
        events: EventBus,
        cancel: CancelToken,
        fake_transport: Callable[..., object],
        record: Callable[..., ListingRecord],
    ) -> None:
        transport = fake_transport(listings={"社区A": [record("社区A", "A1", price=2000)]})

        snapshot = await _cache(transport, events).prefetch(
            [_COND_A], cancel, applicant_name="张三"
        )

        (mapping,) = snapshot.to_mappings()
        assert mapping.condition_key == condition_key(_COND_A)
        assert mapping.community_name == "社区A"
        assert mapping.max_price == 2500
        assert mapping.room_ids == ["A1"]

    @pytest.mark.asyncio
    async def test_needs_applicant_name(
        self, events: EventBus, cancel: CancelToken, fake_transport: Callable[..., object]
    ) -> None:
        with pytest.raises(ConfigError):
            await _cache(fake_transport(), events).prefetch([_COND_A], cancel)

    @pytest.mark.asyncio
    async def test_unknown_applicant(
        self, events: EventBus, cancel: CancelToken, fake_transport: Callable[..., object]
    ) -> None:
        transport = fake_transport(applicant_id=None)
        with pytest.raises(ConfigError):
            await _cache(transport, events).prefetch([_COND_A], cancel, applicant_name="张三")

    @pytest.mark.asyncio
    async def test_known_applicant_is_not_resolved_again(
        self,
        events: EventBus,
        cancel: CancelToken,
        fake_transport: Callable[..., object],
        record: Callable[..., ListingRecord],
    ) -> None:
        transport = fake_transport(
            listings={"社区A": [record("社区A", "A1")]},
            applicant_error=AssertionError("must not be called"),
        )
        transport.applicant_id = "preset"

        snapshot = await _cache(transport, events).prefetch([_COND_A], cancel)

        assert len(snapshot) == 1

    @pytest.mark.asyncio
    async def test_cancelled_prefetch_stops_early(
        self, events: EventBus, fake_transport: Callable[..., object]
    ) -> None:
        transport = fake_transport()
        token = CancelToken()
        token.cancel("user stop")

        snapshot = await _cache(transport, events).prefetch(
            [_COND_A, _COND_B], token, applicant_name="张三"
        )

        assert len(snapshot) == 0
        assert transport.listing_calls == []


class TestRoomIdSnapshot:
    def _mapping(self, key: str, room_ids: list[str]) -> RoomIdMapping:
        return RoomIdMapping(
            condition_key=key, community_name="社区A", room_ids=room_ids, last_updated=_NOW
        )

    def test_empty_mappings_are_dropped(self) -> None:
        snapshot = RoomIdSnapshot.from_mappings(
            [self._mapping("k1", ["R1"]), self._mapping("k2", [])]
        )
        assert list(snapshot) == ["k1"]
        assert snapshot.get("k2") == ()
        assert snapshot.last_updated("k2") is None

    def test_later_duplicates_win(self) -> None:
        snapshot = RoomIdSnapshot.from_mappings(
            [self._mapping("k1", ["OLD"]), self._mapping("k1", ["NEW"])]
        )
        assert snapshot.get("k1") == ("NEW",)

    def test_snapshot_is_isolated_from_its_inputs(self) -> None:
        source = self._mapping("k1", ["R1"])
        snapshot = RoomIdSnapshot({"k1": source})

        source.room_ids.append("R2")
        snapshot.to_mappings()[0].room_ids.append("R3")

        assert snapshot.get("k1") == ("R1",)
