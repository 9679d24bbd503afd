"""Room-id pre-fetch cache.

Listing queries are the slow half of a claim.  Before the start instant the
listing is usually already visible, so every condition can be resolved in
advance with the all-matches strategy and the results stored.  At the start
instant the orchestrator then goes straight to claiming.

The cache has no TTL.  Rooms listed at pre-fetch time may have been
withdrawn by the start instant; the orchestrator logs the age of every
mapping it uses and falls back to a live query when a condition has no
stored ids.

Typical usage::

    cache = PrefetchCache(transport, events)
    snapshot = await cache.prefetch(conditions, token, applicant_name="张三")
    await repo.save_mappings(snapshot.to_mappings())
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from datetime import datetime
from functools import partial
from types import MappingProxyType
from typing import TYPE_CHECKING

from roombot.core import events
from roombot.core.events import EventBus, EventLevel
from roombot.core.exceptions import ConfigError
from roombot.core.ids import condition_key
from roombot.core.models import Condition, RoomIdMapping
from roombot.core.run_context import CancelToken
from roombot.engine.retry import RetryPolicy

if TYPE_CHECKING:
    from roombot.transports.base import BaseTransport

__all__ = ["RoomIdSnapshot", "PrefetchCache"]

logger = logging.getLogger(__name__)


class RoomIdSnapshot:
    """Read-only view of pre-fetched room ids, keyed by condition key.

    Built once and never modified, so it can be shared without locking.

    Args:
        mappings: Stored mappings keyed by condition key.  Only mappings with
            at least one room id are kept.
    """

    def __init__(self, mappings: Mapping[str, RoomIdMapping] | None = None) -> None:
        self._mappings: Mapping[str, RoomIdMapping] = MappingProxyType(
            {
                key: mapping.model_copy(deep=True)
                for key, mapping in (mappings or {}).items()
                if mapping.room_ids
            }
        )

    @classmethod
    def from_mappings(cls, mappings: Iterable[RoomIdMapping]) -> RoomIdSnapshot:
        """Build a snapshot from persisted mappings (later duplicates win)."""
        return cls({mapping.condition_key: mapping for mapping in mappings})

    def to_mappings(self) -> list[RoomIdMapping]:
        """Return copies of every mapping, ready to persist."""
        return [mapping.model_copy(deep=True) for mapping in self._mappings.values()]

    def get(self, key: str) -> tuple[str, ...]:
        """Room ids stored for *key*, or an empty tuple."""
        mapping = self._mappings.get(key)
        return tuple(mapping.room_ids) if mapping is not None else ()

    def last_updated(self, key: str) -> datetime | None:
        """When *key* was pre-fetched, or ``None`` if it was not."""
        mapping = self._mappings.get(key)
        return mapping.last_updated if mapping is not None else None

    def __contains__(self, key: object) -> bool:
        return key in self._mappings

    def __iter__(self) -> Iterator[str]:
        return iter(self._mappings)

    def __len__(self) -> int:
        return len(self._mappings)

    def __repr__(self) -> str:
        return f"RoomIdSnapshot(conditions={len(self)})"


class PrefetchCache:
    """Resolve every condition ahead of the start instant.

    Args:
        transport: Open transport used for the listing queries.
        events: Bus for progress events.
        retry: Retry settings for each listing query.
        clock: Timestamp source for :attr:`RoomIdMapping.last_updated`.
    """

    def __init__(
        self,
        transport: BaseTransport,
        events: EventBus,
        *,
        retry: RetryPolicy | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._transport = transport
        self._events = events
        self._retry = retry or RetryPolicy()
        self._clock = clock

    async def prefetch(
        self,
        conditions: Sequence[Condition],
        cancel: CancelToken,
        *,
        applicant_name: str | None = None,
    ) -> RoomIdSnapshot:
        """Resolve all matching room ids for every condition.

        Conditions with no match are left out of the snapshot.  Cancellation
        stops the loop and returns what was found so far.

        Args:
            conditions: Conditions to resolve, in priority order.
            cancel: Token that stops the pre-fetch early.
            applicant_name: Resolved first when the transport has no
                applicant identifier yet.

        Raises:
            ConfigError: If the applicant cannot be resolved.
            CredentialInvalidError: If the session is rejected.
        """
        if self._transport.applicant_id is None:
            await self._resolve_applicant(applicant_name, cancel)

        self._events.emit(
            events.PREFETCH_START,
            f"Pre-fetching room ids for {len(conditions)} condition(s)",
            total=len(conditions),
        )

        found: dict[str, RoomIdMapping] = {}
        for index, condition in enumerate(conditions, start=1):
            if cancel.cancelled:
                logger.info("Pre-fetch cancelled after %d condition(s).", index - 1)
                break
            key = condition_key(condition)
            room_ids = await self._retry.run(
                partial(self._transport.resolve_all, condition),
                f"pre-fetch {condition.community_name}",
                cancel=cancel,
                is_failure=lambda ids: ids is None,
                default=[],
            )
            room_ids = list(room_ids or [])
            self._events.emit(
                events.PREFETCH_CONDITION,
                f"Condition {index} ({condition.community_name}): {len(room_ids)} room(s)",
                EventLevel.INFO if room_ids else EventLevel.WARNING,
                condition_key=key,
                count=len(room_ids),
            )
            if room_ids:
                found[key] = RoomIdMapping(
                    condition_key=key,
                    community_name=condition.community_name,
                    unit_type=condition.unit_type,
                    building_no=condition.building_no,
                    floor_range=condition.floor_range,
                    max_price=condition.max_price,
                    min_area=condition.min_area,
                    room_ids=room_ids,
                    last_updated=self._clock(),
                )

        snapshot = RoomIdSnapshot(found)
        self._events.emit(
            events.PREFETCH_COMPLETE,
            f"Pre-fetch stored room ids for {len(snapshot)}/{len(conditions)} condition(s)",
            EventLevel.SUCCESS if snapshot else EventLevel.WARNING,
            stored=len(snapshot),
            total=len(conditions),
        )
        return snapshot

    async def _resolve_applicant(self, applicant_name: str | None, cancel: CancelToken) -> None:
        if not applicant_name:
            raise ConfigError("Pre-fetch needs an applicant name to query the listing.")
        applicant_id = await self._retry.run(
            partial(self._transport.resolve_applicant, applicant_name),
            "resolve applicant",
            cancel=cancel,
        )
        if applicant_id is None and not cancel.cancelled:
            raise ConfigError(f"Applicant {applicant_name!r} could not be resolved.")
