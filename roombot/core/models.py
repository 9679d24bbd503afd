"""Roombot core domain models.

This module defines the applicant's :class:`Condition`, the transient
:class:`ListingRecord` parsed from a listing page, the persisted
:class:`RoomIdMapping`, and the enumerations shared by every layer of the
selection engine.

Typical usage::

    from roombot.core.models import Condition, UnitType

    condition = Condition(
        community_name="青浦人才公寓",
        building_no=3,
        floor_range="3-5,7",
        max_price=2500,
        min_area=40,
        unit_type=UnitType.TWO_ROOM,
    )
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum, StrEnum
from typing import Final

from pydantic import BaseModel, Field, field_validator

__all__ = [
    "UnitType",
    "UNIT_TYPE_LABELS",
    "unit_type_label",
    "unit_type_from_label",
    "Condition",
    "ListingRecord",
    "RoomIdMapping",
    "ClaimOutcome",
    "FallbackTier",
    "RunOutcome",
    "RunState",
    "ClaimAttempt",
    "RunResult",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Unit type
# ---------------------------------------------------------------------------


class UnitType(IntEnum):
    """Room layout offered by the portal.

    The integer value is the ordinal the portal configuration has always
    stored, and it is part of every condition key.
    """

    ONE_ROOM = 0
    TWO_ROOM = 1
    THREE_ROOM = 2


#: Portal display string for every :class:`UnitType`.  Must cover the enum.
UNIT_TYPE_LABELS: Final[dict[UnitType, str]] = {
    UnitType.ONE_ROOM: "一居室",
    UnitType.TWO_ROOM: "二居室",
    UnitType.THREE_ROOM: "三居室",
}

_LABEL_TO_UNIT_TYPE: Final[dict[str, UnitType]] = {
    label: unit_type for unit_type, label in UNIT_TYPE_LABELS.items()
}


def unit_type_label(unit_type: UnitType) -> str:
    """Return the portal display string for *unit_type*."""
    return UNIT_TYPE_LABELS[unit_type]


def unit_type_from_label(label: str) -> UnitType | None:
    """Map a listing's unit-type cell text back to a :class:`UnitType`.

    Args:
        label: Cell text such as ``"二居室"``.  Surrounding whitespace is
            ignored.

    Returns:
        The matching member, or ``None`` for a label the table does not know.
    """
    return _LABEL_TO_UNIT_TYPE.get(label.strip())


# ---------------------------------------------------------------------------
# Condition
# ---------------------------------------------------------------------------


class Condition(BaseModel):
    """One acceptable-room description supplied by the applicant.

    Zero (or an empty floor range) is the "no constraint" sentinel on every
    threshold field.  Conditions are ordered by the caller; position in the
    list is the applicant's priority.

    Attributes:
        community_name: Exact community name as the portal displays it.
        building_no: Building number; ``0`` accepts any building.
        floor_range: Floor specification such as ``"3-5,7,9-11"``; empty or
            ``"0"`` accepts any floor.
        max_price: Monthly rent ceiling; ``0`` is unlimited.
        min_area: Minimum floor area in m²; ``0`` is unlimited.
        unit_type: Required room layout.
    """

    model_config = {"frozen": True}

    community_name: str = Field(..., min_length=1, description="Exact community name.")
    building_no: int = Field(0, ge=0, description="Building number; 0 = any.")
    floor_range: str = Field("", description="Floor spec like '3-5,7'; empty = any.")
    max_price: int = Field(0, ge=0, description="Maximum rent; 0 = unlimited.")
    min_area: int = Field(0, ge=0, description="Minimum area in m²; 0 = unlimited.")
    unit_type: UnitType = Field(UnitType.ONE_ROOM, description="Required layout.")

    @field_validator("community_name", "floor_range", mode="before")
    @classmethod
    def _strip(cls, v: object) -> object:
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("unit_type", mode="before")
    @classmethod
    def _unit_type_from_label(cls, v: object) -> object:
        """Accept the portal display string as well as the ordinal."""
        if isinstance(v, str):
            if v.strip().isdigit():
                return int(v)
            resolved = unit_type_from_label(v)
            if resolved is None:
                raise ValueError(f"unknown unit type label {v!r}")
            return resolved
        return v

    def __str__(self) -> str:
        return (
            f"{self.community_name} (building={self.building_no}, "
            f"floors={self.floor_range or '*'}, max_price={self.max_price}, "
            f"min_area={self.min_area}, type={unit_type_label(self.unit_type)})"
        )


# ---------------------------------------------------------------------------
# Listing record
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ListingRecord:
    """A single row of a listing page.

    Lives only as long as the response it was parsed from.

    Attributes:
        community_name: Community column text.
        building_no: Building column as an integer.
        floor_text: Raw floor column text (e.g. ``"0502"``).
        floor_no: Floor number taken from the first two characters of
            :attr:`floor_text`.
        price: Monthly rent.
        area: Floor area in m².
        unit_type_label: Raw unit-type column text.
        room_id: Opaque room identifier from the row's action element, or
            ``None`` when the row carries none.
    """

    community_name: str
    building_no: int
    floor_text: str
    floor_no: int
    price: float
    area: float
    unit_type_label: str
    room_id: str | None

    @property
    def unit_type(self) -> UnitType | None:
        """The row's layout, or ``None`` if the label is unknown."""
        return unit_type_from_label(self.unit_type_label)

    def describe(self) -> str:
        """Short human-readable summary used in log lines."""
        return (
            f"{self.community_name} building={self.building_no} "
            f"floor={self.floor_text} price={self.price:g} area={self.area:g} "
            f"type={self.unit_type_label} room={self.room_id}"
        )


# ---------------------------------------------------------------------------
# Persisted room-id mapping
# ---------------------------------------------------------------------------


class RoomIdMapping(BaseModel):
    """Room identifiers that matched one condition at pre-fetch time.

    There is no TTL.  A mapping is only as good as the listing was at
    :attr:`last_updated`.
    """

    condition_key: str = Field(..., min_length=1)
    community_name: str
    unit_type: UnitType = UnitType.ONE_ROOM
    building_no: int = 0
    floor_range: str = ""
    max_price: int = 0
    min_area: int = 0
    room_ids: list[str] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=datetime.now)


# ---------------------------------------------------------------------------
# Engine enumerations
# ---------------------------------------------------------------------------


class ClaimOutcome(StrEnum):
    """Classification of a single claim attempt."""

    CLAIMED = "claimed"
    """The portal confirmed the selection."""

    CONTESTED = "contested"
    """Another applicant already holds the room.  Terminal for that room."""

    TRANSIENT = "transient"
    """Network error, timeout, or any non-definitive answer.  Retryable."""

    PENDING_CONFIRMATION = "pending_confirmation"
    """Provisionally selected; the applicant must confirm by hand."""


class FallbackTier(StrEnum):
    """Which rule picked a browser-mode candidate."""

    EXACT = "exact"
    FLOOR = "floor"
    COMMUNITY = "community"


class RunState(StrEnum):
    """States of the selection state machine."""

    IDLE = "idle"
    WAITING_FOR_START = "waiting_for_start"
    RESOLVING = "resolving"
    CLAIMING = "claiming"
    CLAIMED = "claimed"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"
    CONFIG_ERROR = "config_error"
    CREDENTIAL_INVALID = "credential_invalid"


class RunOutcome(StrEnum):
    """Terminal result of one run, as seen by the caller."""

    CLAIMED = "claimed"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"
    CONFIG_ERROR = "config_error"
    CREDENTIAL_INVALID = "credential_invalid"


@dataclass(frozen=True, slots=True)
class ClaimAttempt:
    """One claim made during a run, recorded in order."""

    condition_key: str | None
    room_id: str
    outcome: ClaimOutcome


@dataclass(frozen=True, slots=True)
class RunResult:
    """Final, immutable summary of a run.

    Attributes:
        outcome: Terminal :class:`RunOutcome`.
        reason: Human-readable explanation (empty on a clean claim).
        room_id: The claimed room, if any.
        condition: The condition the claimed room satisfied, if known.
        attempts: Every claim made, in order.
    """

    outcome: RunOutcome
    reason: str = ""
    room_id: str | None = None
    condition: Condition | None = None
    attempts: tuple[ClaimAttempt, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.outcome is RunOutcome.CLAIMED
