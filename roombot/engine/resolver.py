"""Listing resolver: turn a listing page into matching room identifiers.

The portal answers a listing query with an HTML page whose
``table#common-table`` holds one row per available room.  This module

1. parses those rows into :class:`~roombot.core.models.ListingRecord`
   objects (:func:`parse_listing`),
2. re-checks every condition constraint client-side
   (:func:`matches_condition`), because the server only filters by
   community name, and
3. applies one of three deterministic selection strategies:
   :func:`first_match` (claim path), :func:`all_matches` (pre-fetch path)
   and :func:`select_fallback` (browser path).

Column layout of a listing row (0-based ``<td>`` index)::

    1 community   2 building   3 floor ("0502")   5 price   7 area   8 unit type

The room identifier is the first argument of the ``selectRooms('<id>', ...)``
call in the row's action anchor.

Everything here is pure and synchronous; transports call it on the markup
they fetched.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable

from bs4 import BeautifulSoup, Tag

from roombot.core.criteria import filter_area, filter_equal, filter_floor, filter_price
from roombot.core.exceptions import ListingParseError
from roombot.core.models import Condition, FallbackTier, ListingRecord

__all__ = [
    "LISTING_TABLE",
    "LISTING_TABLE_SELECTOR",
    "parse_listing",
    "extract_room_id",
    "matches_condition",
    "first_match",
    "all_matches",
    "select_fallback",
]

logger = logging.getLogger(__name__)

#: CSS selector of the listing table and of its rows.
LISTING_TABLE: str = "table#common-table"
LISTING_TABLE_SELECTOR: str = f"{LISTING_TABLE} > tbody > tr"

_MIN_CELLS = 9

_COL_COMMUNITY = 1
_COL_BUILDING = 2
_COL_FLOOR = 3
_COL_PRICE = 5
_COL_AREA = 7
_COL_UNIT_TYPE = 8

_ROOM_ID_RE: re.Pattern[str] = re.compile(r"selectRooms\(\s*'([^']+)'")


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def extract_room_id(row: Tag) -> str | None:
    """Return the room id from *row*'s ``selectRooms`` anchor, if any."""
    for anchor in row.find_all("a", onclick=True):
        match = _ROOM_ID_RE.search(anchor.get("onclick", ""))
        if match:
            return match.group(1)
    return None


def _to_number(text: str) -> float:
    return float(text.replace(",", "").strip())


def _parse_row(row: Tag, index: int) -> ListingRecord | None:
    cells = row.find_all("td", recursive=False)
    if len(cells) < _MIN_CELLS:
        logger.debug("Listing row %d skipped: only %d cells", index, len(cells))
        return None

    texts = [cell.get_text(strip=True) for cell in cells]
    floor_text = texts[_COL_FLOOR]
    try:
        building_no = int(texts[_COL_BUILDING])
        floor_no = int(floor_text[:2])
        price = _to_number(texts[_COL_PRICE])
        area = _to_number(texts[_COL_AREA])
    except ValueError:
        logger.debug("Listing row %d skipped: non-numeric cell in %r", index, texts)
        return None

    return ListingRecord(
        community_name=texts[_COL_COMMUNITY],
        building_no=building_no,
        floor_text=floor_text,
        floor_no=floor_no,
        price=price,
        area=area,
        unit_type_label=texts[_COL_UNIT_TYPE],
        room_id=extract_room_id(row),
    )


def parse_listing(html: str, *, require_table: bool = False) -> list[ListingRecord]:
    """Parse every well-formed row of a listing page, in document order.

    Rows with fewer than nine cells or a non-numeric building, floor, price
    or area are skipped and logged at ``DEBUG``.  A page without the listing
    table yields an empty list.

    Args:
        html: Listing page markup.
        require_table: Raise instead of returning an empty list when the
            page has no listing table at all.

    Returns:
        The parsed records.  ``room_id`` is ``None`` for rows without a
        ``selectRooms`` anchor.

    Raises:
        ListingParseError: If *require_table* is set and the table is
            missing.
    """
    soup = BeautifulSoup(html, "html.parser")
    if require_table and soup.select_one(LISTING_TABLE) is None:
        raise ListingParseError("listing", "page has no listing table")
    rows = soup.select(LISTING_TABLE_SELECTOR)
    if not rows:
        logger.debug("Listing page contains no rows.")
        return []

    records: list[ListingRecord] = []
    for index, row in enumerate(rows):
        record = _parse_row(row, index)
        if record is not None:
            records.append(record)
    logger.debug("Parsed %d/%d listing rows.", len(records), len(rows))
    return records


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------


def matches_condition(record: ListingRecord, condition: Condition) -> bool:
    """Return ``True`` if *record* satisfies every constraint of *condition*.

    Checked in order, stopping at the first failure: community, building,
    floor, price, area.  Unit type is not checked here; the portal listing
    is already limited to rooms the applicant is eligible for.
    """
    return (
        record.community_name == condition.community_name
        and filter_equal(record.building_no, condition.building_no)
        and filter_floor(record.floor_no, condition.floor_range)
        and filter_price(record.price, condition.max_price)
        and filter_area(record.area, condition.min_area)
    )


def first_match(records: Iterable[ListingRecord], condition: Condition) -> str | None:
    """Return the room id of the first qualifying record, or ``None``."""
    for record in records:
        if record.room_id is not None and matches_condition(record, condition):
            return record.room_id
    return None


def all_matches(records: Iterable[ListingRecord], condition: Condition) -> list[str]:
    """Return the room ids of every qualifying record, in document order."""
    return [
        record.room_id
        for record in records
        if record.room_id is not None and matches_condition(record, condition)
    ]


def select_fallback(
    records: Iterable[ListingRecord], condition: Condition
) -> tuple[ListingRecord, FallbackTier] | None:
    """Pick one row for the browser transport using three tiers.

    All rows are scanned once.  The result is the first row that

    1. :attr:`FallbackTier.EXACT`: matches community, unit type and every
       filter;
    2. :attr:`FallbackTier.FLOOR`: otherwise matches community, unit type
       and the floor filter;
    3. :attr:`FallbackTier.COMMUNITY`: otherwise is simply in the community.

    Rows without a room id cannot be selected and are ignored.

    Returns:
        ``(record, tier)``, or ``None`` when the community has no rows.
    """
    floor_match: ListingRecord | None = None
    first_option: ListingRecord | None = None

    for record in records:
        if record.room_id is None or record.community_name != condition.community_name:
            continue
        if first_option is None:
            first_option = record
        if record.unit_type != condition.unit_type:
            continue
        if matches_condition(record, condition):
            return record, FallbackTier.EXACT
        if floor_match is None and filter_floor(record.floor_no, condition.floor_range):
            floor_match = record

    if floor_match is not None:
        return floor_match, FallbackTier.FLOOR
    if first_option is not None:
        return first_option, FallbackTier.COMMUNITY
    return None
