"""Condition filter predicates.

Pure functions that decide whether one listing row is acceptable for one
:class:`~roombot.core.models.Condition`.  Every threshold uses the same
two-valued sentinel scheme: ``0`` (or an empty floor range) means "no
constraint", so the predicate returns ``True`` regardless of the row's value.
Callers must not use ``0`` to mean a real price, area, or building of zero.

Typical usage::

    from roombot.core.criteria import filter_floor, filter_price

    if filter_price(row.price, condition.max_price) and filter_floor(
        row.floor_no, condition.floor_range
    ):
        ...
"""

from __future__ import annotations

import logging
import re

from roombot.core.exceptions import ConfigError

__all__ = [
    "parse_floor_range",
    "validate_floor_range",
    "filter_equal",
    "filter_price",
    "filter_area",
    "filter_floor",
]

logger = logging.getLogger(__name__)

#: Strict syntax accepted by configuration validation: ``3``, ``3-5``,
#: ``3-5,7,9-11``.
_FLOOR_RANGE_RE: re.Pattern[str] = re.compile(r"^\d+(-\d+)?(,\d+(-\d+)?)*$")

_RANGE_SEPARATOR = "-"


# ---------------------------------------------------------------------------
# Floor ranges
# ---------------------------------------------------------------------------


def parse_floor_range(spec: str) -> frozenset[int]:
    """Expand a floor specification into the set of floors it names.

    Tokens are separated by commas.  A token is either a single integer or an
    inclusive ``low-high`` range.  Tokens with swapped bounds (``5-3``) or
    that do not parse are dropped and logged at ``DEBUG``; parsing never
    raises.

    Args:
        spec: Floor specification, e.g. ``"3-4,6"``.

    Returns:
        The floors named by *spec*.  Empty for blank input or the literal
        ``"0"``, which both mean "no floor filter".

    Examples::

        parse_floor_range("3-4,6")  # → frozenset({3, 4, 6})
        parse_floor_range("")       # → frozenset()
        parse_floor_range("0")      # → frozenset()
    """
    if not spec or not spec.strip() or spec.strip() == "0":
        return frozenset()

    floors: set[int] = set()
    for raw_token in spec.split(","):
        token = raw_token.strip()
        if not token:
            continue
        if _RANGE_SEPARATOR in token:
            bounds = token.split(_RANGE_SEPARATOR)
            try:
                if len(bounds) != 2:
                    raise ValueError(token)
                low, high = int(bounds[0].strip()), int(bounds[1].strip())
            except ValueError:
                logger.debug("Floor range token %r skipped: malformed range", token)
                continue
            if low > high:
                logger.debug("Floor range token %r skipped: bounds are swapped", token)
                continue
            floors.update(range(low, high + 1))
        else:
            try:
                floors.add(int(token))
            except ValueError:
                logger.debug("Floor range token %r skipped: not an integer", token)
    return frozenset(floors)


def validate_floor_range(spec: str) -> None:
    """Reject a floor specification whose syntax is malformed.

    Used when a run is configured, so that a typo fails fast instead of being
    silently dropped by :func:`parse_floor_range` at the start instant.

    Args:
        spec: Floor specification.  Blank input is valid (no filter).

    Raises:
        ConfigError: If *spec* is non-blank and does not match
            ``N``, ``N-M`` or a comma-separated list of those.
    """
    if not spec or not spec.strip():
        return
    compact = spec.replace(" ", "")
    if not _FLOOR_RANGE_RE.match(compact):
        raise ConfigError(
            f"Malformed floor range {spec!r}; expected e.g. '3-5' or '3,5,7-9'."
        )


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------


def filter_equal(actual: int, wanted: int) -> bool:
    """Return ``True`` if *wanted* is the wildcard ``0`` or equals *actual*."""
    return wanted == 0 or actual == wanted


def filter_price(price: float, max_price: int) -> bool:
    """Return ``True`` if *max_price* is unlimited (``0``) or *price* ≤ it."""
    return max_price == 0 or price <= max_price


def filter_area(area: float, min_area: int) -> bool:
    """Return ``True`` if *min_area* is unlimited (``0``) or *area* ≥ it."""
    return min_area == 0 or area >= min_area


def filter_floor(floor: int, range_spec: str) -> bool:
    """Return ``True`` if *floor* is allowed by *range_spec*.

    An empty parsed set (blank spec, ``"0"``, or nothing parseable) matches
    every floor.
    """
    if not range_spec or not range_spec.strip():
        return True
    floors = parse_floor_range(range_spec)
    return not floors or floor in floors
