"""Condition key strategy for Roombot.

The **condition key** is the lookup key shared by the pre-fetch cache, the
persistence layer, and the orchestrator.  It is a plain concatenation of
every field of a :class:`~roombot.core.models.Condition`::

    "<community>_<unit type ordinal>_<building>_<floor range>_<max price>_<min area>"

It must be pure: no clock, no randomness, no process state.  Two conditions
with identical field values always produce the same key, so a mapping saved
by one run is found again by the next run as long as the applicant has not
edited the condition in between.

Typical usage::

    from roombot.core.ids import condition_key

    key = condition_key(condition)
    room_ids = snapshot.get(key)
"""

from __future__ import annotations

import logging

from roombot.core.models import Condition

__all__ = ["CONDITION_KEY_SEPARATOR", "condition_key"]

logger = logging.getLogger(__name__)

#: Separator placed between fields.
CONDITION_KEY_SEPARATOR: str = "_"


def condition_key(condition: Condition) -> str:
    """Return the deterministic key for *condition*.

    Args:
        condition: Any condition.

    Returns:
        A string such as ``"青浦人才公寓_1_3_3-5_2500_40"``.

    Example::

        a = Condition(community_name="A", building_no=3)
        assert condition_key(a) == condition_key(a.model_copy())
    """
    return CONDITION_KEY_SEPARATOR.join(
        (
            condition.community_name,
            str(int(condition.unit_type)),
            str(condition.building_no),
            condition.floor_range,
            str(condition.max_price),
            str(condition.min_area),
        )
    )
