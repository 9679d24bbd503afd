"""Claim response classification.

A claim commits to exactly one room id.  The portal answers with a short
text body; this module maps that body onto a
:class:`~roombot.core.models.ClaimOutcome`:

* contention marker → ``CONTESTED`` (another applicant holds the room);
* login marker → :class:`~roombot.core.exceptions.CredentialInvalidError`;
* success marker → ``CLAIMED``;
* anything else → ``TRANSIENT`` (retryable).

Contention is checked first so that a message which mentions both the
selection and the competitor is never read as a success.
"""

from __future__ import annotations

import logging
from typing import Final

from roombot.core.exceptions import CredentialInvalidError
from roombot.core.models import ClaimOutcome

__all__ = [
    "SUCCESS_MARKER",
    "CONTESTED_MARKERS",
    "FAILURE_MARKERS",
    "LOGIN_MARKERS",
    "classify_claim_response",
    "is_contested_message",
]

logger = logging.getLogger(__name__)

#: Substring of a successful claim response.
SUCCESS_MARKER: Final[str] = "成功"

#: Substrings meaning another applicant won the room.
CONTESTED_MARKERS: Final[tuple[str, ...]] = (
    "已经被其他申请人选中",
    "已被其他申请人选中",
    "已被选",
)

#: Substrings that negate :data:`SUCCESS_MARKER` ("not successful").
FAILURE_MARKERS: Final[tuple[str, ...]] = ("不成功", "未成功", "失败")

#: Substrings of the portal's login page.
LOGIN_MARKERS: Final[tuple[str, ...]] = ("用户登录", "请登录")


def is_contested_message(text: str) -> bool:
    """Return ``True`` if *text* says the room went to someone else."""
    return any(marker in text for marker in CONTESTED_MARKERS)


def classify_claim_response(text: str) -> ClaimOutcome:
    """Classify the body of one claim response.

    Args:
        text: Response body (already decoded).

    Returns:
        ``CLAIMED``, ``CONTESTED`` or ``TRANSIENT``.

    Raises:
        CredentialInvalidError: If the body is the login page.
    """
    body = text.strip()
    if is_contested_message(body):
        return ClaimOutcome.CONTESTED
    if any(marker in body for marker in LOGIN_MARKERS):
        raise CredentialInvalidError("Claim response is the login page; session expired.")
    if SUCCESS_MARKER in body and not any(marker in body for marker in FAILURE_MARKERS):
        return ClaimOutcome.CLAIMED
    logger.debug("Unrecognised claim response treated as transient: %r", body[:200])
    return ClaimOutcome.TRANSIENT
