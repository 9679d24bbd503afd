"""HTTP transport: claim rooms by posting the portal's forms directly.

This is the fast path.  No page is rendered; the three portal endpoints
are called with :class:`~roombot.transports.http_client.PortalHttpClient`:

``GET /RoomAssign/Index``
    The applicant page.  The applicant's identifier is the ``value`` of
    ``<input name="<applicant name>">``; its ``isapplytalent`` attribute
    ("1" for talent apartments, otherwise public rental) is forwarded on
    every listing query.

``POST /RoomAssign/SelectRoom``
    The listing, filtered server-side by community name only.

``POST /RoomAssign/AjaxSelectRoom``
    The claim.  The body is a short message classified by
    :func:`~roombot.engine.claim.classify_claim_response`.
"""

from __future__ import annotations

import logging
from typing import Final

from bs4 import BeautifulSoup

from roombot.core.exceptions import (
    CredentialInvalidError,
    ListingParseError,
    OrchestratorError,
)
from roombot.core.models import ClaimOutcome, Condition, ListingRecord
from roombot.core.settings import Settings
from roombot.engine.claim import classify_claim_response
from roombot.engine.resolver import parse_listing
from roombot.transports.base import BaseTransport
from roombot.transports.http_client import PortalHttpClient
from roombot.transports.session import looks_like_applicant_page, looks_like_login_page

__all__ = ["HttpTransport"]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Portal endpoints
# ---------------------------------------------------------------------------

_APPLICANT_PATH: Final[str] = "/RoomAssign/Index"
_LISTING_PATH: Final[str] = "/RoomAssign/SelectRoom"
_CLAIM_PATH: Final[str] = "/RoomAssign/AjaxSelectRoom"

#: ``isapplytalent`` value assumed when the applicant input lacks one.
_DEFAULT_APPLY_TALENT: Final[str] = "1"


class HttpTransport(BaseTransport):
    """Portal transport based on direct form submission.

    Args:
        settings: Application settings (base URL, cookie, timeout, page size).
        http_client: Optional pre-built client; when omitted one is created
            from *settings* and closed by :meth:`close`.

    Raises:
        ConfigError: If no client is given and the session cookie is empty.
    """

    name = "http"

    def __init__(
        self,
        settings: Settings,
        http_client: PortalHttpClient | None = None,
    ) -> None:
        super().__init__()
        self._settings = settings
        self._http = http_client or PortalHttpClient(
            base_url=settings.portal_base_url,
            cookie=settings.session_cookie,
            timeout=settings.request_timeout_s,
        )
        self._owns_http = http_client is None
        self.apply_talent: str = _DEFAULT_APPLY_TALENT

    async def close(self) -> None:
        if self._owns_http:
            await self._http.close()

    async def check_session(self) -> bool:
        """Return whether the portal still accepts the session cookie.

        Loads the applicant page once.  Only a page with applicant-page
        markers counts as accepted; a login redirect or an unrecognised page
        does not.

        Raises:
            TransientTransportError: If the portal cannot be reached.
        """
        try:
            response = await self._http.get(_APPLICANT_PATH)
        except CredentialInvalidError:
            logger.warning("Session cookie rejected: redirected to the login page.")
            return False
        if looks_like_applicant_page(response.text):
            logger.info("Session cookie accepted by the portal.")
            return True
        if looks_like_login_page(response.text):
            logger.warning("Session cookie rejected: the login form was served.")
        else:
            logger.warning("Session cookie state unknown: applicant page not recognised.")
        return False

    # ------------------------------------------------------------------
    # BaseTransport interface
    # ------------------------------------------------------------------

    async def resolve_applicant(self, applicant_name: str) -> str | None:
        """Read the applicant identifier from the applicant page.

        Raises:
            CredentialInvalidError: If the page is the login form.
        """
        response = await self._http.get(_APPLICANT_PATH)
        html = response.text

        soup = BeautifulSoup(html, "html.parser")
        node = soup.find("input", attrs={"name": applicant_name})
        applicant_id = (node.get("value") or "").strip() if node is not None else ""
        if applicant_id:
            self.applicant_id = applicant_id
            self.apply_talent = node.get("isapplytalent") or _DEFAULT_APPLY_TALENT
            logger.info(
                "Applicant %s resolved to %s (%s).",
                applicant_name,
                applicant_id,
                "talent apartment" if self.apply_talent == "1" else "public rental",
            )
            return applicant_id

        if looks_like_login_page(html):
            raise CredentialInvalidError(
                "Applicant page shows the login form; the session cookie is invalid."
            )

        logger.warning("Applicant %r not found on the applicant page.", applicant_name)
        return None

    async def fetch_listing(self, condition: Condition) -> list[ListingRecord]:
        """Query the listing for *condition*'s community.

        Raises:
            CredentialInvalidError: If the answer is the login form.
            ListingParseError: If the answer has no listing table.
        """
        data = {
            "ApplyIDs": self._require_applicant(),
            "IsApplyTalent": self.apply_talent,
            "type": "1",
            "SearchEntity._PageSize": str(self._settings.listing_page_size),
            "SearchEntity._PageIndex": "1",
            "SearchEntity._CommonSearchCondition": condition.community_name,
        }
        response = await self._http.post(_LISTING_PATH, data=data)
        try:
            records = parse_listing(response.text, require_table=True)
        except ListingParseError:
            if looks_like_login_page(response.text):
                raise CredentialInvalidError(
                    "Listing query returned the login form; the session cookie is invalid."
                ) from None
            raise
        logger.debug(
            "Listing for %s returned %d row(s).", condition.community_name, len(records)
        )
        return records

    async def attempt_claim(self, room_id: str) -> ClaimOutcome:
        """Post one claim for *room_id*."""
        data = {"ApplyIDs": self._require_applicant(), "roomID": room_id}
        response = await self._http.post(_CLAIM_PATH, data=data)
        text = response.text
        logger.info("Claim response for room %s: %s", room_id, text.strip()[:200])
        return classify_claim_response(text)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_applicant(self) -> str:
        if self.applicant_id is None:
            raise OrchestratorError(
                "No applicant identifier; resolve_applicant() must succeed first."
            )
        return self.applicant_id
