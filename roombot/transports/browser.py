"""Browser transport: claim rooms by clicking through the portal with Playwright.

Slower than :class:`~roombot.transports.http.HttpTransport` but identical to
what a human applicant does, and the only way to log in with an account and
password (the login form has a drag captcha that the applicant solves by
hand in the visible window).

Flow of one run
---------------
1. :meth:`BrowserTransport.open` launches Chromium and logs in, by session
   cookie when one is configured (verified by ``#mainCompany`` on the home
   page) and otherwise through the login form, waiting up to ten minutes for
   the captcha.
2. :meth:`resolve_applicant` opens the applicant page, reads the
   applicant's identifier and ticks the applicant's checkbox.
3. :meth:`on_gate_open` clicks "assign room" until the selection dialog
   iframe loads with the applicant in its URL.  Before the start instant
   the portal answers with an empty dialog, which is closed and retried.
4. :meth:`resolve_candidates` searches the community inside the iframe and
   picks one row with :func:`~roombot.engine.resolver.select_fallback`.
5. :meth:`attempt_claim` clicks the row, confirms, and (with auto-confirm)
   presses the final confirmation and reads the result dialog.

After step 1, :meth:`read_session_cookie` returns the session cookie of the
login so that the HTTP transport can use it (``roombot --fetch-cookie``).

All clicks are dispatched from page script rather than as pointer events,
so overlays left by the portal's dialogs cannot intercept them.
"""

from __future__ import annotations

import logging
from typing import Final

from playwright.async_api import (
    Browser,
    BrowserContext,
    Frame,
    Locator,
    Page,
    Playwright,
    async_playwright,
)
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from roombot.core import events
from roombot.core.events import EventBus, EventLevel
from roombot.core.exceptions import BrowserTransportError, CredentialInvalidError
from roombot.core.models import ClaimOutcome, Condition, FallbackTier, ListingRecord
from roombot.core.run_context import CancelToken
from roombot.core.settings import Settings
from roombot.engine.claim import is_contested_message
from roombot.engine.resolver import parse_listing, select_fallback
from roombot.transports.base import BaseTransport
from roombot.transports.session import (
    SESSION_COOKIE_NAME,
    is_login_url,
    session_cookie_value,
)

__all__ = ["BrowserTransport"]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Portal pages and selectors
# ---------------------------------------------------------------------------

_HOME_PATH: Final[str] = "/CompanyHome/Main"
_LOGIN_PATH: Final[str] = "/SysLoginManage"
_APPLICANT_PATH: Final[str] = "/RoomAssign/Index"

_HOME_MARKER: Final[str] = "#mainCompany"
_LOGIN_ACCOUNT: Final[str] = "input[name='UserAccount']"
_LOGIN_PASSWORD: Final[str] = "input[name='PD']"
_LOGIN_BUTTON: Final[str] = ".CompanyloginButton"

_ASSIGN_BUTTON: Final[str] = "a[onclick='assignRoom(1)']"
_DIALOG_IFRAME: Final[str] = "#iframeDialog"
_DIALOG_CLOSE: Final[str] = ".ui-dialog-titlebar-close"
_SEARCH_INPUT: Final[str] = "#SearchEntity__CommonSearchCondition"
_SEARCH_BUTTON: Final[str] = "#submitButton"
_LISTING_TABLE: Final[str] = "table#common-table"
_CONFIRM_BUTTON: Final[str] = "xpath=//button/span[text()='确定']"
_FINAL_CONFIRM_BUTTON: Final[str] = "xpath=//button/span[text()='最终确认']"
_RESULT_DIALOG: Final[str] = "#sysConfirm"

#: The dialog iframe URL carries the applicant once selection is open.
_SELECTION_READY_MARKER: Final[str] = "ApplyIDs"

# ---------------------------------------------------------------------------
# Timeouts (milliseconds, as Playwright expects)
# ---------------------------------------------------------------------------

_COOKIE_CHECK_TIMEOUT_MS: Final[int] = 3_000
_CAPTCHA_TIMEOUT_MS: Final[int] = 600_000
_ELEMENT_TIMEOUT_MS: Final[int] = 10_000
_DIALOG_TIMEOUT_MS: Final[int] = 2_000
_CONFIRM_TIMEOUT_MS: Final[int] = 5_000
_FINAL_CONFIRM_TIMEOUT_MS: Final[int] = 60_000

#: Pause between a button appearing and the click dispatched on it.
_PRE_CLICK_PAUSE_MS: Final[int] = 50


class BrowserTransport(BaseTransport):
    """Portal transport that drives one exclusive Chromium page.

    Args:
        settings: Application settings (base URL, credentials, headless flag,
            click interval, auto-confirm).
        events: Optional bus; receives a ``FALLBACK_SELECTED`` event for
            every row chosen.
    """

    name = "browser"

    def __init__(self, settings: Settings, events: EventBus | None = None) -> None:
        super().__init__()
        self._settings = settings
        self._events = events
        self._base_url = settings.portal_base_url
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None
        self._page: Page | None = None
        self._frame: Frame | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Launch the browser and log in.

        Raises:
            CredentialInvalidError: If neither the cookie nor the account
                login works.
            BrowserTransportError: If the browser cannot be launched.
        """
        if self._page is not None:
            return
        try:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self._settings.browser_headless
            )
            self._context = await self._browser.new_context()
            self._page = await self._context.new_page()
        except PlaywrightError as exc:
            await self.close()
            raise BrowserTransportError(self.name, f"Browser launch failed: {exc}") from exc
        logger.info("Browser launched (headless=%s).", self._settings.browser_headless)
        await self._login()

    async def close(self) -> None:
        """Close the page, the browser and Playwright.  Safe to call twice."""
        for resource in (self._context, self._browser):
            if resource is not None:
                try:
                    await resource.close()
                except PlaywrightError:
                    logger.debug("Ignoring error while closing %r.", resource, exc_info=True)
        if self._playwright is not None:
            await self._playwright.stop()
        self._playwright = self._browser = self._context = None
        self._page = self._frame = None

    async def read_session_cookie(self) -> str:
        """Return the session cookie value of the logged-in browser context.

        Used to hand a captcha-solved login over to the HTTP transport.

        Raises:
            CredentialInvalidError: If the portal set no session cookie.
            BrowserTransportError: If the browser is not open.
        """
        context = self._context
        if context is None:
            raise BrowserTransportError(self.name, "Browser is not open; call open() first.")
        try:
            cookies = await context.cookies(self._base_url)
        except PlaywrightError as exc:
            raise BrowserTransportError(self.name, f"Reading cookies failed: {exc}") from exc
        for cookie in cookies:
            if cookie.get("name") == SESSION_COOKIE_NAME and cookie.get("value"):
                logger.info("Session cookie read from the browser.")
                return cookie["value"]
        logger.warning(
            "No %s cookie; the browser holds: %s",
            SESSION_COOKIE_NAME,
            ", ".join(sorted(str(c.get("name")) for c in cookies)) or "nothing",
        )
        raise CredentialInvalidError("Logged in, but the portal set no session cookie.")

    # ------------------------------------------------------------------
    # BaseTransport interface
    # ------------------------------------------------------------------

    async def resolve_applicant(self, applicant_name: str) -> str | None:
        """Open the applicant page, read the identifier and tick the applicant."""
        page = self._require_page()
        try:
            await page.goto(self._url(_APPLICANT_PATH))
            if is_login_url(page.url):
                raise CredentialInvalidError("Applicant page redirected to the login page.")
            applicant = page.locator(f"input[name='{applicant_name}']")
            await applicant.wait_for(state="attached", timeout=_ELEMENT_TIMEOUT_MS)
            applicant_id = (await applicant.get_attribute("value") or "").strip()
            await applicant.click()
        except PlaywrightTimeoutError:
            logger.warning("Applicant %r not found on the applicant page.", applicant_name)
            return None
        except PlaywrightError as exc:
            raise BrowserTransportError(self.name, f"Applicant lookup failed: {exc}") from exc

        if not applicant_id:
            logger.warning("Applicant %r has no identifier on the page.", applicant_name)
            return None
        self.applicant_id = applicant_id
        logger.info("Applicant %s resolved to %s.", applicant_name, applicant_id)
        return applicant_id

    async def on_gate_open(self, cancel: CancelToken) -> None:
        """Open the selection dialog, retrying until it is ready or *cancel* fires."""
        page = self._require_page()
        interval_s = self._settings.click_interval_ms / 1000.0
        attempts = 0
        while not cancel.cancelled:
            attempts += 1
            try:
                if await self._try_enter_selection(page):
                    logger.info("Selection dialog opened after %d attempt(s).", attempts)
                    return
                logger.debug("Selection not open yet (attempt %d); closing dialog.", attempts)
                await self._js_click(page.locator(_DIALOG_CLOSE).first, _DIALOG_TIMEOUT_MS)
            except PlaywrightError as exc:
                logger.debug("Entering selection failed (attempt %d): %s", attempts, exc)
            await cancel.wait(interval_s)

    async def fetch_listing(self, condition: Condition) -> list[ListingRecord]:
        """Search *condition*'s community inside the dialog and parse the table."""
        frame = self._require_frame()
        try:
            search = frame.locator(_SEARCH_INPUT)
            await search.wait_for(state="attached", timeout=_CONFIRM_TIMEOUT_MS)
            await search.fill(condition.community_name)
            await self._js_click(frame.locator(_SEARCH_BUTTON), _CONFIRM_TIMEOUT_MS)
            await frame.wait_for_load_state("domcontentloaded")
            await frame.locator(_LISTING_TABLE).wait_for(
                state="attached", timeout=_ELEMENT_TIMEOUT_MS
            )
            html = await frame.content()
        except PlaywrightError as exc:
            raise BrowserTransportError(
                self.name, f"Search for {condition.community_name} failed: {exc}"
            ) from exc
        return parse_listing(html)

    async def resolve_candidates(self, condition: Condition) -> list[str]:
        """Pick one row with the three-tier fallback."""
        picked = select_fallback(await self.fetch_listing(condition), condition)
        if picked is None:
            return []
        record, tier = picked
        message = f"Selected {record.describe()} ({tier} match)"
        if self._events is not None:
            self._events.emit(
                events.FALLBACK_SELECTED,
                message,
                EventLevel.INFO if tier is FallbackTier.EXACT else EventLevel.WARNING,
                room_id=record.room_id,
                tier=str(tier),
            )
        else:
            logger.info(message)
        return [record.room_id] if record.room_id is not None else []

    async def attempt_claim(self, room_id: str) -> ClaimOutcome:
        """Click *room_id*'s row, confirm, and read the result.

        Returns:
            ``PENDING_CONFIRMATION`` when auto-confirm is off, otherwise
            ``CLAIMED`` or ``CONTESTED``.
        """
        page = self._require_page()
        frame = self._require_frame()
        try:
            await self._js_click(
                frame.locator(f"a[onclick*=\"selectRooms('{room_id}'\"]").first,
                _CONFIRM_TIMEOUT_MS,
            )
            await self._js_click(page.locator(_CONFIRM_BUTTON).first, _CONFIRM_TIMEOUT_MS)
            if not self._settings.auto_confirm:
                logger.info("Room %s selected; waiting for manual final confirmation.", room_id)
                return ClaimOutcome.PENDING_CONFIRMATION
            await self._js_click(
                page.locator(_FINAL_CONFIRM_BUTTON).first, _FINAL_CONFIRM_TIMEOUT_MS
            )
            return await self._read_result(page)
        except PlaywrightError as exc:
            raise BrowserTransportError(self.name, f"Claim of room {room_id} failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    def _require_page(self) -> Page:
        if self._page is None:
            raise BrowserTransportError(self.name, "Browser is not open; call open() first.")
        return self._page

    def _require_frame(self) -> Frame:
        if self._frame is None:
            raise BrowserTransportError(self.name, "Selection dialog is not open yet.")
        return self._frame

    async def _js_click(self, locator: Locator, timeout_ms: int) -> None:
        await locator.wait_for(state="attached", timeout=timeout_ms)
        await locator.page.wait_for_timeout(_PRE_CLICK_PAUSE_MS)
        await locator.evaluate("el => el.click()")

    async def _login(self) -> None:
        page = self._require_page()
        cookie = self._settings.session_cookie.strip()
        if cookie and await self._login_with_cookie(page, session_cookie_value(cookie)):
            logger.info("Logged in with the session cookie.")
            return

        if not (self._settings.portal_account and self._settings.portal_password):
            raise CredentialInvalidError(
                "Session cookie rejected and no account/password configured."
            )

        try:
            await page.goto(self._url(_LOGIN_PATH))
            await page.locator(_LOGIN_ACCOUNT).fill(self._settings.portal_account)
            await page.locator(_LOGIN_PASSWORD).fill(self._settings.portal_password)
            await page.locator(_LOGIN_BUTTON).click()
            logger.warning("Complete the captcha in the browser window to finish logging in.")
            await page.wait_for_url(f"**{_HOME_PATH}", timeout=_CAPTCHA_TIMEOUT_MS)
        except PlaywrightTimeoutError as exc:
            raise CredentialInvalidError("Login was not completed in time.") from exc
        except PlaywrightError as exc:
            raise BrowserTransportError(self.name, f"Login failed: {exc}") from exc
        logger.info("Logged in with account %s.", self._settings.portal_account)

    async def _login_with_cookie(self, page: Page, value: str) -> bool:
        context = self._context
        assert context is not None
        try:
            await context.add_cookies(
                [{"name": SESSION_COOKIE_NAME, "value": value, "url": self._base_url}]
            )
            await page.goto(self._url(_HOME_PATH))
            await page.locator(_HOME_MARKER).wait_for(
                state="attached", timeout=_COOKIE_CHECK_TIMEOUT_MS
            )
        except PlaywrightError as exc:
            logger.warning("Cookie login failed (%s); trying account login.", exc)
            return False
        return True

    async def _try_enter_selection(self, page: Page) -> bool:
        await self._js_click(page.locator(_ASSIGN_BUTTON).first, _DIALOG_TIMEOUT_MS)
        await page.wait_for_timeout(self._settings.click_interval_ms)
        iframe = page.locator(_DIALOG_IFRAME)
        await iframe.wait_for(state="attached", timeout=_DIALOG_TIMEOUT_MS)
        src = await iframe.get_attribute("src") or ""
        if _SELECTION_READY_MARKER not in src:
            return False
        handle = await iframe.element_handle()
        frame = await handle.content_frame() if handle is not None else None
        if frame is None:
            return False
        self._frame = frame
        return True

    async def _read_result(self, page: Page) -> ClaimOutcome:
        dialog = page.locator(_RESULT_DIALOG)
        try:
            await dialog.wait_for(state="visible", timeout=_DIALOG_TIMEOUT_MS)
        except PlaywrightTimeoutError:
            # No result dialog means the portal accepted the selection.
            return ClaimOutcome.CLAIMED
        message = await dialog.inner_text()
        if is_contested_message(message):
            await self._js_click(page.locator(_CONFIRM_BUTTON).first, _DIALOG_TIMEOUT_MS)
            return ClaimOutcome.CONTESTED
        logger.info("Result dialog: %s", message.strip()[:200])
        return ClaimOutcome.CLAIMED
