"""Async HTTP client for the allocation portal.

Wraps :class:`httpx.AsyncClient` with:

* **Session cookie**: the ``SYS_USER_COOKIE_KEY`` header is attached to
  every request.
* **Login detection**: a redirect to the login surface raises
  :class:`~roombot.core.exceptions.CredentialInvalidError` instead of
  returning the login page as if it were content.
* **Structured error mapping**: timeouts, network failures and 5xx
  responses raise :class:`~roombot.core.exceptions.TransientTransportError`;
  other non-2xx responses raise
  :class:`~roombot.core.exceptions.TransportError`.

The client makes exactly one attempt per call.  Retrying belongs to the
engine, which needs a fixed short delay and cancellation rather than
back-off.

Typical usage::

    from roombot.transports.http_client import PortalHttpClient

    async with PortalHttpClient(base_url=settings.portal_base_url,
                                cookie=settings.session_cookie) as client:
        response = await client.get("/RoomAssign/Index")
"""

from __future__ import annotations

import logging
from types import TracebackType
from typing import Any, Final

import httpx

from roombot.core.exceptions import (
    CredentialInvalidError,
    TransientTransportError,
    TransportError,
)
from roombot.transports.session import is_login_url, normalise_session_cookie

__all__ = ["PortalHttpClient", "DEFAULT_TIMEOUT_S"]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: HTTP status codes that signal a transient server-side fault.
_RETRYABLE_STATUS: Final[frozenset[int]] = frozenset({408, 429, 500, 502, 503, 504})

#: Total per-request timeout in seconds.
DEFAULT_TIMEOUT_S: Final[float] = 30.0

#: Desktop browser User-Agent; the portal serves different markup to mobiles.
_USER_AGENT: Final[str] = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36"
)

_LABEL: Final[str] = "http"


class PortalHttpClient:
    """Async HTTP client bound to one portal and one session.

    Use as an ``async with`` context manager to guarantee the connection
    pool is closed on exit::

        async with PortalHttpClient(base_url=url, cookie=raw_cookie) as c:
            resp = await c.post("/RoomAssign/SelectRoom", data={...})

    Args:
        base_url: Portal base URL; request paths are relative to it.
        cookie: Session cookie as pasted by the applicant (prefix optional).
        timeout: Total per-request timeout in seconds.
        transport: Optional custom :class:`httpx.AsyncBaseTransport`
            (tests pass an :class:`httpx.MockTransport`).

    Raises:
        ConfigError: If *cookie* is empty.
    """

    def __init__(
        self,
        *,
        base_url: str,
        cookie: str,
        timeout: float = DEFAULT_TIMEOUT_S,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url
        self._cookie_header = normalise_session_cookie(cookie)
        self._timeout = httpx.Timeout(timeout)
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    async def __aenter__(self) -> PortalHttpClient:
        """Open the connection pool and return ``self``."""
        await self._ensure_client()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Close the connection pool on exit."""
        await self.close()

    # ------------------------------------------------------------------
    # Public request methods
    # ------------------------------------------------------------------

    async def get(self, url: str, *, params: dict[str, Any] | None = None) -> httpx.Response:
        """Perform one HTTP GET.

        Returns:
            The :class:`httpx.Response` on HTTP 2xx.

        Raises:
            CredentialInvalidError: If the portal redirected to its login page.
            TransientTransportError: On timeouts, network errors and 5xx.
            TransportError: On any other non-2xx status.
        """
        return await self._request("GET", url, params=params)

    async def post(self, url: str, *, data: dict[str, Any] | None = None) -> httpx.Response:
        """Perform one form-encoded HTTP POST.

        Raises:
            CredentialInvalidError: If the portal redirected to its login page.
            TransientTransportError: On timeouts, network errors and 5xx.
            TransportError: On any other non-2xx status.
        """
        return await self._request("POST", url, data=data)

    async def close(self) -> None:
        """Close the underlying HTTP client.  Safe to call multiple times."""
        if self._http is not None and not self._http.is_closed:
            await self._http.aclose()
            logger.debug("PortalHttpClient session closed.")
        self._http = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _ensure_client(self) -> httpx.AsyncClient:
        """Return the open HTTP client, creating it lazily if needed."""
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                follow_redirects=True,
                transport=self._transport,
                headers={
                    "User-Agent": _USER_AGENT,
                    "Accept": "text/html,application/xhtml+xml,*/*;q=0.8",
                    "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8",
                    "Cookie": self._cookie_header,
                    "X-Requested-With": "XMLHttpRequest",
                },
            )
            logger.debug("PortalHttpClient session opened (base_url=%r).", self._base_url)
        return self._http

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
    ) -> httpx.Response:
        client = await self._ensure_client()

        try:
            response = await client.request(method, url, params=params, data=data)
        except httpx.TimeoutException as exc:
            raise TransientTransportError(_LABEL, f"{method} {url} timed out") from exc
        except httpx.TransportError as exc:
            raise TransientTransportError(
                _LABEL, f"{method} {url} failed: {type(exc).__name__}: {exc}"
            ) from exc

        logger.debug(
            "HTTP %s %s → %d (%.0f ms, %d bytes)",
            method,
            url,
            response.status_code,
            response.elapsed.total_seconds() * 1000 if response.elapsed else 0,
            len(response.content),
        )

        if is_login_url(str(response.url)) or any(
            is_login_url(r.headers.get("location", "")) for r in response.history
        ):
            raise CredentialInvalidError(
                f"{method} {url} was redirected to the login page; the session cookie is invalid."
            )

        if response.is_success:
            return response

        if response.status_code in _RETRYABLE_STATUS:
            raise TransientTransportError(
                _LABEL, f"Transient HTTP {response.status_code} from {method} {url}"
            )

        raise TransportError(
            _LABEL,
            f"HTTP {response.status_code} from {method} {url}: {response.text[:200]}",
        )
