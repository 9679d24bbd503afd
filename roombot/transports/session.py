"""Portal session helpers.

The portal authenticates with a single cookie, ``SYS_USER_COOKIE_KEY``.
Applicants paste its value from their browser, sometimes with the
``name=`` prefix and sometimes with it twice; :func:`normalise_session_cookie`
accepts all of those.

An expired session does not produce an HTTP error.  The portal redirects to
its company login page instead, or serves the login form in place of the
requested content; :func:`is_login_url` and :func:`looks_like_login_page`
detect both.
"""

from __future__ import annotations

import logging
from typing import Final

from roombot.core.exceptions import ConfigError

__all__ = [
    "SESSION_COOKIE_NAME",
    "normalise_session_cookie",
    "session_cookie_value",
    "is_login_url",
    "looks_like_login_page",
    "looks_like_applicant_page",
]

logger = logging.getLogger(__name__)

#: Name of the portal session cookie.
SESSION_COOKIE_NAME: Final[str] = "SYS_USER_COOKIE_KEY"

_PREFIX: Final[str] = f"{SESSION_COOKIE_NAME}="

#: URL fragments of the login surface (compared case-insensitively).
_LOGIN_URL_MARKERS: Final[tuple[str, ...]] = ("companyindex", "sysloginmanage")

#: Substrings of the login page body.
_LOGIN_PAGE_MARKERS: Final[tuple[str, ...]] = ("用户登录", "请登录", "login")

#: Substrings only the logged-in applicant page carries.
_APPLICANT_PAGE_MARKERS: Final[tuple[str, ...]] = (
    "申请人姓名",
    "房源分配",
    "选房",
    "isapplytalent",
)


def session_cookie_value(raw: str) -> str:
    """Return the bare cookie value with any number of name prefixes removed.

    Raises:
        ConfigError: If nothing is left.
    """
    value = (raw or "").strip()
    while value.startswith(_PREFIX):
        value = value[len(_PREFIX):].strip()
    if not value:
        raise ConfigError("Session cookie is empty.")
    return value


def normalise_session_cookie(raw: str) -> str:
    """Return the ``Cookie`` header value for *raw*.

    Examples::

        normalise_session_cookie("abc")                                    # 'SYS_USER_COOKIE_KEY=abc'
        normalise_session_cookie("SYS_USER_COOKIE_KEY=abc")                # same
        normalise_session_cookie("SYS_USER_COOKIE_KEY=SYS_USER_COOKIE_KEY=abc")  # same

    Raises:
        ConfigError: If *raw* is blank or only a prefix.
    """
    return _PREFIX + session_cookie_value(raw)


def is_login_url(url: str) -> bool:
    """Return ``True`` if *url* points at the portal login surface."""
    lowered = url.lower()
    return any(marker in lowered for marker in _LOGIN_URL_MARKERS)


def looks_like_login_page(html: str) -> bool:
    """Return ``True`` if *html* carries login-form markers."""
    return any(marker in html for marker in _LOGIN_PAGE_MARKERS)


def looks_like_applicant_page(html: str) -> bool:
    """Return ``True`` if *html* is the applicant page of a logged-in session."""
    return any(marker in html for marker in _APPLICANT_PAGE_MARKERS)
