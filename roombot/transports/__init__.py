"""Portal transports: direct form posts and a driven browser page."""

from roombot.transports.base import BaseTransport
from roombot.transports.browser import BrowserTransport
from roombot.transports.http import HttpTransport
from roombot.transports.http_client import PortalHttpClient

__all__ = ["BaseTransport", "BrowserTransport", "HttpTransport", "PortalHttpClient"]
