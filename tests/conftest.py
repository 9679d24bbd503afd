"""Shared pytest fixtures and configuration for the Roombot test suite.

This file is loaded automatically by pytest before any test module.
It provides project-wide fixtures used across the unit tests.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from typing import Any

import pytest
from pydantic_settings import SettingsConfigDict

from roombot.core import configure_logging
from roombot.core.events import EngineEvent, EventBus
from roombot.core.models import ClaimOutcome, Condition, ListingRecord
from roombot.core.run_context import CancelToken
from roombot.core.settings import Settings
from roombot.transports.base import BaseTransport

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _configure_test_logging() -> None:
    """Force DEBUG logging in text format for every test.

    Using ``force=True`` ensures the configuration is applied even when
    pytest's own ``log_cli`` handler is already present.
    """
    configure_logging(level="DEBUG", fmt="text", force=True)


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------

_ROOMBOT_ENV_VARS = (
    "PORTAL_",
    "SESSION_COOKIE",
    "APPLICANT_NAME",
    "START_TIME",
    "TRANSPORT",
    "CONDITIONS",
    "MANUAL_ROOM_IDS",
    "USE_PREFETCHED",
    "AUTO_CONFIRM",
    "CLICK_INTERVAL_MS",
    "GRACE_PERIOD_S",
    "REQUEST_TIMEOUT_S",
    "LISTING_PAGE_SIZE",
    "RETRY_",
    "GATE_",
    "BROWSER_",
    "DATABASE_",
    "LOG_LEVEL",
    "LOG_FORMAT",
)


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove every Roombot env var for the duration of a test.

    Also disables pydantic-settings ``.env`` file loading so that a local
    ``.env`` with a real cookie does not leak into Settings tests.
    """
    for key in list(os.environ):
        if any(key.startswith(prefix) for prefix in _ROOMBOT_ENV_VARS):
            monkeypatch.delenv(key, raising=False)

    monkeypatch.setattr(
        Settings,
        "model_config",
        SettingsConfigDict(
            env_file=None,
            env_file_encoding="utf-8",
            extra="ignore",
        ),
    )


@pytest.fixture()
def make_settings(clean_env: None, tmp_path: Any) -> Callable[..., Settings]:
    """Factory for a runnable :class:`Settings` with fast retry timings.

    Keyword arguments override individual fields.
    """

    def _make(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "session_cookie": "abc123",
            "applicant_name": "张三",
            "start_time": "2000-01-01 09:00:00",
            "conditions": [Condition(community_name="青浦人才公寓")],
            "retry_max_attempts": 3,
            "retry_delay_ms": 0,
            "grace_period_s": 0.01,
            "database_path": str(tmp_path / "roombot.db"),
        }
        values.update(overrides)
        return Settings(**values)

    return _make


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@pytest.fixture()
def events() -> EventBus:
    return EventBus()


@pytest.fixture()
def recorded(events: EventBus) -> list[EngineEvent]:
    """Every event emitted on the ``events`` fixture, in order."""
    seen: list[EngineEvent] = []
    events.subscribe(seen.append)
    return seen


@pytest.fixture()
def cancel() -> CancelToken:
    return CancelToken()


# ---------------------------------------------------------------------------
# Fake transport
# ---------------------------------------------------------------------------


def make_record(
    community: str = "青浦人才公寓",
    room_id: str | None = "R1",
    *,
    building: int = 1,
    floor: str = "0301",
    price: float = 2000,
    area: float = 45,
    label: str = "一居室",
) -> ListingRecord:
    """Build a :class:`ListingRecord` with sensible defaults."""
    return ListingRecord(
        community_name=community,
        building_no=building,
        floor_text=floor,
        floor_no=int(floor[:2]),
        price=price,
        area=area,
        unit_type_label=label,
        room_id=room_id,
    )


class FakeTransport(BaseTransport):
    """In-memory transport driven by scripted listings and claim answers.

    Args:
        listings: Records returned by :meth:`fetch_listing`, per community.
        claims: Per room id, the answers of successive claims.  An entry may
            be an exception instance, which is raised.  Rooms without a
            script (or with an exhausted one) answer ``TRANSIENT``.
        applicant_id: Returned by :meth:`resolve_applicant`; ``None``
            simulates an unknown applicant.
        applicant_error: Raised by :meth:`resolve_applicant` when set.
    """

    name = "fake"

    def __init__(
        self,
        listings: dict[str, list[ListingRecord]] | None = None,
        claims: dict[str, list[ClaimOutcome | Exception]] | None = None,
        *,
        applicant_id: str | None = "A1",
        applicant_error: Exception | None = None,
    ) -> None:
        super().__init__()
        self.listings = listings or {}
        self.claims = {room: list(script) for room, script in (claims or {}).items()}
        self._applicant_id = applicant_id
        self._applicant_error = applicant_error
        self.claim_calls: list[str] = []
        self.listing_calls: list[str] = []
        self.gate_opened = False
        self.opened = False
        self.closed = False

    async def open(self) -> None:
        self.opened = True

    async def close(self) -> None:
        self.closed = True

    async def resolve_applicant(self, applicant_name: str) -> str | None:
        if self._applicant_error is not None:
            raise self._applicant_error
        self.applicant_id = self._applicant_id
        return self._applicant_id

    async def fetch_listing(self, condition: Condition) -> list[ListingRecord]:
        self.listing_calls.append(condition.community_name)
        return list(self.listings.get(condition.community_name, []))

    async def attempt_claim(self, room_id: str) -> ClaimOutcome:
        self.claim_calls.append(room_id)
        script = self.claims.get(room_id)
        if not script:
            return ClaimOutcome.TRANSIENT
        answer = script.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer

    async def on_gate_open(self, cancel: CancelToken) -> None:
        self.gate_opened = True


@pytest.fixture()
def fake_transport() -> Callable[..., FakeTransport]:
    """Factory for :class:`FakeTransport` instances."""
    return FakeTransport


@pytest.fixture()
def record() -> Callable[..., ListingRecord]:
    """Factory for :class:`ListingRecord` instances."""
    return make_record


# ---------------------------------------------------------------------------
# Misc helpers
# ---------------------------------------------------------------------------


@pytest.fixture()
def logger() -> logging.Logger:
    """Return a ``logging.Logger`` scoped to the test suite."""
    return logging.getLogger("tests")
