"""Roombot application settings loaded from environment and ``.env`` files.

Uses :mod:`pydantic_settings` to parse environment variables (and optionally
an ``.env`` file) into a validated settings object.

Every environment variable maps 1-to-1 to a field in :class:`Settings`.  The
field name is the **lowercase** version of the env-var name (e.g.
``SESSION_COOKIE`` → ``session_cookie``).  ``CONDITIONS`` is a JSON list of
condition objects, because pydantic-settings decodes complex fields as JSON.

Typical usage::

    from roombot.core.settings import Settings

    settings = Settings()                      # loads from env + .env
    warnings = settings.validate_for_run()     # raises ConfigError if unusable
    for warning in warnings:
        logger.warning(warning)
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from pathlib import Path
from typing import Annotated

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from roombot.core.criteria import validate_floor_range
from roombot.core.exceptions import ConfigError
from roombot.core.models import Condition

__all__ = [
    "Settings",
    "parse_manual_room_ids",
    "validate_conditions",
    "DEFAULT_PORTAL_BASE_URL",
]

logger = logging.getLogger(__name__)

#: Public address of the housing-allocation portal.
DEFAULT_PORTAL_BASE_URL: str = "https://ent.qpgzf.cn"

_ROOM_ID_SEPARATORS = re.compile(r"[\r\n,]+")

# Click intervals outside this window are allowed but flagged.
_CLICK_INTERVAL_WARN_MIN_MS = 50
_CLICK_INTERVAL_WARN_MAX_MS = 5000

# Applicant names outside this length are allowed but flagged.
_APPLICANT_NAME_WARN_MIN = 2
_APPLICANT_NAME_WARN_MAX = 10


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def parse_manual_room_ids(value: str) -> list[str]:
    """Split a newline- or comma-separated room-id list.

    Blank entries are dropped and order is preserved.  Returns an empty list
    for blank input.
    """
    if not value or not value.strip():
        return []
    return [item.strip() for item in _ROOM_ID_SEPARATORS.split(value) if item.strip()]


def validate_conditions(conditions: Sequence[Condition]) -> None:
    """Reject a condition list with a malformed floor range.

    Raises:
        ConfigError: Naming the first offending condition (1-based).
    """
    for index, condition in enumerate(conditions, start=1):
        try:
            validate_floor_range(condition.floor_range)
        except ConfigError as exc:
            raise ConfigError(f"Condition {index}: {exc}") from exc


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Central application configuration.

    Values are loaded in priority order:

    1. Actual environment variables (highest priority).
    2. ``.env`` file in the working directory.
    3. Field defaults (lowest priority).

    Structural problems (unknown transport, bad log level) fail at
    construction.  Problems that only matter once a run is attempted (empty
    applicant name, malformed start time) are reported by
    :meth:`validate_for_run`, so that ``--prefetch`` works with a partial
    configuration.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Portal and session
    # ------------------------------------------------------------------
    portal_base_url: str = Field(
        default=DEFAULT_PORTAL_BASE_URL,
        description="Base URL of the housing-allocation portal.",
    )
    session_cookie: str = Field(
        default="",
        description="Value of the portal session cookie (prefix optional).",
    )
    portal_account: str = Field(
        default="",
        description="Account name for interactive browser login.",
    )
    portal_password: str = Field(
        default="",
        description="Password for interactive browser login.",
    )

    # ------------------------------------------------------------------
    # Run description
    # ------------------------------------------------------------------
    applicant_name: str = Field(
        default="",
        description="Applicant name exactly as the portal shows it.",
    )
    start_time: str = Field(
        default="",
        description="Allocation start time, 'YYYY-MM-DD HH:MM:SS' local time.",
    )
    transport: str = Field(
        default="http",
        description="Transport: 'http' (form posts) or 'browser' (Playwright).",
    )
    conditions: list[Condition] = Field(
        default_factory=list,
        description="Ordered acceptable-room conditions (JSON list in env).",
    )
    manual_room_ids: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="Explicit room ids to claim in order (comma/newline separated).",
    )
    use_prefetched: bool = Field(
        default=True,
        description="Use stored pre-fetched room ids in place of live queries.",
    )

    # ------------------------------------------------------------------
    # Engine tuning
    # ------------------------------------------------------------------
    auto_confirm: bool = Field(
        default=True,
        description="Browser transport: press the final confirmation button.",
    )
    click_interval_ms: int = Field(
        default=200,
        ge=0,
        description="Browser transport: pause between dialog-opening clicks.",
    )
    grace_period_s: float = Field(
        default=30.0,
        ge=0.0,
        description="Seconds to leave for manual confirmation when auto-confirm is off.",
    )
    request_timeout_s: float = Field(
        default=30.0,
        gt=0.0,
        description="Per-request network timeout.",
    )
    listing_page_size: int = Field(
        default=300,
        ge=1,
        description="Rows requested per listing query.",
    )
    retry_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts per retried operation.",
    )
    retry_delay_ms: int = Field(
        default=200,
        ge=0,
        description="Fixed delay between retry attempts.",
    )
    gate_poll_interval_s: float = Field(
        default=1.0,
        gt=0.0,
        description="Start-time gate polling period.",
    )
    gate_early_start_s: float = Field(
        default=1.0,
        ge=0.0,
        description="Open the gate once this many seconds or fewer remain.",
    )
    browser_headless: bool = Field(
        default=False,
        description="Run the browser transport without a visible window.",
    )

    # ------------------------------------------------------------------
    # Storage and logging
    # ------------------------------------------------------------------
    database_path: str = Field(
        default="data/roombot.db",
        description="Path to the SQLite database file.",
    )
    log_level: str = Field(default="INFO", description="Logging level.")
    log_format: str = Field(default="text", description="Log format: 'text' or 'json'.")

    # ------------------------------------------------------------------
    # Field validators
    # ------------------------------------------------------------------

    @field_validator("manual_room_ids", mode="before")
    @classmethod
    def _parse_room_ids(cls, v: str | list[str]) -> list[str]:
        """Accept a separated string **or** an already-parsed list."""
        if isinstance(v, str):
            return parse_manual_room_ids(v)
        return v

    @field_validator("portal_base_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("transport")
    @classmethod
    def _validate_transport(cls, v: str) -> str:
        allowed = {"http", "browser"}
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"transport must be one of {allowed}, got {v!r}")
        return v_lower

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of {allowed}, got {v!r}")
        return v_upper

    @field_validator("log_format")
    @classmethod
    def _validate_log_format(cls, v: str) -> str:
        allowed = {"text", "json"}
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"log_format must be one of {allowed}, got {v!r}")
        return v_lower

    # ------------------------------------------------------------------
    # Model validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def _validate_login_pair(self) -> Settings:
        """An account without a password (or vice versa) is a typo."""
        if bool(self.portal_account) != bool(self.portal_password):
            raise ValueError("portal_account and portal_password must be set together")
        return self

    # ------------------------------------------------------------------
    # Run validation
    # ------------------------------------------------------------------

    def validate_for_run(
        self,
        conditions: Sequence[Condition] | None = None,
        manual_room_ids: Sequence[str] | None = None,
    ) -> list[str]:
        """Check that a selection run can start with this configuration.

        Args:
            conditions: Conditions the run will use, when they come from
                somewhere other than :attr:`conditions` (e.g. the database).
            manual_room_ids: Room ids overriding :attr:`manual_room_ids`.

        Returns:
            Human-readable warnings for suspicious but usable values.

        Raises:
            ConfigError: For the first run-blocking problem found.
        """
        # Local import keeps settings importable without the engine package.
        from roombot.engine.gate import parse_start_time

        conditions = self.conditions if conditions is None else conditions
        manual_room_ids = self.manual_room_ids if manual_room_ids is None else manual_room_ids

        if not self.applicant_name.strip():
            raise ConfigError("APPLICANT_NAME is empty.")
        if not conditions and not manual_room_ids:
            raise ConfigError("No conditions and no manual room ids configured.")
        if self.transport == "http" and not self.session_cookie.strip():
            raise ConfigError("SESSION_COOKIE is required for the http transport.")
        if self.transport == "browser" and not (
            self.session_cookie.strip() or self.portal_account.strip()
        ):
            raise ConfigError(
                "The browser transport needs SESSION_COOKIE or PORTAL_ACCOUNT."
            )
        if self.transport == "browser" and manual_room_ids:
            # Rows can only be clicked after a community search in the dialog.
            raise ConfigError("Manual room ids need the http transport.")

        start_at = parse_start_time(self.start_time)
        validate_conditions(conditions)

        warnings: list[str] = []
        name_length = len(self.applicant_name.strip())
        if not _APPLICANT_NAME_WARN_MIN <= name_length <= _APPLICANT_NAME_WARN_MAX:
            warnings.append(
                f"Applicant name length {name_length} is unusual; check APPLICANT_NAME."
            )
        if self.transport == "browser" and not (
            _CLICK_INTERVAL_WARN_MIN_MS
            <= self.click_interval_ms
            <= _CLICK_INTERVAL_WARN_MAX_MS
        ):
            warnings.append(
                f"CLICK_INTERVAL_MS={self.click_interval_ms} is outside "
                f"{_CLICK_INTERVAL_WARN_MIN_MS}-{_CLICK_INTERVAL_WARN_MAX_MS} ms."
            )
        if 0 <= start_at.hour <= 5:
            warnings.append(
                f"Start time {self.start_time} is in the small hours; check the date."
            )
        return warnings

    # ------------------------------------------------------------------
    # Derived helpers
    # ------------------------------------------------------------------

    @property
    def retry_delay_s(self) -> float:
        """Retry delay in seconds."""
        return self.retry_delay_ms / 1000.0

    @property
    def database_path_resolved(self) -> Path:
        """Return the database path as a resolved :class:`~pathlib.Path`."""
        return Path(self.database_path).resolve()
