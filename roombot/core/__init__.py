"""Core domain models, settings, logging configuration, and shared utilities."""

from roombot.core.exceptions import (
    BrowserTransportError,
    ConfigError,
    CredentialInvalidError,
    ListingParseError,
    OrchestratorError,
    RoombotError,
    StorageError,
    TransientTransportError,
    TransportError,
)
from roombot.core.logging_config import JsonFormatter, configure_logging
from roombot.core.models import (
    ClaimOutcome,
    Condition,
    ListingRecord,
    RoomIdMapping,
    RunOutcome,
    RunResult,
    UnitType,
)
from roombot.core.settings import Settings

__all__ = [
    # Logging
    "configure_logging",
    "JsonFormatter",
    # Domain models
    "Condition",
    "ListingRecord",
    "RoomIdMapping",
    "UnitType",
    "ClaimOutcome",
    "RunOutcome",
    "RunResult",
    # Settings
    "Settings",
    # Exceptions
    "RoombotError",
    "ConfigError",
    "CredentialInvalidError",
    "StorageError",
    "TransportError",
    "TransientTransportError",
    "ListingParseError",
    "BrowserTransportError",
    "OrchestratorError",
]
