"""Selection engine: start-time gate, retry, resolution, claiming and pre-fetch.

Public API
----------
* :class:`~roombot.engine.orchestrator.SelectionOrchestrator` runs the
  selection state machine against one transport.
* :class:`~roombot.engine.prefetch.PrefetchCache` /
  :class:`~roombot.engine.prefetch.RoomIdSnapshot` resolve and hold room ids
  ahead of the start instant.
* :class:`~roombot.engine.gate.StartTimeGate` waits for the start instant.
* :class:`~roombot.engine.retry.RetryPolicy` /
  :func:`~roombot.engine.retry.retry_async` wrap every transport call.
* :func:`~roombot.engine.resolver.parse_listing` and the match helpers turn a
  listing page into room ids.

The wiring entry-points (:func:`~roombot.engine.runner.run_selection`,
:func:`~roombot.engine.runner.run_prefetch`) import the transports, which
themselves import this package, so import them from
:mod:`roombot.engine.runner` directly.
"""

from roombot.engine.claim import classify_claim_response, is_contested_message
from roombot.engine.gate import GateResult, StartTimeGate, parse_start_time
from roombot.engine.orchestrator import SelectionOrchestrator
from roombot.engine.prefetch import PrefetchCache, RoomIdSnapshot
from roombot.engine.resolver import (
    all_matches,
    first_match,
    matches_condition,
    parse_listing,
    select_fallback,
)
from roombot.engine.retry import RetryPolicy, retry_async, retry_bool, retry_optional

__all__ = [
    # Orchestration
    "SelectionOrchestrator",
    # Pre-fetch
    "PrefetchCache",
    "RoomIdSnapshot",
    # Gate
    "GateResult",
    "StartTimeGate",
    "parse_start_time",
    # Retry
    "RetryPolicy",
    "retry_async",
    "retry_optional",
    "retry_bool",
    # Resolution
    "parse_listing",
    "matches_condition",
    "first_match",
    "all_matches",
    "select_fallback",
    # Claim classification
    "classify_claim_response",
    "is_contested_message",
]
