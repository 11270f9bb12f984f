"""Survey lifecycle: Open -> Closed -> Released.

Closing is implicit at ``end_time``; nothing sweeps expired surveys. Release is
stored, and happens on the first reveal call. "Fully decrypted" is derived from
the per-option settled flags and the response count.
"""

from __future__ import annotations

from typing import Any, Dict, List

from .errors import STATE, LedgerError

OPEN = "open"
CLOSED = "closed"
RELEASED = "released"


def survey_state(survey: Dict[str, Any], now_ts: int) -> str:
    if survey.get("results_released"):
        return RELEASED
    if survey.get("is_active") and now_ts < int(survey["end_time"]):
        return OPEN
    return CLOSED


def is_fully_decrypted(survey: Dict[str, Any], tallies: List[Dict[str, Any]]) -> bool:
    """Every option settled and the counts account for every response."""
    if not survey.get("results_released") or not tallies:
        return False
    if not all(tally.get("settled") for tally in tallies):
        return False
    total = sum(int(tally.get("decrypted_votes") or 0) for tally in tallies)
    return total == int(survey.get("total_responses") or 0)


def require_open(survey: Dict[str, Any], now_ts: int) -> None:
    state = survey_state(survey, now_ts)
    if state != OPEN:
        raise LedgerError(STATE, "survey has ended", state=state)


def require_closed(survey: Dict[str, Any], now_ts: int, action: str) -> None:
    state = survey_state(survey, now_ts)
    if state == OPEN:
        raise LedgerError(STATE, f"survey is still active; cannot {action}", state=state)


def require_released(survey: Dict[str, Any], now_ts: int) -> None:
    if not survey.get("results_released"):
        raise LedgerError(STATE, "results not released yet", state=survey_state(survey, now_ts))
