"""
Score Display
=============
Text for the panel indicator, the "last updated" menu line and the
notifications shown alongside them. Pure functions over ScoreSummary so any
front end (panel, CLI, tray) renders the same thing.
"""

from __future__ import annotations

from typing import Optional

from oring.errors import NotAuthenticatedError, OuraError, PartialFetchError
from oring.models.scores import ScoreSummary

ABSENT = "--"
READINESS_ICON = "🌱"
ACTIVITY_ICON = "🔥"

AUTHORIZE_PROMPT = (
    'Please authorize Oura first. Run "oring authorize" to connect your account.'
)


def _score_text(score: Optional[int]) -> str:
    return ABSENT if score is None else str(score)


def age_indicator(age_days: Optional[int]) -> str:
    if age_days is None or age_days < 1:
        return ""
    if age_days == 1:
        return " ⚠"
    return " ⚠⚠"


def format_panel_text(summary: ScoreSummary) -> str:
    """``<sleep> 🌱<readiness> 🔥<activity>`` plus a staleness marker."""
    return (
        f"{_score_text(summary.sleep)} "
        f"{READINESS_ICON}{_score_text(summary.readiness)} "
        f"{ACTIVITY_ICON}{_score_text(summary.activity)}"
        f"{age_indicator(summary.age_days)}"
    )


def last_updated_label(summary: ScoreSummary) -> str:
    if summary.is_empty:
        return "Last updated: No data"
    if summary.age_days == 0:
        return "Last updated: Today"
    if summary.age_days == 1:
        return "Last updated: Yesterday"
    return f"Last updated: {summary.age_days} days ago"


def staleness_notice(summary: ScoreSummary, lookback_days: int = 7) -> Optional[str]:
    """Notification text when the scores shown are not today's, else None."""
    if summary.is_empty:
        return f"No data found in the last {lookback_days} days."
    if summary.age_days == 1:
        return "Showing yesterday's scores (today's data not yet available)."
    if summary.age_days is not None and summary.age_days > 1:
        return f"Showing scores from {summary.age_days} days ago ({summary.day.isoformat()})."
    return None


def error_notice(exc: OuraError) -> str:
    if isinstance(exc, NotAuthenticatedError):
        return AUTHORIZE_PROMPT
    if isinstance(exc, PartialFetchError) and exc.needs_reauthorization:
        return "Authentication expired. Please re-authorize Oura."
    return "Failed to fetch scores. Check your internet connection."
