"""
Tests for score display text
============================
Covers:
- format_panel_text(): placeholders and the staleness marker
- last_updated_label() / staleness_notice()
- error_notice(): which message each failure maps to

Run: pytest tests/test_display.py -v
"""

from __future__ import annotations

from datetime import date

from oring.errors import (
    ApiRequestError,
    NotAuthenticatedError,
    PartialFetchError,
    RequestTimeoutError,
    TokenRefreshError,
)
from oring.models.scores import Category, ScoreSummary
from oring.services.display import (
    AUTHORIZE_PROMPT,
    error_notice,
    format_panel_text,
    last_updated_label,
    staleness_notice,
)


def _summary(age_days, sleep=82, readiness=None, activity=91) -> ScoreSummary:
    return ScoreSummary(
        day=date(2024, 1, 7),
        sleep=sleep,
        readiness=readiness,
        activity=activity,
        age_days=age_days,
    )


class TestPanelText:

    def test_today(self):
        assert format_panel_text(_summary(0)) == "82 🌱-- 🔥91"

    def test_yesterday_gets_one_marker(self):
        assert format_panel_text(_summary(1)) == "82 🌱-- 🔥91 ⚠"

    def test_older_gets_two_markers(self):
        assert format_panel_text(_summary(4)) == "82 🌱-- 🔥91 ⚠⚠"

    def test_empty(self):
        assert format_panel_text(ScoreSummary.empty()) == "-- 🌱-- 🔥--"


class TestLabels:

    def test_last_updated(self):
        assert last_updated_label(_summary(0)) == "Last updated: Today"
        assert last_updated_label(_summary(1)) == "Last updated: Yesterday"
        assert last_updated_label(_summary(3)) == "Last updated: 3 days ago"
        assert last_updated_label(ScoreSummary.empty()) == "Last updated: No data"

    def test_staleness_notice(self):
        assert staleness_notice(_summary(0)) is None
        assert "yesterday" in staleness_notice(_summary(1))
        assert "2024-01-07" in staleness_notice(_summary(3))
        assert staleness_notice(ScoreSummary.empty(), 14) == "No data found in the last 14 days."


class TestErrorNotice:

    def test_not_authenticated(self):
        assert error_notice(NotAuthenticatedError("no token")) == AUTHORIZE_PROMPT

    def test_rejected_token_asks_for_reauthorization(self):
        exc = PartialFetchError({Category.SLEEP: ApiRequestError(401, "unauthorized")})
        assert "re-authorize" in error_notice(exc)

    def test_failed_refresh_asks_for_reauthorization(self):
        exc = PartialFetchError({Category.ACTIVITY: TokenRefreshError(400, "invalid_grant")})
        assert "re-authorize" in error_notice(exc)

    def test_network_failure(self):
        exc = PartialFetchError({Category.READINESS: RequestTimeoutError("slow")})
        assert "internet connection" in error_notice(exc)
