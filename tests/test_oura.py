"""
Tests for the Oura score service
================================
Covers:
- OuraClient: response parsing, bearer header, non-200 / malformed / timeout
- ScoreAggregator: empty window, single-category day, latest-day selection,
  null scores, settle-all failure semantics, missing token, shared refresh
- Join helpers: day indexing and summary construction

Run: pytest tests/test_oura.py -v
"""

from __future__ import annotations

import asyncio
from datetime import date, timedelta
from unittest.mock import patch
from urllib.parse import parse_qs

import httpx
import pytest
import respx
from httpx import Response

from oring.config import Settings
from oring.errors import (
    ApiRequestError,
    MalformedResponseError,
    NotAuthenticatedError,
    PartialFetchError,
    RequestTimeoutError,
    TokenRefreshError,
)
from oring.models.oura import OuraDailyScoreItem
from oring.models.scores import Category, DailyScore, ScoreSummary
from oring.services.oauth import AuthManager
from oring.services.oura import (
    OuraClient,
    ScoreAggregator,
    _daily_scores,
    _index_by_day,
    _latest_summary,
)
from oring.store.settings_store import MemorySettingsStore

# ---------------------------------------------------------------------------
# Fixtures / constants
# ---------------------------------------------------------------------------

_API = "https://api.ouraring.com/v2/usercollection"
_TOKEN_URL = "https://api.ouraring.com/oauth/token"

_ACCESS_TOKEN = "test-access-token"
_REFRESH_TOKEN = "test-refresh-token"
_NEW_ACCESS_TOKEN = "new-access-token"

_NOW = 1_704_600_000.0
_TODAY = date(2024, 1, 7)

_EMPTY = {"data": []}

_TOKEN_RESPONSE = {
    "access_token": _NEW_ACCESS_TOKEN,
    "refresh_token": "new-refresh-token",
    "expires_in": 86400,
    "token_type": "Bearer",
    "scope": "daily",
}


def _day(offset: int) -> str:
    """ISO date ``offset`` days before _TODAY."""
    return (_TODAY - timedelta(days=offset)).isoformat()


def _settings() -> Settings:
    return Settings(callback_port=0)


def _store(has_token: bool = True, expired: bool = False) -> MemorySettingsStore:
    values = {"client-id": "id", "client-secret": "secret"}
    if has_token:
        values.update(
            {
                "access-token": _ACCESS_TOKEN,
                "refresh-token": _REFRESH_TOKEN,
                "token-expiry": int(_NOW - 60 if expired else _NOW + 3600),
            }
        )
    return MemorySettingsStore(values)


def _aggregator(store: MemorySettingsStore) -> ScoreAggregator:
    settings = _settings()
    auth = AuthManager(store=store, settings=settings, open_url=lambda url: True, clock=lambda: _NOW)
    return ScoreAggregator(auth, store, settings, today=lambda: _TODAY)


def _mock_categories(
    sleep: dict, readiness: dict, activity: dict, router: respx.MockRouter = respx.mock
) -> dict[Category, respx.Route]:
    return {
        Category.SLEEP: router.get(f"{_API}/daily_sleep").mock(return_value=Response(200, json=sleep)),
        Category.READINESS: router.get(f"{_API}/daily_readiness").mock(
            return_value=Response(200, json=readiness)
        ),
        Category.ACTIVITY: router.get(f"{_API}/daily_activity").mock(
            return_value=Response(200, json=activity)
        ),
    }


# ---------------------------------------------------------------------------
# TestOuraClient
# ---------------------------------------------------------------------------


class TestOuraClient:

    @pytest.mark.asyncio
    @respx.mock
    async def test_fetch_daily_scores_parses_response(self):
        respx.get(f"{_API}/daily_sleep").mock(
            return_value=Response(
                200,
                json={
                    "data": [
                        {"id": "a", "day": "2024-01-05", "score": 78, "contributors": {}},
                        {"id": "b", "day": "2024-01-06", "score": None, "contributors": {}},
                    ]
                },
            )
        )
        client = OuraClient(_ACCESS_TOKEN, _settings())
        result = await client.fetch_daily_scores(Category.SLEEP, date(2024, 1, 1), _TODAY)

        assert len(result) == 2
        assert result[0].day == date(2024, 1, 5)
        assert result[0].score == 78
        assert result[1].score is None

    @pytest.mark.asyncio
    @respx.mock
    async def test_bearer_token_and_window_sent(self):
        route = respx.get(f"{_API}/daily_readiness").mock(return_value=Response(200, json=_EMPTY))
        client = OuraClient(_ACCESS_TOKEN, _settings())
        await client.fetch_daily_scores(Category.READINESS, date(2023, 12, 31), _TODAY)

        request = route.calls[0].request
        assert request.headers["Authorization"] == f"Bearer {_ACCESS_TOKEN}"
        assert request.url.params["start_date"] == "2023-12-31"
        assert request.url.params["end_date"] == "2024-01-07"

    @pytest.mark.asyncio
    @respx.mock
    async def test_non_200_raises_api_request_error(self):
        respx.get(f"{_API}/daily_activity").mock(return_value=Response(401, text="Unauthorized"))
        client = OuraClient("bad-token", _settings())
        with pytest.raises(ApiRequestError) as exc_info:
            await client.fetch_daily_scores(Category.ACTIVITY, date(2024, 1, 1), _TODAY)

        assert exc_info.value.status_code == 401
        assert "Unauthorized" in exc_info.value.body

    @pytest.mark.asyncio
    @respx.mock
    async def test_other_2xx_is_still_an_error(self):
        respx.get(f"{_API}/daily_activity").mock(return_value=Response(204))
        client = OuraClient(_ACCESS_TOKEN, _settings())
        with pytest.raises(ApiRequestError) as exc_info:
            await client.fetch_daily_scores(Category.ACTIVITY, date(2024, 1, 1), _TODAY)

        assert exc_info.value.status_code == 204

    @pytest.mark.asyncio
    @respx.mock
    async def test_malformed_record_raises_malformed_response(self):
        respx.get(f"{_API}/daily_sleep").mock(
            return_value=Response(200, json={"data": [{"day": "not-a-date", "score": 70}]})
        )
        client = OuraClient(_ACCESS_TOKEN, _settings())
        with pytest.raises(MalformedResponseError):
            await client.fetch_daily_scores(Category.SLEEP, date(2024, 1, 1), _TODAY)

    @pytest.mark.asyncio
    @respx.mock
    async def test_non_json_body_raises_malformed_response(self):
        respx.get(f"{_API}/daily_sleep").mock(return_value=Response(200, text="<html>oops</html>"))
        client = OuraClient(_ACCESS_TOKEN, _settings())
        with pytest.raises(MalformedResponseError):
            await client.fetch_daily_scores(Category.SLEEP, date(2024, 1, 1), _TODAY)

    @pytest.mark.asyncio
    @respx.mock
    async def test_timeout_raises_request_timeout(self):
        respx.get(f"{_API}/daily_sleep").mock(side_effect=httpx.ConnectTimeout("slow"))
        client = OuraClient(_ACCESS_TOKEN, _settings())
        with pytest.raises(RequestTimeoutError) as exc_info:
            await client.fetch_daily_scores(Category.SLEEP, date(2024, 1, 1), _TODAY)

        assert isinstance(exc_info.value, TimeoutError)

    @pytest.mark.asyncio
    @respx.mock
    async def test_transport_error_raises_api_request_error_without_status(self):
        respx.get(f"{_API}/daily_sleep").mock(side_effect=httpx.ConnectError("refused"))
        client = OuraClient(_ACCESS_TOKEN, _settings())
        with pytest.raises(ApiRequestError) as exc_info:
            await client.fetch_daily_scores(Category.SLEEP, date(2024, 1, 1), _TODAY)

        assert exc_info.value.status_code is None


# ---------------------------------------------------------------------------
# TestGetLatestScores
# ---------------------------------------------------------------------------


class TestGetLatestScores:

    @pytest.mark.asyncio
    @respx.mock
    async def test_three_empty_responses_give_empty_summary(self):
        _mock_categories(_EMPTY, _EMPTY, _EMPTY)

        summary = await _aggregator(_store()).get_latest_scores()

        assert summary == ScoreSummary.empty()
        assert summary.day is None
        assert summary.sleep is None
        assert summary.readiness is None
        assert summary.activity is None
        assert summary.age_days is None

    @pytest.mark.asyncio
    @respx.mock
    async def test_activity_only_day_is_selected(self):
        _mock_categories(
            _EMPTY,
            _EMPTY,
            {"data": [{"day": "2024-01-05", "score": 80}]},
        )

        summary = await _aggregator(_store()).get_latest_scores()

        assert summary.day == date(2024, 1, 5)
        assert summary.activity == 80
        assert summary.sleep is None
        assert summary.readiness is None
        assert summary.age_days == 2

    @pytest.mark.asyncio
    @respx.mock
    async def test_fractional_score_passes_through(self):
        _mock_categories(
            {"data": [{"day": "2024-01-05", "score": 82.5}]},
            _EMPTY,
            _EMPTY,
        )

        summary = await _aggregator(_store()).get_latest_scores()

        assert summary.day == date(2024, 1, 5)
        assert summary.sleep == 82.5
        assert summary.readiness is None

    @pytest.mark.asyncio
    @respx.mock
    async def test_whole_scores_stay_integers(self):
        _mock_categories(
            _EMPTY,
            {"data": [{"day": "2024-01-06", "score": 74}]},
            _EMPTY,
        )

        summary = await _aggregator(_store()).get_latest_scores()

        assert summary.readiness == 74
        assert isinstance(summary.readiness, int)

    @pytest.mark.asyncio
    @respx.mock
    async def test_latest_day_wins_over_most_populated_day(self):
        _mock_categories(
            {"data": [{"day": _day(3), "score": 81}]},
            {"data": [{"day": _day(3), "score": 72}]},
            {"data": [{"day": _day(1), "score": 64}]},
        )

        summary = await _aggregator(_store()).get_latest_scores()

        assert summary.day.isoformat() == _day(1)
        assert summary.activity == 64
        # sleep/readiness exist on an older day but not this one
        assert summary.sleep is None
        assert summary.readiness is None
        assert summary.age_days == 1

    @pytest.mark.asyncio
    @respx.mock
    async def test_day_with_more_categories_loses_to_newer_day(self):
        _mock_categories(
            {"data": [{"day": _day(0), "score": 88}]},
            {"data": [{"day": _day(0), "score": 77}]},
            {"data": [{"day": _day(2), "score": 90}]},
        )

        summary = await _aggregator(_store()).get_latest_scores()

        assert summary.day == _TODAY
        assert (summary.sleep, summary.readiness, summary.activity) == (88, 77, None)
        assert summary.age_days == 0

    @pytest.mark.asyncio
    @respx.mock
    async def test_null_score_never_appears(self):
        _mock_categories(
            {"data": [{"day": _day(0), "score": None}, {"day": _day(1), "score": 70}]},
            _EMPTY,
            {"data": [{"day": _day(0), "score": 55}]},
        )

        summary = await _aggregator(_store()).get_latest_scores()

        assert summary.day == _TODAY
        assert summary.sleep is None
        assert summary.activity == 55

    @pytest.mark.asyncio
    @respx.mock
    async def test_day_with_only_null_scores_is_not_selected(self):
        _mock_categories(
            {"data": [{"day": _day(0), "score": None}]},
            {"data": [{"day": _day(2), "score": 66}]},
            _EMPTY,
        )

        summary = await _aggregator(_store()).get_latest_scores()

        assert summary.day.isoformat() == _day(2)
        assert summary.readiness == 66
        assert summary.sleep is None

    @pytest.mark.asyncio
    @respx.mock
    async def test_requests_cover_seven_day_inclusive_window(self):
        routes = _mock_categories(_EMPTY, _EMPTY, _EMPTY)

        await _aggregator(_store()).get_latest_scores()

        for route in routes.values():
            assert route.call_count == 1
            params = parse_qs(route.calls[0].request.url.query.decode())
            assert params["start_date"] == [_day(7)]
            assert params["end_date"] == [_TODAY.isoformat()]

    @pytest.mark.asyncio
    async def test_failure_reported_only_after_all_categories_settle(self):
        settled: list[Category] = []

        async def fake_fetch(self, category, start_date, end_date):
            if category is Category.SLEEP:
                settled.append(category)
                raise ApiRequestError(500, "Internal Server Error")
            await asyncio.sleep(0.05)
            settled.append(category)
            return []

        with patch.object(OuraClient, "fetch_daily_scores", fake_fetch):
            with pytest.raises(PartialFetchError) as exc_info:
                await _aggregator(_store()).get_latest_scores()

        # the slow siblings finished before the aggregate error surfaced
        assert set(settled) == {Category.SLEEP, Category.READINESS, Category.ACTIVITY}
        assert list(exc_info.value.errors) == [Category.SLEEP]
        assert exc_info.value.errors[Category.SLEEP].status_code == 500

    @pytest.mark.asyncio
    @respx.mock
    async def test_one_http_500_fails_whole_call(self):
        respx.get(f"{_API}/daily_sleep").mock(return_value=Response(200, json=_EMPTY))
        respx.get(f"{_API}/daily_readiness").mock(return_value=Response(500, text="boom"))
        respx.get(f"{_API}/daily_activity").mock(
            return_value=Response(200, json={"data": [{"day": _day(0), "score": 90}]})
        )

        with pytest.raises(PartialFetchError) as exc_info:
            await _aggregator(_store()).get_latest_scores()

        errors = exc_info.value.errors
        assert set(errors) == {Category.READINESS}
        assert isinstance(errors[Category.READINESS], ApiRequestError)
        assert errors[Category.READINESS].status_code == 500
        assert not exc_info.value.needs_reauthorization

    @pytest.mark.asyncio
    @respx.mock
    async def test_401_marks_reauthorization_needed(self):
        respx.get(f"{_API}/daily_sleep").mock(return_value=Response(401, text="Unauthorized"))
        respx.get(f"{_API}/daily_readiness").mock(return_value=Response(200, json=_EMPTY))
        respx.get(f"{_API}/daily_activity").mock(return_value=Response(200, json=_EMPTY))

        with pytest.raises(PartialFetchError) as exc_info:
            await _aggregator(_store()).get_latest_scores()

        assert exc_info.value.needs_reauthorization

    @pytest.mark.asyncio
    @respx.mock(assert_all_called=False)
    async def test_no_access_token_fails_without_network(self, respx_mock):
        routes = _mock_categories(_EMPTY, _EMPTY, _EMPTY, router=respx_mock)

        with pytest.raises(PartialFetchError) as exc_info:
            await _aggregator(_store(has_token=False)).get_latest_scores()

        assert set(exc_info.value.errors) == set(Category)
        assert all(isinstance(e, NotAuthenticatedError) for e in exc_info.value.errors.values())
        assert not any(route.called for route in routes.values())

    @pytest.mark.asyncio
    @respx.mock
    async def test_expired_token_refreshed_once_and_shared(self):
        token_route = respx.post(_TOKEN_URL).mock(return_value=Response(200, json=_TOKEN_RESPONSE))
        routes = _mock_categories(_EMPTY, _EMPTY, _EMPTY)
        store = _store(expired=True)

        await _aggregator(store).get_latest_scores()

        assert token_route.call_count == 1
        for route in routes.values():
            assert route.calls[0].request.headers["Authorization"] == f"Bearer {_NEW_ACCESS_TOKEN}"
        assert store.get_string("access-token") == _NEW_ACCESS_TOKEN

    @pytest.mark.asyncio
    @respx.mock(assert_all_called=False)
    async def test_refresh_failure_fails_each_category(self, respx_mock):
        token_route = respx_mock.post(_TOKEN_URL).mock(return_value=Response(400, json={"error": "invalid_grant"}))
        routes = _mock_categories(_EMPTY, _EMPTY, _EMPTY, router=respx_mock)

        with pytest.raises(PartialFetchError) as exc_info:
            await _aggregator(_store(expired=True)).get_latest_scores()

        assert token_route.call_count == 1
        assert all(isinstance(e, TokenRefreshError) for e in exc_info.value.errors.values())
        assert exc_info.value.needs_reauthorization
        assert not any(route.called for route in routes.values())


# ---------------------------------------------------------------------------
# TestJoinHelpers
# ---------------------------------------------------------------------------


class TestJoinHelpers:

    def _item(self, day: str, score):
        return OuraDailyScoreItem(day=day, score=score)

    def test_daily_scores_skip_null_scores(self):
        scores = _daily_scores(
            Category.SLEEP, [self._item("2024-01-05", None), self._item("2024-01-06", 71)]
        )
        assert scores == [DailyScore(category=Category.SLEEP, day=date(2024, 1, 6), score=71)]

    def test_index_later_duplicate_wins(self):
        scores = _daily_scores(
            Category.ACTIVITY, [self._item("2024-01-05", 60), self._item("2024-01-05", 65)]
        )
        assert _index_by_day(scores) == {date(2024, 1, 5): 65}

    def test_summary_of_nothing_is_empty(self):
        assert _latest_summary({c: {} for c in Category}, _TODAY).is_empty

    def test_summary_picks_latest_across_categories(self):
        scores = {
            Category.SLEEP: {date(2024, 1, 3): 80, date(2024, 1, 6): 82},
            Category.READINESS: {date(2024, 1, 6): 70},
            Category.ACTIVITY: {date(2024, 1, 4): 90},
        }
        summary = _latest_summary(scores, _TODAY)

        assert summary.day == date(2024, 1, 6)
        assert summary.score_for(Category.SLEEP) == 82
        assert summary.score_for(Category.READINESS) == 70
        assert summary.score_for(Category.ACTIVITY) is None
        assert summary.age_days == 1

    def test_age_counts_calendar_days_across_month_boundary(self):
        scores = {Category.SLEEP: {date(2024, 2, 28): 75}}
        summary = _latest_summary(scores, date(2024, 3, 1))
        assert summary.age_days == 2
