"""
Oura Score Service
==================
Fetches the three daily score collections from the Oura REST API v2 and
reduces them to one "latest available day" summary.

Responsibilities:
- OuraClient: authenticated GET per collection, typed parsing
- ScoreAggregator.get_latest_scores(): concurrent fetch, settle-all join,
  pick the most recent day with any score, report its age

Categories are independent: a night without the ring on has no sleep score
but may still have an activity score. The summary reports what exists for
the chosen day and None for the rest; it never borrows a score from an
earlier day.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, timedelta
from typing import Callable, Iterable

import httpx
from pydantic import ValidationError

from oring.config import Settings, get_settings
from oring.errors import (
    ApiRequestError,
    MalformedResponseError,
    NotAuthenticatedError,
    PartialFetchError,
    RequestTimeoutError,
)
from oring.models.credentials import ACCESS_TOKEN_KEY
from oring.models.oura import OuraDailyScoreItem, OuraDailyScoreResponse
from oring.models.scores import Category, DailyScore, Score, ScoreSummary
from oring.services.oauth import AuthManager
from oring.store.settings_store import SettingsStore, get_settings_store

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# OuraClient: thin HTTP wrapper around the Oura v2 API
# ---------------------------------------------------------------------------


class OuraClient:
    """Makes authenticated requests to the Oura REST API v2."""

    def __init__(self, access_token: str, settings: Settings | None = None) -> None:
        self._token = access_token
        self._settings = settings or get_settings()

    async def fetch_daily_scores(
        self, category: Category, start_date: date, end_date: date
    ) -> list[OuraDailyScoreItem]:
        """GET /v2/usercollection/daily_<category> for the given date range."""
        response = await self._get(
            f"/{category.collection}",
            params={
                "start_date": start_date.isoformat(),
                "end_date": end_date.isoformat(),
            },
        )
        try:
            body = OuraDailyScoreResponse.model_validate_json(response.content)
        except ValidationError as exc:
            raise MalformedResponseError(
                f"Unexpected {category.collection} response: {exc.error_count()} invalid field(s)"
            ) from exc
        return body.data

    async def _get(self, path: str, params: dict) -> httpx.Response:
        """Shared async GET with Bearer auth. Raises ApiRequestError on anything but 200."""
        url = f"{self._settings.api_base_url}{path}"
        logger.debug("Making request to: %s", url)
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout_seconds) as client:
                response = await client.get(
                    url,
                    params=params,
                    headers={"Authorization": f"Bearer {self._token}"},
                )
        except httpx.TimeoutException as exc:
            raise RequestTimeoutError(
                f"{path} did not answer within {self._settings.http_timeout_seconds:g}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise ApiRequestError(None, str(exc)) from exc

        if response.status_code != 200:
            logger.error("API request to %s failed with status: %d", path, response.status_code)
            raise ApiRequestError(response.status_code, response.text)
        return response


# ---------------------------------------------------------------------------
# ScoreAggregator: fan-out fetch and join
# ---------------------------------------------------------------------------


class ScoreAggregator:
    """Produces the latest-day ScoreSummary from the three score collections."""

    def __init__(
        self,
        auth: AuthManager,
        store: SettingsStore | None = None,
        settings: Settings | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._auth = auth
        self._store = store or get_settings_store()
        self._settings = settings or get_settings()
        self._today = today

    async def get_latest_scores(self) -> ScoreSummary:
        """
        Fetch sleep, readiness and activity for the lookback window and
        return the scores of the most recent day that has any of them.

        All three requests run concurrently and are always allowed to
        settle. If any failed, PartialFetchError is raised after the last
        one has finished, carrying every category's error.
        """
        end_date = self._today()
        start_date = end_date - timedelta(days=self._settings.lookback_days)
        categories = list(Category)

        results = await asyncio.gather(
            *(self._fetch_category(category, start_date, end_date) for category in categories),
            return_exceptions=True,
        )

        scores: dict[Category, dict[date, Score]] = {}
        errors: dict[Category, Exception] = {}
        for category, result in zip(categories, results):
            if isinstance(result, Exception):
                logger.error("%s data error: %s", category.value.capitalize(), result)
                errors[category] = result
            elif isinstance(result, BaseException):
                # cancellation of a child is not a data error
                raise result
            else:
                scores[category] = result

        if errors:
            raise PartialFetchError(errors)

        summary = _latest_summary(scores, end_date)
        if summary.is_empty:
            logger.info("No data found in the last %d days", self._settings.lookback_days)
        else:
            logger.info("Most recent date with data: %s (%d days old)", summary.day, summary.age_days)
        return summary

    async def _fetch_category(
        self, category: Category, start_date: date, end_date: date
    ) -> dict[date, Score]:
        access_token = await self._access_token()
        client = OuraClient(access_token, self._settings)
        items = await client.fetch_daily_scores(category, start_date, end_date)
        by_day = _index_by_day(_daily_scores(category, items))
        logger.debug("%s scores by date: %s", category.value.capitalize(), by_day)
        return by_day

    async def _access_token(self) -> str:
        """Stored access token, refreshed first when it is about to expire.

        Sibling fetches that find the token expired at the same time all
        join the one refresh AuthManager keeps in flight.
        """
        access_token = self._store.get_string(ACCESS_TOKEN_KEY)
        if not access_token:
            raise NotAuthenticatedError("Not authenticated")

        if self._auth.is_token_expired():
            logger.info("Token expired, refreshing")
            credentials = await self._auth.refresh_token()
            return credentials.access_token

        return access_token


# ---------------------------------------------------------------------------
# Join helpers
# ---------------------------------------------------------------------------


def _daily_scores(category: Category, items: Iterable[OuraDailyScoreItem]) -> list[DailyScore]:
    """Drop days whose score is null; the ring had no data for them."""
    return [
        DailyScore(category=category, day=item.day, score=item.score)
        for item in items
        if item.score is not None
    ]


def _index_by_day(scores: Iterable[DailyScore]) -> dict[date, Score]:
    # a later entry for the same day replaces an earlier one
    return {score.day: score.score for score in scores}


def _latest_summary(scores: dict[Category, dict[date, Score]], today: date) -> ScoreSummary:
    """
    Pick the most recent day present in any category and report each
    category's score for exactly that day.

    The most recent day wins even if an older day has more categories
    populated.
    """
    all_days: set[date] = set()
    for by_day in scores.values():
        all_days.update(by_day)

    if not all_days:
        return ScoreSummary.empty()

    latest = max(all_days)
    return ScoreSummary(
        day=latest,
        sleep=scores.get(Category.SLEEP, {}).get(latest),
        readiness=scores.get(Category.READINESS, {}).get(latest),
        activity=scores.get(Category.ACTIVITY, {}).get(latest),
        age_days=(today - latest).days,
    )
