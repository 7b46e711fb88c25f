"""
Score Models
============
Domain shapes produced by the aggregator and consumed by the display layer.
"""

from __future__ import annotations

from datetime import date
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict

# whole numbers stay int, fractional scores stay float
Score = Union[int, float]


class Category(str, Enum):
    """The three independently fetched daily metrics."""

    SLEEP = "sleep"
    READINESS = "readiness"
    ACTIVITY = "activity"

    @property
    def collection(self) -> str:
        """Path segment under /v2/usercollection."""
        return f"daily_{self.value}"


class DailyScore(BaseModel):
    """One category's score for one day."""

    model_config = ConfigDict(frozen=True)

    category: Category
    day: date
    score: Score


class ScoreSummary(BaseModel):
    """Scores for the most recent day that has any data.

    This is a single-day summary, not a rollup: a category with no data on
    ``day`` is None even if it has data on earlier days.
    """

    model_config = ConfigDict(frozen=True)

    day: Optional[date] = None
    sleep: Optional[Score] = None
    readiness: Optional[Score] = None
    activity: Optional[Score] = None
    # whole days between the local "today" and ``day``
    age_days: Optional[int] = None

    @classmethod
    def empty(cls) -> "ScoreSummary":
        return cls()

    @property
    def is_empty(self) -> bool:
        return self.day is None

    def score_for(self, category: Category) -> Optional[Score]:
        return getattr(self, category.value)
