"""
Oura Input Models
=================
Pydantic shapes for everything that arrives from outside the process:
the token endpoint's JSON, the daily-score collection JSON, and the query
parameters of the OAuth redirect. Untrusted input is validated against
these before any field is read.
"""

from __future__ import annotations

from datetime import date
from typing import Optional

from pydantic import BaseModel, Field

from oring.models.scores import Score


class OuraDailyScoreItem(BaseModel):
    """One day from daily_sleep, daily_readiness or daily_activity.

    The three collections carry very different contributor payloads, but
    ``day`` and ``score`` are common to all of them and are all we read.
    """

    day: date
    # null when the ring has no data for that category on that day
    score: Optional[Score] = None


class OuraDailyScoreResponse(BaseModel):
    """Envelope of a /v2/usercollection/daily_* response."""

    data: list[OuraDailyScoreItem] = Field(default_factory=list)


class OuraTokenResponse(BaseModel):
    """Response from the Oura OAuth /oauth/token endpoint."""

    access_token: str = Field(..., min_length=1)
    refresh_token: str = Field(..., min_length=1)
    expires_in: int = Field(..., ge=0)  # seconds until expiry
    token_type: str = "Bearer"
    scope: Optional[str] = None


class CallbackParams(BaseModel):
    """Decoded query parameters of the OAuth redirect to the loopback listener."""

    code: Optional[str] = None
    state: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None
