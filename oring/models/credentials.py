"""
Credentials
===========
The access/refresh token pair plus absolute expiry, as persisted in the
settings store. Owned by AuthManager; the UI layer never reads these.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from oring.models.oura import OuraTokenResponse

ACCESS_TOKEN_KEY = "access-token"
REFRESH_TOKEN_KEY = "refresh-token"
TOKEN_EXPIRY_KEY = "token-expiry"


class Credentials(BaseModel):
    """Immutable token triple. ``expires_at`` is epoch seconds."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    expires_at: int

    @classmethod
    def from_token_response(cls, token: OuraTokenResponse, now: float) -> "Credentials":
        return cls(
            access_token=token.access_token,
            refresh_token=token.refresh_token,
            expires_at=int(now + token.expires_in),
        )

    def to_store_values(self) -> dict[str, object]:
        """Key/value mapping written to the store in a single update."""
        return {
            ACCESS_TOKEN_KEY: self.access_token,
            REFRESH_TOKEN_KEY: self.refresh_token,
            TOKEN_EXPIRY_KEY: self.expires_at,
        }

    def __repr__(self) -> str:
        # Never leak token values into logs or tracebacks
        return f"Credentials(access_token='***', refresh_token='***', expires_at={self.expires_at})"

    __str__ = __repr__
