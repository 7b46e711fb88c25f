"""
Error Taxonomy
==============
Every failure the core can report. All derive from ``OuraError`` so callers
can catch one type at the outer edge (CLI, scheduler) and still branch on
the specific cause when they care.

None of these are retried inside the core. A single failure is terminal for
that call; the caller decides whether to try again on the next tick.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from oring.models.scores import Category


class OuraError(Exception):
    """Base class for every error raised by the core."""


# ---------------------------------------------------------------------------
# Configuration / lifecycle
# ---------------------------------------------------------------------------


class ConfigurationError(OuraError):
    """Client ID or secret missing from the settings store."""


class AuthFlowInProgressError(OuraError):
    """start_auth_flow() called while another attempt is still pending."""


class CallbackListenerError(OuraError):
    """The loopback listener could not be bound (usually: port in use)."""


class CallbackHandlingError(OuraError):
    """Unexpected failure while handling the redirect. The cause is chained."""


# ---------------------------------------------------------------------------
# Authorization flow integrity
# ---------------------------------------------------------------------------


class AuthorizationFlowError(OuraError):
    """The redirect back from the authorization server was not usable."""


class AuthorizationDeniedError(AuthorizationFlowError):
    """The authorization server redirected with an ``error`` parameter."""

    def __init__(self, error: str) -> None:
        self.error = error
        super().__init__(f"Authorization denied: {error}")


class CsrfMismatchError(AuthorizationFlowError):
    """Callback ``state`` does not match the one issued for this attempt."""


class MissingCodeError(AuthorizationFlowError):
    """Callback carried no authorization code."""


class MalformedCallbackError(AuthorizationFlowError):
    """Inbound request was not a well-formed ``GET /callback?...`` line."""


class CallbackTimeoutError(AuthorizationFlowError, TimeoutError):
    """No callback arrived before the listener deadline."""


# ---------------------------------------------------------------------------
# Token endpoint
# ---------------------------------------------------------------------------


class TokenError(OuraError):
    """Token endpoint call failed.

    ``status_code`` is None when the failure happened before an HTTP
    status was available (transport error, unparseable body).
    """

    action = "Token request"

    def __init__(self, status_code: Optional[int], body: str = "") -> None:
        self.status_code = status_code
        self.body = body
        if status_code is None:
            message = f"{self.action} failed: {body}"
        else:
            message = f"{self.action} failed: {status_code}"
        super().__init__(message)


class TokenExchangeError(TokenError):
    action = "Token exchange"


class TokenRefreshError(TokenError):
    action = "Token refresh"


class NoRefreshTokenError(OuraError):
    """refresh_token() called with no refresh token stored."""


class CredentialStorageError(OuraError):
    """New tokens were issued but could not be written to the settings store."""


# ---------------------------------------------------------------------------
# Data API
# ---------------------------------------------------------------------------


class NotAuthenticatedError(OuraError):
    """No access token stored. The user needs to authorize first."""


class ApiRequestError(OuraError):
    """Non-200 response (or transport failure) from a data endpoint."""

    def __init__(self, status_code: Optional[int], body: str = "") -> None:
        self.status_code = status_code
        self.body = body
        if status_code is None:
            super().__init__(f"API request failed: {body}")
        else:
            super().__init__(f"API request failed: {status_code}")


class MalformedResponseError(OuraError):
    """A remote JSON body did not match the expected shape."""


class RequestTimeoutError(OuraError, TimeoutError):
    """An outbound request exceeded its deadline."""


class PartialFetchError(OuraError):
    """At least one category fetch failed. Raised only once all have settled."""

    def __init__(self, errors: dict["Category", Exception]) -> None:
        self.errors = errors
        failed = ", ".join(f"{category.value}: {exc}" for category, exc in errors.items())
        super().__init__(f"Some requests failed ({failed})")

    @property
    def needs_reauthorization(self) -> bool:
        """True when at least one failure means the stored grant is unusable."""
        for exc in self.errors.values():
            if isinstance(exc, (NotAuthenticatedError, NoRefreshTokenError, TokenRefreshError)):
                return True
            if isinstance(exc, ApiRequestError) and exc.status_code == 401:
                return True
        return False
