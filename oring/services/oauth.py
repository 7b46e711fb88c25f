"""
Oura OAuth Service
==================
Authorization-code flow and token lifecycle for the Oura REST API.

Responsibilities:
- start_auth_flow(): issue a CSRF state, open the loopback listener, send the
  user's browser to the Oura consent page, and exchange the returned code
- refresh_token(): trade the stored refresh token for a new pair; concurrent
  callers share one in-flight refresh
- is_token_expired(): expiry check with a safety margin
- shutdown(): tear down any pending attempt

State machine per attempt:
    Idle -> AwaitingCallback -> Exchanging -> Authorized
    AwaitingCallback -> Failed   denied, state mismatch, bad request, timeout
    Exchanging -> Failed         token endpoint error

Tokens never leave this module except through the settings store. Nothing
here logs a token value or the client secret.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
import secrets
import time
import webbrowser
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import quote, urlencode, urlsplit

import httpx
from pydantic import ValidationError

from oring.config import Settings, get_settings
from oring.errors import (
    AuthFlowInProgressError,
    AuthorizationDeniedError,
    AuthorizationFlowError,
    CallbackHandlingError,
    ConfigurationError,
    CredentialStorageError,
    CsrfMismatchError,
    MissingCodeError,
    NoRefreshTokenError,
    OuraError,
    RequestTimeoutError,
    TokenError,
    TokenExchangeError,
    TokenRefreshError,
)
from oring.models.credentials import REFRESH_TOKEN_KEY, TOKEN_EXPIRY_KEY, Credentials
from oring.models.oura import CallbackParams, OuraTokenResponse
from oring.services.callback_listener import CallbackListener
from oring.store.settings_store import (
    CLIENT_ID_KEY,
    CLIENT_SECRET_KEY,
    SettingsStore,
    get_settings_store,
)

logger = logging.getLogger(__name__)

AuthCallback = Callable[[Optional[Exception], Optional[Credentials]], None]

# Bytes of entropy in the CSRF state (encoded to ~43 URL-safe characters)
_STATE_BYTES = 32
# Deadline for reading the request line once the browser has connected
_REQUEST_READ_TIMEOUT_SECONDS = 10.0

_SUCCESS_MESSAGE = "Authorization successful! You can close this window."
_EXCHANGE_FAILED_MESSAGE = "Token exchange failed"
_STORAGE_FAILED_MESSAGE = "Could not save credentials"
_INTERNAL_ERROR_MESSAGE = "Internal error"


@dataclass
class AuthAttempt:
    """The single pending authorization: CSRF state, listener, outcome."""

    state: str
    listener: CallbackListener
    future: asyncio.Future[Credentials]
    callback: Optional[AuthCallback] = None
    task: Optional[asyncio.Task[None]] = None


class AuthManager:
    """Owns the Oura OAuth2 authorization-code flow and token refresh."""

    def __init__(
        self,
        store: SettingsStore | None = None,
        settings: Settings | None = None,
        open_url: Callable[[str], object] = webbrowser.open,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store or get_settings_store()
        self._settings = settings or get_settings()
        self._open_url = open_url
        self._clock = clock
        self._attempt: Optional[AuthAttempt] = None
        self._refresh_task: Optional[asyncio.Task[Credentials]] = None

    # ---- Authorization flow ------------------------------------------------

    @property
    def is_pending(self) -> bool:
        return self._attempt is not None

    @property
    def callback_address(self) -> Optional[tuple[str, int]]:
        """Where the pending attempt's listener is bound, if there is one."""
        if self._attempt is None or not self._attempt.listener.is_listening:
            return None
        return self._attempt.listener.address

    def build_authorize_url(self, client_id: str, state: str) -> str:
        query = urlencode(
            [
                ("response_type", "code"),
                ("client_id", client_id),
                ("redirect_uri", self._settings.redirect_uri),
                ("state", state),
                ("scope", self._settings.scope),
            ],
            quote_via=quote,
        )
        return f"{self._settings.authorize_url}?{query}"

    async def start_auth_flow(
        self, callback: Optional[AuthCallback] = None
    ) -> asyncio.Future[Credentials]:
        """Begin an authorization attempt and return a future for its outcome.

        Raises immediately (without touching the callback) when the client is
        not configured, another attempt is pending, or the listener cannot
        bind. Otherwise the returned future resolves with the new Credentials
        or fails with an OuraError, and ``callback`` is invoked exactly once
        with ``(error, None)`` or ``(None, credentials)``. After shutdown()
        neither happens: the future is cancelled and the callback dropped.
        """
        if self._attempt is not None:
            raise AuthFlowInProgressError("An authorization attempt is already pending")

        client_id, _ = self._client_credentials()

        state = secrets.token_urlsafe(_STATE_BYTES)
        listener = CallbackListener(
            self._settings.callback_host,
            self._settings.callback_port,
            urlsplit(self._settings.redirect_uri).path or "/",
        )
        future: asyncio.Future[Credentials] = asyncio.get_running_loop().create_future()
        attempt = AuthAttempt(state=state, listener=listener, future=future, callback=callback)

        # claim the slot before the first await so a concurrent call is rejected
        self._attempt = attempt
        try:
            await listener.start()
        except OuraError:
            self._attempt = None
            raise

        future.add_done_callback(lambda fut: self._deliver(attempt, fut))
        attempt.task = asyncio.create_task(self._run_attempt(attempt))

        url = self.build_authorize_url(client_id, state)
        try:
            opened = self._open_url(url)
        except Exception:
            self.shutdown()
            raise
        if opened is False:
            logger.warning("Could not launch a browser; open this URL to authorize: %s", url)
        else:
            logger.info("Authorization page opened, waiting for callback")

        return future

    async def authorize(self) -> Credentials:
        """Run a full authorization attempt and return the stored Credentials."""
        future = await self.start_auth_flow()
        return await future

    async def _run_attempt(self, attempt: AuthAttempt) -> None:
        try:
            credentials = await self._complete_attempt(attempt)
        except OuraError as exc:
            logger.warning("Authorization failed: %s", exc)
            self._settle(attempt, error=exc)
        except Exception as exc:
            logger.exception("Unexpected error while handling the authorization callback")
            self._settle(attempt, error=exc)
        else:
            logger.info("Authorization successful")
            self._settle(attempt, credentials=credentials)
        finally:
            attempt.listener.close()
            if self._attempt is attempt:
                self._attempt = None

    async def _complete_attempt(self, attempt: AuthAttempt) -> Credentials:
        connection = await attempt.listener.accept(self._settings.callback_timeout_seconds)
        try:
            try:
                params = await connection.read_params(_REQUEST_READ_TIMEOUT_SECONDS)
                credentials = await self._handle_callback(attempt, params)
            except AuthorizationFlowError as exc:
                await connection.respond(400, _failure_message(exc))
                raise
            except CredentialStorageError:
                await connection.respond(500, _STORAGE_FAILED_MESSAGE)
                raise
            except OuraError:
                await connection.respond(500, _EXCHANGE_FAILED_MESSAGE)
                raise
            except Exception as exc:
                await connection.respond(500, _INTERNAL_ERROR_MESSAGE)
                raise CallbackHandlingError(
                    f"Unexpected error while handling the callback: {exc!r}"
                ) from exc
            await connection.respond(200, _SUCCESS_MESSAGE)
            return credentials
        finally:
            connection.close()

    async def _handle_callback(self, attempt: AuthAttempt, params: CallbackParams) -> Credentials:
        logger.debug(
            "Callback params - code: %s, state: %s, error: %s",
            "present" if params.code else "missing",
            "present" if params.state else "missing",
            params.error,
        )
        if params.error:
            raise AuthorizationDeniedError(params.error)

        if params.state is None or not hmac.compare_digest(
            params.state.encode("utf-8"), attempt.state.encode("utf-8")
        ):
            raise CsrfMismatchError("State parameter does not match this authorization attempt")

        if not params.code:
            raise MissingCodeError("No authorization code received")

        return await self._exchange_code(params.code)

    def _settle(
        self,
        attempt: AuthAttempt,
        error: Optional[Exception] = None,
        credentials: Optional[Credentials] = None,
    ) -> None:
        if attempt.future.done():
            return
        if error is not None:
            attempt.future.set_exception(error)
        else:
            attempt.future.set_result(credentials)

    def _deliver(self, attempt: AuthAttempt, future: asyncio.Future[Credentials]) -> None:
        if future.cancelled():
            return
        # retrieving the exception also marks it as handled for asyncio
        error = future.exception()
        callback, attempt.callback = attempt.callback, None
        if callback is None:
            return
        if error is not None:
            callback(error, None)
        else:
            callback(None, future.result())

    def shutdown(self) -> None:
        """Tear down any pending attempt. Safe to call repeatedly and in any state."""
        attempt, self._attempt = self._attempt, None
        if attempt is None:
            return
        attempt.callback = None
        attempt.listener.close()
        if attempt.task is not None and not attempt.task.done():
            attempt.task.cancel()
        if not attempt.future.done():
            attempt.future.cancel()
        logger.info("Pending authorization attempt abandoned")

    # ---- Token management --------------------------------------------------

    def is_token_expired(self) -> bool:
        """True once we are within the safety margin of the stored expiry."""
        expiry = self._store.get_int(TOKEN_EXPIRY_KEY)
        return self._clock() >= expiry - self._settings.expiry_margin_seconds

    async def refresh_token(self) -> Credentials:
        """Use the stored refresh token to obtain and persist a new token pair.

        At most one refresh is in flight; callers arriving while it runs
        await the same result instead of issuing their own request.
        """
        if self._refresh_task is None:
            if not self._store.get_string(REFRESH_TOKEN_KEY):
                raise NoRefreshTokenError("No refresh token available")
            self._refresh_task = asyncio.create_task(self._refresh())
            self._refresh_task.add_done_callback(self._clear_refresh)
        else:
            logger.debug("Joining in-flight token refresh")
        return await asyncio.shield(self._refresh_task)

    def _clear_refresh(self, task: asyncio.Task[Credentials]) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled():
            task.exception()

    async def _refresh(self) -> Credentials:
        logger.info("Refreshing access token")
        client_id, client_secret = self._client_credentials()
        token = await self._request_token(
            {
                "grant_type": "refresh_token",
                "refresh_token": self._store.get_string(REFRESH_TOKEN_KEY),
                "client_id": client_id,
                "client_secret": client_secret,
            },
            TokenRefreshError,
        )
        credentials = self._persist(token)
        logger.info("Token refreshed successfully")
        return credentials

    async def _exchange_code(self, code: str) -> Credentials:
        logger.info("Exchanging authorization code for token")
        client_id, client_secret = self._client_credentials()
        token = await self._request_token(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self._settings.redirect_uri,
                "client_id": client_id,
                "client_secret": client_secret,
            },
            TokenExchangeError,
        )
        return self._persist(token)

    async def _request_token(
        self, form: dict[str, str], error_cls: type[TokenError]
    ) -> OuraTokenResponse:
        """POST a form to the token endpoint. Raises ``error_cls`` on any failure."""
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout_seconds) as client:
                response = await client.post(self._settings.token_url, data=form)
        except httpx.TimeoutException as exc:
            raise RequestTimeoutError(
                f"Token endpoint did not answer within {self._settings.http_timeout_seconds:g}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise error_cls(None, str(exc)) from exc

        logger.debug("Token response status: %d", response.status_code)
        if response.status_code != 200:
            raise error_cls(response.status_code, response.text)

        try:
            return OuraTokenResponse.model_validate_json(response.content)
        except ValidationError as exc:
            raise error_cls(None, "malformed token response") from exc

    def _persist(self, token: OuraTokenResponse) -> Credentials:
        credentials = Credentials.from_token_response(token, self._clock())
        try:
            self._store.save_credentials(credentials)
        except OSError as exc:
            raise CredentialStorageError(f"Could not store credentials: {exc}") from exc
        return credentials

    def _client_credentials(self) -> tuple[str, str]:
        client_id = self._store.get_string(CLIENT_ID_KEY)
        client_secret = self._store.get_string(CLIENT_SECRET_KEY)
        logger.debug(
            "Client ID: %s, client secret: %s",
            "present" if client_id else "missing",
            "present" if client_secret else "missing",
        )
        if not client_id:
            raise ConfigurationError("Client ID not configured")
        if not client_secret:
            raise ConfigurationError("Client secret not configured")
        return client_id, client_secret


def _failure_message(exc: AuthorizationFlowError) -> str:
    if isinstance(exc, AuthorizationDeniedError):
        return f"Authorization failed: {exc.error}"
    if isinstance(exc, CsrfMismatchError):
        return "Invalid state parameter"
    if isinstance(exc, MissingCodeError):
        return "No authorization code received"
    return "Bad Request"
