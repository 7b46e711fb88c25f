"""
OAuth Callback Listener
=======================
A throwaway HTTP listener on the loopback interface that captures exactly
one redirect from the Oura authorization server.

Lifecycle:
    start()  -> bound and listening
    accept() -> first inbound connection; the listener stops accepting
                before handing the connection over
    close()  -> idempotent; also called after first use, on timeout and on
                shutdown

Only the request line is interpreted. Headers are drained and ignored, the
body (there is none for a GET) is never read.
"""

from __future__ import annotations

import asyncio
import html
import logging
from http import HTTPStatus
from typing import Optional
from urllib.parse import parse_qsl, urlsplit

from oring.errors import (
    CallbackListenerError,
    CallbackTimeoutError,
    MalformedCallbackError,
)
from oring.models.oura import CallbackParams

logger = logging.getLogger(__name__)

# Browsers send a handful of headers; anything past this is not a redirect
_MAX_HEADER_LINES = 100
_MAX_LINE_BYTES = 8192

_PAGE_TEMPLATE = (
    "<!DOCTYPE html><html><head><meta charset=\"utf-8\"><title>O-Ring</title></head>"
    "<body><h1>{message}</h1></body></html>"
)


def parse_callback_request(request_line: str, expected_path: str) -> CallbackParams:
    """Validate ``GET <path>?<query> HTTP/1.x`` and decode its query string.

    Values are percent-decoded. When a parameter repeats, the first
    occurrence wins. Raises MalformedCallbackError for anything else.
    """
    parts = request_line.strip().split(" ")
    if len(parts) != 3:
        raise MalformedCallbackError(f"Bad request line: {request_line.strip()!r}")

    method, target, version = parts
    if method != "GET" or not version.startswith("HTTP/1."):
        raise MalformedCallbackError(f"Unsupported request: {method} {version}")

    url = urlsplit(target)
    if url.path != expected_path:
        raise MalformedCallbackError(f"Unexpected path: {url.path}")
    if not url.query:
        raise MalformedCallbackError("Callback carried no query string")

    try:
        pairs = parse_qsl(url.query, keep_blank_values=True, errors="strict")
    except ValueError as exc:
        # UnicodeDecodeError on bad percent-escapes lands here too
        raise MalformedCallbackError(f"Undecodable query string: {exc}") from exc

    params: dict[str, str] = {}
    for key, value in pairs:
        params.setdefault(key, value)

    return CallbackParams(
        code=params.get("code") or None,
        state=params.get("state"),
        error=params.get("error") or None,
        error_description=params.get("error_description") or None,
    )


def render_response(status_code: int, message: str) -> bytes:
    """Full HTTP/1.1 response with a static HTML body and ``Connection: close``."""
    body = _PAGE_TEMPLATE.format(message=html.escape(message)).encode("utf-8")
    reason = HTTPStatus(status_code).phrase
    head = (
        f"HTTP/1.1 {status_code} {reason}\r\n"
        "Content-Type: text/html; charset=utf-8\r\n"
        f"Content-Length: {len(body)}\r\n"
        "Connection: close\r\n"
        "\r\n"
    )
    return head.encode("ascii") + body


class CallbackConnection:
    """The single browser connection delivered by the listener."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        expected_path: str,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._expected_path = expected_path

    async def read_params(self, timeout: float) -> CallbackParams:
        """Read the request line and headers, then parse the query string."""
        try:
            line = await asyncio.wait_for(self._reader.readline(), timeout)
            await asyncio.wait_for(self._drain_headers(), timeout)
        except asyncio.TimeoutError as exc:
            raise CallbackTimeoutError("Timed out reading the callback request") from exc
        except (ValueError, ConnectionError) as exc:
            # readline() raises ValueError when a line exceeds the stream limit
            raise MalformedCallbackError(f"Could not read callback request: {exc}") from exc

        try:
            request_line = line.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedCallbackError("Request line is not valid UTF-8") from exc

        logger.debug("Callback request line received")
        return parse_callback_request(request_line, self._expected_path)

    async def _drain_headers(self) -> None:
        for _ in range(_MAX_HEADER_LINES):
            header = await self._reader.readline()
            if header in (b"\r\n", b"\n", b""):
                return
        raise MalformedCallbackError("Too many request headers")

    async def respond(self, status_code: int, message: str) -> None:
        if self._writer.is_closing():
            return
        self._writer.write(render_response(status_code, message))
        try:
            await self._writer.drain()
        except ConnectionError:
            logger.warning("Browser closed the callback connection before the response was sent")

    def close(self) -> None:
        if not self._writer.is_closing():
            self._writer.close()


class CallbackListener:
    """Loopback listener that hands over its first connection and stops."""

    def __init__(self, host: str, port: int, expected_path: str) -> None:
        self._host = host
        self._port = port
        self._expected_path = expected_path
        self._server: Optional[asyncio.Server] = None
        self._connection: Optional[asyncio.Future[CallbackConnection]] = None

    @property
    def is_listening(self) -> bool:
        return self._server is not None

    @property
    def address(self) -> tuple[str, int]:
        """Bound (host, port). Reflects the real port when configured with 0."""
        if self._server is not None and self._server.sockets:
            host, port = self._server.sockets[0].getsockname()[:2]
            return host, port
        return self._host, self._port

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        self._connection = loop.create_future()
        try:
            self._server = await asyncio.start_server(
                self._on_connection,
                self._host,
                self._port,
                limit=_MAX_LINE_BYTES,
            )
        except OSError as exc:
            self._connection = None
            raise CallbackListenerError(
                f"Cannot listen on {self._host}:{self._port} ({exc.strerror or exc}); "
                "is another authorization attempt still running?"
            ) from exc
        logger.info("Callback listener started on %s:%d", *self.address)

    async def accept(self, timeout: float) -> CallbackConnection:
        """Wait for the first inbound connection, at most ``timeout`` seconds."""
        if self._connection is None:
            raise CallbackListenerError("Listener was never started")
        try:
            return await asyncio.wait_for(asyncio.shield(self._connection), timeout)
        except asyncio.TimeoutError as exc:
            self.close()
            raise CallbackTimeoutError(
                f"No authorization callback received within {timeout:g} seconds"
            ) from exc

    def close(self) -> None:
        if self._server is None:
            return
        self._server.close()
        self._server = None
        logger.info("Callback listener stopped")

    def _on_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        if self._connection is None or self._connection.done():
            # a second connection raced the close; refuse it
            writer.close()
            return
        self.close()
        self._connection.set_result(CallbackConnection(reader, writer, self._expected_path))
