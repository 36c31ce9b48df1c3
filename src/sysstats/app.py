"""sysstats - FastAPI application exposing host system statistics."""

import asyncio
import contextlib
import logging
from collections.abc import Mapping
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import Message, Receive, Scope, Send

from sysstats import __version__
from sysstats.assembler import SnapshotAssembler
from sysstats.errors import MetricsUnavailable, TransportWriteFailure
from sysstats.stream import (
    DEFAULT_INTERVAL,
    EVENT_STREAM_HEADERS,
    SessionRegistry,
    StreamSession,
)

logger = logging.getLogger(__name__)

API_PREFIX = "/api"

SERVICE_INFO: dict[str, Any] = {
    "name": "System Stats API",
    "version": __version__,
    "description": "API for monitoring system resources and processes",
    "endpoints": {
        f"{API_PREFIX}/stats": "Get current system statistics",
        f"{API_PREFIX}/events": "SSE endpoint for real-time system statistics",
    },
}


class AsgiEventTransport:
    """EventTransport writing straight to an ASGI send channel."""

    def __init__(self, send: Send, status_code: int = 200) -> None:
        self._send = send
        self._status_code = status_code

    async def start(self, headers: Mapping[str, str]) -> None:
        raw_headers = [
            (key.lower().encode("latin-1"), value.encode("latin-1"))
            for key, value in headers.items()
        ]
        await self._push(
            {"type": "http.response.start", "status": self._status_code, "headers": raw_headers}
        )

    async def write(self, chunk: bytes) -> None:
        # Each body message goes out on its own, nothing is buffered
        await self._push({"type": "http.response.body", "body": chunk, "more_body": True})

    async def close(self) -> None:
        await self._push({"type": "http.response.body", "body": b"", "more_body": False})

    async def _push(self, message: Message) -> None:
        try:
            await self._send(message)
        except OSError as exc:
            raise TransportWriteFailure(f"client went away: {exc}") from exc


class EventStreamResponse(Response):
    """
    Response that hands the connection over to a StreamSession.

    A watcher task reads the ASGI receive channel and cancels the session
    as soon as the client disconnects.
    """

    media_type = "text/event-stream"

    def __init__(self, session: StreamSession, sessions: SessionRegistry) -> None:
        self.status_code = 200
        self.background = None
        self.init_headers(EVENT_STREAM_HEADERS)
        self._session = session
        self._sessions = sessions

    @property
    def session(self) -> StreamSession:
        return self._session

    async def _watch_disconnect(self, receive: Receive) -> None:
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                logger.debug("Client of stream session %d disconnected", self._session.id)
                self._session.cancel()
                return

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        self._sessions.add(self._session)
        watcher = asyncio.create_task(self._watch_disconnect(receive))
        try:
            await self._session.run(AsgiEventTransport(send, self.status_code))
        finally:
            self._sessions.discard(self._session)
            watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher


def create_app(
    assembler: SnapshotAssembler,
    sessions: SessionRegistry | None = None,
    stream_interval: float = DEFAULT_INTERVAL,
) -> FastAPI:
    """
    Build the HTTP application.

    Args:
        assembler: Snapshot source shared by every endpoint.
        sessions: Registry of open stream sessions, owned by the server.
        stream_interval: Seconds between events on /api/events.
    """
    app = FastAPI(
        title=SERVICE_INFO["name"],
        description=SERVICE_INFO["description"],
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.assembler = assembler
    app.state.sessions = sessions if sessions is not None else SessionRegistry()
    app.state.stream_interval = stream_interval

    @app.exception_handler(MetricsUnavailable)
    async def metrics_unavailable(request: Request, exc: MetricsUnavailable) -> PlainTextResponse:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return PlainTextResponse(exc.message, status_code=500)

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> Response:
        if exc.status_code == 405:
            return PlainTextResponse("Method Not Allowed", status_code=405, headers=exc.headers)
        return await http_exception_handler(request, exc)

    @app.get("/", tags=["info"])
    async def root() -> dict[str, Any]:
        """Service descriptor."""
        return SERVICE_INFO

    # Plain def: assembly blocks, so FastAPI runs it in its threadpool
    @app.get(f"{API_PREFIX}/stats", tags=["stats"])
    def stats() -> JSONResponse:
        """Get current system statistics."""
        snapshot = app.state.assembler.assemble()
        return JSONResponse(snapshot.to_dict())

    @app.get(f"{API_PREFIX}/events", tags=["stats"])
    async def events() -> EventStreamResponse:
        """Server-Sent Events stream of system statistics."""
        session = StreamSession(app.state.assembler, interval=app.state.stream_interval)
        return EventStreamResponse(session, app.state.sessions)

    return app
