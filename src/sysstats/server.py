"""Server lifecycle for sysstats: listening socket, uvicorn and shutdown."""

import asyncio
import logging
import socket
import sys

import uvicorn
from fastapi import FastAPI

from sysstats.app import create_app
from sysstats.assembler import SnapshotAssembler
from sysstats.config import Settings
from sysstats.errors import ListenerFailure
from sysstats.log import setup_logging
from sysstats.source import MetricsSource, PsutilSource
from sysstats.stream import SessionRegistry

logger = logging.getLogger(__name__)


class _Server(uvicorn.Server):
    """uvicorn server that cancels stream sessions before draining connections."""

    def __init__(self, config: uvicorn.Config, sessions: SessionRegistry) -> None:
        super().__init__(config)
        self._sessions = sessions

    async def shutdown(self, sockets: list[socket.socket] | None = None) -> None:
        cancelled = self._sessions.cancel_all()
        if cancelled:
            logger.info("Cancelled %d stream session(s)", cancelled)
        await super().shutdown(sockets=sockets)


class ServerLifecycle:
    """
    Owns the listening socket and the HTTP server.

    SIGINT/SIGTERM stop the listener, cancel every open stream session and
    give in-flight requests up to `shutdown_grace` seconds before uvicorn
    terminates them.
    """

    def __init__(self, settings: Settings, source: MetricsSource | None = None) -> None:
        """
        Initialize the ServerLifecycle.

        Args:
            settings: Immutable process configuration.
            source: Metrics source; defaults to psutil on the local host.
        """
        self._settings = settings
        self._sessions = SessionRegistry()
        assembler = SnapshotAssembler(
            source if source is not None else PsutilSource(),
            disk_path=settings.disk_path,
        )
        self._app = create_app(
            assembler,
            sessions=self._sessions,
            stream_interval=settings.stream_interval,
        )
        self._server: _Server | None = None
        self._port: int | None = None

    @property
    def app(self) -> FastAPI:
        return self._app

    @property
    def sessions(self) -> SessionRegistry:
        return self._sessions

    @property
    def port(self) -> int | None:
        """The bound port, once the socket is listening."""
        return self._port

    @property
    def started(self) -> bool:
        return self._server is not None and self._server.started

    def bind(self) -> socket.socket:
        """
        Create the listening socket.

        Raises:
            ListenerFailure: The address could not be bound.
        """
        host, port = self._settings.host, self._settings.port
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
            sock.listen(socket.SOMAXCONN)
        except OSError as exc:
            sock.close()
            raise ListenerFailure(f"cannot listen on {host}:{port}: {exc}") from exc
        sock.set_inheritable(True)
        self._port = sock.getsockname()[1]
        return sock

    async def serve(self) -> None:
        """
        Serve until shutdown is requested.

        Raises:
            ListenerFailure: The server could not start or crashed while serving.
        """
        sock = self.bind()
        config = uvicorn.Config(
            self._app,
            log_config=None,
            log_level=self._settings.log_level.lower(),
            timeout_graceful_shutdown=self._settings.shutdown_grace,
        )
        self._server = _Server(config, self._sessions)

        logger.info("Server running at http://localhost:%d", self._port)
        try:
            await self._server.serve(sockets=[sock])
        except Exception as exc:
            raise ListenerFailure(f"server error: {exc}") from exc
        finally:
            sock.close()

        if not self._server.started:
            raise ListenerFailure("server failed to start")
        logger.info("Server stopped")

    def request_shutdown(self) -> None:
        """Start the graceful shutdown, as SIGTERM would."""
        if self._server is not None:
            self._server.should_exit = True

    def run(self) -> None:
        asyncio.run(self.serve())


def main() -> None:
    """Entry point for the sysstats server."""
    settings = Settings()
    setup_logging(settings.log_level)

    lifecycle = ServerLifecycle(settings)
    try:
        lifecycle.run()
    except ListenerFailure as exc:
        logger.critical("%s", exc)
        sys.exit(1)
    except KeyboardInterrupt:
        # uvicorn re-raises SIGINT once the graceful shutdown is done
        pass


if __name__ == "__main__":
    main()
