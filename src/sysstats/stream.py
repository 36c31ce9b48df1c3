"""Server-Sent Events streaming of snapshots."""

import asyncio
import itertools
import json
import logging
import time
from collections.abc import Awaitable, Callable, Iterator, Mapping
from enum import Enum
from typing import Protocol

from sysstats.assembler import SnapshotAssembler
from sysstats.errors import MetricsUnavailable, TransportWriteFailure

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 2.0

EVENT_STREAM_HEADERS: Mapping[str, str] = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Access-Control-Allow-Origin": "*",
}

_session_ids = itertools.count(1)


def format_event(event: str, data: str) -> bytes:
    """Frame one SSE event. Multi-line data gets one `data:` line per line."""
    lines = data.splitlines() or [""]
    payload = "".join(f"data: {line}\n" for line in lines)
    return f"event: {event}\n{payload}\n".encode()


class SessionState(Enum):
    """Lifecycle states of a StreamSession."""

    OPEN = "open"
    STREAMING = "streaming"
    CLOSED = "closed"


class EventTransport(Protocol):
    """Connection a StreamSession writes to. Every write is flushed."""

    async def start(self, headers: Mapping[str, str]) -> None: ...

    async def write(self, chunk: bytes) -> None: ...

    async def close(self) -> None: ...


class Ticker:
    """
    Fixed-rate tick schedule anchored on a monotonic clock.

    Ticks are due at start + k * interval. When the caller is late and the
    next deadline has already passed, the tick fires at once and the
    schedule restarts from that moment, so no catch-up burst follows.
    """

    def __init__(
        self,
        interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._interval = interval
        self._clock = clock
        self._sleep = sleep
        self._deadline = clock() + interval
        self._ticks = 0

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def ticks(self) -> int:
        """Number of ticks fired so far."""
        return self._ticks

    async def wait(self) -> None:
        """Wait until the next tick is due."""
        now = self._clock()
        if self._deadline > now:
            await self._sleep(self._deadline - now)
        else:
            self._deadline = now
        self._deadline += self._interval
        self._ticks += 1


class StreamSession:
    """
    One client's continuous delivery of snapshots.

    States go OPEN -> STREAMING -> CLOSED. Every tick runs one assembly in a
    worker thread and writes either a `stats` or an `error` event. A failed
    sample does not end the session; cancellation, a failed write or an
    unexpected exception does. The session is CLOSED on every exit path.
    """

    def __init__(
        self,
        assembler: SnapshotAssembler,
        interval: float = DEFAULT_INTERVAL,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the StreamSession.

        Args:
            assembler: Produces one Snapshot per tick.
            interval: Seconds between ticks. Default 2.0s.
            clock: Monotonic time source for the tick schedule.
            sleep: Coroutine used to wait for the next tick.
        """
        self.id = next(_session_ids)
        self._assembler = assembler
        self._interval = interval
        self._clock = clock
        self._sleep = sleep
        self._cancelled = asyncio.Event()
        self._state = SessionState.OPEN
        self._ticker: Ticker | None = None
        self._events_sent = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def events_sent(self) -> int:
        """Number of events written to the client."""
        return self._events_sent

    @property
    def has_timer(self) -> bool:
        """Whether the session still holds its ticker."""
        return self._ticker is not None

    def cancel(self) -> None:
        """Ask the session to stop. No event is written after this call."""
        self._cancelled.set()

    async def run(self, transport: EventTransport) -> None:
        """Stream events to transport until cancelled or the client goes away."""
        if self._state is not SessionState.OPEN:
            raise RuntimeError(f"stream session {self.id} already {self._state.value}")

        reason = "cancelled"
        try:
            await transport.start(EVENT_STREAM_HEADERS)
            self._state = SessionState.STREAMING
            self._ticker = Ticker(self._interval, self._clock, self._sleep)
            logger.info("Stream session %d opened", self.id)

            while await self._next_tick():
                frame = await self._sample()
                if self._cancelled.is_set():
                    break
                await transport.write(frame)
                self._events_sent += 1

            await transport.close()
        except TransportWriteFailure as exc:
            reason = f"write failed: {exc}"
        except asyncio.CancelledError:
            reason = "task cancelled"
            raise
        except Exception:
            reason = "failed"
            raise
        finally:
            self._close(reason)

    async def _next_tick(self) -> bool:
        """
        Wait for the next tick or for cancellation, whichever comes first.

        Returns False when the session has been cancelled. Cancellation wins
        when both are ready.
        """
        if self._cancelled.is_set():
            return False

        tick = asyncio.ensure_future(self._ticker.wait())
        cancel = asyncio.ensure_future(self._cancelled.wait())
        try:
            await asyncio.wait({tick, cancel}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            pending = [task for task in (tick, cancel) if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.wait(pending)

        if self._cancelled.is_set():
            return False
        tick.result()
        return True

    async def _sample(self) -> bytes:
        """Assemble one snapshot and frame it as an SSE event."""
        try:
            snapshot = await asyncio.to_thread(self._assembler.assemble)
        except MetricsUnavailable as exc:
            logger.warning("Stream session %d: %s", self.id, exc)
            return format_event("error", exc.message)
        return format_event("stats", json.dumps(snapshot.to_dict()))

    def _close(self, reason: str) -> None:
        self._ticker = None
        if self._state is not SessionState.CLOSED:
            self._state = SessionState.CLOSED
            logger.info(
                "Stream session %d closed (%s) after %d event(s)",
                self.id,
                reason,
                self._events_sent,
            )


class SessionRegistry:
    """
    Open stream sessions of one server.

    Once closed, the registry cancels any session added to it right away, so
    nothing opened during shutdown keeps streaming.
    """

    def __init__(self) -> None:
        self._sessions: set[StreamSession] = set()
        self._closed = False

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[StreamSession]:
        return iter(list(self._sessions))

    @property
    def closed(self) -> bool:
        return self._closed

    def add(self, session: StreamSession) -> None:
        self._sessions.add(session)
        if self._closed:
            session.cancel()

    def discard(self, session: StreamSession) -> None:
        self._sessions.discard(session)

    def cancel_all(self) -> int:
        """Cancel every open session and refuse new ones. Returns how many were cancelled."""
        self._closed = True
        sessions = list(self._sessions)
        for session in sessions:
            session.cancel()
        return len(sessions)
