"""Tests for stream sessions, the ticker and the session registry."""

import asyncio
import json

import pytest
from fakes import (
    CountingSource,
    FakeClock,
    FakeProcess,
    FakeSource,
    FlakySource,
    RecordingTransport,
    parse_events,
)

from sysstats.assembler import SnapshotAssembler
from sysstats.stream import (
    EVENT_STREAM_HEADERS,
    SessionRegistry,
    SessionState,
    StreamSession,
    Ticker,
    format_event,
)


def make_session(source=None, clock=None, interval=2.0) -> StreamSession:
    clock = clock or FakeClock()
    assembler = SnapshotAssembler(source or FakeSource())
    return StreamSession(assembler, interval=interval, clock=clock.now, sleep=clock.sleep)


async def tick(clock: FakeClock, transport: RecordingTransport, count: int, interval: float = 2.0) -> None:
    """Advance virtual time by one interval and wait for the count-th frame."""
    await clock.wait_for_sleepers()
    await clock.advance(interval)
    await transport.wait_for_frames(count)


class TestFormatEvent:
    """Tests for SSE framing."""

    def test_single_line(self):
        """Test an event is framed with a blank-line terminator."""
        assert format_event("stats", '{"a": 1}') == b'event: stats\ndata: {"a": 1}\n\n'

    def test_multi_line_data(self):
        """Test each line of data gets its own data field."""
        assert format_event("error", "first\nsecond") == b"event: error\ndata: first\ndata: second\n\n"

    def test_empty_data(self):
        """Test empty data still yields one data field."""
        assert format_event("error", "") == b"event: error\ndata: \n\n"


class TestTicker:
    """Tests for the fixed-rate ticker."""

    @pytest.mark.asyncio
    async def test_first_tick_after_one_interval(self):
        """Test the first tick is due one interval after creation."""
        clock = FakeClock()
        ticker = Ticker(2.0, clock.now, clock.sleep)

        waiter = asyncio.create_task(ticker.wait())
        await clock.wait_for_sleepers()
        assert clock.deadlines == [2.0]

        await clock.advance(2.0)
        await asyncio.wait_for(waiter, timeout=1.0)
        assert ticker.ticks == 1

    @pytest.mark.asyncio
    async def test_schedule_is_anchored(self):
        """Test deadlines stay on the start + k * interval grid."""
        clock = FakeClock()
        ticker = Ticker(2.0, clock.now, clock.sleep)

        waiter = asyncio.create_task(ticker.wait())
        await clock.wait_for_sleepers()
        await clock.advance(2.0)
        await waiter

        # Work took 0.5s; next tick still due at 4.0
        clock.set(2.5)
        waiter = asyncio.create_task(ticker.wait())
        await clock.wait_for_sleepers()
        assert clock.deadlines == [4.0]
        await clock.advance(1.5)
        await waiter

    @pytest.mark.asyncio
    async def test_overrun_fires_immediately_and_reanchors(self):
        """Test a late caller gets one immediate tick and no catch-up burst."""
        clock = FakeClock()
        ticker = Ticker(2.0, clock.now, clock.sleep)

        # Deadline was 2.0; the caller only comes back at 7.0
        clock.set(7.0)
        await asyncio.wait_for(ticker.wait(), timeout=1.0)
        assert ticker.ticks == 1
        assert clock.pending == 0

        waiter = asyncio.create_task(ticker.wait())
        await clock.wait_for_sleepers()
        assert clock.deadlines == [9.0]
        await clock.advance(2.0)
        await waiter
        assert ticker.ticks == 2


class TestStreamSession:
    """Tests for the StreamSession state machine."""

    @pytest.mark.asyncio
    async def test_three_ticks_emit_three_stats_events(self):
        """Test three intervals of virtual time yield exactly three stats events, in order."""
        clock = FakeClock()
        session = make_session(CountingSource(), clock)
        transport = RecordingTransport()

        task = asyncio.create_task(session.run(transport))
        for count in range(1, 4):
            await tick(clock, transport, count)
        session.cancel()
        await asyncio.wait_for(task, timeout=2.0)

        events = parse_events(transport.frames)
        assert [name for name, _ in events] == ["stats", "stats", "stats"]
        samples = [json.loads(data)["cpuUsage"] for _, data in events]
        assert samples == [1.0, 2.0, 3.0]
        assert session.events_sent == 3

    @pytest.mark.asyncio
    async def test_headers_sent_on_open(self):
        """Test the event-stream headers are sent before any event."""
        clock = FakeClock()
        session = make_session(clock=clock)
        transport = RecordingTransport()

        assert session.state is SessionState.OPEN
        task = asyncio.create_task(session.run(transport))
        await clock.wait_for_sleepers()

        assert session.state is SessionState.STREAMING
        assert transport.headers == dict(EVENT_STREAM_HEADERS)
        assert transport.headers["Content-Type"] == "text/event-stream"
        assert transport.headers["Cache-Control"] == "no-cache"
        assert transport.headers["Connection"] == "keep-alive"
        assert transport.frames == []

        session.cancel()
        await asyncio.wait_for(task, timeout=2.0)

    @pytest.mark.asyncio
    async def test_stats_payload_is_snapshot_json(self):
        """Test the stats event data is the serialized Snapshot."""
        clock = FakeClock()
        session = make_session(FakeSource(), clock)
        transport = RecordingTransport()

        task = asyncio.create_task(session.run(transport))
        await tick(clock, transport, 1)
        session.cancel()
        await asyncio.wait_for(task, timeout=2.0)

        assert transport.frames[0].startswith(b"event: stats\ndata: ")
        assert transport.frames[0].endswith(b"\n\n")
        (_, data), = parse_events(transport.frames)
        assert json.loads(data) == {
            "cpuUsage": 12.3,
            "memUsage": 55.0,
            "diskUsage": 80.0,
            "netTraffic": 300,
            "processes": [],
        }

    @pytest.mark.asyncio
    async def test_failed_sample_emits_error_and_continues(self):
        """Test a MetricsUnavailable tick becomes an error event and streaming goes on."""
        clock = FakeClock()
        session = make_session(FlakySource(failing_calls={2}), clock)
        transport = RecordingTransport()

        task = asyncio.create_task(session.run(transport))
        for count in range(1, 4):
            await tick(clock, transport, count)
        session.cancel()
        await asyncio.wait_for(task, timeout=2.0)

        events = parse_events(transport.frames)
        assert [name for name, _ in events] == ["stats", "error", "stats"]
        assert events[1][1] == "error getting disk stats: disk read #2 failed"

    @pytest.mark.asyncio
    async def test_unreadable_process_does_not_end_session(self):
        """Test a process raising OSError is left out and streaming goes on."""
        clock = FakeClock()
        processes = [
            FakeProcess(pid=1, name="init"),
            FakeProcess(pid=42, fail="name", error=OSError("permission denied")),
        ]
        session = make_session(FakeSource(processes=processes), clock)
        transport = RecordingTransport()

        task = asyncio.create_task(session.run(transport))
        for count in range(1, 3):
            await tick(clock, transport, count)
        assert session.state is SessionState.STREAMING
        session.cancel()
        await asyncio.wait_for(task, timeout=2.0)

        events = parse_events(transport.frames)
        assert [name for name, _ in events] == ["stats", "stats"]
        for _, data in events:
            assert [p["pid"] for p in json.loads(data)["processes"]] == [1]

    @pytest.mark.asyncio
    async def test_cancel_stops_events_and_releases_timer(self):
        """Test no event is written after cancel and the timer is released."""
        clock = FakeClock()
        session = make_session(clock=clock)
        transport = RecordingTransport()

        task = asyncio.create_task(session.run(transport))
        await tick(clock, transport, 1)
        await clock.wait_for_sleepers()
        assert session.has_timer

        session.cancel()
        await asyncio.wait_for(task, timeout=2.0)
        await clock.advance(10.0)
        await asyncio.sleep(0.01)

        assert len(transport.frames) == 1
        assert session.state is SessionState.CLOSED
        assert session.cancelled
        assert not session.has_timer
        assert clock.pending == 0
        assert transport.closed

    @pytest.mark.asyncio
    async def test_cancel_wins_over_ready_tick(self):
        """Test cancellation takes precedence when the tick is due at the same time."""
        clock = FakeClock()
        session = make_session(clock=clock)
        transport = RecordingTransport()

        task = asyncio.create_task(session.run(transport))
        await clock.wait_for_sleepers()
        clock.set(2.0)
        session.cancel()
        await asyncio.wait_for(task, timeout=2.0)

        assert transport.frames == []
        assert session.state is SessionState.CLOSED

    @pytest.mark.asyncio
    async def test_cancel_before_run(self):
        """Test a session cancelled before it starts writes no events."""
        session = make_session()
        transport = RecordingTransport()

        session.cancel()
        await asyncio.wait_for(session.run(transport), timeout=2.0)

        assert transport.frames == []
        assert session.state is SessionState.CLOSED

    @pytest.mark.asyncio
    async def test_write_failure_closes_session(self):
        """Test a failed write ends this session without raising."""
        clock = FakeClock()
        session = make_session(clock=clock)
        transport = RecordingTransport(fail_on_write=1)

        task = asyncio.create_task(session.run(transport))
        await clock.wait_for_sleepers()
        await clock.advance(2.0)
        await asyncio.wait_for(task, timeout=2.0)

        assert task.exception() is None
        assert session.state is SessionState.CLOSED
        assert not session.has_timer
        assert session.events_sent == 0
        assert clock.pending == 0

    @pytest.mark.asyncio
    async def test_task_cancellation_closes_session(self):
        """Test a forcibly cancelled task still leaves the session closed."""
        clock = FakeClock()
        session = make_session(clock=clock)
        transport = RecordingTransport()

        task = asyncio.create_task(session.run(transport))
        await clock.wait_for_sleepers()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert session.state is SessionState.CLOSED
        assert not session.has_timer
        assert clock.pending == 0

    @pytest.mark.asyncio
    async def test_session_cannot_run_twice(self):
        """Test a closed session refuses to run again."""
        session = make_session()
        session.cancel()
        await session.run(RecordingTransport())

        with pytest.raises(RuntimeError):
            await session.run(RecordingTransport())

    @pytest.mark.asyncio
    async def test_sessions_are_independent(self):
        """Test cancelling one session leaves another streaming."""
        clock = FakeClock()
        first, second = make_session(clock=clock), make_session(clock=clock)
        first_transport, second_transport = RecordingTransport(), RecordingTransport()

        first_task = asyncio.create_task(first.run(first_transport))
        second_task = asyncio.create_task(second.run(second_transport))
        await clock.wait_for_sleepers(2)

        first.cancel()
        await asyncio.wait_for(first_task, timeout=2.0)
        await clock.advance(2.0)
        await second_transport.wait_for_frames(1)

        assert first_transport.frames == []
        assert second.state is SessionState.STREAMING

        second.cancel()
        await asyncio.wait_for(second_task, timeout=2.0)

    def test_default_interval(self):
        """Test sessions tick every two seconds by default."""
        session = StreamSession(SnapshotAssembler(FakeSource()))

        assert session.interval == 2.0


class TestSessionRegistry:
    """Tests for SessionRegistry."""

    def test_add_and_discard(self):
        """Test sessions can be tracked and untracked."""
        registry = SessionRegistry()
        session = make_session()

        registry.add(session)
        assert len(registry) == 1
        assert list(registry) == [session]

        registry.discard(session)
        registry.discard(session)
        assert len(registry) == 0

    def test_cancel_all(self):
        """Test every tracked session is cancelled at once."""
        registry = SessionRegistry()
        sessions = [make_session() for _ in range(3)]
        for session in sessions:
            registry.add(session)

        assert registry.cancel_all() == 3
        assert all(session.cancelled for session in sessions)
        assert registry.closed

    def test_add_after_close_cancels(self):
        """Test a session registered during shutdown is cancelled right away."""
        registry = SessionRegistry()
        registry.cancel_all()

        session = make_session()
        registry.add(session)

        assert session.cancelled
