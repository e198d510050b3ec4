from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from pingwatch.events import Failure, Success, Timeout
from pingwatch.probe_process import SubprocessIOError
from pingwatch.session import EndReason, ProbeSession, SessionPhase
from tests.conftest import (
    BANNER,
    FIXED_NOW,
    NO_ROUTE,
    REPLY,
    TIMEOUT,
    printf_lines,
    sh,
    wait_until,
)


def _session(argv, **kwargs) -> ProbeSession:
    kwargs.setdefault("clock", lambda: FIXED_NOW)
    return ProbeSession(argv, **kwargs)


class TestProbeSessionStreaming:
    @pytest.mark.asyncio
    async def test_events_delivered_in_order(self):
        session = _session(printf_lines(BANNER, REPLY, TIMEOUT, NO_ROUTE))
        events = []
        outcome = await session.run(events.append, asyncio.Event())

        assert events == [
            Success(rtt_ms=12.082, sequence=53, observed_at=FIXED_NOW),
            Timeout(sequence=912, observed_at=FIXED_NOW),
            Failure(reason=NO_ROUTE, observed_at=FIXED_NOW),
        ]
        assert outcome.reason is EndReason.END_OF_STREAM
        assert outcome.exit_code == 0
        assert outcome.error is None
        assert outcome.events_delivered == 3
        assert session.lines_read == 4
        assert session.phase is SessionPhase.CLOSED

    @pytest.mark.asyncio
    async def test_long_sequence_keeps_order(self):
        lines = [
            f"10:00:00.{i:06d} 64 bytes from 10.0.0.1: icmp_seq={i} ttl=64 time={i}.5 ms"
            for i in range(50)
        ]
        session = _session(printf_lines(*lines))
        events = []
        await session.run(events.append, asyncio.Event())
        assert [e.sequence for e in events] == list(range(50))

    @pytest.mark.asyncio
    async def test_async_sink_is_awaited_before_next_line(self):
        session = _session(printf_lines(REPLY, TIMEOUT))
        delivered = []

        async def sink(event):
            await asyncio.sleep(0.05)
            delivered.append(event)

        outcome = await session.run(sink, asyncio.Event())
        assert [type(e) for e in delivered] == [Success, Timeout]
        assert outcome.events_delivered == 2

    @pytest.mark.asyncio
    async def test_banner_only_delivers_nothing(self):
        session = _session(printf_lines(BANNER))
        sink = AsyncMock()
        outcome = await session.run(sink, asyncio.Event())
        sink.assert_not_called()
        assert outcome.reason is EndReason.END_OF_STREAM

    @pytest.mark.asyncio
    async def test_probe_exit_status_reported(self):
        session = _session(sh(f"echo '{NO_ROUTE}'; exit 68"))
        events = []
        outcome = await session.run(events.append, asyncio.Event())
        assert outcome.exit_code == 68
        assert events == [Failure(reason=NO_ROUTE, observed_at=FIXED_NOW)]

    @pytest.mark.asyncio
    async def test_run_only_once(self):
        session = _session(sh("true"))
        await session.run(lambda e: None, asyncio.Event())
        with pytest.raises(RuntimeError):
            await session.run(lambda e: None, asyncio.Event())


class TestProbeSessionSpawnError:
    @pytest.mark.asyncio
    async def test_spawn_error_closes_session(self):
        session = _session(["/nonexistent/ping", "example.com"])
        sink = AsyncMock()
        outcome = await session.run(sink, asyncio.Event())
        assert outcome.reason is EndReason.SPAWN_ERROR
        assert "/nonexistent/ping" in outcome.error
        assert outcome.exit_code is None
        assert session.phase is SessionPhase.CLOSED
        sink.assert_not_called()


class TestProbeSessionCancellation:
    @pytest.mark.asyncio
    async def test_cancel_while_blocked(self):
        session = _session(sh("sleep 30"), grace_period_s=1.0, read_poll_s=0.2)
        cancel = asyncio.Event()
        task = asyncio.create_task(session.run(lambda e: None, cancel))
        await wait_until(lambda: session.phase is SessionPhase.STREAMING)

        cancel.set()
        outcome = await asyncio.wait_for(task, timeout=3.0)

        assert outcome.reason is EndReason.CANCELLED
        assert session.phase is SessionPhase.CLOSED
        assert not session.process.is_alive()

    @pytest.mark.asyncio
    async def test_cancel_escalates_to_kill(self):
        session = _session(
            sh("trap '' TERM; sleep 30"), grace_period_s=0.3, read_poll_s=0.1
        )
        cancel = asyncio.Event()
        task = asyncio.create_task(session.run(lambda e: None, cancel))
        await wait_until(lambda: session.phase is SessionPhase.STREAMING)
        await asyncio.sleep(0.2)

        cancel.set()
        outcome = await asyncio.wait_for(task, timeout=3.0)
        assert outcome.reason is EndReason.CANCELLED
        assert not session.process.is_alive()

    @pytest.mark.asyncio
    async def test_already_cancelled_delivers_nothing(self):
        session = _session(printf_lines(REPLY, REPLY))
        cancel = asyncio.Event()
        cancel.set()
        sink = AsyncMock()
        outcome = await session.run(sink, cancel)
        assert outcome.reason is EndReason.CANCELLED
        sink.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_events_after_cancel(self):
        session = _session(
            sh(f"while true; do echo '{TIMEOUT}'; sleep 0.01; done")
        )
        cancel = asyncio.Event()
        events = []

        def sink(event):
            events.append(event)
            cancel.set()

        outcome = await asyncio.wait_for(session.run(sink, cancel), timeout=5.0)
        assert outcome.reason is EndReason.CANCELLED
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_task_cancellation_still_terminates(self):
        session = _session(sh("sleep 30"), grace_period_s=1.0, read_poll_s=0.1)
        task = asyncio.create_task(session.run(lambda e: None, asyncio.Event()))
        await wait_until(lambda: session.phase is SessionPhase.STREAMING)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await wait_until(lambda: not session.process.is_alive())


class TestProbeSessionErrors:
    @pytest.mark.asyncio
    async def test_sink_error_propagates_after_cleanup(self):
        session = _session(sh(f"while true; do echo '{TIMEOUT}'; sleep 0.05; done"))

        def sink(event):
            raise RuntimeError("subscriber write failed")

        with pytest.raises(RuntimeError, match="subscriber write failed"):
            await session.run(sink, asyncio.Event())
        assert session.phase is SessionPhase.CLOSED
        assert not session.process.is_alive()

    @pytest.mark.asyncio
    async def test_read_error_ends_session(self):
        session = _session(sh("sleep 30"), grace_period_s=1.0)
        session.process.next_line = AsyncMock(
            side_effect=SubprocessIOError("Reading probe output failed: EBADF")
        )
        outcome = await session.run(lambda e: None, asyncio.Event())
        assert outcome.reason is EndReason.IO_ERROR
        assert "EBADF" in outcome.error
        assert session.phase is SessionPhase.CLOSED
        assert not session.process.is_alive()
