"""ProbeSession: stream classified ping output to one consumer until it ends."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Union

from pingwatch.classifier import classify
from pingwatch.events import ProbeEvent
from pingwatch.probe_process import ProbeProcess, SpawnError, SubprocessIOError

logger = logging.getLogger(__name__)

EventSink = Callable[[ProbeEvent], Union[None, Awaitable[None]]]


class SessionPhase(Enum):
    """Lifecycle of a ProbeSession.

    Values:
        STARTING: Spawning the probe. Fails straight to CLOSED on spawn error.
        STREAMING: Reading, classifying and delivering lines.
        DRAINING: An exit condition was seen; the probe is being terminated.
            Nothing is delivered from here on.
        CLOSED: Terminal.
    """

    STARTING = "starting"
    STREAMING = "streaming"
    DRAINING = "draining"
    CLOSED = "closed"


class EndReason(Enum):
    """Why a session stopped.

    DELIVERY_ERROR is never produced by ProbeSession itself: a sink that
    raises propagates out of run(), and SessionManager records it here.
    """

    CANCELLED = "cancelled"
    END_OF_STREAM = "end_of_stream"
    IO_ERROR = "io_error"
    SPAWN_ERROR = "spawn_error"
    DELIVERY_ERROR = "delivery_error"


@dataclass(frozen=True)
class SessionOutcome:
    """Diagnostic summary of a finished session. Never acted on automatically."""

    reason: EndReason
    exit_code: int | None = None
    error: str | None = None
    events_delivered: int = 0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ProbeSession:
    """Supervise one probe run and stream its events to a single consumer.

    Lines are pulled one at a time, classified, and handed to the sink
    before the next line is read, so events arrive in the order ping
    printed them. Every exit path, including sink errors and task
    cancellation, goes through a single terminate() of the probe.
    """

    def __init__(
        self,
        argv: list[str],
        grace_period_s: float = 2.0,
        read_poll_s: float = 0.25,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        """Initialize a session without starting it.

        Args:
            argv: Probe command line, treated as opaque.
            grace_period_s: SIGTERM-to-SIGKILL grace period for the probe.
            read_poll_s: Upper bound for one blocking read slice.
            clock: Source of ``observed_at`` timestamps.
        """
        self._argv = list(argv)
        self._process = ProbeProcess(
            self._argv, grace_period_s=grace_period_s, read_poll_s=read_poll_s
        )
        self._clock = clock
        self._pending_read: asyncio.Future | None = None
        self.phase = SessionPhase.STARTING
        self.lines_read = 0
        self.events_delivered = 0

    @property
    def process(self) -> ProbeProcess:
        return self._process

    async def run(
        self, on_event: EventSink, cancel_event: asyncio.Event
    ) -> SessionOutcome:
        """Run the probe until cancelled, end of stream, or a read error.

        Args:
            on_event: Called once per non-ignored event, in order. May
                return an awaitable, which is awaited before the next line
                is read.
            cancel_event: Set by the caller to end the session (subscriber
                gone, session timeout).

        Returns:
            A SessionOutcome naming the cause and the probe's exit status.
            Exceptions raised by ``on_event`` propagate after cleanup.
        """
        if self.phase is not SessionPhase.STARTING:
            raise RuntimeError("ProbeSession.run() can only be called once")

        try:
            await self._process.spawn()
        except SpawnError as exc:
            logger.error("Probe session failed to start: %s", exc)
            self.phase = SessionPhase.CLOSED
            return SessionOutcome(reason=EndReason.SPAWN_ERROR, error=str(exc))

        self.phase = SessionPhase.STREAMING
        logger.info("Probe session started pid=%s argv=%s", self._process.pid, self._argv)

        cancel_waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            reason, error = await self._stream(on_event, cancel_event, cancel_waiter)
        finally:
            self.phase = SessionPhase.DRAINING
            cancel_waiter.cancel()
            if self._pending_read is not None and not self._pending_read.done():
                self._pending_read.cancel()
            await asyncio.shield(self._process.terminate())
            self.phase = SessionPhase.CLOSED

        outcome = SessionOutcome(
            reason=reason,
            exit_code=self._process.exit_code(),
            error=error,
            events_delivered=self.events_delivered,
        )
        logger.info(
            "Probe session closed reason=%s exit_code=%s events=%d",
            outcome.reason.value, outcome.exit_code, outcome.events_delivered,
        )
        return outcome

    async def _stream(
        self,
        on_event: EventSink,
        cancel_event: asyncio.Event,
        cancel_waiter: asyncio.Future,
    ) -> tuple[EndReason, str | None]:
        while True:
            if cancel_event.is_set():
                return EndReason.CANCELLED, None

            read = asyncio.ensure_future(self._process.next_line())
            self._pending_read = read
            await asyncio.wait(
                {read, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED
            )
            if not read.done():
                return EndReason.CANCELLED, None
            self._pending_read = None

            try:
                line = read.result()
            except SubprocessIOError as exc:
                logger.error("Probe output read failed: %s", exc)
                return EndReason.IO_ERROR, str(exc)

            # A line that raced with cancellation is dropped
            if cancel_event.is_set():
                return EndReason.CANCELLED, None
            if line is None:
                return EndReason.END_OF_STREAM, None

            self.lines_read += 1
            event = classify(line, self._clock())
            if event is None:
                continue
            result = on_event(event)
            if inspect.isawaitable(result):
                await result
            self.events_delivered += 1
