"""One probe session per subscriber, each running as its own asyncio task."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable

from pingwatch.session import (
    EndReason,
    EventSink,
    ProbeSession,
    SessionOutcome,
)

logger = logging.getLogger(__name__)

ClosedCallback = Callable[[int, SessionOutcome], Awaitable[None]]


class SessionError(Exception):
    """Raised when a session operation fails."""

    pass


@dataclass
class ManagedSession:
    """A running probe session bound to one subscriber."""

    subscriber_id: int
    session: ProbeSession
    cancel_event: asyncio.Event
    task: asyncio.Task | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    outcome: SessionOutcome | None = None

    def cancel(self) -> None:
        self.cancel_event.set()


class SessionManager:
    """Run at most one probe session per subscriber, each as its own task."""

    def __init__(
        self,
        argv: list[str],
        grace_period_s: float = 2.0,
        read_poll_s: float = 0.25,
        max_duration_s: float | None = None,
    ) -> None:
        """Initialize the session manager.

        Args:
            argv: Probe command line used for every session.
            grace_period_s: SIGTERM-to-SIGKILL grace period per probe.
            read_poll_s: Upper bound for one blocking read slice.
            max_duration_s: If set, sessions are cancelled after this many
                seconds.
        """
        self._argv = list(argv)
        self._grace_period_s = grace_period_s
        self._read_poll_s = read_poll_s
        self._max_duration_s = max_duration_s
        # {subscriber_id: ManagedSession}
        self._sessions: dict[int, ManagedSession] = {}

    def start(
        self,
        subscriber_id: int,
        on_event: EventSink,
        on_closed: ClosedCallback | None = None,
    ) -> ManagedSession:
        """Start a probe session for a subscriber.

        Args:
            subscriber_id: Owner of the session (a Telegram chat ID).
            on_event: Delivery sink for the session's events.
            on_closed: Awaited with the outcome once the session has closed.

        Returns:
            The registered ManagedSession; its task is already scheduled.

        Raises:
            SessionError: If the subscriber already has a running session.
        """
        if subscriber_id in self._sessions:
            raise SessionError("A ping session is already running. Use /stop first.")

        session = ProbeSession(
            self._argv,
            grace_period_s=self._grace_period_s,
            read_poll_s=self._read_poll_s,
        )
        managed = ManagedSession(
            subscriber_id=subscriber_id,
            session=session,
            cancel_event=asyncio.Event(),
        )
        self._sessions[subscriber_id] = managed
        managed.task = asyncio.create_task(
            self._run(managed, on_event, on_closed),
            name=f"probe-session-{subscriber_id}",
        )
        logger.debug("start subscriber_id=%d", subscriber_id)
        return managed

    async def _run(
        self,
        managed: ManagedSession,
        on_event: EventSink,
        on_closed: ClosedCallback | None,
    ) -> SessionOutcome:
        timer = None
        if self._max_duration_s is not None:
            loop = asyncio.get_event_loop()
            timer = loop.call_later(self._max_duration_s, managed.cancel_event.set)
        try:
            outcome = await managed.session.run(on_event, managed.cancel_event)
        except Exception as exc:
            logger.exception(
                "Probe session for subscriber %d crashed", managed.subscriber_id
            )
            outcome = SessionOutcome(
                reason=EndReason.DELIVERY_ERROR,
                exit_code=managed.session.process.exit_code(),
                error=str(exc),
                events_delivered=managed.session.events_delivered,
            )
        finally:
            if timer is not None:
                timer.cancel()
            if self._sessions.get(managed.subscriber_id) is managed:
                del self._sessions[managed.subscriber_id]

        managed.outcome = outcome
        if on_closed is not None:
            try:
                await on_closed(managed.subscriber_id, outcome)
            except Exception as exc:
                logger.warning(
                    "on_closed for subscriber %d failed: %s",
                    managed.subscriber_id, exc,
                )
        return outcome

    def get(self, subscriber_id: int) -> ManagedSession | None:
        return self._sessions.get(subscriber_id)

    def is_running(self, subscriber_id: int) -> bool:
        return subscriber_id in self._sessions

    def active_count(self) -> int:
        return len(self._sessions)

    async def stop(self, subscriber_id: int) -> SessionOutcome:
        """Cancel a subscriber's session and wait for it to close.

        Raises:
            SessionError: If the subscriber has no running session.
        """
        logger.debug("stop subscriber_id=%d", subscriber_id)
        managed = self._sessions.get(subscriber_id)
        if managed is None:
            raise SessionError("No ping session is running.")
        managed.cancel()
        return await managed.task

    async def shutdown(self) -> None:
        """Cancel every session and wait for all of them to close."""
        sessions = list(self._sessions.values())
        for managed in sessions:
            managed.cancel()
        if sessions:
            await asyncio.gather(*(m.task for m in sessions))
        self._sessions.clear()
