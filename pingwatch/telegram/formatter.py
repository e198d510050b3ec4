from __future__ import annotations

import html as _html_mod
from collections import deque
from datetime import datetime

from pingwatch.events import Failure, ProbeEvent, Success, Timeout, describe
from pingwatch.session import EndReason, SessionOutcome

_ICONS = {
    Success: "✅",
    Timeout: "⏱",
    Failure: "❌",
}

_REASON_TEXT = {
    EndReason.CANCELLED: "stopped",
    EndReason.END_OF_STREAM: "ping exited",
    EndReason.IO_ERROR: "lost the ping output",
    EndReason.SPAWN_ERROR: "ping could not be started",
    EndReason.DELIVERY_ERROR: "could not deliver results",
}


class EventWindow:
    """Rolling window of the most recent events plus whole-session counters.

    Only the last ``size`` events are kept; the counters cover every
    event ever added.
    """

    def __init__(self, size: int) -> None:
        self.events: deque[ProbeEvent] = deque(maxlen=size)
        self.received = 0
        self.timed_out = 0
        self.failures = 0
        self._rtt_total = 0.0

    def add(self, event: ProbeEvent) -> None:
        self.events.append(event)
        if isinstance(event, Success):
            self.received += 1
            self._rtt_total += event.rtt_ms
        elif isinstance(event, Timeout):
            self.timed_out += 1
        else:
            self.failures += 1

    @property
    def sent(self) -> int:
        return self.received + self.timed_out

    @property
    def loss_percent(self) -> float:
        if not self.sent:
            return 0.0
        return 100.0 * self.timed_out / self.sent

    @property
    def avg_rtt_ms(self) -> float | None:
        if not self.received:
            return None
        return self._rtt_total / self.received


def _clock(ts: datetime) -> str:
    return ts.astimezone().strftime("%H:%M:%S")


def format_event_line(event: ProbeEvent) -> str:
    """Render one event as an HTML line: time, icon, comment, rtt."""
    icon = _ICONS.get(type(event), "")
    text = _html_mod.escape(describe(event))
    line = f"<code>{_clock(event.observed_at)}</code> {icon} {text}"
    if isinstance(event, Success):
        line += f" · {event.rtt_ms:g} ms"
    return line


def format_summary(window: EventWindow) -> str:
    avg = window.avg_rtt_ms
    avg_text = f"{avg:.3f} ms" if avg is not None else "n/a"
    return (
        f"sent {window.sent} · received {window.received} · "
        f"loss {window.loss_percent:.1f}% · avg {avg_text}"
        + (f" · errors {window.failures}" if window.failures else "")
    )


def format_live(host: str, window: EventWindow) -> str:
    """Render the whole live message: header, recent events, summary."""
    parts = [f"<b>Pinging {_html_mod.escape(host)}</b>"]
    parts.extend(format_event_line(e) for e in window.events)
    parts.append(f"<i>{format_summary(window)}</i>")
    return "\n".join(parts)


def format_outcome(outcome: SessionOutcome) -> str:
    """Render the closing message for a finished session."""
    reason = _REASON_TEXT.get(outcome.reason, outcome.reason.value)
    parts = [f"Ping session ended: {reason}."]
    if outcome.exit_code is not None:
        parts.append(f"Exit code: {outcome.exit_code}")
    if outcome.error:
        parts.append(f"Error: <code>{_html_mod.escape(outcome.error)}</code>")
    parts.append(f"Events delivered: {outcome.events_delivered}")
    return "\n".join(parts)
