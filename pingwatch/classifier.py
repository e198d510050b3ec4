"""Line classifier: one line of ping output → ProbeEvent or None.

Rules are tried in order and the first match wins. Later rules are
broader, so the order matters:

  1. blank lines and the ``PING host (addr): N data bytes`` banner → None
  2. ``14:36:04.394181 64 bytes from 172.217.27.78: icmp_seq=53 ttl=119 time=12.082 ms``
     → Success
  3. ``Request timeout for icmp_seq 912`` → Timeout
  4. anything else (``ping: sendto: No route to host``) → Failure
"""

from __future__ import annotations

import logging
import re
from datetime import datetime

from pingwatch.events import Failure, ProbeEvent, Success, Timeout

logger = logging.getLogger(__name__)

_MAX_SEQUENCE = 2**32 - 1

_BANNER_RE = re.compile(r"PING.*bytes")

# Groups: local send time, source address, icmp_seq, time (ms).
# Only the last two end up in the event.
_REPLY_RE = re.compile(
    r"^([0-9:.]+)"
    r".*from ([0-9.]+)"
    r".*icmp_seq=([0-9]+)"
    r".*time=([0-9]+(?:\.[0-9]*)?)"
)

_TIMEOUT_RE = re.compile(r"^Request timeout for icmp_seq ([0-9]+)")


def strip_line_ending(line: str) -> str:
    """Remove a trailing ``\\n`` or ``\\r\\n`` (PTY output uses the latter)."""
    if line.endswith("\n"):
        line = line[:-1]
    if line.endswith("\r"):
        line = line[:-1]
    return line


def _parse_sequence(text: str) -> int | None:
    try:
        value = int(text)
    except ValueError:
        return None
    if value > _MAX_SEQUENCE:
        return None
    return value


def _parse_reply(line: str, now: datetime) -> Success | None:
    m = _REPLY_RE.match(line)
    if not m:
        return None
    sequence = _parse_sequence(m.group(3))
    try:
        rtt_ms = float(m.group(4))
    except ValueError:
        return None
    if sequence is None:
        return None
    return Success(rtt_ms=rtt_ms, sequence=sequence, observed_at=now)


def _parse_timeout(line: str, now: datetime) -> Timeout | None:
    m = _TIMEOUT_RE.match(line)
    if not m:
        return None
    sequence = _parse_sequence(m.group(1))
    if sequence is None:
        return None
    return Timeout(sequence=sequence, observed_at=now)


def classify(line: str, now: datetime) -> ProbeEvent | None:
    """Classify one line of ping output.

    Args:
        line: Raw line, with or without its trailing line ending.
        now: Wall-clock time stamped onto the event. The line's own
            clock field is never used.

    Returns:
        A Success, Timeout or Failure event, or None for lines that carry
        no event (banner, blank). Never raises for string input: a line
        whose numbers do not parse becomes a Failure.
    """
    line = strip_line_ending(line)
    if not line.strip():
        return None
    if _BANNER_RE.search(line):
        logger.debug("Banner: %s", line)
        return None

    event = _parse_reply(line, now)
    if event is not None:
        return event

    event = _parse_timeout(line, now)
    if event is not None:
        return event

    return Failure(reason=line, observed_at=now)
