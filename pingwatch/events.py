"""Probe event types and their wire encoding."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Union


@dataclass(frozen=True)
class Success:
    """An echo reply was received for ``sequence`` after ``rtt_ms``."""

    rtt_ms: float
    sequence: int
    observed_at: datetime


@dataclass(frozen=True)
class Timeout:
    """Ping gave up waiting for the reply to ``sequence``."""

    sequence: int
    observed_at: datetime


@dataclass(frozen=True)
class Failure:
    """Any other output from ping, kept verbatim in ``reason``."""

    reason: str
    observed_at: datetime


ProbeEvent = Union[Success, Timeout, Failure]


def describe(event: ProbeEvent) -> str:
    """Return the human-readable summary used as the ``comment`` field."""
    if isinstance(event, Success):
        return f"Success #{event.sequence}"
    if isinstance(event, Timeout):
        return f"Timed out #{event.sequence}"
    if isinstance(event, Failure):
        return f"Failure: {event.reason}"
    raise TypeError(f"Not a probe event: {event!r}")


def encode_event(event: ProbeEvent) -> dict:
    """Encode an event as the ``{"time", "rtt", "comment"}`` record.

    ``time`` is whole seconds since the epoch taken from ``observed_at``,
    ``rtt`` is the round trip in milliseconds for a Success and ``0``
    otherwise.

    Raises:
        TypeError: If ``event`` is not one of the ProbeEvent variants.
    """
    comment = describe(event)
    rtt = event.rtt_ms if isinstance(event, Success) else 0
    return {
        "time": int(event.observed_at.timestamp()),
        "rtt": rtt,
        "comment": comment,
    }


def to_json(event: ProbeEvent) -> str:
    return json.dumps(encode_event(event))
