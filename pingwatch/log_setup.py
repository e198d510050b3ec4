"""Logging for pingwatch: a TRACE level for raw probe lines, console and trace file."""

from __future__ import annotations

import logging
import os
import re
from datetime import datetime

TRACE = 5
TRACE_DIR = "debug"

logging.addLevelName(TRACE, "TRACE")

_CONSOLE_FMT = "%(levelname)s %(name)s: %(message)s"
_FILE_FMT = "%(asctime)s.%(msecs)03d %(levelname)s %(name)s:%(funcName)s:%(lineno)d %(message)s"
_FILE_DATEFMT = "%Y-%m-%d %H:%M:%S"
_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9.-]+")


def setup_logging(*, debug: bool, trace: bool, verbose: bool) -> logging.Logger:
    """Configure console output for the ``pingwatch`` logger tree.

    Console output is INFO by default, DEBUG with ``debug`` or ``trace``,
    and TRACE (every raw probe line) with ``trace`` plus ``verbose``.
    The trace file is attached separately by attach_trace_file() once the
    probe target is known.
    """
    root = logging.getLogger("pingwatch")
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(TRACE)

    console = logging.StreamHandler()
    if trace and verbose:
        console.setLevel(TRACE)
    elif debug or trace:
        console.setLevel(logging.DEBUG)
    else:
        console.setLevel(logging.INFO)
    console.setFormatter(logging.Formatter(_CONSOLE_FMT))
    root.addHandler(console)
    return root


def trace_file_name(host: str, started: datetime) -> str:
    """Name of the trace file for one run against ``host``."""
    label = _UNSAFE_CHARS_RE.sub("_", host).strip("_") or "probe"
    return f"trace-{label}-{started.strftime('%Y-%m-%dT%H-%M-%S')}.log"


def attach_trace_file(host: str, argv: list[str]) -> str:
    """Write everything, raw probe lines included, to a file for this run.

    The file is named after the probe target and starts with the probe's
    command line, so traces of different hosts stay apart.

    Returns:
        Path of the trace file.
    """
    os.makedirs(TRACE_DIR, exist_ok=True)
    filepath = os.path.join(TRACE_DIR, trace_file_name(host, datetime.now()))
    fh = logging.FileHandler(filepath)
    fh.setLevel(TRACE)
    fh.setFormatter(logging.Formatter(_FILE_FMT, datefmt=_FILE_DATEFMT))

    root = logging.getLogger("pingwatch")
    root.addHandler(fh)
    root.info("Tracing probe argv=%s", argv)
    return filepath
