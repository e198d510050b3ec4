"""Run ping under a pseudo-terminal and read its output line by line."""

from __future__ import annotations

import asyncio
import logging
import re
import signal
import time

import pexpect

from pingwatch.log_setup import TRACE

logger = logging.getLogger(__name__)

_NEWLINE_RE = re.compile(r"\r?\n")
_REAP_INTERVAL_S = 0.05
_KILL_WAIT_S = 5.0

# Returned by a read slice that timed out without a complete line
_NO_LINE = object()


class ProbeError(Exception):
    """Base class for probe process failures."""

    pass


class SpawnError(ProbeError):
    """Raised when the probe executable cannot be started."""

    pass


class SubprocessIOError(ProbeError):
    """Raised when reading probe output fails for a reason other than EOF."""

    pass


class ProbeProcess:
    """Async wrapper around a pexpect-managed ping subprocess.

    Owns the child for its whole life: spawning, reading output one line
    at a time, and terminating + reaping it. The child runs in a PTY so
    ping line-buffers its output, and stderr lands in the same stream.
    Blocking pexpect calls run on executor threads; reads are done in
    slices of ``read_poll_s`` so a pending read never outlives
    termination by more than one slice.
    """

    def __init__(
        self,
        argv: list[str],
        grace_period_s: float = 2.0,
        read_poll_s: float = 0.25,
    ) -> None:
        """Initialize a ProbeProcess without spawning it.

        Args:
            argv: Executable followed by its arguments. Passed through
                as-is, without a shell.
            grace_period_s: How long terminate() waits after SIGTERM
                before sending SIGKILL.
            read_poll_s: Upper bound for a single blocking read slice.
        """
        if not argv:
            raise ValueError("argv must not be empty")
        self._argv = list(argv)
        self._grace_period_s = grace_period_s
        self._read_poll_s = read_poll_s
        self._process: pexpect.spawn | None = None
        self._reader: asyncio.Future | None = None
        self._eof = False
        self._read_closed = False
        self._terminated = False

    @property
    def pid(self) -> int | None:
        if self._process is None:
            return None
        return self._process.pid

    async def spawn(self) -> None:
        """Start the probe in a PTY on a background thread.

        Raises:
            SpawnError: If the executable is missing, not executable, or
                the exec fails. The process is not retried.
        """
        if self._process is not None:
            raise ProbeError("Probe process already spawned")
        logger.debug("Spawning probe: argv=%s", self._argv)
        loop = asyncio.get_event_loop()
        try:
            self._process = await loop.run_in_executor(
                None,
                lambda: pexpect.spawn(
                    self._argv[0],
                    self._argv[1:],
                    encoding="utf-8",
                    codec_errors="replace",
                    timeout=None,
                    echo=False,
                ),
            )
        except (pexpect.ExceptionPexpect, OSError) as exc:
            raise SpawnError(f"Failed to start {self._argv[0]}: {exc}") from exc
        logger.debug("Probe spawned pid=%d", self._process.pid)

    def is_alive(self) -> bool:
        """Check whether the probe has been spawned and is still running."""
        if self._process is None:
            return False
        return self._process.isalive()

    def _read_slice(self):
        """Block for at most one read slice.

        Returns the next line without its terminator, ``_NO_LINE`` if the
        slice expired first, or None at end of stream. A partial last line
        before EOF is returned as a line; the following call reports EOF.
        """
        process = self._process
        try:
            index = process.expect(
                [_NEWLINE_RE, pexpect.EOF, pexpect.TIMEOUT],
                timeout=self._read_poll_s,
            )
        except (OSError, pexpect.ExceptionPexpect) as exc:
            raise SubprocessIOError(f"Reading probe output failed: {exc}") from exc
        if index == 0:
            return process.before
        if index == 1:
            self._eof = True
            return process.before or None
        return _NO_LINE

    async def next_line(self) -> str | None:
        """Return the next output line, or None at end of stream.

        End of stream means the child closed its output (it exited or
        crashed) or terminate() has started. It is not an error.

        The executor read is shielded: if the awaiting task is cancelled,
        the read keeps running and is picked up by the next call or
        awaited by terminate().

        Raises:
            SubprocessIOError: If reading the PTY fails unexpectedly.
        """
        loop = asyncio.get_event_loop()
        while True:
            if self._process is None or self._read_closed or self._eof:
                return None
            if self._reader is None:
                self._reader = loop.run_in_executor(None, self._read_slice)
            reader = self._reader
            try:
                result = await asyncio.shield(reader)
            finally:
                if reader.done():
                    self._reader = None
            if result is _NO_LINE:
                continue
            if result is None:
                logger.debug("Probe pid=%d output closed", self._process.pid)
                return None
            logger.log(TRACE, "Probe line: %r", result)
            return result

    def _stop_child(self) -> None:
        """SIGTERM, wait out the grace period, then SIGKILL. Reaps the child."""
        process = self._process
        if not process.isalive():
            return
        process.kill(signal.SIGTERM)
        deadline = time.monotonic() + self._grace_period_s
        while time.monotonic() < deadline:
            if not process.isalive():
                return
            time.sleep(_REAP_INTERVAL_S)

        logger.warning(
            "Probe pid=%d still running %.1fs after SIGTERM, sending SIGKILL",
            process.pid, self._grace_period_s,
        )
        process.kill(signal.SIGKILL)
        deadline = time.monotonic() + _KILL_WAIT_S
        while process.isalive():
            if time.monotonic() >= deadline:
                logger.error("Probe pid=%d survived SIGKILL", process.pid)
                return
            time.sleep(_REAP_INTERVAL_S)

    async def terminate(self) -> None:
        """Stop the probe and release the PTY.

        Closes the read side first so no further lines are produced, then
        stops and reaps the child, waits for any in-flight read slice and
        closes the PTY. Safe to call more than once, before spawn, and
        after the child already exited.
        """
        self._read_closed = True
        if self._process is None or self._terminated:
            return
        self._terminated = True
        logger.debug("Terminating probe pid=%d", self._process.pid)
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, self._stop_child)

        if self._reader is not None:
            try:
                await self._reader
            except SubprocessIOError as exc:
                logger.debug("In-flight read ended with: %s", exc)
            self._reader = None

        try:
            await loop.run_in_executor(None, self._process.close, True)
        except pexpect.ExceptionPexpect as exc:
            logger.error("Closing probe pid=%d failed: %s", self._process.pid, exc)
        logger.debug(
            "Probe pid=%d reaped exit_code=%s", self._process.pid, self.exit_code()
        )

    def exit_code(self) -> int | None:
        """Return the exit code or signal number of the finished probe.

        Returns:
            The exit status, the signal number that killed the process,
            or None if it was never spawned or is still running.
        """
        if self._process is None:
            return None
        # pexpect sets signalstatus (not exitstatus) when process is killed by signal
        if self._process.exitstatus is not None:
            return self._process.exitstatus
        return self._process.signalstatus
