"""Background monitoring of CEC adapter output.

``BusMonitor`` owns one daemon thread per adapter session. The thread drains
the adapter's output line by line, decodes each line with
``CecFrameCodec`` and appends decoded frames to a ``BusLog``. Diagnostics
and malformed lines are tallied but never stop the loop.

``BusLog`` is the only state shared with the foreground: it is append-only
and wakes waiters through a condition variable, so a reader blocked in
``wait_for_more`` sees new frames as soon as they are appended.
"""

from __future__ import annotations

import collections
import logging
import threading
import time
from typing import Callable, Deque, List, Optional, Tuple

from . import CEC_DIAGNOSTIC_TAIL, CEC_MONITOR_JOIN_TIMEOUT_MS
from .exceptions import CecDecodeError, DecodeErrorKind
from .messages import CecFrame, CecFrameCodec

logger = logging.getLogger("hdmi_cec_tools.monitor")


class BusLog:
    """Append-only, ordered record of the frames observed in one session."""

    def __init__(self) -> None:
        self._frames: List[CecFrame] = []
        self._cond = threading.Condition()

    def append(self, frame: CecFrame) -> int:
        """Append *frame* and wake every waiter. Returns the frame's index."""
        with self._cond:
            self._frames.append(frame)
            index = len(self._frames) - 1
            self._cond.notify_all()
        return index

    def __len__(self) -> int:
        with self._cond:
            return len(self._frames)

    def snapshot(self, start: int = 0) -> Tuple[CecFrame, ...]:
        """Frames from index *start* onwards, as an immutable tuple."""
        with self._cond:
            return tuple(self._frames[start:])

    def wait_for_more(self, known_length: int, timeout_s: float) -> int:
        """Block until the log holds more than *known_length* frames.

        Returns the current length, which equals *known_length* when the
        timeout expired without an append.
        """
        with self._cond:
            if timeout_s > 0:
                self._cond.wait_for(lambda: len(self._frames) > known_length, timeout_s)
            return len(self._frames)


class BusMonitor:
    """Drains an adapter output stream into a ``BusLog`` on a background thread.

    The stream is anything with a ``readline()`` returning ``""`` (or
    ``b""``) at end of file: a subprocess pipe, a paramiko channel file, or
    an ``io.StringIO`` in tests.

    The monitor does not own the adapter. ``close()`` stops reading and drops
    the stream reference; terminating the adapter is the caller's job, and
    doing so first is what unblocks a pending ``readline()``.
    """

    def __init__(
        self,
        stream,
        codec: Optional[CecFrameCodec] = None,
        name: str = "cec",
        on_frame: Optional[Callable[[CecFrame], None]] = None,
        diagnostic_tail: int = CEC_DIAGNOSTIC_TAIL,
    ) -> None:
        """Start monitoring *stream* immediately.

        Args:
            stream: Line stream of adapter output.
            codec: Line codec; a default ``CecFrameCodec`` if omitted.
            name: Label used in the thread name and log messages.
            on_frame: Optional callback invoked on the monitor thread for
                every decoded frame, after it is appended to the log.
            diagnostic_tail: How many non-frame lines to keep.
        """
        self.codec = codec or CecFrameCodec()
        self.name = name
        self.log = BusLog()
        self.on_frame = on_frame

        self._stream = stream
        self._stop = threading.Event()
        self._state = threading.Condition()
        self._ready = False
        self._eof = False
        self._lines_read = 0
        self._malformed = 0
        self._diagnostics: Deque[str] = collections.deque(maxlen=diagnostic_tail)

        self._thread = threading.Thread(
            target=self._run, name=f"cec-monitor-{name}", daemon=True,
        )
        self._thread.start()
        logger.info("[MONITOR] [%s] Read loop started", name)

    # ---- Read loop ----

    def _run(self) -> None:
        stream = self._stream
        try:
            while not self._stop.is_set():
                raw = stream.readline()
                if not raw:
                    break
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8", errors="replace")
                self._handle_line(raw.rstrip("\r\n"))
        except (OSError, ValueError) as exc:
            # ValueError: I/O operation on a closed file during teardown.
            if not self._stop.is_set():
                logger.warning(
                    "[MONITOR] [%s] Adapter stream failed: %s: %s",
                    self.name, type(exc).__name__, exc,
                )
        finally:
            with self._state:
                self._eof = True
                self._state.notify_all()
            logger.info(
                "[MONITOR] [%s] Read loop ended — %d lines, %d frames, %d malformed",
                self.name, self._lines_read, len(self.log), self._malformed,
            )

    def _handle_line(self, line: str) -> None:
        self._lines_read += 1

        if self.codec.is_ready_line(line):
            with self._state:
                self._ready = True
                self._state.notify_all()
            logger.info("[MONITOR] [%s] Adapter console ready", self.name)

        try:
            frame = self.codec.decode(line)
        except CecDecodeError as exc:
            if exc.kind is DecodeErrorKind.MALFORMED:
                self._malformed += 1
                logger.warning("[MONITOR] [%s] Skipping malformed line: %s", self.name, exc)
            else:
                self._diagnostics.append(line)
                logger.debug("[MONITOR] [%s] %s", self.name, line)
            return

        frame = frame.with_timestamp(time.monotonic())
        index = self.log.append(frame)
        logger.debug("[MONITOR] [%s] #%d %s", self.name, index, frame)

        if self.on_frame is not None:
            try:
                self.on_frame(frame)
            except Exception as cb_exc:
                logger.warning(
                    "[MONITOR] [%s] on_frame callback raised %s: %s "
                    "(callback errors are swallowed to protect the read loop)",
                    self.name, type(cb_exc).__name__, cb_exc,
                )

    # ---- Queries ----

    def snapshot(self) -> Tuple[CecFrame, ...]:
        """Current log contents. Never blocks on new arrivals."""
        return self.log.snapshot()

    @property
    def malformed_count(self) -> int:
        return self._malformed

    @property
    def lines_read(self) -> int:
        return self._lines_read

    @property
    def diagnostics(self) -> Tuple[str, ...]:
        """Most recent non-frame lines, oldest first."""
        return tuple(self._diagnostics)

    @property
    def is_ready(self) -> bool:
        with self._state:
            return self._ready

    @property
    def at_eof(self) -> bool:
        with self._state:
            return self._eof

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def wait_until_ready(self, timeout_ms: int) -> bool:
        """Block until the adapter prints its ready marker.

        Returns ``False`` if the timeout expires or the stream ends first.
        """
        with self._state:
            self._state.wait_for(lambda: self._ready or self._eof, timeout_ms / 1000.0)
            return self._ready

    # ---- Teardown ----

    def close(self, timeout_ms: int = CEC_MONITOR_JOIN_TIMEOUT_MS) -> None:
        """Stop the read loop and release the stream reference. Idempotent."""
        self._stop.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout_ms / 1000.0)
            if self._thread.is_alive():
                logger.warning(
                    "[MONITOR] [%s] Read loop still blocked after %d ms; "
                    "leaving daemon thread behind",
                    self.name, timeout_ms,
                )
        if self._stream is not None:
            self._stream = None
            logger.debug("[MONITOR] [%s] Released adapter stream", self.name)
