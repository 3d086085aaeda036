"""Timeout-bounded waits for expected CEC frames."""

from __future__ import annotations

import logging
import time
from typing import Optional

from typeguard import typechecked

from .exceptions import CecTimeoutError, MatcherStateError
from .messages import CecFrame, CecOperand
from .monitor import BusLog
from .types import AddressLike, FramePredicate, OperandLike, ParamsPredicate

logger = logging.getLogger("hdmi_cec_tools.matcher")

# Frames listed in a timeout message.
_RECENT_FRAMES = 10


def match_operand(
    operand: OperandLike,
    source: Optional[AddressLike] = None,
    destination: Optional[AddressLike] = None,
    params: Optional[ParamsPredicate] = None,
) -> FramePredicate:
    """Build a predicate: opcode equality plus optional address/operand checks."""
    opcode = int(operand)

    def predicate(frame: CecFrame) -> bool:
        if frame.opcode is None or int(frame.opcode) != opcode:
            return False
        if source is not None and int(frame.source) != int(source):
            return False
        if destination is not None and int(frame.destination) != int(destination):
            return False
        return params is None or bool(params(frame.parameters))

    return predicate


def describe_operand(
    operand: OperandLike,
    source: Optional[AddressLike] = None,
    destination: Optional[AddressLike] = None,
) -> str:
    name = operand.name if isinstance(operand, CecOperand) else f"OPCODE_{int(operand):02X}"
    src = "*" if source is None else format(int(source), "x")
    dst = "*" if destination is None else format(int(destination), "x")
    return f"<{name}> {src}->{dst}"


@typechecked
class ExpectationMatcher:
    """Waits for the first frame in a ``BusLog`` that satisfies a predicate.

    The scan starts at *cursor* and walks frames in arrival order: first the
    frames already logged, then each new arrival as the monitor appends it.
    A matcher is single use; construct a new one for every check.

    Example::

        matcher = ExpectationMatcher(
            monitor.log,
            match_operand(CecOperand.REPORT_PHYSICAL_ADDRESS),
            description="<Report Physical Address>",
        )
        frame = matcher.wait_for(timeout_ms=60000, context="after reboot")
    """

    def __init__(
        self,
        log: BusLog,
        predicate: FramePredicate,
        cursor: int = 0,
        description: str = "",
    ) -> None:
        if cursor < 0:
            raise ValueError(f"Cursor must be non-negative, got {cursor}")
        self.log = log
        self.predicate = predicate
        self.cursor = cursor
        self.description = description or getattr(predicate, "__name__", "predicate")
        self._used = False

    def wait_for(self, timeout_ms: int, context: str) -> CecFrame:
        """Return the first matching frame, blocking up to *timeout_ms*.

        Args:
            timeout_ms: Upper bound on the wait, in milliseconds. Zero checks
                the frames already logged without waiting.
            context: Description of the purpose, embedded into error messages.

        Returns:
            The matching ``CecFrame``.

        Raises:
            CecTimeoutError: If no frame matched before the deadline. Never
                raised before *timeout_ms* has elapsed.
            MatcherStateError: If this matcher was already used.

        Exceptions raised by the predicate propagate unchanged.
        """
        if self._used:
            raise MatcherStateError(
                f"[{context}] ExpectationMatcher for {self.description} was already "
                f"used. Create a new matcher for every check."
            )
        self._used = True

        if timeout_ms < 0:
            raise ValueError(
                f"[{context}] Invalid timeout {timeout_ms} ms. Timeout must be >= 0."
            )

        start = time.monotonic()
        deadline = start + timeout_ms / 1000.0
        position = self.cursor
        scanned = 0
        length_at_start = len(self.log)

        logger.info(
            "[EXPECT] [%s] Waiting for %s (up to %d ms, from frame #%d, %d logged)",
            context, self.description, timeout_ms, position, length_at_start,
        )

        while True:
            for frame in self.log.snapshot(position):
                position += 1
                scanned += 1
                try:
                    matched = self.predicate(frame)
                except Exception as exc:
                    logger.error(
                        "[EXPECT] [%s] Predicate for %s raised %s: %s on %s",
                        context, self.description, type(exc).__name__, exc, frame,
                    )
                    raise
                if matched:
                    logger.info(
                        "[EXPECT] [%s] Matched %s as frame #%d after %.3fs: %s",
                        context, self.description, position - 1,
                        time.monotonic() - start, frame,
                    )
                    return frame

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            self.log.wait_for_more(position, remaining)

        elapsed = time.monotonic() - start
        observed = max(0, len(self.log) - length_at_start)
        recent = self.log.snapshot(max(0, len(self.log) - _RECENT_FRAMES))
        tail = "; ".join(str(f) for f in recent) or "(none)"
        msg = (
            f"[{context}] Timeout ({timeout_ms} ms) expired before {self.description} "
            f"was observed. {observed} frame(s) arrived during the wait, "
            f"{scanned} scanned in {elapsed:.3f}s. Recent frames: {tail}"
        )
        logger.warning("[EXPECT] TIMEOUT — %s", msg)
        raise CecTimeoutError(
            msg,
            frames_observed=observed,
            frames_scanned=scanned,
            elapsed_seconds=elapsed,
            recent_frames=recent,
        )
