"""Per-test HDMI CEC harness.

``CecTestHarness`` is what a compliance test talks to. One instance is one
adapter session::

    harness = CecTestHarness(LogicalAddress.PLAYBACK_1, "1.0.0.0")
    try:
        harness.init()
        device.reboot()
        harness.wait_for_device(device, timeout_ms=60000)
        message = harness.check_expected_output(
            CecOperand.REPORT_PHYSICAL_ADDRESS, timeout_ms=60000,
        )
        assert harness.get_source_from_message(message) == LogicalAddress.PLAYBACK_1
    finally:
        harness.kill_cec_process()

Session states are UNINITIALIZED -> RUNNING -> TERMINATED. TERMINATED is
final; a new session needs a new harness.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from typing import Callable, Optional, Tuple

from typeguard import typechecked

from . import CEC_EXPECT_TIMEOUT_MS, CEC_READY_TIMEOUT_MS, DEFAULT_PHYSICAL_ADDRESS
from .adapter import CecAdapter, CecAdapterProcess, start_failure_hint
from .device import DeviceController, is_hdmi_cec_feature_supported, wait_for_device
from .exceptions import (
    AlreadyRunningError,
    CecStartError,
    NotRunningError,
    StartFailure,
)
from .matcher import ExpectationMatcher, describe_operand, match_operand
from .messages import CecFrame, CecFrameCodec, LogicalAddress, PhysicalAddress
from .monitor import BusMonitor
from .types import AddressLike, FramePredicate, OperandLike, ParamsPredicate, PhysicalAddressLike

logger = logging.getLogger("hdmi_cec_tools.harness")

# Shell exit codes for "command not found" and "not executable".
_EXIT_NOT_FOUND = 127
_EXIT_NOT_EXECUTABLE = 126

# How long an adapter whose output closed gets to report its exit code.
_EXIT_REAP_TIMEOUT_S = 1.0
_EXIT_POLL_INTERVAL_S = 0.05


class SessionState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    RUNNING = "running"
    TERMINATED = "terminated"


@typechecked
class CecTestHarness:
    """Drives one CEC adapter session for a single test."""

    def __init__(
        self,
        logical_address: AddressLike = LogicalAddress.PLAYBACK_1,
        physical_address: PhysicalAddressLike = DEFAULT_PHYSICAL_ADDRESS,
        adapter: Optional[CecAdapter] = None,
        codec: Optional[CecFrameCodec] = None,
        ready_timeout_ms: int = CEC_READY_TIMEOUT_MS,
        on_frame: Optional[Callable[[CecFrame], None]] = None,
    ) -> None:
        """Configure a session. Nothing is started until ``init()``.

        Args:
            logical_address: Role the adapter is bound to.
            physical_address: Physical address the adapter is bound to.
            adapter: Adapter to drive. Defaults to a local
                ``CecAdapterProcess`` built from the package configuration.
            codec: Line codec. Defaults to the adapter's codec.
            ready_timeout_ms: How long ``init()`` waits for the adapter
                console to become ready.
            on_frame: Optional callback for every observed frame, invoked on
                the monitor thread.
        """
        self.logical_address = LogicalAddress(logical_address)
        self.physical_address = PhysicalAddress.parse(physical_address)
        if adapter is None:
            adapter = CecAdapterProcess(codec=codec)
        self.adapter = adapter
        self.codec = codec or adapter.codec
        self.ready_timeout_ms = ready_timeout_ms
        self.on_frame = on_frame

        self._state = SessionState.UNINITIALIZED
        self._state_lock = threading.Lock()
        self._monitor: Optional[BusMonitor] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def monitor(self) -> BusMonitor:
        return self._require_running("access the bus monitor", "")

    def _default_context(self, action: str) -> str:
        return f"{action} {self.logical_address.name}@{self.physical_address}"

    def _require_running(self, action: str, context: str) -> BusMonitor:
        if self._state is not SessionState.RUNNING or self._monitor is None:
            msg = (
                f"[{context or self._default_context(action)}] Cannot {action}: harness "
                f"is {self._state.value}. Call init() first; a terminated harness "
                f"cannot be reused."
            )
            logger.error("[HARNESS] %s", msg)
            raise NotRunningError(msg)
        return self._monitor

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def init(self, context: str = "") -> None:
        """Start the adapter and bus monitor, then wait for the adapter to be ready.

        Raises:
            AlreadyRunningError: If ``init()`` was already called on this harness.
            CecStartError: If the adapter cannot be brought up. The harness
                is torn down and TERMINATED before this propagates.
        """
        ctx = context or self._default_context("init")
        with self._state_lock:
            if self._state is not SessionState.UNINITIALIZED:
                msg = (
                    f"[{ctx}] init() called on a harness that is already "
                    f"{self._state.value}. Use a new CecTestHarness per session."
                )
                logger.error("[HARNESS] %s", msg)
                raise AlreadyRunningError(msg)

            logger.info("[HARNESS] [%s] Initializing CEC session", ctx)
            try:
                self.adapter.start(self.logical_address, self.physical_address, ctx)
                self._monitor = BusMonitor(
                    self.adapter.stdout,
                    codec=self.codec,
                    name=f"{self.logical_address:x}@{self.physical_address}",
                    on_frame=self.on_frame,
                )
                if not self._monitor.wait_until_ready(self.ready_timeout_ms):
                    raise self._start_failure(ctx)
            except BaseException:
                self._teardown(ctx)
                self._state = SessionState.TERMINATED
                raise

            self._state = SessionState.RUNNING
            logger.info("[HARNESS] [%s] CEC session running", ctx)

    def _start_failure(self, context: str) -> CecStartError:
        monitor = self._monitor
        tail = monitor.diagnostics if monitor is not None else ()
        reason = self.codec.classify_start_failure(tail)
        returncode = self._reap_exit_code(monitor)
        if reason is None:
            if returncode == _EXIT_NOT_FOUND:
                reason = StartFailure.BINARY_MISSING
            elif returncode == _EXIT_NOT_EXECUTABLE:
                reason = StartFailure.PERMISSION_DENIED
            elif returncode is not None:
                reason = StartFailure.EXITED
            else:
                reason = StartFailure.NOT_READY

        if returncode is None:
            what = f"did not become ready within {self.ready_timeout_ms} ms"
        else:
            what = f"exited with code {returncode} before becoming ready"
        output = " | ".join(tail[-5:]) or "(no output)"
        msg = (
            f"[{context}] CEC adapter {what} ({reason.value}). "
            f"Last output: {output}. {start_failure_hint(reason)}"
        )
        logger.error("[HARNESS] START FAILED — %s", msg)
        return CecStartError(msg, reason=reason, output_tail=tail)

    def _reap_exit_code(self, monitor: Optional[BusMonitor]) -> Optional[int]:
        returncode = self.adapter.returncode
        if returncode is not None or monitor is None or not monitor.at_eof:
            return returncode
        deadline = time.monotonic() + _EXIT_REAP_TIMEOUT_S
        while returncode is None and time.monotonic() < deadline:
            time.sleep(_EXIT_POLL_INTERVAL_S)
            returncode = self.adapter.returncode
        return returncode

    def kill_cec_process(self, context: str = "") -> None:
        """Tear the session down. Idempotent, never raises.

        Safe to call from a ``finally`` block after a failed or partial
        ``init()``. The bus log is discarded.
        """
        ctx = context or self._default_context("kill")
        with self._state_lock:
            if self._state is SessionState.TERMINATED and self._monitor is None:
                logger.debug("[HARNESS] [%s] kill_cec_process() on a terminated harness", ctx)
                return
            self._teardown(ctx)
            self._state = SessionState.TERMINATED
        logger.info("[HARNESS] [%s] CEC session terminated", ctx)

    def _teardown(self, context: str) -> None:
        # Stopping the adapter first ends the monitor's blocking read.
        try:
            self.adapter.stop(context)
        except Exception as exc:
            logger.warning(
                "[HARNESS] [%s] Error stopping adapter: %s: %s", context, type(exc).__name__, exc,
            )
        monitor, self._monitor = self._monitor, None
        if monitor is not None:
            try:
                monitor.close()
            except Exception as exc:
                logger.warning(
                    "[HARNESS] [%s] Error closing monitor: %s: %s",
                    context, type(exc).__name__, exc,
                )

    # ------------------------------------------------------------------
    # Stimulus
    # ------------------------------------------------------------------

    def send_message(self, frame: CecFrame, context: str = "") -> None:
        """Transmit *frame* on the bus.

        Raises:
            NotRunningError: If the session is not running.
            CecSendError: If the adapter write fails.
        """
        ctx = context or self._default_context(f"send {frame}")
        self._require_running("send a message", ctx)
        self.adapter.send_raw(frame, ctx)

    def send_cec_message(
        self,
        source: AddressLike,
        destination: AddressLike,
        operand: OperandLike,
        params: bytes = b"",
        context: str = "",
    ) -> None:
        self.send_message(
            CecFrame(source=source, destination=destination, opcode=operand, parameters=params),
            context,
        )

    def wait_for_device(self, controller: DeviceController, timeout_ms: int, context: str = "") -> None:
        """Block on the device collaborator's ready signal before bus checks resume."""
        wait_for_device(controller, timeout_ms, context or self._default_context("wait for device"))

    @staticmethod
    def is_hdmi_cec_feature_supported(controller: DeviceController) -> bool:
        return is_hdmi_cec_feature_supported(controller)

    # ------------------------------------------------------------------
    # Expectations
    # ------------------------------------------------------------------

    def mark(self) -> int:
        """Cursor at the end of the bus log, for checks that ignore older frames."""
        return len(self._require_running("mark the bus log", "").log)

    def check_expected_frame(
        self,
        predicate: FramePredicate,
        timeout_ms: int = CEC_EXPECT_TIMEOUT_MS,
        since: Optional[int] = None,
        description: str = "",
        context: str = "",
    ) -> CecFrame:
        """Wait for the first frame, from *since* onwards, satisfying *predicate*.

        Raises:
            NotRunningError: If the session is not running.
            CecTimeoutError: If no frame matched within *timeout_ms*.
        """
        ctx = context or self._default_context("check")
        monitor = self._require_running("check expected output", ctx)
        matcher = ExpectationMatcher(
            monitor.log, predicate, cursor=since or 0, description=description,
        )
        return matcher.wait_for(timeout_ms, ctx)

    def check_expected_output(
        self,
        operand: OperandLike,
        timeout_ms: int = CEC_EXPECT_TIMEOUT_MS,
        source: Optional[AddressLike] = None,
        destination: Optional[AddressLike] = None,
        params: Optional[ParamsPredicate] = None,
        since: Optional[int] = None,
        context: str = "",
    ) -> CecFrame:
        """Wait for a frame carrying *operand*.

        Frames are scanned from the start of the session unless *since* (a
        cursor from ``mark()``) is given, so checks for different opcodes may
        be issued in any order relative to arrival.
        """
        description = describe_operand(operand, source, destination)
        return self.check_expected_frame(
            match_operand(operand, source, destination, params),
            timeout_ms=timeout_ms,
            since=since,
            description=description,
            context=context or self._default_context(f"expect {description}"),
        )

    def snapshot(self) -> Tuple[CecFrame, ...]:
        return self._require_running("snapshot the bus log", "").snapshot()

    # ------------------------------------------------------------------
    # Frame field helpers
    # ------------------------------------------------------------------

    @staticmethod
    def get_source_from_message(message: CecFrame) -> LogicalAddress:
        return message.source

    @staticmethod
    def get_destination_from_message(message: CecFrame) -> LogicalAddress:
        return message.destination

    @staticmethod
    def get_params_from_message(message: CecFrame, start: int = 0, end: Optional[int] = None) -> int:
        """Operand bytes ``[start:end]`` as one big-endian unsigned integer."""
        chunk = message.parameters[start:end]
        if not chunk:
            raise ValueError(
                f"No operand bytes in range [{start}:{end}] of {message} "
                f"({len(message.parameters)} available)"
            )
        return int.from_bytes(chunk, "big")

    @staticmethod
    def get_physical_address_from_message(message: CecFrame) -> PhysicalAddress:
        """Physical address operand of e.g. <Report Physical Address> or <Active Source>."""
        return PhysicalAddress.from_bytes(message.parameters[:2])

    # ---- Context manager ----

    def __enter__(self) -> CecTestHarness:
        self.init()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        self.kill_cec_process()
