"""CEC adapter process management.

The adapter is libCEC's ``cec-client`` console program driving a USB-CEC
adapter that is plugged into the device under test. ``cec-client`` prints
bus traffic on stdout and accepts console commands on stdin::

    tx 40:04        transmit <Image View On> from 4 to 0
    q               quit

``CecAdapterProcess`` runs it as a local subprocess. ``RemoteCecAdapterProcess``
(in ``remote``) runs the same command on an adapter host over SSH. Both
expose the same surface: ``start``, ``stdout``, ``send_raw``, ``stop``.
"""

from __future__ import annotations

import logging
import platform
import shlex
import subprocess
from typing import List, Optional, Sequence, Union

import serial.tools.list_ports
from typeguard import typechecked

from . import (
    CEC_CLIENT_BINARY,
    CEC_COM_PORT,
    CEC_HDMI_PORT,
    CEC_LOG_LEVEL,
    CEC_OSD_NAME,
    CEC_QUIT_COMMAND,
    CEC_STOP_TIMEOUT_MS,
    CEC_TX_COMMAND,
    PULSE_EIGHT_USB_VID,
)
from .exceptions import AlreadyRunningError, CecSendError, CecStartError, StartFailure
from .messages import CecFrame, CecFrameCodec, LogicalAddress, PhysicalAddress
from .types import AddressLike, PhysicalAddressLike

logger = logging.getLogger("hdmi_cec_tools.adapter")

_IS_WINDOWS = platform.system() == "Windows"


def find_cec_adapters() -> List[str]:
    """Return serial port names of attached Pulse-Eight USB-CEC adapters."""
    found = []
    for p in serial.tools.list_ports.comports():
        if p.vid == PULSE_EIGHT_USB_VID:
            found.append(p.device)
            logger.debug("[CEC-DETECT] Found adapter on %s (%s)", p.device, p.description)
    return found


def start_failure_hint(reason: StartFailure) -> str:
    """Return a troubleshooting hint for a start-up failure."""
    if reason is StartFailure.BINARY_MISSING:
        return (
            "Install libCEC (e.g. 'sudo apt install cec-utils') or set "
            "CEC_CLIENT_PATH to the cec-client executable."
        )
    if reason is StartFailure.PERMISSION_DENIED:
        if _IS_WINDOWS:
            return "Check that the adapter driver is installed and the COM port is accessible."
        return (
            "Ensure your user is in the 'dialout' group "
            "(sudo usermod -aG dialout $USER) and that cec-client is executable."
        )
    if reason is StartFailure.PORT_BUSY:
        return (
            "Another process holds the adapter. Close other cec-client "
            "instances, Kodi, or any program using libCEC."
        )
    adapters = find_cec_adapters()
    return (
        "Check that the USB-CEC adapter is plugged in and its HDMI cable is "
        "connected to the device under test. Detected adapters: "
        + (", ".join(adapters) if adapters else "none")
        + "."
    )


@typechecked
class CecAdapter:
    """Shared command building and console protocol for adapter processes."""

    def __init__(
        self,
        executable: Union[str, Sequence[str]] = CEC_CLIENT_BINARY,
        hdmi_port: int = CEC_HDMI_PORT,
        com_port: str = CEC_COM_PORT,
        log_level: int = CEC_LOG_LEVEL,
        osd_name: str = CEC_OSD_NAME,
        extra_args: Sequence[str] = (),
        codec: Optional[CecFrameCodec] = None,
        stop_timeout_ms: int = CEC_STOP_TIMEOUT_MS,
    ) -> None:
        """Initialize the adapter configuration.

        Args:
            executable: ``cec-client`` path, or a command prefix list (for
                example an interpreter plus a script).
            hdmi_port: HDMI input port the adapter is connected to (``-p``).
            com_port: Serial port of the USB adapter. Empty lets cec-client
                autodetect.
            log_level: cec-client log level mask (``-d``). Traffic logging
                (8) must be enabled for frames to be observed.
            osd_name: OSD name the adapter announces (``-o``). Empty keeps
                the cec-client default.
            extra_args: Additional arguments appended before the COM port.
            codec: Frame codec used to encode outgoing frames.
            stop_timeout_ms: How long ``stop()`` waits for a clean quit
                before terminating the process.
        """
        if not 0 < hdmi_port <= 15:
            raise ValueError(f"Invalid HDMI port {hdmi_port!r}. Must be between 1 and 15.")
        if not log_level & 8:
            logger.warning(
                "[CEC-INIT] Log level %d does not include traffic (8); no frames "
                "will be observed", log_level,
            )
        self.executable = [executable] if isinstance(executable, str) else list(executable)
        self.hdmi_port = hdmi_port
        self.com_port = com_port
        self.log_level = log_level
        self.osd_name = osd_name
        self.extra_args = list(extra_args)
        self.codec = codec or CecFrameCodec()
        self.stop_timeout_ms = stop_timeout_ms
        self.logical_address: Optional[LogicalAddress] = None
        self.physical_address: Optional[PhysicalAddress] = None

    def build_command(
        self,
        logical_address: LogicalAddress,
        physical_address: PhysicalAddress,
    ) -> List[str]:
        """Build the cec-client argument list for the given binding."""
        device_type = logical_address.device_type
        if device_type is None:
            raise ValueError(
                f"Logical address {logical_address.name} ({logical_address:x}) has "
                f"no device type; the adapter can only be bound to TV, recorder, "
                f"tuner, playback or audio system roles."
            )
        args = list(self.executable)
        args += ["-t", device_type]
        args += ["-d", str(self.log_level)]
        args += ["-p", str(self.hdmi_port)]
        args += ["-a", physical_address.to_cec_client_arg()]
        if self.osd_name:
            args += ["-o", self.osd_name]
        args += self.extra_args
        if self.com_port:
            args.append(self.com_port)
        return args

    def command_line(self) -> str:
        """Shell-quoted command line, for logs and remote execution."""
        if self.logical_address is None or self.physical_address is None:
            return shlex.join(self.executable)
        return shlex.join(self.build_command(self.logical_address, self.physical_address))

    def send_raw(self, frame: CecFrame, context: str) -> None:
        """Transmit *frame* on the bus through the adapter console.

        Raises:
            CecSendError: If the adapter is not running or the write fails.
        """
        encoded = self.codec.encode(frame)
        self.write_line(f"{CEC_TX_COMMAND} {encoded}", context)
        logger.info("[CEC-TX] [%s] Sent %s (%s)", context, frame, encoded)

    def start(
        self,
        logical_address: AddressLike,
        physical_address: PhysicalAddressLike,
        context: str,
    ) -> CecAdapter:
        raise NotImplementedError

    @property
    def stdout(self):
        raise NotImplementedError

    @property
    def returncode(self) -> Optional[int]:
        """Exit code once the adapter has exited, otherwise None."""
        return None

    def write_line(self, line: str, context: str) -> None:
        raise NotImplementedError

    def is_running(self) -> bool:
        raise NotImplementedError

    def stop(self, context: str = "") -> None:
        raise NotImplementedError

    # ---- Context manager ----

    def __enter__(self) -> CecAdapter:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        """Context manager exit — ensures the adapter is stopped."""
        self.stop("context manager exit")


@typechecked
class CecAdapterProcess(CecAdapter):
    """Runs ``cec-client`` as a local subprocess.

    Example::

        with CecAdapterProcess() as adapter:
            adapter.start(LogicalAddress.PLAYBACK_1, PhysicalAddress.parse("1.0.0.0"),
                          context="bind playback adapter")
            monitor = BusMonitor(adapter.stdout)
            ...
    """

    def __init__(self, *args, **kwargs) -> None:  # type: ignore[no-untyped-def]
        super().__init__(*args, **kwargs)
        self._process: Optional[subprocess.Popen] = None

    def start(
        self,
        logical_address: AddressLike,
        physical_address: PhysicalAddressLike,
        context: str,
    ) -> CecAdapterProcess:
        """Spawn the adapter bound to the given addresses.

        Returns:
            ``self``, whose ``stdout`` is the adapter output stream.

        Raises:
            CecStartError: If the executable is missing or cannot be run.
            AlreadyRunningError: If this adapter was already started.
        """
        if self._process is not None:
            raise AlreadyRunningError(
                f"[{context}] Adapter already started ({self.command_line()}). "
                f"Use a new CecAdapterProcess for a new session."
            )

        self.logical_address = LogicalAddress(logical_address)
        self.physical_address = PhysicalAddress.parse(physical_address)
        cmd = self.build_command(self.logical_address, self.physical_address)

        logger.info(
            "[CEC-START] [%s] Spawning adapter as %s at %s: %s",
            context, self.logical_address.name, self.physical_address, shlex.join(cmd),
        )

        try:
            self._process = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except FileNotFoundError as exc:
            reason = StartFailure.BINARY_MISSING
            msg = (
                f"[{context}] Adapter executable {cmd[0]!r} not found: {exc}. "
                f"{start_failure_hint(reason)}"
            )
            logger.error("[CEC-START] FAILED — %s", msg)
            raise CecStartError(msg, reason=reason) from exc
        except PermissionError as exc:
            reason = StartFailure.PERMISSION_DENIED
            msg = (
                f"[{context}] Permission denied running {cmd[0]!r}: {exc}. "
                f"{start_failure_hint(reason)}"
            )
            logger.error("[CEC-START] FAILED — %s", msg)
            raise CecStartError(msg, reason=reason) from exc
        except OSError as exc:
            msg = f"[{context}] OS error spawning {cmd[0]!r}: {exc}"
            logger.error("[CEC-START] OS ERROR — %s", msg)
            raise CecStartError(msg, reason=StartFailure.EXITED) from exc

        logger.info("[CEC-START] [%s] Adapter running (pid %d)", context, self._process.pid)
        return self

    @property
    def stdout(self):
        """Adapter output as a text line stream."""
        if self._process is None or self._process.stdout is None:
            raise CecStartError(
                "Adapter output is unavailable: the adapter was never started.",
                reason=StartFailure.NOT_READY,
            )
        return self._process.stdout

    @property
    def returncode(self) -> Optional[int]:
        return None if self._process is None else self._process.poll()

    def is_running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def write_line(self, line: str, context: str) -> None:
        """Write one console command line to the adapter.

        Raises:
            CecSendError: If the adapter is not running or the pipe is broken.
        """
        if not self.is_running() or self._process is None or self._process.stdin is None:
            msg = (
                f"[{context}] Cannot write {line!r}: adapter is not running "
                f"(exit code {self.returncode})."
            )
            logger.error("[CEC-WRITE] %s", msg)
            raise CecSendError(msg)
        try:
            self._process.stdin.write(line + "\n")
            self._process.stdin.flush()
        except (BrokenPipeError, OSError, ValueError) as exc:
            msg = (
                f"[{context}] Failed to write {line!r} to the adapter: {exc}. "
                f"The adapter process may have exited."
            )
            logger.error("[CEC-WRITE] ERROR — %s", msg)
            raise CecSendError(msg) from exc
        logger.debug("[CEC-WRITE] [%s] %r", context, line)

    def stop(self, context: str = "") -> None:
        """Quit the adapter, terminating it if it does not exit in time.

        Idempotent and never raises.
        """
        process = self._process
        if process is None:
            logger.debug("[CEC-STOP] stop() called on an adapter that never started")
            return
        self._process = None

        if process.poll() is None:
            try:
                if process.stdin is not None:
                    process.stdin.write(CEC_QUIT_COMMAND + "\n")
                    process.stdin.flush()
            except (OSError, ValueError) as exc:
                logger.debug("[CEC-STOP] [%s] Could not send quit command: %s", context, exc)
            try:
                process.wait(timeout=self.stop_timeout_ms / 1000.0)
            except subprocess.TimeoutExpired:
                logger.warning(
                    "[CEC-STOP] [%s] Adapter did not quit within %d ms; terminating pid %d",
                    context, self.stop_timeout_ms, process.pid,
                )
                try:
                    process.terminate()
                    try:
                        process.wait(timeout=1.0)
                    except subprocess.TimeoutExpired:
                        process.kill()
                        process.wait()
                except OSError as exc:
                    logger.warning(
                        "[CEC-STOP] [%s] Error terminating pid %d: %s", context, process.pid, exc,
                    )

        for pipe in (process.stdin, process.stdout):
            if pipe is not None:
                try:
                    pipe.close()
                except (OSError, ValueError) as exc:
                    logger.debug("[CEC-STOP] [%s] Error closing pipe: %s", context, exc)

        logger.info("[CEC-STOP] [%s] Adapter stopped (exit code %s)", context, process.returncode)

    def __del__(self) -> None:
        """Destructor — ensures the process is stopped."""
        try:
            self.stop("destructor")
        except Exception:
            pass
