"""CEC addressing, message model and the adapter line codec.

``CecFrameCodec`` isolates everything that depends on the adapter's textual
log format. The rest of the package only ever sees ``CecFrame`` objects, so
supporting another adapter means supplying another line grammar here.

The default grammar follows ``cec-client`` traffic logging::

    TRAFFIC: [          2318]	>> 4f:84:10:00:04

``>>`` marks a frame the adapter received from the bus. The first byte is
the header (source nibble, destination nibble), the second the opcode, and
the rest are operands.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import re
from typing import Dict, Iterable, Optional, Pattern, Tuple, Union

from typeguard import typechecked

from . import CEC_CONSOLE_READY, CEC_MAX_PARAMETERS
from .exceptions import CecDecodeError, DecodeErrorKind, StartFailure

logger = logging.getLogger("hdmi_cec_tools.messages")


class LogicalAddress(enum.IntEnum):
    """CEC logical addresses (device roles on the bus)."""

    TV = 0x0
    RECORDER_1 = 0x1
    RECORDER_2 = 0x2
    TUNER_1 = 0x3
    PLAYBACK_1 = 0x4
    AUDIO_SYSTEM = 0x5
    TUNER_2 = 0x6
    TUNER_3 = 0x7
    PLAYBACK_2 = 0x8
    RECORDER_3 = 0x9
    TUNER_4 = 0xA
    PLAYBACK_3 = 0xB
    RESERVED_1 = 0xC
    RESERVED_2 = 0xD
    SPECIFIC_USE = 0xE
    BROADCAST = 0xF

    @property
    def device_type(self) -> Optional[str]:
        """The ``cec-client -t`` device type letter for this role."""
        return _DEVICE_TYPES.get(self)

    def __str__(self) -> str:
        return format(self.value, "x")


_DEVICE_TYPES: Dict[LogicalAddress, str] = {
    LogicalAddress.TV: "x",
    LogicalAddress.RECORDER_1: "r",
    LogicalAddress.RECORDER_2: "r",
    LogicalAddress.RECORDER_3: "r",
    LogicalAddress.TUNER_1: "t",
    LogicalAddress.TUNER_2: "t",
    LogicalAddress.TUNER_3: "t",
    LogicalAddress.TUNER_4: "t",
    LogicalAddress.PLAYBACK_1: "p",
    LogicalAddress.PLAYBACK_2: "p",
    LogicalAddress.PLAYBACK_3: "p",
    LogicalAddress.AUDIO_SYSTEM: "a",
}


class CecOperand(enum.IntEnum):
    """CEC opcodes used by the compliance tests."""

    FEATURE_ABORT = 0x00
    IMAGE_VIEW_ON = 0x04
    TEXT_VIEW_ON = 0x0D
    SET_MENU_LANGUAGE = 0x32
    STANDBY = 0x36
    PLAY = 0x41
    DECK_CONTROL = 0x42
    USER_CONTROL_PRESSED = 0x44
    USER_CONTROL_RELEASED = 0x45
    GIVE_OSD_NAME = 0x46
    SET_OSD_NAME = 0x47
    SET_OSD_STRING = 0x64
    SYSTEM_AUDIO_MODE_REQUEST = 0x70
    GIVE_AUDIO_STATUS = 0x71
    SET_SYSTEM_AUDIO_MODE = 0x72
    REPORT_AUDIO_STATUS = 0x7A
    GIVE_SYSTEM_AUDIO_MODE_STATUS = 0x7D
    SYSTEM_AUDIO_MODE_STATUS = 0x7E
    ROUTING_CHANGE = 0x80
    ROUTING_INFORMATION = 0x81
    ACTIVE_SOURCE = 0x82
    GIVE_PHYSICAL_ADDRESS = 0x83
    REPORT_PHYSICAL_ADDRESS = 0x84
    REQUEST_ACTIVE_SOURCE = 0x85
    SET_STREAM_PATH = 0x86
    DEVICE_VENDOR_ID = 0x87
    VENDOR_COMMAND = 0x89
    GIVE_DEVICE_VENDOR_ID = 0x8C
    MENU_REQUEST = 0x8D
    MENU_STATUS = 0x8E
    GIVE_POWER_STATUS = 0x8F
    REPORT_POWER_STATUS = 0x90
    GET_MENU_LANGUAGE = 0x91
    INACTIVE_SOURCE = 0x9D
    CEC_VERSION = 0x9E
    GET_CEC_VERSION = 0x9F
    VENDOR_COMMAND_WITH_ID = 0xA0
    INITIATE_ARC = 0xC0
    REPORT_ARC_INITIATED = 0xC1
    REPORT_ARC_TERMINATED = 0xC2
    REQUEST_ARC_INITIATION = 0xC3
    REQUEST_ARC_TERMINATION = 0xC4
    TERMINATE_ARC = 0xC5
    ABORT = 0xFF

    def __str__(self) -> str:
        return format(self.value, "02x")


def _opcode_from_int(value: int) -> Union[CecOperand, int]:
    try:
        return CecOperand(value)
    except ValueError:
        return value


@dataclasses.dataclass(frozen=True)
class PhysicalAddress:
    """Position of a device in the HDMI tree, e.g. ``1.0.0.0``.

    Stored as the 16-bit value carried on the bus: one nibble per level.
    """

    value: int

    def __post_init__(self) -> None:
        if not 0 <= self.value <= 0xFFFF:
            raise ValueError(
                f"Physical address {self.value:#x} is out of range. "
                f"Must fit in 16 bits (0.0.0.0 to f.f.f.f)."
            )

    @classmethod
    def parse(cls, text: Union[str, int, PhysicalAddress]) -> PhysicalAddress:
        """Accepts ``"1.0.0.0"``, ``"1000"`` (hex digits) or an int."""
        if isinstance(text, PhysicalAddress):
            return text
        if isinstance(text, int):
            return cls(text)
        raw = text.strip()
        digits = raw.split(".") if "." in raw else list(raw)
        if len(digits) != 4 or not all(
            len(d) == 1 and d in "0123456789abcdefABCDEF" for d in digits
        ):
            raise ValueError(
                f"Invalid physical address {text!r}. Expected four hex "
                f"nibbles such as '1.0.0.0' or '1000'."
            )
        value = 0
        for d in digits:
            value = (value << 4) | int(d, 16)
        return cls(value)

    @classmethod
    def from_bytes(cls, data: bytes) -> PhysicalAddress:
        if len(data) < 2:
            raise ValueError(f"Need 2 bytes for a physical address, got {len(data)}")
        return cls((data[0] << 8) | data[1])

    @property
    def nibbles(self) -> Tuple[int, int, int, int]:
        v = self.value
        return ((v >> 12) & 0xF, (v >> 8) & 0xF, (v >> 4) & 0xF, v & 0xF)

    def to_bytes(self) -> bytes:
        return bytes(((self.value >> 8) & 0xFF, self.value & 0xFF))

    def to_cec_client_arg(self) -> str:
        """Four hex digits, as ``cec-client -a`` expects."""
        return format(self.value, "04x")

    def __str__(self) -> str:
        return ".".join(format(n, "x") for n in self.nibbles)


@dataclasses.dataclass(frozen=True)
class CecFrame:
    """One CEC message as seen on the bus.

    Two frames compare equal when opcode and parameters match; addresses and
    the arrival timestamp are queried separately. ``opcode`` is ``None`` for
    a header-only polling message.
    """

    source: LogicalAddress = dataclasses.field(compare=False)
    destination: LogicalAddress = dataclasses.field(compare=False)
    opcode: Optional[Union[CecOperand, int]]
    parameters: bytes = b""
    observed_at: Optional[float] = dataclasses.field(default=None, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "source", LogicalAddress(self.source))
        object.__setattr__(self, "destination", LogicalAddress(self.destination))
        if self.opcode is not None:
            if not 0 <= int(self.opcode) <= 0xFF:
                raise ValueError(f"Opcode {self.opcode!r} does not fit in one byte")
            object.__setattr__(self, "opcode", _opcode_from_int(int(self.opcode)))
        params = bytes(self.parameters)
        if self.opcode is None and params:
            raise ValueError("A polling message (no opcode) cannot carry parameters")
        if len(params) > CEC_MAX_PARAMETERS:
            raise ValueError(
                f"Frame carries {len(params)} parameter bytes; "
                f"CEC allows at most {CEC_MAX_PARAMETERS}"
            )
        object.__setattr__(self, "parameters", params)

    @property
    def operand(self) -> Optional[CecOperand]:
        """The opcode as a ``CecOperand``, or None if unknown / polling."""
        return self.opcode if isinstance(self.opcode, CecOperand) else None

    @property
    def is_poll(self) -> bool:
        return self.opcode is None

    @property
    def is_broadcast(self) -> bool:
        return self.destination == LogicalAddress.BROADCAST

    def with_timestamp(self, observed_at: float) -> CecFrame:
        return dataclasses.replace(self, observed_at=observed_at)

    def __str__(self) -> str:
        if self.opcode is None:
            name = "POLL"
        elif isinstance(self.opcode, CecOperand):
            name = self.opcode.name
        else:
            name = f"OPCODE_{self.opcode:02X}"
        text = f"{self.source:x}->{self.destination:x} {name}"
        if self.parameters:
            text += " [" + " ".join(f"{b:02x}" for b in self.parameters) + "]"
        return text


# ---------------------------------------------------------------------------
# Line codec
# ---------------------------------------------------------------------------

# Lines logged by cec-client for frames received from the bus. Anything may
# precede "TRAFFIC:" (host timestamps, ssh prefixes); the payload runs to the
# end of the line.
DEFAULT_FRAME_PATTERN = r"TRAFFIC:\s*\[\s*\d+\]\s*>>\s*(?P<payload>.*?)\s*$"

# Checked in order; the first marker found in the adapter output wins.
DEFAULT_START_FAILURE_MARKERS: Tuple[Tuple[str, StartFailure], ...] = (
    ("command not found", StartFailure.BINARY_MISSING),
    ("permission denied", StartFailure.PERMISSION_DENIED),
    ("device or resource busy", StartFailure.PORT_BUSY),
    ("could not open a connection", StartFailure.PORT_BUSY),
    ("autodetect failed", StartFailure.ADAPTER_NOT_FOUND),
    ("no adapters found", StartFailure.ADAPTER_NOT_FOUND),
)

_HEX_BYTE = re.compile(r"^[0-9A-Fa-f]{2}$")


@typechecked
class CecFrameCodec:
    """Translates between adapter console lines and ``CecFrame`` objects.

    Example::

        codec = CecFrameCodec()
        frame = codec.decode("TRAFFIC: [  2318]\\t>> 4f:84:10:00:04")
        assert frame.source == LogicalAddress.PLAYBACK_1
        codec.encode(frame)  # "4f:84:10:00:04"

    The grammar is configurable because the traffic format is defined by the
    adapter software, not by CEC.
    """

    def __init__(
        self,
        frame_pattern: Union[str, Pattern[str]] = DEFAULT_FRAME_PATTERN,
        ready_marker: str = CEC_CONSOLE_READY,
        start_failure_markers: Iterable[Tuple[str, StartFailure]] = DEFAULT_START_FAILURE_MARKERS,
    ) -> None:
        """Initialize the codec.

        Args:
            frame_pattern: Regex searched in each line. Must define a named
                group ``payload`` holding the colon separated hex bytes.
                Lines it does not match are not frames.
            ready_marker: Substring the adapter prints once its console
                accepts commands.
            start_failure_markers: ``(substring, StartFailure)`` pairs used to
                classify start-up failures from adapter output.
        """
        self.frame_pattern = (
            re.compile(frame_pattern) if isinstance(frame_pattern, str) else frame_pattern
        )
        if "payload" not in self.frame_pattern.groupindex:
            raise ValueError(
                f"Frame pattern {self.frame_pattern.pattern!r} must define a "
                f"named group 'payload'"
            )
        self.ready_marker = ready_marker.lower()
        self.start_failure_markers = tuple(
            (marker.lower(), reason) for marker, reason in start_failure_markers
        )

    def decode(self, line: str) -> CecFrame:
        """Decode one adapter line into a ``CecFrame``.

        Raises:
            CecDecodeError: ``kind=NOT_A_FRAME`` for lines the grammar does
                not recognize as traffic, ``kind=MALFORMED`` for traffic lines
                whose payload is partial or invalid.
        """
        match = self.frame_pattern.search(line)
        if match is None:
            raise CecDecodeError(
                f"Not a CEC traffic line: {line.strip()[:120]!r}",
                kind=DecodeErrorKind.NOT_A_FRAME,
                line=line,
            )

        payload = (match.group("payload") or "").strip()
        return self._frame_from_bytes(self._parse_payload(payload, line))

    def parse(self, text: str) -> CecFrame:
        """Parse bare frame bytes such as ``"40:84:10:00"``.

        Raises:
            CecDecodeError: ``kind=MALFORMED`` if *text* is not valid.
        """
        return self._frame_from_bytes(self._parse_payload(text.strip(), text))

    @staticmethod
    def _frame_from_bytes(data: bytes) -> CecFrame:
        header = data[0]
        return CecFrame(
            source=LogicalAddress(header >> 4),
            destination=LogicalAddress(header & 0x0F),
            opcode=data[1] if len(data) > 1 else None,
            parameters=data[2:],
        )

    def encode(self, frame: CecFrame) -> str:
        """Render a frame the way ``cec-client`` prints and accepts it."""
        data = bytearray([(int(frame.source) << 4) | int(frame.destination)])
        if frame.opcode is not None:
            data.append(int(frame.opcode))
            data.extend(frame.parameters)
        return ":".join(f"{b:02x}" for b in data)

    def is_ready_line(self, line: str) -> bool:
        return self.ready_marker in line.lower()

    def classify_start_failure(self, lines: Iterable[str]) -> Optional[StartFailure]:
        """Map adapter diagnostics to a ``StartFailure``, if any marker is present."""
        lowered = [line.lower() for line in lines]
        for marker, reason in self.start_failure_markers:
            if any(marker in line for line in lowered):
                logger.debug("[CEC-CODEC] Start failure marker %r -> %s", marker, reason.value)
                return reason
        return None

    @staticmethod
    def _parse_payload(payload: str, line: str) -> bytes:
        if not payload:
            raise CecDecodeError(
                f"Traffic line carries no frame bytes: {line.strip()[:120]!r}",
                kind=DecodeErrorKind.MALFORMED,
                line=line,
            )
        parts = payload.split(":")
        bad = [p for p in parts if not _HEX_BYTE.match(p)]
        if bad:
            raise CecDecodeError(
                f"Invalid frame bytes {bad!r} in traffic line: {line.strip()[:120]!r}",
                kind=DecodeErrorKind.MALFORMED,
                line=line,
            )
        if len(parts) > CEC_MAX_PARAMETERS + 2:
            raise CecDecodeError(
                f"Frame of {len(parts)} bytes exceeds the CEC maximum of "
                f"{CEC_MAX_PARAMETERS + 2}: {line.strip()[:120]!r}",
                kind=DecodeErrorKind.MALFORMED,
                line=line,
            )
        return bytes(int(p, 16) for p in parts)
