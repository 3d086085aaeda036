"""Custom exceptions for CEC adapter, monitoring and harness operations."""

from __future__ import annotations

import enum
from typing import TYPE_CHECKING, Sequence, Tuple

if TYPE_CHECKING:
    from .messages import CecFrame


class HdmiCecToolsError(Exception):
    """Common base exception for all hdmi_cec_tools errors."""
    pass


class StartFailure(enum.Enum):
    """Why the adapter could not be brought up."""

    BINARY_MISSING = "binary_missing"
    PERMISSION_DENIED = "permission_denied"
    PORT_BUSY = "port_busy"
    ADAPTER_NOT_FOUND = "adapter_not_found"
    NOT_READY = "not_ready"
    EXITED = "exited"
    CONNECTION_FAILED = "connection_failed"


class CecStartError(HdmiCecToolsError):
    """Exception for adapter start-up failures.

    Fatal to the session. Raised before any test stimulus is issued.

    Attributes:
        reason: A ``StartFailure`` classifying the failure.
        output_tail: The last diagnostic lines the adapter printed.
    """

    def __init__(
        self,
        message: str,
        *,
        reason: StartFailure,
        output_tail: Sequence[str] = (),
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.output_tail: Tuple[str, ...] = tuple(output_tail)


class DecodeErrorKind(enum.Enum):
    NOT_A_FRAME = "not_a_frame"
    MALFORMED = "malformed"


class CecDecodeError(HdmiCecToolsError):
    """Exception for adapter lines that do not decode to a CEC frame.

    The bus monitor absorbs these; they never end the read loop.
    """

    def __init__(self, message: str, *, kind: DecodeErrorKind, line: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.line = line


class CecSendError(HdmiCecToolsError):
    """Exception for failures writing a frame to the adapter.

    The session remains usable after this error.
    """
    pass


class CecTimeoutError(HdmiCecToolsError):
    """Exception raised when an expected frame is not seen before the deadline.

    Attributes:
        frames_observed: Frames appended to the bus log while waiting.
        frames_scanned: Total frames tested against the predicate.
        elapsed_seconds: Time spent waiting.
        recent_frames: The last frames seen, oldest first.
    """

    def __init__(
        self,
        message: str,
        *,
        frames_observed: int,
        frames_scanned: int,
        elapsed_seconds: float,
        recent_frames: Sequence[CecFrame] = (),
    ) -> None:
        super().__init__(message)
        self.frames_observed = frames_observed
        self.frames_scanned = frames_scanned
        self.elapsed_seconds = elapsed_seconds
        self.recent_frames = tuple(recent_frames)


class HarnessStateError(HdmiCecToolsError):
    """Exception for harness operations issued in the wrong session state."""
    pass


class NotRunningError(HarnessStateError):
    pass


class AlreadyRunningError(HarnessStateError):
    pass


class MatcherStateError(HdmiCecToolsError):
    """Exception for reusing a single-use expectation matcher."""
    pass


class DeviceNotReadyError(HdmiCecToolsError):
    """Exception for a device under test that never reported ready."""
    pass
