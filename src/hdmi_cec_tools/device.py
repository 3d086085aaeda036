"""Device-under-test collaborator interface.

The harness never issues device commands itself. Tests hand it an object
that knows how to talk to the device (adb, a tradefed shim, a fake in unit
tests) and the harness only consumes two answers: "is the device ready"
and "does it declare a feature".
"""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

from .exceptions import DeviceNotReadyError

logger = logging.getLogger("hdmi_cec_tools.device")

HDMI_CEC_FEATURE = "android.hardware.hdmi.cec"


@runtime_checkable
class DeviceController(Protocol):
    """What the harness needs from the device-control collaborator."""

    def wait_for_boot_complete(self, timeout_ms: int) -> bool:
        """Block until the device has booted. Return False on timeout."""
        ...

    def has_feature(self, feature: str) -> bool:
        """Return True if the device declares *feature*."""
        ...


def wait_for_device(controller: DeviceController, timeout_ms: int, context: str) -> None:
    """Wait for the collaborator's "device is ready" signal.

    Raises:
        DeviceNotReadyError: If the device does not report ready in time.
    """
    logger.info("[DEVICE] [%s] Waiting up to %d ms for the device to be ready", context, timeout_ms)
    if not controller.wait_for_boot_complete(timeout_ms):
        msg = f"[{context}] Device did not report boot complete within {timeout_ms} ms"
        logger.error("[DEVICE] %s", msg)
        raise DeviceNotReadyError(msg)
    logger.info("[DEVICE] [%s] Device ready", context)


def is_hdmi_cec_feature_supported(controller: DeviceController) -> bool:
    supported = controller.has_feature(HDMI_CEC_FEATURE)
    if not supported:
        logger.info("[DEVICE] %s not declared; HDMI CEC tests should be skipped", HDMI_CEC_FEATURE)
    return supported
