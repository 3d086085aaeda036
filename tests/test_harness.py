"""
CEC test harness suite.

End-to-end sessions against the fake cec-client (tests/fake_cec_client.py):
start, observe, transmit, expect, tear down.

Run with full visibility:
    pytest tests/test_harness.py -v -s
"""

from __future__ import annotations

import threading
import time
from typing import List

import pytest

# ---------------------------------------------------------------------------
# Dependency gate
# ---------------------------------------------------------------------------
_MISSING: List[str] = []

try:
    import serial.tools.list_ports  # noqa: F401
except ImportError:
    _MISSING.append("pyserial")

try:
    from typeguard import typechecked  # noqa: F401
except ImportError:
    _MISSING.append("typeguard")

if _MISSING:
    pytest.skip(
        f"Required libraries missing: {', '.join(_MISSING)}",
        allow_module_level=True,
    )

from hdmi_cec_tools.adapter import CecAdapterProcess
from hdmi_cec_tools.exceptions import (
    AlreadyRunningError,
    CecStartError,
    CecTimeoutError,
    DeviceNotReadyError,
    HarnessStateError,
    NotRunningError,
    StartFailure,
)
from hdmi_cec_tools.harness import CecTestHarness, SessionState
from hdmi_cec_tools.messages import CecFrame, CecOperand, LogicalAddress, PhysicalAddress

# Generous bound for the fake adapter's announce (sent ~200 ms after ready).
_EXPECT_MS = 10000


def _report(label: str, detail: str = "") -> None:
    """Uniform test-level print."""
    if detail:
        print(f"  [{label}] {detail}")
    else:
        print(f"  [{label}]")


class FakeDevice:
    """Device collaborator stand-in: boots after *boot_delay* seconds."""

    def __init__(self, boot_delay: float = 0.0, features=("android.hardware.hdmi.cec",)):
        self.boot_delay = boot_delay
        self.features = set(features)

    def wait_for_boot_complete(self, timeout_ms: int) -> bool:
        if self.boot_delay * 1000 > timeout_ms:
            time.sleep(timeout_ms / 1000.0)
            return False
        time.sleep(self.boot_delay)
        return True

    def has_feature(self, feature: str) -> bool:
        return feature in self.features


@pytest.fixture()
def make_harness(fake_cec_command):
    """Factory for harnesses on the fake adapter; kills them all afterwards."""
    created: List[CecTestHarness] = []

    def _make(mode: str = "normal", logical_address=LogicalAddress.PLAYBACK_1,
              physical_address="1.0.0.0", fake_args=(), **kwargs) -> CecTestHarness:
        adapter = CecAdapterProcess(
            executable=fake_cec_command,
            extra_args=["--fake-mode", mode, *fake_args],
            stop_timeout_ms=2000,
        )
        harness = CecTestHarness(logical_address, physical_address, adapter=adapter, **kwargs)
        created.append(harness)
        return harness

    yield _make

    for harness in created:
        harness.kill_cec_process(context="fixture cleanup")


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — Compliance scenarios
# ═══════════════════════════════════════════════════════════════════════════

class TestScenarios:

    def test_report_physical_address_after_boot(self, make_harness) -> None:
        """The device announces itself with <Report Physical Address> from its own address."""
        harness = make_harness()
        harness.init(context="boot announce")
        harness.wait_for_device(FakeDevice(boot_delay=0.05), timeout_ms=5000)

        start = time.monotonic()
        message = harness.check_expected_output(
            CecOperand.REPORT_PHYSICAL_ADDRESS, timeout_ms=_EXPECT_MS,
        )
        elapsed = time.monotonic() - start
        _report("RESULT", f"{message} after {elapsed:.3f}s")

        assert elapsed < _EXPECT_MS / 1000.0
        assert harness.get_source_from_message(message) == LogicalAddress.PLAYBACK_1
        assert harness.get_destination_from_message(message) == LogicalAddress.BROADCAST
        assert harness.get_physical_address_from_message(message) == PhysicalAddress.parse("1.0.0.0")
        # Third operand byte is the device type: 4 = playback.
        assert harness.get_params_from_message(message, 2, 3) == 0x04

    def test_query_power_status(self, make_harness) -> None:
        harness = make_harness()
        harness.init()
        since = harness.mark()
        harness.send_cec_message(
            LogicalAddress.TV, LogicalAddress.PLAYBACK_1, CecOperand.GIVE_POWER_STATUS,
        )
        message = harness.check_expected_output(
            CecOperand.REPORT_POWER_STATUS,
            timeout_ms=_EXPECT_MS,
            source=LogicalAddress.PLAYBACK_1,
            destination=LogicalAddress.TV,
            since=since,
        )
        _report("RESULT", str(message))
        assert harness.get_params_from_message(message) == 0x00

    def test_query_cec_version(self, make_harness) -> None:
        harness = make_harness()
        harness.init()
        harness.send_message(
            CecFrame(source=0, destination=4, opcode=CecOperand.GET_CEC_VERSION),
        )
        message = harness.check_expected_output(CecOperand.CEC_VERSION, timeout_ms=_EXPECT_MS)
        # 0x05 = HDMI 1.4b
        assert harness.get_params_from_message(message) == 0x05

    def test_checks_in_any_order(self, make_harness) -> None:
        announced = threading.Event()

        def on_frame(frame: CecFrame) -> None:
            if frame.opcode == CecOperand.REPORT_PHYSICAL_ADDRESS:
                announced.set()

        harness = make_harness(fake_args=("--announce-delay-ms", "0"), on_frame=on_frame)
        harness.init()
        assert announced.wait(_EXPECT_MS / 1000.0)
        harness.send_cec_message(0, 4, CecOperand.GIVE_POWER_STATUS)

        # Check the later frame first, then the one logged before it.
        power = harness.check_expected_output(CecOperand.REPORT_POWER_STATUS, timeout_ms=_EXPECT_MS)
        report = harness.check_expected_output(
            CecOperand.REPORT_PHYSICAL_ADDRESS, timeout_ms=_EXPECT_MS,
        )
        frames = harness.snapshot()
        _report("RESULT", ", ".join(str(f.opcode) for f in frames))
        assert frames.index(report) < frames.index(power)

    def test_mark_excludes_earlier_frames(self, make_harness) -> None:
        harness = make_harness()
        harness.init()
        harness.check_expected_output(CecOperand.REPORT_PHYSICAL_ADDRESS, timeout_ms=_EXPECT_MS)
        since = harness.mark()
        with pytest.raises(CecTimeoutError):
            harness.check_expected_output(
                CecOperand.REPORT_PHYSICAL_ADDRESS, timeout_ms=300, since=since,
            )

    def test_timeout_is_bounded_and_not_early(self, make_harness) -> None:
        harness = make_harness()
        harness.init()
        start = time.monotonic()
        with pytest.raises(CecTimeoutError) as exc_info:
            harness.check_expected_output(
                CecOperand.STANDBY, timeout_ms=500, context="standby never sent",
            )
        elapsed = time.monotonic() - start
        _report("CAUGHT", str(exc_info.value))
        assert 0.5 <= elapsed < 5.0
        assert "standby never sent" in str(exc_info.value)

    def test_on_frame_callback(self, make_harness) -> None:
        seen: List[CecFrame] = []
        arrived = threading.Event()

        def on_frame(frame: CecFrame) -> None:
            seen.append(frame)
            arrived.set()

        harness = make_harness(on_frame=on_frame)
        harness.init()
        assert arrived.wait(_EXPECT_MS / 1000.0)
        assert seen[0].opcode == CecOperand.REPORT_PHYSICAL_ADDRESS

    def test_malformed_line_is_skipped(self, make_harness) -> None:
        harness = make_harness()
        harness.init()
        harness.check_expected_output(CecOperand.REPORT_PHYSICAL_ADDRESS, timeout_ms=_EXPECT_MS)
        assert harness.monitor.malformed_count == 1
        assert all(f.opcode is not None for f in harness.snapshot())

    def test_tv_binding(self, make_harness) -> None:
        harness = make_harness(logical_address=LogicalAddress.TV, physical_address="0.0.0.0")
        harness.init()
        message = harness.check_expected_output(
            CecOperand.REPORT_PHYSICAL_ADDRESS, timeout_ms=_EXPECT_MS, source=LogicalAddress.TV,
        )
        assert harness.get_physical_address_from_message(message) == PhysicalAddress(0)


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — Lifecycle
# ═══════════════════════════════════════════════════════════════════════════

class TestLifecycle:

    def test_states(self, make_harness) -> None:
        harness = make_harness()
        assert harness.state is SessionState.UNINITIALIZED
        harness.init()
        assert harness.state is SessionState.RUNNING
        harness.kill_cec_process()
        assert harness.state is SessionState.TERMINATED

    def test_kill_twice(self, make_harness) -> None:
        harness = make_harness()
        harness.init()
        harness.kill_cec_process(context="first kill")
        harness.kill_cec_process(context="second kill")
        assert harness.state is SessionState.TERMINATED
        assert not harness.adapter.is_running()

    def test_kill_before_init(self, make_harness) -> None:
        harness = make_harness()
        harness.kill_cec_process()
        assert harness.state is SessionState.TERMINATED
        with pytest.raises(AlreadyRunningError):
            harness.init()

    def test_init_twice(self, make_harness) -> None:
        harness = make_harness()
        harness.init()
        with pytest.raises(AlreadyRunningError) as exc_info:
            harness.init(context="second init")
        _report("CAUGHT", str(exc_info.value))
        assert isinstance(exc_info.value, HarnessStateError)
        assert harness.state is SessionState.RUNNING

    def test_not_running_before_init(self, make_harness) -> None:
        harness = make_harness()
        with pytest.raises(NotRunningError):
            harness.check_expected_output(CecOperand.STANDBY, timeout_ms=0)
        with pytest.raises(NotRunningError):
            harness.send_cec_message(0, 4, CecOperand.STANDBY)
        with pytest.raises(NotRunningError):
            harness.snapshot()

    def test_not_running_after_kill(self, make_harness) -> None:
        harness = make_harness()
        harness.init()
        harness.kill_cec_process()
        with pytest.raises(NotRunningError) as exc_info:
            harness.check_expected_output(
                CecOperand.REPORT_PHYSICAL_ADDRESS, timeout_ms=0, context="after kill",
            )
        _report("CAUGHT", str(exc_info.value))
        assert "after kill" in str(exc_info.value)
        with pytest.raises(NotRunningError):
            harness.mark()

    def test_context_manager(self, make_harness) -> None:
        harness = make_harness()
        with harness:
            assert harness.state is SessionState.RUNNING
            harness.check_expected_output(
                CecOperand.REPORT_PHYSICAL_ADDRESS, timeout_ms=_EXPECT_MS,
            )
        assert harness.state is SessionState.TERMINATED


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — Start-up failures
# ═══════════════════════════════════════════════════════════════════════════

class TestStartFailures:

    def test_port_busy(self, make_harness) -> None:
        harness = make_harness(mode="port-busy")
        with pytest.raises(CecStartError) as exc_info:
            harness.init(context="port busy")
        err = exc_info.value
        _report("CAUGHT", str(err))
        assert err.reason is StartFailure.PORT_BUSY
        assert any("could not open a connection" in line for line in err.output_tail)
        assert harness.state is SessionState.TERMINATED

    def test_never_ready(self, make_harness) -> None:
        harness = make_harness(mode="silent", ready_timeout_ms=500)
        start = time.monotonic()
        with pytest.raises(CecStartError) as exc_info:
            harness.init(context="silent adapter")
        elapsed = time.monotonic() - start
        _report("CAUGHT", str(exc_info.value))
        assert exc_info.value.reason is StartFailure.NOT_READY
        assert elapsed >= 0.5
        assert harness.state is SessionState.TERMINATED
        assert not harness.adapter.is_running()

    def test_exit_after_output_closed(self, make_harness) -> None:
        """An adapter that closes its output and then exits is reported as exited."""
        harness = make_harness(mode="crash", ready_timeout_ms=_EXPECT_MS)
        start = time.monotonic()
        with pytest.raises(CecStartError) as exc_info:
            harness.init(context="crashing adapter")
        elapsed = time.monotonic() - start
        err = exc_info.value
        _report("CAUGHT", f"{err} after {elapsed:.3f}s")
        assert err.reason is StartFailure.EXITED
        assert "exited with code 3" in str(err)
        assert "did not become ready" not in str(err)
        assert elapsed < _EXPECT_MS / 1000.0
        assert harness.state is SessionState.TERMINATED

    def test_missing_binary(self) -> None:
        harness = CecTestHarness(
            adapter=CecAdapterProcess(executable="/nonexistent/path/cec-client"),
        )
        with pytest.raises(CecStartError) as exc_info:
            harness.init()
        assert exc_info.value.reason is StartFailure.BINARY_MISSING
        assert harness.state is SessionState.TERMINATED
        harness.kill_cec_process()


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — Device collaborator and helpers
# ═══════════════════════════════════════════════════════════════════════════

class TestDeviceAndHelpers:

    def test_device_not_ready(self, make_harness) -> None:
        harness = make_harness()
        with pytest.raises(DeviceNotReadyError):
            harness.wait_for_device(FakeDevice(boot_delay=10.0), timeout_ms=100)

    def test_feature_check(self) -> None:
        assert CecTestHarness.is_hdmi_cec_feature_supported(FakeDevice())
        assert not CecTestHarness.is_hdmi_cec_feature_supported(FakeDevice(features=()))

    def test_params_helpers(self) -> None:
        frame = CecFrame(
            source=4, destination=15, opcode=CecOperand.REPORT_PHYSICAL_ADDRESS,
            parameters=b"\x21\x00\x04",
        )
        assert CecTestHarness.get_params_from_message(frame) == 0x210004
        assert CecTestHarness.get_params_from_message(frame, 0, 2) == 0x2100
        assert CecTestHarness.get_params_from_message(frame, 2) == 0x04
        assert str(CecTestHarness.get_physical_address_from_message(frame)) == "2.1.0.0"
        with pytest.raises(ValueError):
            CecTestHarness.get_params_from_message(frame, 3)

    def test_unbindable_address(self, make_harness) -> None:
        harness = make_harness(logical_address=LogicalAddress.BROADCAST)
        with pytest.raises(ValueError):
            harness.init()
        assert harness.state is SessionState.TERMINATED
