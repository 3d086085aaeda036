"""Command-line interface for HDMI CEC tools."""

from __future__ import annotations

import argparse
import sys
import time
from typing import List, Optional

from . import (
    CEC_CLIENT_BINARY,
    CEC_COM_PORT,
    CEC_EXPECT_TIMEOUT_MS,
    CEC_HDMI_PORT,
    DEFAULT_ADAPTER_HOST,
    DEFAULT_PHYSICAL_ADDRESS,
)
from .adapter import CecAdapter, CecAdapterProcess, find_cec_adapters
from .exceptions import CecTimeoutError
from .harness import CecTestHarness
from .messages import CecFrame, CecOperand, LogicalAddress
from .remote import AdapterHostConnection, RemoteCecAdapterProcess
from .types import OperandLike


def parse_operand(text: str) -> OperandLike:
    """Accept an operand name (``report_physical_address``) or hex (``84``, ``0x84``)."""
    try:
        return CecOperand[text.upper()]
    except KeyError:
        pass
    try:
        value = int(text, 16)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Unknown CEC operand {text!r}") from None
    if not 0 <= value <= 0xFF:
        raise argparse.ArgumentTypeError(f"Operand {text!r} does not fit in one byte")
    return value


def parse_logical_address(text: str) -> LogicalAddress:
    try:
        return LogicalAddress[text.upper()]
    except KeyError:
        pass
    try:
        return LogicalAddress(int(text, 16))
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid logical address {text!r}") from None


def create_adapter(args) -> CecAdapter:
    """Create a local adapter, or a remote one when --remote is given."""
    options = dict(
        executable=args.cec_client,
        hdmi_port=args.hdmi_port,
        com_port=args.com_port,
    )
    if args.remote:
        connection = AdapterHostConnection.from_config(DEFAULT_ADAPTER_HOST)
        return RemoteCecAdapterProcess(connection, **options)
    return CecAdapterProcess(**options)


def create_harness(args, on_frame=None) -> CecTestHarness:
    return CecTestHarness(
        logical_address=args.logical_address,
        physical_address=args.physical_address,
        adapter=create_adapter(args),
        on_frame=on_frame,
    )


def _print_frame(frame: CecFrame) -> None:
    print(f"{frame.observed_at:12.3f}  {frame}", flush=True)


def command_list_adapters(args) -> int:
    """List attached USB-CEC adapters."""
    adapters = find_cec_adapters()
    if not adapters:
        print("No USB-CEC adapters found.")
    else:
        print("USB-CEC adapters:")
        for port in adapters:
            print(f"  {port}")
    return 0


def command_monitor(args) -> int:
    """Print bus traffic for a duration."""
    try:
        with create_harness(args, on_frame=_print_frame) as harness:
            time.sleep(args.duration / 1000.0)
            frames = len(harness.snapshot())
            malformed = harness.monitor.malformed_count
        print(f"{frames} frame(s), {malformed} malformed line(s)", file=sys.stderr)
        return 0
    except Exception as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1


def command_send(args) -> int:
    """Transmit one frame, e.g. ``40:04``."""
    try:
        with create_harness(args) as harness:
            frame = harness.codec.parse(args.frame)
            harness.send_message(frame, context=f"CLI send {args.frame}")
            print(f"Sent {frame}")
            return 0
    except Exception as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1


def command_expect(args) -> int:
    """Wait for a frame with the given operand."""
    try:
        with create_harness(args) as harness:
            frame = harness.check_expected_output(
                args.operand,
                timeout_ms=args.timeout,
                source=args.source,
                context=f"CLI expect {args.operand}",
            )
            print(frame)
            return 0
    except CecTimeoutError as e:
        print(
            f"Timed out after {e.elapsed_seconds:.1f}s "
            f"({e.frames_observed} frame(s) observed)",
            file=sys.stderr,
        )
        return 1
    except Exception as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for CLI."""
    parser = argparse.ArgumentParser(
        description="HDMI CEC Tools - observe and drive the CEC bus of a device under test"
    )

    parser.add_argument(
        "--logical-address", type=parse_logical_address, default=LogicalAddress.PLAYBACK_1,
        help="Logical address / role to bind the adapter to (default: 4, PLAYBACK_1)",
    )
    parser.add_argument(
        "--physical-address", default=DEFAULT_PHYSICAL_ADDRESS,
        help=f"Physical address to bind the adapter to (default: {DEFAULT_PHYSICAL_ADDRESS})",
    )
    parser.add_argument(
        "--hdmi-port", type=int, default=CEC_HDMI_PORT,
        help=f"HDMI port the adapter is connected to (default: {CEC_HDMI_PORT})",
    )
    parser.add_argument(
        "--com-port", default=CEC_COM_PORT,
        help="Serial port of the USB-CEC adapter (default: autodetect)",
    )
    parser.add_argument(
        "--cec-client", default=CEC_CLIENT_BINARY,
        help=f"cec-client executable (default: {CEC_CLIENT_BINARY})",
    )
    parser.add_argument(
        "--remote", action="store_true", default=False,
        help="Run cec-client on the adapter host given by CEC_ADAPTER_HOST",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list-adapters", help="List attached USB-CEC adapters")
    list_parser.set_defaults(func=command_list_adapters)

    monitor_parser = subparsers.add_parser("monitor", help="Print bus traffic")
    monitor_parser.add_argument(
        "--duration", type=int, default=10000,
        help="Monitor duration in milliseconds (default: 10000)",
    )
    monitor_parser.set_defaults(func=command_monitor)

    send_parser = subparsers.add_parser("send", help="Transmit a frame")
    send_parser.add_argument("frame", help="Frame bytes, e.g. 40:04 or 4f:82:10:00")
    send_parser.set_defaults(func=command_send)

    expect_parser = subparsers.add_parser("expect", help="Wait for a frame with an operand")
    expect_parser.add_argument(
        "operand", type=parse_operand,
        help="Operand name (report_physical_address) or hex opcode (84)",
    )
    expect_parser.add_argument(
        "--source", type=parse_logical_address, default=None,
        help="Only accept frames from this logical address",
    )
    expect_parser.add_argument(
        "--timeout", type=int, default=CEC_EXPECT_TIMEOUT_MS,
        help=f"Timeout in milliseconds (default: {CEC_EXPECT_TIMEOUT_MS})",
    )
    expect_parser.set_defaults(func=command_expect)

    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
