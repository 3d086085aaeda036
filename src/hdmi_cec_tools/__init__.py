"""
HDMI CEC Tools - bus verification harness for HDMI-CEC compliance tests

This package drives a CEC adapter (libCEC's ``cec-client`` attached to a
Pulse-Eight USB-CEC adapter) that is wired to the device under test. It
provides:

- **Frame codec** for the adapter's line-oriented traffic log
- **Adapter process** management, locally or on an SSH-reachable host
- **Bus monitor** that drains adapter output on a background thread
- **Expectation matching** that blocks until a given CEC message appears
- **Test harness** tying the above together per test case

All waits are timeout-bounded and every failure carries enough context to
diagnose a compliance test failure from the log alone.
"""

import logging
import os

logging.getLogger("hdmi_cec_tools").addHandler(logging.NullHandler())

__version__ = "0.1.0"

# cec-client executable. Override with the full path when it is not on PATH.
CEC_CLIENT_BINARY = os.environ.get("CEC_CLIENT_PATH", "cec-client")

# HDMI input port of the adapter (cec-client -p) and optional COM port of the
# USB adapter. An empty COM port lets cec-client autodetect.
CEC_HDMI_PORT = int(os.environ.get("CEC_HDMI_PORT", "1"))
CEC_COM_PORT = os.environ.get("CEC_COM_PORT", "")

# cec-client log level mask (-d). 15 = error|warning|notice|traffic.
CEC_LOG_LEVEL = int(os.environ.get("CEC_LOG_LEVEL", "15"))

CEC_OSD_NAME = os.environ.get("CEC_OSD_NAME", "")

# Default physical address the adapter is bound to.
DEFAULT_PHYSICAL_ADDRESS = "1.0.0.0"

# Timeout settings (milliseconds)
CEC_READY_TIMEOUT_MS = int(os.environ.get("CEC_READY_TIMEOUT_MS", "5000"))
CEC_EXPECT_TIMEOUT_MS = int(os.environ.get("CEC_EXPECT_TIMEOUT_MS", "20000"))
CEC_STOP_TIMEOUT_MS = int(os.environ.get("CEC_STOP_TIMEOUT_MS", "3000"))
CEC_MONITOR_JOIN_TIMEOUT_MS = 2000

# Console protocol of cec-client
CEC_CONSOLE_READY = "waiting for input"
CEC_TX_COMMAND = "tx"
CEC_QUIT_COMMAND = "q"

# Maximum number of operand bytes in one CEC frame (16 bytes minus header
# and opcode).
CEC_MAX_PARAMETERS = 14

# Number of non-frame adapter lines kept for start-up diagnostics.
CEC_DIAGNOSTIC_TAIL = 50

# Pulse-Eight USB vendor id, used to locate physical adapters.
PULSE_EIGHT_USB_VID = 0x2548

# Remote adapter host (a lab machine with the USB-CEC adapter attached).
# Credentials are read from environment variables.
#   CEC_ADAPTER_HOST / CEC_ADAPTER_USER / CEC_ADAPTER_PASS
DEFAULT_ADAPTER_HOST = {
    "hostname": os.environ.get("CEC_ADAPTER_HOST", ""),
    "username": os.environ.get("CEC_ADAPTER_USER", ""),
    "password": os.environ.get("CEC_ADAPTER_PASS", ""),
}
SSH_PORT = 22
CONNECTION_TIMEOUT = 30
