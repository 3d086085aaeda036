"""Pytest configuration: path setup, logging and the fake adapter."""

import logging
import os
import sys

import pytest

# ---------------------------------------------------------------------------
# Path setup: ensure the package is importable regardless of installation
# ---------------------------------------------------------------------------
_SRC_DIR = os.path.join(os.path.dirname(__file__), os.pardir, "src")
_SRC_DIR = os.path.normpath(_SRC_DIR)
if _SRC_DIR not in sys.path:
    sys.path.insert(0, _SRC_DIR)

# ---------------------------------------------------------------------------
# Logging: route all library log output to the console so pytest -s shows it
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s | %(levelname)-7s | %(name)s | %(threadName)s | %(message)s",
    datefmt="%H:%M:%S",
)
# Quiet down paramiko's own noisy transport-level debug logs
logging.getLogger("paramiko").setLevel(logging.WARNING)

# ---------------------------------------------------------------------------
# Fake cec-client
# ---------------------------------------------------------------------------
FAKE_CEC_CLIENT = os.path.join(os.path.dirname(os.path.abspath(__file__)), "fake_cec_client.py")


@pytest.fixture()
def fake_cec_command():
    """Command prefix that runs the fake cec-client with this interpreter."""
    return [sys.executable, FAKE_CEC_CLIENT]
