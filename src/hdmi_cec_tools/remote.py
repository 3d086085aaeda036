"""CEC adapter hosted on a remote machine, driven over SSH.

Lab setups often attach the USB-CEC adapter to a small host next to the
device under test (a Raspberry Pi, a lab server) rather than to the machine
running the tests. ``RemoteCecAdapterProcess`` runs ``cec-client`` there and
streams its console back through an SSH channel, so the monitor and harness
work unchanged.
"""

from __future__ import annotations

import logging
import socket
import time
from typing import Optional

import paramiko
from typeguard import typechecked

from . import CEC_QUIT_COMMAND, CONNECTION_TIMEOUT, SSH_PORT
from .adapter import CecAdapter
from .exceptions import AlreadyRunningError, CecSendError, CecStartError, StartFailure
from .messages import LogicalAddress, PhysicalAddress
from .types import AddressLike, HostConfig, PhysicalAddressLike

logger = logging.getLogger("hdmi_cec_tools.remote")

_EXIT_POLL_INTERVAL_S = 0.05


class AdapterHostConnection:
    """SSH connection to the machine the CEC adapter is attached to.

    Host keys are auto-accepted: adapter hosts are lab machines on internal
    networks that get re-imaged.
    """

    def __init__(
        self,
        hostname: str,
        username: str,
        password: str,
        port: int = SSH_PORT,
        timeout: int = CONNECTION_TIMEOUT,
    ) -> None:
        self.hostname = hostname
        self.username = username
        self.password = password
        self.port = port
        self.timeout = timeout
        self.ssh_client: Optional[paramiko.SSHClient] = None

    @classmethod
    def from_config(cls, config: HostConfig) -> AdapterHostConnection:
        """Build a connection from a ``{"hostname", "username", "password"}`` dict."""
        if not config.get("hostname"):
            raise ValueError(
                "No adapter host configured. Set CEC_ADAPTER_HOST, CEC_ADAPTER_USER "
                "and CEC_ADAPTER_PASS."
            )
        return cls(
            hostname=config["hostname"],
            username=config.get("username", ""),
            password=config.get("password", ""),
        )

    def connect(self, context: str) -> None:
        """Establish the SSH connection.

        Raises:
            CecStartError: With ``reason=CONNECTION_FAILED`` on any failure.
        """
        if self.is_connected():
            return

        target = f"{self.username}@{self.hostname}:{self.port}"
        logger.info("[HOST-CONNECT] [%s] Connecting to %s (timeout=%ds) ...", context, target, self.timeout)
        start_time = time.time()

        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=self.hostname,
                port=self.port,
                username=self.username,
                password=self.password,
                timeout=self.timeout,
                banner_timeout=self.timeout,
                auth_timeout=self.timeout,
            )
        except socket.timeout as e:
            msg = (
                f"[{context}] Connection to adapter host {self.hostname}:{self.port} "
                f"timed out after {time.time() - start_time:.1f}s"
            )
            logger.error("[HOST-CONNECT] TIMEOUT — %s", msg)
            raise CecStartError(msg, reason=StartFailure.CONNECTION_FAILED) from e
        except paramiko.AuthenticationException as e:
            msg = f"[{context}] Authentication failed for {target}: {e}"
            logger.error("[HOST-CONNECT] AUTH FAILED — %s", msg)
            raise CecStartError(msg, reason=StartFailure.CONNECTION_FAILED) from e
        except (paramiko.SSHException, OSError) as e:
            msg = f"[{context}] Error connecting to adapter host {target}: {e}"
            logger.error("[HOST-CONNECT] ERROR — %s", msg)
            raise CecStartError(msg, reason=StartFailure.CONNECTION_FAILED) from e

        self.ssh_client = client
        logger.info(
            "[HOST-CONNECT] [%s] Connected to %s in %.2fs",
            context, target, time.time() - start_time,
        )

    def is_connected(self) -> bool:
        if self.ssh_client is None:
            return False
        transport = self.ssh_client.get_transport()
        return transport is not None and transport.is_active()

    def open_channel(self, context: str) -> paramiko.Channel:
        """Open a session channel on the connected transport."""
        transport = self.ssh_client.get_transport() if self.ssh_client is not None else None
        if transport is None or not transport.is_active():
            raise CecStartError(
                f"[{context}] Not connected to adapter host {self.hostname}:{self.port}",
                reason=StartFailure.CONNECTION_FAILED,
            )
        return transport.open_session()

    def disconnect(self) -> None:
        """Close the SSH connection if open."""
        if self.ssh_client is not None:
            try:
                self.ssh_client.close()
            except Exception as exc:
                logger.warning("[HOST-DISCONNECT] Error closing %s: %s", self.hostname, exc)
            finally:
                self.ssh_client = None
            logger.info("[HOST-DISCONNECT] Disconnected from %s", self.hostname)

    def __enter__(self) -> AdapterHostConnection:
        self.connect(context=f"Connecting to {self.hostname}:{self.port}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        self.disconnect()


@typechecked
class RemoteCecAdapterProcess(CecAdapter):
    """Runs ``cec-client`` on an adapter host through an SSH channel.

    stderr is merged into stdout so start-up diagnostics reach the monitor.
    """

    def __init__(self, connection: AdapterHostConnection, *args, **kwargs) -> None:  # type: ignore[no-untyped-def]
        super().__init__(*args, **kwargs)
        self.connection = connection
        self._channel: Optional[paramiko.Channel] = None
        self._stdin = None
        self._stdout = None

    def start(
        self,
        logical_address: AddressLike,
        physical_address: PhysicalAddressLike,
        context: str,
    ) -> RemoteCecAdapterProcess:
        """Run the adapter on the remote host bound to the given addresses.

        Raises:
            CecStartError: If the host is unreachable or the command cannot
                be started.
            AlreadyRunningError: If this adapter was already started.
        """
        if self._channel is not None:
            raise AlreadyRunningError(
                f"[{context}] Remote adapter already started on {self.connection.hostname}"
            )

        self.logical_address = LogicalAddress(logical_address)
        self.physical_address = PhysicalAddress.parse(physical_address)
        command = self.command_line()

        self.connection.connect(context)
        logger.info(
            "[CEC-START] [%s] Running adapter on %s as %s at %s: %s",
            context, self.connection.hostname, self.logical_address.name,
            self.physical_address, command,
        )

        try:
            channel = self.connection.open_channel(context)
            channel.set_combine_stderr(True)
            channel.exec_command(command)
        except paramiko.SSHException as exc:
            msg = (
                f"[{context}] Failed to run {command!r} on {self.connection.hostname}: {exc}"
            )
            logger.error("[CEC-START] FAILED — %s", msg)
            raise CecStartError(msg, reason=StartFailure.CONNECTION_FAILED) from exc

        self._channel = channel
        self._stdin = channel.makefile_stdin("wb")
        self._stdout = channel.makefile("r")
        return self

    @property
    def stdout(self):
        if self._stdout is None:
            raise CecStartError(
                "Adapter output is unavailable: the adapter was never started.",
                reason=StartFailure.NOT_READY,
            )
        return self._stdout

    @property
    def returncode(self) -> Optional[int]:
        if self._channel is None or not self._channel.exit_status_ready():
            return None
        return self._channel.recv_exit_status()

    def is_running(self) -> bool:
        return (
            self._channel is not None
            and not self._channel.closed
            and not self._channel.exit_status_ready()
        )

    def write_line(self, line: str, context: str) -> None:
        if not self.is_running() or self._stdin is None:
            msg = (
                f"[{context}] Cannot write {line!r}: remote adapter on "
                f"{self.connection.hostname} is not running."
            )
            logger.error("[CEC-WRITE] %s", msg)
            raise CecSendError(msg)
        try:
            self._stdin.write((line + "\n").encode("utf-8"))
            self._stdin.flush()
        except (paramiko.SSHException, OSError) as exc:
            msg = (
                f"[{context}] Failed to write {line!r} to the remote adapter on "
                f"{self.connection.hostname}: {exc}"
            )
            logger.error("[CEC-WRITE] ERROR — %s", msg)
            raise CecSendError(msg) from exc
        logger.debug("[CEC-WRITE] [%s] %r", context, line)

    def stop(self, context: str = "") -> None:
        """Quit the remote adapter, close the channel and the SSH connection. Never raises."""
        channel = self._channel
        if channel is None:
            self.connection.disconnect()
            return
        self._channel = None

        try:
            if not channel.exit_status_ready() and self._stdin is not None:
                self._stdin.write((CEC_QUIT_COMMAND + "\n").encode("utf-8"))
                self._stdin.flush()
            deadline = time.monotonic() + self.stop_timeout_ms / 1000.0
            while not channel.exit_status_ready() and time.monotonic() < deadline:
                time.sleep(_EXIT_POLL_INTERVAL_S)
            if channel.exit_status_ready():
                logger.info(
                    "[CEC-STOP] [%s] Remote adapter exited (status %d)",
                    context, channel.recv_exit_status(),
                )
            else:
                logger.warning(
                    "[CEC-STOP] [%s] Remote adapter did not quit within %d ms; closing channel",
                    context, self.stop_timeout_ms,
                )
        except (paramiko.SSHException, OSError) as exc:
            logger.warning("[CEC-STOP] [%s] Error stopping remote adapter: %s", context, exc)
        finally:
            try:
                channel.close()
            except Exception as exc:
                logger.debug("[CEC-STOP] [%s] Error closing channel: %s", context, exc)
            self._stdin = None
            self._stdout = None
            self.connection.disconnect()
