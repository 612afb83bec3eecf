"""Pytest configuration and fixtures."""

import threading
import time
from pathlib import Path
from typing import Optional, Sequence

import pytest

from dutctl.fleet.descriptor import ConnectionDescriptor
from dutctl.fleet.errors import ConnectivityError, RemoteCommandError
from dutctl.fleet.registry import Registry
from dutctl.fleet.resolver import ATTRIBUTE_QUERIES
from dutctl.fleet.transport import CommandResult, ForwardingSession, Transport

QUERY_ATTRIBUTES = {command: name for name, command in ATTRIBUTE_QUERIES.items()}


def dut_attributes(model: str, serial: str, **extra: str) -> dict[str, str]:
    """Attribute answers of a healthy DUT."""
    attributes = {
        "dut_id": f"{model}_{serial}",
        "hwid": f"{model.upper()} TEST 1234",
        "release": f"{model}-release/R120-15662.0.0",
        "model": model,
        "serial": serial,
        "mac": "00:11:22:33:44:55",
        "arch": "x86_64",
        "kernel": "5.15.0",
    }
    attributes.update(extra)
    return attributes


class FakeForwardingSession(ForwardingSession):
    """Tunnel that is up until told otherwise."""

    def __init__(
        self,
        descriptor: ConnectionDescriptor,
        local_port: int,
        remote_port: int,
        status: Optional[int] = None,
    ) -> None:
        super().__init__(descriptor, local_port, remote_port)
        self.status = status
        self.closed = False

    def poll(self) -> Optional[int]:
        return self.status

    def close(self) -> None:
        self.closed = True

    def wait_until_ready(self, timeout: float = 10.0) -> None:
        if self.status is not None:
            raise ConnectivityError(
                f"Port forwarding exited with status {self.status}",
                target=self.descriptor.address,
            )


class FakeTransport(Transport):
    """In-memory transport keyed by descriptor address.

    Hosts answer attribute queries from their attribute mapping; any other
    command succeeds with ``commands[command]`` or an empty output.
    """

    def __init__(self) -> None:
        self.hosts: dict[str, dict[str, str]] = {}
        self.unreachable: set[str] = set()
        self.hanging: dict[str, float] = {}
        self.commands: dict[str, CommandResult] = {}
        self.forward_failures: set[str] = set()
        self.piped_exit_codes: dict[str, int] = {}
        self.interactive_status = 0
        self.sessions: list[FakeForwardingSession] = []
        self.calls: list[tuple[str, str, str]] = []
        self._lock = threading.Lock()

    def add_host(self, address: str, attributes: dict[str, str]) -> None:
        self.hosts[address] = dict(attributes)

    def _record(self, kind: str, descriptor: ConnectionDescriptor, detail: str = "") -> None:
        with self._lock:
            self.calls.append((kind, descriptor.address, detail))

    def _connect(self, descriptor: ConnectionDescriptor) -> dict[str, str]:
        address = descriptor.address
        if address in self.hanging:
            time.sleep(self.hanging[address])
        if address in self.unreachable or address not in self.hosts:
            raise ConnectivityError("Connection refused", target=address)
        return self.hosts[address]

    def calls_of(self, kind: str) -> list[tuple[str, str, str]]:
        with self._lock:
            return [call for call in self.calls if call[0] == kind]

    def run(
        self,
        descriptor: ConnectionDescriptor,
        command: str,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        self._record("run", descriptor, command)
        attributes = self._connect(descriptor)
        if command in QUERY_ATTRIBUTES:
            value = attributes.get(QUERY_ATTRIBUTES[command])
            if value is None:
                return CommandResult(descriptor.address, command, 127, "", "command not found\n")
            return CommandResult(descriptor.address, command, 0, f"{value}\n")
        if command in self.commands:
            return self.commands[command]
        return CommandResult(descriptor.address, command, 0, "")

    def run_piped(self, descriptor: ConnectionDescriptor, command: str) -> None:
        self._record("piped", descriptor, command)
        self._connect(descriptor)
        exit_code = self.piped_exit_codes.get(command, 0)
        if exit_code:
            raise RemoteCommandError(
                f"'{command}' exited with status {exit_code}",
                target=descriptor.address,
                exit_code=exit_code,
            )

    def run_interactive(
        self,
        descriptor: ConnectionDescriptor,
        command: Optional[str] = None,
    ) -> int:
        self._record("interactive", descriptor, command or "")
        return self.interactive_status

    def start_port_forwarding(
        self,
        descriptor: ConnectionDescriptor,
        local_port: int,
        remote_port: int,
        command: Optional[str] = None,
    ) -> ForwardingSession:
        self._record("forward", descriptor, f"{local_port}:{remote_port}")
        status = 255 if descriptor.address in self.forward_failures else None
        session = FakeForwardingSession(descriptor, local_port, remote_port, status)
        self.sessions.append(session)
        return session

    def send_files(
        self,
        descriptor: ConnectionDescriptor,
        paths: Sequence[str],
        dest: Optional[str] = None,
    ) -> None:
        self._record("send", descriptor, f"{','.join(paths)} -> {dest}")
        self._connect(descriptor)

    def get_files(
        self,
        descriptor: ConnectionDescriptor,
        paths: Sequence[str],
        dest: Optional[str] = None,
    ) -> None:
        self._record("get", descriptor, f"{','.join(paths)} -> {dest}")
        self._connect(descriptor)


@pytest.fixture
def transport() -> FakeTransport:
    """Create a fake transport with no hosts."""
    return FakeTransport()


@pytest.fixture
def registry_path(tmp_path: Path) -> Path:
    """Path for a registry store inside the test directory."""
    return tmp_path / "dutctl" / "duts.yaml"


@pytest.fixture
def registry(registry_path: Path) -> Registry:
    """Create a fresh, initialized registry."""
    return Registry.open(registry_path)


@pytest.fixture
def temp_config_file(tmp_path: Path) -> Path:
    """Create a temporary config file."""
    config_file = tmp_path / "config.yaml"
    config_file.write_text("""
ssh:
  user: chronos
  connect_timeout: 5

discovery:
  probe_timeout: 12
  max_concurrent: 8

log_level: DEBUG
""")
    return config_file
