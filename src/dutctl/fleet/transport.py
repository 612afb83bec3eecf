"""SSH transport for DUT operations.

The fleet layer only talks to a ``Transport``: run a command and capture
its output, stream a command, hand the terminal to an interactive
session, forward a port, and copy files. ``SSHTransport`` implements it
with paramiko for captured commands and file transfer, and with the
OpenSSH client for interactive sessions and long-lived tunnels.
"""

import posixpath
import socket
import subprocess
import sys
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional, Sequence

import paramiko

from dutctl.fleet.descriptor import ConnectionDescriptor
from dutctl.fleet.errors import (
    AuthenticationError,
    ConfigurationError,
    ConnectivityError,
    RemoteCommandError,
    TransferError,
)
from dutctl.telemetry.logger import get_logger

logger = get_logger(__name__)

DEFAULT_SSH_OPTIONS = [
    "StrictHostKeyChecking=no",
    "UserKnownHostsFile=/dev/null",
    "LogLevel=ERROR",
]


def _describe(error: Exception) -> str:
    return str(error) or type(error).__name__


@dataclass
class CommandResult:
    """Result of a remote command execution.

    Attributes:
        target: Address of the DUT where the command ran
        command: Command that was executed
        exit_code: Command exit code (-1 when no status was received)
        output: Standard output
        error: Standard error, kept apart so it never leaks into values
        duration_ms: Execution duration in milliseconds
        timestamp: When the command was executed
    """

    target: str
    command: str
    exit_code: int
    output: str
    error: str = ""
    duration_ms: float = 0.0
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def check(self) -> "CommandResult":
        """Raise RemoteCommandError unless the command succeeded."""
        if not self.success:
            raise RemoteCommandError(
                f"'{self.command}' exited with status {self.exit_code}",
                target=self.target,
                exit_code=self.exit_code,
            )
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "target": self.target,
            "command": self.command,
            "exit_code": self.exit_code,
            "output": self.output,
            "error": self.error,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "timestamp": self.timestamp.isoformat(),
        }


class ForwardingSession(ABC):
    """Handle on a local-to-remote port forward."""

    def __init__(self, descriptor: ConnectionDescriptor, local_port: int, remote_port: int) -> None:
        self.descriptor = descriptor
        self.local_port = local_port
        self.remote_port = remote_port

    @abstractmethod
    def poll(self) -> Optional[int]:
        """Return the exit status if the tunnel has already exited, else None."""

    @abstractmethod
    def close(self) -> None:
        """Tear the tunnel down. Safe to call more than once."""

    @property
    def exited(self) -> bool:
        return self.poll() is not None

    def wait_until_ready(self, timeout: float = 10.0) -> None:
        """Block until the local end accepts connections.

        Raises:
            ConnectivityError: If the tunnel exits or is not ready in time
        """
        deadline = time.monotonic() + timeout
        while True:
            status = self.poll()
            if status is not None:
                raise ConnectivityError(
                    f"Port forwarding exited with status {status}",
                    target=self.descriptor.address,
                )
            try:
                with socket.create_connection(("127.0.0.1", self.local_port), timeout=1.0):
                    return
            except OSError:
                if time.monotonic() >= deadline:
                    raise ConnectivityError(
                        f"Port forwarding on local port {self.local_port} not ready "
                        f"after {timeout}s",
                        target=self.descriptor.address,
                    ) from None
                time.sleep(0.2)

    def __enter__(self) -> "ForwardingSession":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class Transport(ABC):
    """Remote execution and transfer capability keyed by descriptor."""

    @abstractmethod
    def run(
        self,
        descriptor: ConnectionDescriptor,
        command: str,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run a command and capture its stdout and stderr separately.

        A non-zero exit is reported on the result, not raised.

        Raises:
            ConnectivityError: If the host cannot be reached
            AuthenticationError: If the credentials are rejected
        """

    def run_many(
        self,
        descriptor: ConnectionDescriptor,
        commands: Sequence[str],
        timeout: Optional[float] = None,
    ) -> list[CommandResult]:
        """Run several commands against one host, in order."""
        return [self.run(descriptor, command, timeout) for command in commands]

    @abstractmethod
    def run_piped(self, descriptor: ConnectionDescriptor, command: str) -> None:
        """Run a command, streaming its output to local stdout.

        Raises:
            RemoteCommandError: If the command exits non-zero
        """

    @abstractmethod
    def run_interactive(
        self,
        descriptor: ConnectionDescriptor,
        command: Optional[str] = None,
    ) -> int:
        """Run a command (or a login shell) on the local terminal.

        Returns:
            Exit status of the remote session
        """

    @abstractmethod
    def start_port_forwarding(
        self,
        descriptor: ConnectionDescriptor,
        local_port: int,
        remote_port: int,
        command: Optional[str] = None,
    ) -> ForwardingSession:
        """Forward local_port to remote_port on the DUT.

        Args:
            descriptor: DUT to tunnel to
            local_port: Port to listen on locally
            remote_port: Port on the DUT loopback interface
            command: Remote command kept running for the tunnel's lifetime
        """

    @abstractmethod
    def send_files(
        self,
        descriptor: ConnectionDescriptor,
        paths: Sequence[str],
        dest: Optional[str] = None,
    ) -> None:
        """Copy local files into a remote directory (default ``~/``)."""

    @abstractmethod
    def get_files(
        self,
        descriptor: ConnectionDescriptor,
        paths: Sequence[str],
        dest: Optional[str] = None,
    ) -> None:
        """Copy remote files into a local directory (default ``.``)."""


class SubprocessForwardingSession(ForwardingSession):
    """Port forward held open by an ``ssh -L`` child process."""

    def __init__(
        self,
        descriptor: ConnectionDescriptor,
        local_port: int,
        remote_port: int,
        process: subprocess.Popen,
    ) -> None:
        super().__init__(descriptor, local_port, remote_port)
        self._process = process

    def poll(self) -> Optional[int]:
        return self._process.poll()

    def close(self) -> None:
        if self._process.poll() is not None:
            return
        self._process.terminate()
        try:
            self._process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            self._process.kill()
            self._process.wait()
        logger.debug(
            "Port forwarding closed",
            target=self.descriptor.address,
            local_port=self.local_port,
        )


class SSHTransport(Transport):
    """Transport over SSH.

    Example:
        transport = SSHTransport(user="root", connect_timeout=10)
        result = transport.run(ConnectionDescriptor("192.168.0.42"), "uname -r")
        print(result.output)
    """

    def __init__(
        self,
        user: str = "root",
        connect_timeout: float = 10.0,
        command_timeout: Optional[float] = None,
        ssh_binary: str = "ssh",
        ssh_options: Optional[list[str]] = None,
    ) -> None:
        """Initialize SSH transport.

        Args:
            user: Remote user name
            connect_timeout: TCP/SSH handshake timeout in seconds
            command_timeout: Default timeout for captured commands
            ssh_binary: OpenSSH client used for shells and tunnels
            ssh_options: ``-o`` options passed to the OpenSSH client
        """
        self.user = user
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.ssh_binary = ssh_binary
        self.ssh_options = ssh_options if ssh_options is not None else list(DEFAULT_SSH_OPTIONS)

    @contextmanager
    def _session(self, descriptor: ConnectionDescriptor) -> Iterator[paramiko.SSHClient]:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        key_path = Path(descriptor.identity_file).expanduser()

        try:
            client.connect(
                hostname=descriptor.host,
                port=descriptor.port,
                username=self.user,
                key_filename=str(key_path) if key_path.exists() else None,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                allow_agent=True,
                look_for_keys=True,
            )
        except paramiko.AuthenticationException as e:
            client.close()
            raise AuthenticationError(str(e), target=descriptor.address) from e
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise ConnectivityError(_describe(e), target=descriptor.address) from e

        try:
            yield client
        finally:
            client.close()

    def _exec(
        self,
        client: paramiko.SSHClient,
        descriptor: ConnectionDescriptor,
        command: str,
        timeout: Optional[float],
    ) -> CommandResult:
        start_time = time.perf_counter()
        exec_timeout = timeout or self.command_timeout

        try:
            channel = client.get_transport().open_session(timeout=self.connect_timeout)
            channel.settimeout(exec_timeout)
            channel.exec_command(command)
            output = channel.makefile("rb").read().decode("utf-8", errors="replace")
            error = channel.makefile_stderr("rb").read().decode("utf-8", errors="replace")
            exit_code = channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            raise ConnectivityError(
                f"'{command}' failed: {_describe(e)}", target=descriptor.address
            ) from e

        duration_ms = (time.perf_counter() - start_time) * 1000
        logger.debug(
            "SSH command executed",
            target=descriptor.address,
            command=command[:50],
            exit_code=exit_code,
            duration_ms=duration_ms,
        )
        return CommandResult(
            target=descriptor.address,
            command=command,
            exit_code=exit_code,
            output=output,
            error=error,
            duration_ms=duration_ms,
        )

    def run(
        self,
        descriptor: ConnectionDescriptor,
        command: str,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        with self._session(descriptor) as client:
            return self._exec(client, descriptor, command, timeout)

    def run_many(
        self,
        descriptor: ConnectionDescriptor,
        commands: Sequence[str],
        timeout: Optional[float] = None,
    ) -> list[CommandResult]:
        # One connection for the whole batch
        with self._session(descriptor) as client:
            return [self._exec(client, descriptor, command, timeout) for command in commands]

    def run_piped(self, descriptor: ConnectionDescriptor, command: str) -> None:
        with self._session(descriptor) as client:
            try:
                channel = client.get_transport().open_session(timeout=self.connect_timeout)
                channel.set_combine_stderr(True)
                channel.exec_command(command)
                while True:
                    data = channel.recv(4096)
                    if not data:
                        break
                    sys.stdout.write(data.decode("utf-8", errors="replace"))
                    sys.stdout.flush()
                exit_code = channel.recv_exit_status()
            except (paramiko.SSHException, OSError) as e:
                raise ConnectivityError(
                    f"'{command}' failed: {_describe(e)}", target=descriptor.address
                ) from e

        CommandResult(
            target=descriptor.address, command=command, exit_code=exit_code, output=""
        ).check()

    def ssh_args(self, descriptor: ConnectionDescriptor) -> list[str]:
        """Build OpenSSH client arguments for a descriptor."""
        args = [self.ssh_binary, "-p", str(descriptor.port)]
        key_path = Path(descriptor.identity_file).expanduser()
        if key_path.exists():
            args += ["-i", str(key_path)]
        for option in self.ssh_options:
            args += ["-o", option]
        args += ["-o", f"ConnectTimeout={int(self.connect_timeout)}"]
        args.append(f"{self.user}@{descriptor.host}")
        return args

    def run_interactive(
        self,
        descriptor: ConnectionDescriptor,
        command: Optional[str] = None,
    ) -> int:
        args = self.ssh_args(descriptor)
        args.insert(1, "-t")
        if command:
            args.append(command)
        logger.debug("Opening interactive session", target=descriptor.address, command=command)
        try:
            return subprocess.call(args)
        except FileNotFoundError as e:
            raise ConfigurationError(
                f"SSH client not found: {self.ssh_binary}", field="ssh_binary"
            ) from e

    def start_port_forwarding(
        self,
        descriptor: ConnectionDescriptor,
        local_port: int,
        remote_port: int,
        command: Optional[str] = None,
    ) -> ForwardingSession:
        args = self.ssh_args(descriptor)
        args[1:1] = [
            "-L",
            f"{local_port}:127.0.0.1:{remote_port}",
            "-o",
            "ExitOnForwardFailure=yes",
            "-o",
            "ServerAliveInterval=5",
        ]
        if command:
            args.append(command)
        else:
            args.insert(1, "-N")

        try:
            process = subprocess.Popen(
                args,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except FileNotFoundError as e:
            raise ConfigurationError(
                f"SSH client not found: {self.ssh_binary}", field="ssh_binary"
            ) from e

        logger.debug(
            "Port forwarding started",
            target=descriptor.address,
            local_port=local_port,
            remote_port=remote_port,
        )
        return SubprocessForwardingSession(descriptor, local_port, remote_port, process)

    @staticmethod
    @contextmanager
    def _sftp(
        client: paramiko.SSHClient, descriptor: ConnectionDescriptor
    ) -> Iterator[paramiko.SFTPClient]:
        try:
            sftp = client.open_sftp()
        except (paramiko.SSHException, OSError) as e:
            raise TransferError(
                f"SFTP unavailable: {_describe(e)}", target=descriptor.address
            ) from e
        try:
            yield sftp
        finally:
            sftp.close()

    @staticmethod
    def _remote_dir(sftp: paramiko.SFTPClient, dest: Optional[str]) -> str:
        path = dest or "~/"
        if path.startswith("~"):
            path = posixpath.join(sftp.normalize("."), path[1:].lstrip("/"))
        return path

    def send_files(
        self,
        descriptor: ConnectionDescriptor,
        paths: Sequence[str],
        dest: Optional[str] = None,
    ) -> None:
        local_paths = [Path(p).expanduser() for p in paths]
        missing = [str(p) for p in local_paths if not p.is_file()]
        if missing:
            raise ConfigurationError(
                f"Local file(s) not found: {', '.join(missing)}", field="files"
            )

        with self._session(descriptor) as client, self._sftp(client, descriptor) as sftp:
            try:
                remote_dir = self._remote_dir(sftp, dest)
                for local in local_paths:
                    remote = posixpath.join(remote_dir, local.name)
                    sftp.put(str(local), remote)
                    sftp.chmod(remote, local.stat().st_mode & 0o777)
                    logger.debug("File sent", target=descriptor.address, path=remote)
            except (paramiko.SSHException, OSError) as e:
                raise TransferError(
                    f"Upload failed: {_describe(e)}", target=descriptor.address
                ) from e

    def get_files(
        self,
        descriptor: ConnectionDescriptor,
        paths: Sequence[str],
        dest: Optional[str] = None,
    ) -> None:
        local_dir = Path(dest or ".").expanduser()
        if not local_dir.is_dir():
            raise ConfigurationError(f"Not a directory: {local_dir}", field="dest")

        with self._session(descriptor) as client, self._sftp(client, descriptor) as sftp:
            try:
                for path in paths:
                    remote = self._remote_dir(sftp, path) if path.startswith("~") else path
                    local = local_dir / posixpath.basename(remote.rstrip("/"))
                    sftp.get(remote, str(local))
                    logger.debug("File received", target=descriptor.address, path=remote)
            except (paramiko.SSHException, OSError) as e:
                raise TransferError(
                    f"Download failed: {_describe(e)}", target=descriptor.address
                ) from e
