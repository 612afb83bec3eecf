"""Continuous multi-DUT monitor.

Each target gets its own SSH tunnel on a dedicated local port. The
monitor redraws one status table per cycle, querying targets one after
another through their tunnels, then sleeps until the next cycle.
"""

import sys
import threading
from dataclasses import dataclass
from typing import Optional, Sequence, TextIO

from dutctl.fleet.descriptor import ConnectionDescriptor
from dutctl.fleet.errors import ConfigurationError, DutError
from dutctl.fleet.transport import ForwardingSession, Transport
from dutctl.telemetry.logger import LoggerMixin

DEFAULT_BASE_PORT = 4022
DEFAULT_INTERVAL = 5.0
SSH_PORT = 22

CLEAR_SCREEN = "\033[2J\033[1;1H"

STATUS_COMMAND = (
    "echo \"up $(cut -d' ' -f1 /proc/uptime)s"
    " load $(cut -d' ' -f1-3 /proc/loadavg)"
    " $(sed -n 's/^CHROMEOS_RELEASE_VERSION=//p' /etc/lsb-release)\""
)


def allocate_ports(count: int, base_port: int = DEFAULT_BASE_PORT) -> list[int]:
    """Sequential, distinct local ports starting at base_port."""
    if base_port < 1 or base_port + count - 1 > 65535:
        raise ConfigurationError(
            f"Cannot allocate {count} local ports starting at base_port {base_port}",
            field="base_port",
        )
    return [base_port + i for i in range(count)]


@dataclass
class MonitorTarget:
    """A monitored DUT and the local port its tunnel owns."""

    identity: str
    descriptor: ConnectionDescriptor
    local_port: int
    session: Optional[ForwardingSession] = None

    @property
    def tunnel_descriptor(self) -> ConnectionDescriptor:
        """Descriptor reaching the DUT's SSH server through the tunnel."""
        return self.descriptor.with_endpoint("127.0.0.1", self.local_port)


class ContinuousMonitor(LoggerMixin):
    """Polls a fixed set of DUTs and renders a refreshed status table.

    Tunnels are opened at construction; if any cannot be established the
    ones already opened are closed and the error is raised. Use as a
    context manager so every tunnel is torn down on exit.

    Example:
        with ContinuousMonitor(transport, [("dut1", d1), ("dut2", d2)]) as monitor:
            monitor.run()
    """

    def __init__(
        self,
        transport: Transport,
        duts: Sequence[tuple[str, ConnectionDescriptor]],
        base_port: int = DEFAULT_BASE_PORT,
        interval: float = DEFAULT_INTERVAL,
        ready_timeout: float = 10.0,
        out: Optional[TextIO] = None,
    ) -> None:
        """Initialize monitor and open one tunnel per DUT.

        Args:
            transport: Transport used for tunnels and status queries
            duts: (display label, descriptor) pairs in display order
            base_port: First local port to allocate
            interval: Seconds between refreshes
            ready_timeout: Seconds to wait for each tunnel to come up
            out: Stream the table is written to (default stdout)
        """
        self.transport = transport
        self.interval = interval
        self.ready_timeout = ready_timeout
        self.out = out or sys.stdout
        self.targets = [
            MonitorTarget(identity=identity, descriptor=descriptor, local_port=port)
            for (identity, descriptor), port in zip(duts, allocate_ports(len(duts), base_port))
        ]

        try:
            for target in self.targets:
                self._connect(target)
        except DutError:
            self.close()
            raise

    def _connect(self, target: MonitorTarget) -> None:
        session = self.transport.start_port_forwarding(
            target.descriptor, target.local_port, SSH_PORT
        )
        target.session = session
        session.wait_until_ready(self.ready_timeout)
        self.logger.debug(
            "Monitor tunnel open",
            identity=target.identity,
            target=target.descriptor.address,
            local_port=target.local_port,
        )

    def close(self) -> None:
        """Tear down every tunnel."""
        for target in self.targets:
            if target.session is not None:
                target.session.close()
                target.session = None

    def __enter__(self) -> "ContinuousMonitor":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @staticmethod
    def status_header() -> str:
        return f"{'DUT':<32} {'Port':<6} Status"

    def _reconnect(self, target: MonitorTarget) -> str:
        if target.session is not None:
            status = target.session.poll()
            target.session.close()
            target.session = None
            self.logger.info("Monitor tunnel exited", identity=target.identity, status=status)
        try:
            self._connect(target)
        except DutError as e:
            if target.session is not None:
                target.session.close()
                target.session = None
            return f"Reconnecting ({e.message})"
        return "Reconnected"

    def status_line(self, target: MonitorTarget) -> str:
        """One-line summary for a target; never raises for DUT failures."""
        if target.session is None or target.session.exited:
            summary = self._reconnect(target)
        else:
            try:
                result = self.transport.run(target.tunnel_descriptor, STATUS_COMMAND)
                if result.success:
                    summary = " ".join(result.output.split())
                else:
                    summary = f"Error (exit {result.exit_code})"
            except DutError as e:
                summary = f"Offline ({e.message})"
        return f"{target.identity:<32} {target.local_port:<6} {summary}"

    def render(self) -> str:
        """The full table for one refresh cycle."""
        lines = [self.status_header()]
        lines.extend(self.status_line(target) for target in self.targets)
        return "\n".join(lines)

    def run(
        self,
        stop: Optional[threading.Event] = None,
        max_cycles: Optional[int] = None,
    ) -> int:
        """Refresh until stopped.

        Args:
            stop: Event that ends the loop when set
            max_cycles: Stop after this many refreshes (None runs forever)

        Returns:
            Number of refresh cycles completed
        """
        stop = stop or threading.Event()
        cycles = 0
        while not stop.is_set():
            table = self.render()
            self.out.write(CLEAR_SCREEN + table + "\n")
            self.out.flush()
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            stop.wait(self.interval)
        return cycles
