"""DUT discovery.

Candidates come from one of three sources: a scan of a local interface's
subnet, a list of addresses (file or stdin), or a discovery run delegated
to a remote machine. Local candidates are probed concurrently; a probe
that fails or runs past its deadline is dropped without affecting the
others.
"""

import ipaddress
import math
import shlex
import socket
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Sequence, TextIO

import psutil

from dutctl.fleet.descriptor import DEFAULT_IDENTITY_FILE, ConnectionDescriptor, parse_target
from dutctl.fleet.errors import ConfigurationError, DutError
from dutctl.fleet.parallel import fetch_in_parallel
from dutctl.fleet.registry import Registry
from dutctl.fleet.resolver import Attributes, IdentityResolver, validate_attribute_names, with_canonical
from dutctl.telemetry.logger import get_logger

logger = get_logger(__name__)

ROUTE_TABLE = Path("/proc/net/route")


class DiscoveryMode(str, Enum):
    """Where discovery candidates come from."""

    LOCAL_SCAN = "local_scan"
    TARGET_LIST = "target_list"
    REMOTE = "remote"


@dataclass
class DiscoveryResult:
    """One successfully resolved candidate."""

    descriptor: ConnectionDescriptor
    attributes: Attributes

    def to_dict(self) -> dict[str, Any]:
        """Attributes plus the address they were resolved at."""
        return {**self.attributes, "address": self.descriptor.address}


@dataclass
class DiscoveryReport:
    """Outcome of a discovery run.

    Attributes:
        results: Resolved candidates, in completion-independent order
        attempted: Number of distinct candidates probed
        duration_ms: Wall time of the probing phase
    """

    results: list[DiscoveryResult] = field(default_factory=list)
    attempted: int = 0
    duration_ms: float = 0.0

    @property
    def resolved(self) -> int:
        return len(self.results)


def read_target_list(source: str, stdin: Optional[TextIO] = None) -> list[str]:
    """Read one candidate per line from a file, or from stdin for ``-``.

    Blank lines are skipped and surrounding whitespace is trimmed.

    Raises:
        ConfigurationError: If the file cannot be read
    """
    if source == "-":
        text = (stdin or sys.stdin).read()
    else:
        try:
            text = Path(source).expanduser().read_text()
        except OSError as e:
            raise ConfigurationError(
                f"Cannot read target list {source}: {e}", field="target_list"
            ) from e
    return [line.strip() for line in text.splitlines() if line.strip()]


def default_route_interface() -> Optional[str]:
    """Interface of the IPv4 default route, if the route table is readable."""
    try:
        lines = ROUTE_TABLE.read_text().splitlines()[1:]
    except OSError:
        return None
    for line in lines:
        fields = line.split()
        if len(fields) > 1 and fields[1] == "00000000":
            return fields[0]
    return None


def select_interface(name: Optional[str] = None) -> str:
    """Pick the interface to scan.

    Uses name if given, else the default-route interface, else the first
    interface that is up, not loopback and has an IPv4 address.

    Raises:
        ConfigurationError: If no usable interface exists
    """
    addrs = psutil.net_if_addrs()
    if name:
        if name not in addrs:
            raise ConfigurationError(f"Unknown network interface: {name}", field="interface")
        return name

    route_iface = default_route_interface()
    if route_iface in addrs:
        return route_iface

    stats = psutil.net_if_stats()
    for iface, iface_addrs in addrs.items():
        stat = stats.get(iface)
        if not stat or not stat.isup or iface == "lo":
            continue
        if any(a.family == socket.AF_INET and not a.address.startswith("127.") for a in iface_addrs):
            return iface
    raise ConfigurationError("No usable network interface found", field="interface")


def local_scan_candidates(interface: Optional[str] = None, max_hosts: int = 1024) -> list[str]:
    """Host addresses on the subnet of a local interface.

    Subnets larger than max_hosts are narrowed to the block around the
    interface's own address. The interface's own address is excluded.
    """
    iface = select_interface(interface)
    candidates: list[str] = []
    for addr in psutil.net_if_addrs()[iface]:
        if addr.family != socket.AF_INET or not addr.netmask:
            continue
        own = ipaddress.ip_interface(f"{addr.address}/{addr.netmask}")
        network = own.network
        if network.num_addresses - 2 > max_hosts:
            prefix = 32 - int(math.floor(math.log2(max_hosts + 2)))
            network = ipaddress.ip_interface(f"{addr.address}/{prefix}").network
            logger.warning(
                "Subnet too large, scanning a narrower block",
                interface=iface,
                subnet=str(own.network),
                scanned=str(network),
            )
        candidates.extend(str(host) for host in network.hosts() if host != own.ip)

    logger.info("Local scan candidates", interface=iface, count=len(candidates))
    return candidates


class DiscoveryEngine:
    """Finds DUTs and resolves their attributes.

    Example:
        engine = DiscoveryEngine(IdentityResolver(SSHTransport()), probe_timeout=20)
        report = engine.discover(DiscoveryMode.TARGET_LIST, target_list="duts.txt")
        print(report.attempted, report.resolved)
    """

    def __init__(
        self,
        resolver: IdentityResolver,
        registry: Optional[Registry] = None,
        probe_timeout: Optional[float] = 30.0,
        max_concurrent: Optional[int] = None,
        identity_file: str = DEFAULT_IDENTITY_FILE,
        max_scan_hosts: int = 1024,
    ) -> None:
        """Initialize discovery engine.

        Args:
            resolver: Resolver used for each candidate
            registry: Registry used to expand identities in target lists
            probe_timeout: Per-candidate deadline in seconds
            max_concurrent: Cap on concurrent probes (None is unbounded)
            identity_file: Key used for candidate descriptors
            max_scan_hosts: Largest subnet block a local scan will probe
        """
        self.resolver = resolver
        self.registry = registry
        self.probe_timeout = probe_timeout
        self.max_concurrent = max_concurrent
        self.identity_file = identity_file
        self.max_scan_hosts = max_scan_hosts

    def _descriptors(self, candidates: Sequence[str]) -> list[ConnectionDescriptor]:
        descriptors: dict[ConnectionDescriptor, None] = {}
        for candidate in candidates:
            try:
                descriptor = parse_target(candidate, self.registry, self.identity_file)
            except DutError as e:
                logger.warning("Skipping candidate", candidate=candidate, error=str(e))
                continue
            descriptors[descriptor] = None
        return list(descriptors)

    def probe(self, candidates: Sequence[str], extra_attributes: Sequence[str] = ()) -> DiscoveryReport:
        """Resolve every candidate concurrently.

        Args:
            candidates: Addresses or registered identities
            extra_attributes: Attribute names added to the canonical set

        Returns:
            DiscoveryReport with the resolved candidates and counts

        Raises:
            ConfigurationError: If an extra attribute name is unknown
        """
        names = with_canonical(extra_attributes)
        validate_attribute_names(names)
        descriptors = self._descriptors(candidates)

        start_time = time.perf_counter()
        outcomes = fetch_in_parallel(
            descriptors,
            lambda d: self.resolver.resolve(d, names),
            timeout=self.probe_timeout,
            max_concurrent=self.max_concurrent,
        )

        results: list[DiscoveryResult] = []
        for outcome in outcomes:
            if outcome.ok:
                results.append(DiscoveryResult(outcome.item, outcome.value))
            else:
                logger.debug(
                    "Candidate dropped",
                    target=outcome.item.address,
                    error="timeout" if outcome.timed_out else str(outcome.error),
                )

        report = DiscoveryReport(
            results=results,
            attempted=len(descriptors),
            duration_ms=(time.perf_counter() - start_time) * 1000,
        )
        logger.info(
            "Discovery completed",
            attempted=report.attempted,
            resolved=report.resolved,
            duration_ms=report.duration_ms,
        )
        return report

    def candidates(
        self,
        mode: DiscoveryMode,
        interface: Optional[str] = None,
        target_list: Optional[str] = None,
        stdin: Optional[TextIO] = None,
    ) -> list[str]:
        """Enumerate candidates for a local mode."""
        if mode == DiscoveryMode.TARGET_LIST:
            if not target_list:
                raise ConfigurationError("A target list is required", field="target_list")
            return read_target_list(target_list, stdin)
        if mode == DiscoveryMode.LOCAL_SCAN:
            return local_scan_candidates(interface, self.max_scan_hosts)
        raise ConfigurationError(f"Mode {mode.value} has no local candidates", field="mode")

    def discover(
        self,
        mode: DiscoveryMode,
        extra_attributes: Sequence[str] = (),
        interface: Optional[str] = None,
        target_list: Optional[str] = None,
        stdin: Optional[TextIO] = None,
    ) -> DiscoveryReport:
        """Enumerate candidates for mode and probe them."""
        validate_attribute_names(extra_attributes)
        candidates = self.candidates(mode, interface, target_list, stdin)
        return self.probe(candidates, extra_attributes)

    def delegate(
        self,
        remote: ConnectionDescriptor,
        executable: Path,
        extra_attributes: Sequence[str] = (),
    ) -> None:
        """Run discovery on a remote machine, streaming its output here.

        The executable is copied to the remote home directory and invoked
        there; no local probing happens.

        Raises:
            ConfigurationError: If the executable does not exist
        """
        validate_attribute_names(extra_attributes)
        if not executable.is_file():
            raise ConfigurationError(f"Executable not found: {executable}", field="remote_executable")

        logger.info("Delegating discovery", remote=remote.address, executable=str(executable))
        transport = self.resolver.transport
        transport.send_files(remote, [str(executable)], "~/")
        command = " ".join(
            [f"~/{shlex.quote(executable.name)}", "discover", *map(shlex.quote, extra_attributes)]
        )
        transport.run_piped(remote, command)
