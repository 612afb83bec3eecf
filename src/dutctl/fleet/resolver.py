"""Identity and attribute resolution for DUTs.

Each attribute is answered by one remote query. A resolution either
returns every requested attribute or fails as a whole; a device that
cannot answer one attribute is not reported as partially known.
"""

import re
from datetime import datetime
from typing import Iterable, Optional

from dutctl.fleet.descriptor import ConnectionDescriptor
from dutctl.fleet.errors import ConfigurationError, RemoteCommandError, ResolutionError
from dutctl.fleet.transport import Transport
from dutctl.telemetry.logger import get_logger

logger = get_logger(__name__)

Attributes = dict[str, str]

LOCAL_ATTRIBUTES = ("timestamp",)

ATTRIBUTE_QUERIES: dict[str, str] = {
    "dut_id": (
        'm=$(cros_config / name) && s=$(vpd -g serial_number) && '
        '[ -n "$m" ] && [ -n "$s" ] && echo "${m}_${s}"'
    ),
    "hwid": "crossystem hwid",
    "release": "sed -n 's/^CHROMEOS_RELEASE_BUILDER_PATH=//p' /etc/lsb-release",
    "model": "cros_config / name",
    "serial": "vpd -g serial_number",
    "mac": "cat /sys/class/net/$(ip route show default | awk '{print $5; exit}')/address",
    "board": "sed -n 's/^CHROMEOS_RELEASE_BOARD=//p' /etc/lsb-release",
    "arch": "uname -m",
    "kernel": "uname -r",
    "uptime": "cut -d' ' -f1 /proc/uptime",
    "arc_version": "android-sh -c 'getprop ro.build.version.release'",
    "arc_device": "android-sh -c 'getprop ro.product.device'",
    "arc_image_type": "android-sh -c 'getprop ro.build.type'",
}

CANONICAL_ATTRIBUTES = ("timestamp", "dut_id", "hwid", "release", "model", "serial", "mac")

ARC_ATTRIBUTES = ("arch", "arc_version", "arc_device", "arc_image_type")

# <model>_<serial>, both parts non-empty
IDENTITY_PATTERN = re.compile(r"^[^\s_]+_\S+$")

KERNEL_CONFIG_COMMAND ="modprobe configs 2>/dev/null; zcat /proc/config.gz"


def known_attributes() -> list[str]:
    """All attribute names the resolver can answer."""
    return [*LOCAL_ATTRIBUTES, *ATTRIBUTE_QUERIES]


def validate_attribute_names(names: Iterable[str]) -> None:
    """Reject unknown attribute names before any probing.

    Raises:
        ConfigurationError: Listing every unknown name
    """
    known = set(known_attributes())
    unknown = [name for name in names if name not in known]
    if unknown:
        raise ConfigurationError(
            f"Unknown attribute(s): {', '.join(unknown)}. "
            f"Known attributes: {' '.join(known_attributes())}",
            field="attributes",
        )


def with_canonical(extra: Iterable[str] = ()) -> list[str]:
    """Canonical attribute names followed by extra ones, without duplicates."""
    return list(dict.fromkeys([*CANONICAL_ATTRIBUTES, *extra]))


class IdentityResolver:
    """Resolves a DUT's identity and attributes over a transport.

    Example:
        resolver = IdentityResolver(SSHTransport())
        info = resolver.resolve(ConnectionDescriptor("192.168.0.42"), ["dut_id", "hwid"])
        print(info["dut_id"])
    """

    def __init__(self, transport: Transport, timeout: Optional[float] = None) -> None:
        """Initialize resolver.

        Args:
            transport: Transport used for the remote queries
            timeout: Per-command timeout in seconds
        """
        self.transport = transport
        self.timeout = timeout

    def resolve(self, descriptor: ConnectionDescriptor, names: Iterable[str]) -> Attributes:
        """Resolve the requested attributes.

        Args:
            descriptor: DUT to query
            names: Attribute names; ``timestamp`` is local wall-clock time

        Returns:
            Mapping of every requested name to its value

        Raises:
            ConfigurationError: If a name is unknown
            ConnectivityError: If the host cannot be reached
            AuthenticationError: If the credentials are rejected
            ResolutionError: If any query fails or returns nothing
        """
        requested = list(dict.fromkeys(names))
        validate_attribute_names(requested)

        remote = [name for name in requested if name in ATTRIBUTE_QUERIES]
        results = (
            self.transport.run_many(
                descriptor,
                [ATTRIBUTE_QUERIES[name] for name in remote],
                timeout=self.timeout,
            )
            if remote
            else []
        )
        answers = dict(zip(remote, results))

        info: Attributes = {}
        for name in requested:
            if name == "timestamp":
                info[name] = datetime.now().astimezone().isoformat(timespec="seconds")
                continue
            result = answers[name]
            value = result.output.strip()
            if not result.success:
                raise ResolutionError(
                    f"Query for '{name}' exited with status {result.exit_code}",
                    target=descriptor.address,
                )
            if not value:
                raise ResolutionError(
                    f"Query for '{name}' returned no value", target=descriptor.address
                )
            if "\n" in value:
                raise ResolutionError(
                    f"Query for '{name}' returned more than one line",
                    target=descriptor.address,
                )
            if name == "dut_id" and not IDENTITY_PATTERN.match(value):
                raise ResolutionError(
                    f"Malformed DUT identity: {value!r}", target=descriptor.address
                )
            info[name] = value

        logger.debug("DUT resolved", target=descriptor.address, attributes=requested)
        return info

    def resolve_identity(self, descriptor: ConnectionDescriptor) -> str:
        """Resolve only the stable ``dut_id`` of a DUT."""
        return self.resolve(descriptor, ["dut_id"])["dut_id"]

    def fetch_kernel_config(self, descriptor: ConnectionDescriptor) -> str:
        """Read the kernel configuration of the running DUT kernel.

        Raises:
            RemoteCommandError: If ``/proc/config.gz`` cannot be read
        """
        result = self.transport.run(descriptor, KERNEL_CONFIG_COMMAND, timeout=self.timeout)
        try:
            result.check()
        except RemoteCommandError:
            logger.warning("Kernel config unavailable", target=descriptor.address)
            raise
        return result.output
