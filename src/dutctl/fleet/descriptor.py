"""Connection descriptors for DUTs.

A descriptor is the current address and key needed to reach a device.
Descriptors are immutable values; a device's stable identity lives in the
registry, never in the descriptor.
"""

import ipaddress
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

from dutctl.fleet.errors import ConfigurationError, UnknownIdentifier

if TYPE_CHECKING:
    from dutctl.fleet.registry import Registry

DEFAULT_SSH_PORT = 22
DEFAULT_IDENTITY_FILE = "~/.ssh/testing_rsa"

_HOSTNAME_LABEL = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")


@dataclass(frozen=True)
class ConnectionDescriptor:
    """How to reach one DUT right now.

    Attributes:
        host: Host name or IP literal (IPv6 may carry a ``%scope`` suffix)
        port: SSH port
        identity_file: Private key used to authenticate
    """

    host: str
    port: int = DEFAULT_SSH_PORT
    identity_file: str = DEFAULT_IDENTITY_FILE

    @property
    def is_ipv6(self) -> bool:
        return ":" in self.host

    @property
    def address(self) -> str:
        """``host:port`` with brackets around IPv6 literals."""
        if self.is_ipv6:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"

    def with_endpoint(self, host: str, port: int) -> "ConnectionDescriptor":
        """Return a copy pointing at another endpoint with the same key."""
        return ConnectionDescriptor(host=host, port=port, identity_file=self.identity_file)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "host": self.host,
            "port": self.port,
            "identity_file": self.identity_file,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConnectionDescriptor":
        """Create from dictionary."""
        return cls(
            host=str(data["host"]),
            port=int(data.get("port", DEFAULT_SSH_PORT)),
            identity_file=str(data.get("identity_file", DEFAULT_IDENTITY_FILE)),
        )

    def __str__(self) -> str:
        return self.address


def is_ip_literal(host: str) -> bool:
    """Check whether host is an IPv4/IPv6 literal (scope suffix allowed)."""
    try:
        ipaddress.ip_address(host.split("%", 1)[0])
    except ValueError:
        return False
    return True


def is_hostname(host: str) -> bool:
    """Check whether host is a syntactically valid DNS host name."""
    if not host or len(host) > 253:
        return False
    labels = host.rstrip(".").split(".")
    return all(_HOSTNAME_LABEL.match(label) for label in labels)


def _parse_port(value: str, raw: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise ConfigurationError(
            f"Invalid port '{value}' in target '{raw}'", field="port"
        ) from None
    if not 0 < port < 65536:
        raise ConfigurationError(
            f"Port {port} out of range in target '{raw}'", field="port"
        )
    return port


def split_host_port(raw: str) -> tuple[str, Optional[int]]:
    """Split ``host[:port]`` into its parts.

    IPv6 literals with a port must be bracketed (``[fe80::1%eth0]:2222``);
    a bare IPv6 literal is taken as a host without a port.

    Raises:
        ConfigurationError: If the string is empty or the port is malformed
    """
    text = raw.strip()
    if not text:
        raise ConfigurationError("Empty DUT target", field="host")

    if text.startswith("["):
        end = text.find("]")
        if end < 0:
            raise ConfigurationError(f"Unclosed '[' in target '{raw}'", field="host")
        host = text[1:end]
        rest = text[end + 1 :]
        if not rest:
            return host, None
        if not rest.startswith(":"):
            raise ConfigurationError(
                f"Unexpected '{rest}' after host in target '{raw}'", field="host"
            )
        return host, _parse_port(rest[1:], raw)

    if text.count(":") == 1:
        host, port = text.split(":")
        if not host:
            raise ConfigurationError(f"Missing host in target '{raw}'", field="host")
        return host, _parse_port(port, raw)

    return text, None


def parse_target(
    raw: str,
    registry: Optional["Registry"] = None,
    identity_file: str = DEFAULT_IDENTITY_FILE,
) -> ConnectionDescriptor:
    """Turn a free-form target string into a descriptor.

    Registered identities win over address parsing, so ``model_serial``
    style identifiers resolve to their cached descriptor.

    Args:
        raw: ``host[:port]`` or a registered DUT identity
        registry: Registry consulted for identities (optional)
        identity_file: Key used for descriptors built from addresses

    Returns:
        ConnectionDescriptor for the target

    Raises:
        ConfigurationError: If the host or port field is malformed
        UnknownIdentifier: If raw is not an address and not registered
    """
    text = raw.strip()
    if registry is not None and text:
        cached = registry.get(text)
        if cached is not None:
            return cached

    host, port = split_host_port(text)
    if not (is_ip_literal(host) or is_hostname(host)):
        if port is None:
            raise UnknownIdentifier(text)
        raise ConfigurationError(f"Invalid host '{host}' in target '{raw}'", field="host")

    return ConnectionDescriptor(
        host=host,
        port=port if port is not None else DEFAULT_SSH_PORT,
        identity_file=identity_file,
    )
