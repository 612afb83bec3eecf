"""Wiring of the fleet components from configuration."""

from dataclasses import dataclass
from typing import Optional

from dutctl.config.schemas import DutctlConfig
from dutctl.fleet.descriptor import ConnectionDescriptor, parse_target
from dutctl.fleet.discovery import DiscoveryEngine
from dutctl.fleet.reconcile import FleetReconciler
from dutctl.fleet.registry import Registry
from dutctl.fleet.resolver import IdentityResolver
from dutctl.fleet.transport import SSHTransport, Transport


@dataclass
class FleetContext:
    """The transport, registry and resolver shared by one dutctl run."""

    config: DutctlConfig
    transport: Transport
    registry: Registry
    resolver: IdentityResolver

    @classmethod
    def from_config(
        cls,
        config: DutctlConfig,
        transport: Optional[Transport] = None,
    ) -> "FleetContext":
        """Build the context, opening (or creating) the registry store."""
        transport = transport or SSHTransport(
            user=config.ssh.user,
            connect_timeout=config.ssh.connect_timeout,
            command_timeout=config.ssh.command_timeout,
            ssh_binary=config.ssh.ssh_binary,
            ssh_options=config.ssh.ssh_options,
        )
        registry = Registry.open(config.registry.path.expanduser())
        resolver = IdentityResolver(transport, timeout=config.ssh.command_timeout)
        return cls(config=config, transport=transport, registry=registry, resolver=resolver)

    def target(self, raw: str) -> ConnectionDescriptor:
        """Resolve a target string through the registry."""
        return parse_target(raw, self.registry, self.config.ssh.identity_file)

    def discovery_engine(self) -> DiscoveryEngine:
        return DiscoveryEngine(
            self.resolver,
            registry=self.registry,
            probe_timeout=self.config.discovery.probe_timeout,
            max_concurrent=self.config.discovery.max_concurrent,
            identity_file=self.config.ssh.identity_file,
            max_scan_hosts=self.config.discovery.max_scan_hosts,
        )

    def reconciler(self) -> FleetReconciler:
        return FleetReconciler(
            self.registry,
            self.resolver,
            probe_timeout=self.config.discovery.probe_timeout,
            max_concurrent=self.config.discovery.max_concurrent,
        )
