"""DUT fleet management.

This module provides:
- Connection descriptors and target parsing
- SSH transport (commands, tunnels, file transfer)
- Identity resolution and a persistent DUT registry
- Concurrent discovery and fleet reconciliation
- A continuous multi-DUT monitor and a remote action dispatcher
"""

from dutctl.fleet.actions import DUT_ACTIONS, ActionDispatcher, DutAction
from dutctl.fleet.descriptor import ConnectionDescriptor, parse_target
from dutctl.fleet.discovery import (
    DiscoveryEngine,
    DiscoveryMode,
    DiscoveryReport,
    DiscoveryResult,
)
from dutctl.fleet.errors import (
    ActionFailed,
    AuthenticationError,
    ConfigurationError,
    ConnectivityError,
    DutError,
    InvalidAction,
    RegistryError,
    RemoteCommandError,
    ResolutionError,
    TransferError,
    UnknownIdentifier,
)
from dutctl.fleet.monitor import ContinuousMonitor, MonitorTarget
from dutctl.fleet.parallel import FetchOutcome, fetch_in_parallel
from dutctl.fleet.reconcile import (
    FleetEntryStatus,
    FleetReconciler,
    FleetStatus,
    ReconcileMode,
    ReconcileReport,
)
from dutctl.fleet.registry import Registry
from dutctl.fleet.resolver import CANONICAL_ATTRIBUTES, IdentityResolver
from dutctl.fleet.transport import CommandResult, ForwardingSession, SSHTransport, Transport

__all__ = [
    # Descriptors
    "ConnectionDescriptor",
    "parse_target",
    # Transport
    "CommandResult",
    "ForwardingSession",
    "Transport",
    "SSHTransport",
    # Resolution and registry
    "CANONICAL_ATTRIBUTES",
    "IdentityResolver",
    "Registry",
    # Batch probing
    "FetchOutcome",
    "fetch_in_parallel",
    "DiscoveryEngine",
    "DiscoveryMode",
    "DiscoveryReport",
    "DiscoveryResult",
    "FleetEntryStatus",
    "FleetReconciler",
    "FleetStatus",
    "ReconcileMode",
    "ReconcileReport",
    # Sessions
    "ContinuousMonitor",
    "MonitorTarget",
    "ActionDispatcher",
    "DutAction",
    "DUT_ACTIONS",
    # Errors
    "DutError",
    "ConnectivityError",
    "AuthenticationError",
    "ResolutionError",
    "RemoteCommandError",
    "TransferError",
    "ConfigurationError",
    "UnknownIdentifier",
    "RegistryError",
    "InvalidAction",
    "ActionFailed",
]
