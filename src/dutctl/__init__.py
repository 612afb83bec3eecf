"""
dutctl - manage a fleet of SSH-reachable devices under test.

dutctl keeps a registry of DUT identities and their current addresses and
provides:
- Discovery of DUTs on a local subnet, from a list, or via a remote host
- Fleet status checks that detect offline DUTs and reused addresses
- A continuous multi-DUT monitor over per-DUT SSH tunnels
- Shells, file transfer, VNC forwarding and named remote actions
"""

__version__ = "0.1.0"

from dutctl.config.schemas import DutctlConfig

__all__ = [
    "__version__",
    "DutctlConfig",
]
