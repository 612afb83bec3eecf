"""Configuration management for dutctl."""

from dutctl.config.schemas import (
    DiscoveryConfig,
    DutctlConfig,
    MonitorConfig,
    RegistryConfig,
    SSHConfig,
    VNCConfig,
)
from dutctl.config.loader import load_config, get_default_config_path

__all__ = [
    "DutctlConfig",
    "SSHConfig",
    "RegistryConfig",
    "DiscoveryConfig",
    "MonitorConfig",
    "VNCConfig",
    "load_config",
    "get_default_config_path",
]
