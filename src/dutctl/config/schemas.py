"""Configuration schemas using Pydantic for validation."""

from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from dutctl.fleet.descriptor import DEFAULT_IDENTITY_FILE
from dutctl.fleet.transport import DEFAULT_SSH_OPTIONS


class SSHConfig(BaseModel):
    """SSH transport configuration."""

    user: str = Field(
        default="root",
        description="Remote user name",
    )
    identity_file: str = Field(
        default=DEFAULT_IDENTITY_FILE,
        description="Private key used to reach DUTs",
    )
    connect_timeout: float = Field(
        default=10.0,
        gt=0,
        description="SSH connection timeout in seconds",
    )
    command_timeout: Optional[float] = Field(
        default=None,
        gt=0,
        description="Timeout for captured remote commands",
    )
    ssh_binary: str = Field(
        default="ssh",
        description="OpenSSH client for shells and tunnels",
    )
    ssh_options: list[str] = Field(
        default_factory=lambda: list(DEFAULT_SSH_OPTIONS),
        description="Options passed to the OpenSSH client with -o",
    )


class RegistryConfig(BaseModel):
    """DUT registry configuration."""

    path: Path = Field(
        default_factory=lambda: Path.home() / ".dutctl" / "duts.yaml",
        description="Path to the registry file",
    )


class DiscoveryConfig(BaseModel):
    """Discovery and fleet check configuration."""

    probe_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Deadline for probing one candidate",
    )
    max_concurrent: Optional[int] = Field(
        default=None,
        gt=0,
        description="Cap on concurrent probes (unbounded if unset)",
    )
    max_scan_hosts: int = Field(
        default=1024,
        gt=0,
        description="Largest subnet block a local scan will probe",
    )
    remote_executable: Optional[Path] = Field(
        default=None,
        description="Self-contained dutctl executable copied for remote discovery",
    )


class MonitorConfig(BaseModel):
    """Continuous monitor configuration."""

    base_port: int = Field(
        default=4022,
        gt=0,
        lt=65536,
        description="First local port forwarded to a monitored DUT",
    )
    interval_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Seconds between refreshes",
    )


class VNCConfig(BaseModel):
    """VNC forwarding configuration."""

    local_port: int = Field(
        default=5900,
        gt=0,
        lt=65536,
        description="Local port forwarded to the DUT VNC server",
    )
    remote_port: int = Field(
        default=5900,
        gt=0,
        lt=65536,
        description="Port kmsvnc listens on",
    )


class DutctlConfig(BaseModel):
    """Root configuration for dutctl."""

    ssh: SSHConfig = Field(
        default_factory=SSHConfig,
        description="SSH configuration",
    )
    registry: RegistryConfig = Field(
        default_factory=RegistryConfig,
        description="Registry configuration",
    )
    discovery: DiscoveryConfig = Field(
        default_factory=DiscoveryConfig,
        description="Discovery configuration",
    )
    monitor: MonitorConfig = Field(
        default_factory=MonitorConfig,
        description="Monitor configuration",
    )
    vnc: VNCConfig = Field(
        default_factory=VNCConfig,
        description="VNC configuration",
    )
    log_level: str = Field(
        default="WARNING",
        description="Global log level",
    )
    log_file: Optional[Path] = Field(
        default=None,
        description="Path to log file",
    )
    log_json: bool = Field(
        default=False,
        description="Render logs as JSON",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()
