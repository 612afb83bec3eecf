"""Configuration loading with hierarchy support."""

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from dutctl.config.schemas import DutctlConfig
from dutctl.fleet.errors import ConfigurationError

ENV_PREFIX = "DUTCTL_"


def get_default_config_path() -> Path:
    """Get the default user configuration path."""
    return Path.home() / ".dutctl" / "config.yaml"


def get_config_paths() -> list[Path]:
    """Get ordered list of configuration paths to check."""
    paths = []

    system_config = Path("/etc/dutctl/config.yaml")
    if system_config.exists():
        paths.append(system_config)

    user_config = get_default_config_path()
    if user_config.exists():
        paths.append(user_config)

    project_config = Path.cwd() / ".dutctl.yaml"
    if project_config.exists():
        paths.append(project_config)

    return paths


def load_yaml_config(path: Path) -> dict[str, Any]:
    """Load a YAML configuration file.

    Raises:
        ConfigurationError: If the file is not valid YAML or not a mapping
    """
    try:
        with open(path, "r") as f:
            content = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}", field="config") from e
    if not isinstance(content, dict):
        raise ConfigurationError(f"Configuration {path} is not a mapping", field="config")
    return content


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries, with override taking precedence."""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def get_env_overrides() -> dict[str, Any]:
    """Get configuration overrides from environment variables.

    Environment variables are prefixed with DUTCTL_ and use double underscores
    for nested keys. For example:
    - DUTCTL_LOG_LEVEL=DEBUG -> {"log_level": "DEBUG"}
    - DUTCTL_SSH__USER=chronos -> {"ssh": {"user": "chronos"}}
    """
    overrides: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue

        config_key = key[len(ENV_PREFIX):].lower()
        parts = config_key.split("__")

        current = overrides
        for part in parts[:-1]:
            if part not in current:
                current[part] = {}
            current = current[part]

        current[parts[-1]] = _parse_env_value(value)

    return overrides


def _parse_env_value(value: str) -> Any:
    """Parse an environment variable value to appropriate type."""
    if value.lower() in ("true", "yes"):
        return True
    if value.lower() in ("false", "no"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    return value


def load_config(
    config_path: Optional[Path] = None,
    include_env: bool = True,
) -> DutctlConfig:
    """Load configuration from all sources with proper hierarchy.

    Loading order (later overrides earlier):
    1. Default values (from schema)
    2. System config (/etc/dutctl/config.yaml)
    3. User config (~/.dutctl/config.yaml)
    4. Project config (.dutctl.yaml in cwd)
    5. Explicit config file (--config argument)
    6. Environment variables (DUTCTL_*)

    Args:
        config_path: Optional explicit configuration file path
        include_env: Whether to include environment variable overrides

    Returns:
        Validated DutctlConfig instance

    Raises:
        FileNotFoundError: If config_path does not exist
        ConfigurationError: If any source is malformed
    """
    merged_config: dict[str, Any] = {}

    for path in get_config_paths():
        merged_config = deep_merge(merged_config, load_yaml_config(path))

    if config_path:
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")
        merged_config = deep_merge(merged_config, load_yaml_config(config_path))

    if include_env:
        merged_config = deep_merge(merged_config, get_env_overrides())

    try:
        return DutctlConfig(**merged_config)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}", field="config") from e


def create_default_config(path: Path) -> None:
    """Create a default configuration file.

    Args:
        path: Path where to create the config file
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    config_dict = DutctlConfig().model_dump(mode="json", exclude_none=True)

    yaml_content = "# dutctl configuration\n\n"
    yaml_content += yaml.dump(config_dict, default_flow_style=False, sort_keys=False)

    with open(path, "w") as f:
        f.write(yaml_content)
