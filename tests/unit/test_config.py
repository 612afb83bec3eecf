"""Tests for configuration system."""

from pathlib import Path

import pytest

from dutctl.config.loader import (
    _parse_env_value,
    create_default_config,
    deep_merge,
    get_config_paths,
    get_default_config_path,
    get_env_overrides,
    load_config,
    load_yaml_config,
)
from dutctl.config.schemas import DiscoveryConfig, DutctlConfig, MonitorConfig, SSHConfig
from dutctl.fleet.errors import ConfigurationError


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep user and project configs out of the tests."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(Path, "home", lambda: tmp_path / "fake_home")


class TestConfigSchemas:
    """Test configuration schema validation."""

    def test_default_config_valid(self) -> None:
        """Default configuration should be valid."""
        config = DutctlConfig()
        assert config.ssh.user == "root"
        assert config.ssh.identity_file == "~/.ssh/testing_rsa"
        assert config.discovery.probe_timeout == 30.0
        assert config.monitor.base_port == 4022
        assert config.vnc.local_port == 5900
        assert config.log_level == "WARNING"

    def test_log_level_validation(self) -> None:
        """Log level should be validated and upper-cased."""
        assert DutctlConfig(log_level="debug").log_level == "DEBUG"

        with pytest.raises(ValueError):
            DutctlConfig(log_level="INVALID")

    def test_timeouts_must_be_positive(self) -> None:
        """Timeouts should reject zero and negatives."""
        with pytest.raises(ValueError):
            SSHConfig(connect_timeout=0)
        with pytest.raises(ValueError):
            DiscoveryConfig(probe_timeout=-1)

    def test_port_range(self) -> None:
        """Ports should stay in range."""
        with pytest.raises(ValueError):
            MonitorConfig(base_port=70000)

    def test_registry_path_default(self) -> None:
        """Registry should default to the user dutctl directory."""
        assert DutctlConfig().registry.path == Path.home() / ".dutctl" / "duts.yaml"


class TestConfigLoader:
    """Test configuration loading."""

    def test_load_default_config(self) -> None:
        """Loading without file should return defaults."""
        config = load_config(include_env=False)
        assert isinstance(config, DutctlConfig)

    def test_load_from_file(self, temp_config_file: Path) -> None:
        """Should load config from file."""
        config = load_config(temp_config_file, include_env=False)
        assert config.ssh.user == "chronos"
        assert config.ssh.connect_timeout == 5
        assert config.discovery.max_concurrent == 8
        assert config.log_level == "DEBUG"

    def test_file_not_found(self, tmp_path: Path) -> None:
        """Should raise error for missing explicit config file."""
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nonexistent.yaml")

    def test_invalid_values(self, tmp_path: Path) -> None:
        """Schema violations should become ConfigurationError."""
        config_file = tmp_path / "bad.yaml"
        config_file.write_text("discovery:\n  probe_timeout: -5\n")
        with pytest.raises(ConfigurationError):
            load_config(config_file, include_env=False)

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        """Unparseable YAML should become ConfigurationError."""
        config_file = tmp_path / "bad.yaml"
        config_file.write_text("ssh: [unclosed\n")
        with pytest.raises(ConfigurationError):
            load_yaml_config(config_file)

    def test_non_mapping_yaml(self, tmp_path: Path) -> None:
        """A YAML list is not a configuration."""
        config_file = tmp_path / "list.yaml"
        config_file.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError):
            load_yaml_config(config_file)

    def test_empty_yaml(self, tmp_path: Path) -> None:
        """An empty file is an empty configuration."""
        config_file = tmp_path / "empty.yaml"
        config_file.write_text("")
        assert load_yaml_config(config_file) == {}

    def test_deep_merge(self) -> None:
        """Test deep dictionary merging."""
        base = {"a": 1, "b": {"c": 2, "d": 3}}
        override = {"b": {"c": 10}, "e": 5}

        result = deep_merge(base, override)

        assert result["a"] == 1
        assert result["b"]["c"] == 10
        assert result["b"]["d"] == 3
        assert result["e"] == 5

    def test_parse_env_value_types(self) -> None:
        """Test parsing of environment variable types."""
        assert _parse_env_value("true") is True
        assert _parse_env_value("no") is False
        assert _parse_env_value("42") == 42
        assert _parse_env_value("1") == 1
        assert _parse_env_value("3.14") == 3.14
        assert _parse_env_value("chronos") == "chronos"

    def test_env_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test environment variable overrides."""
        monkeypatch.setenv("DUTCTL_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("DUTCTL_SSH__USER", "chronos")

        overrides = get_env_overrides()

        assert overrides["log_level"] == "DEBUG"
        assert overrides["ssh"]["user"] == "chronos"

    def test_env_overrides_file(
        self, temp_config_file: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Environment should win over the config file."""
        monkeypatch.setenv("DUTCTL_DISCOVERY__PROBE_TIMEOUT", "3")
        config = load_config(temp_config_file)
        assert config.discovery.probe_timeout == 3.0
        assert config.ssh.user == "chronos"


class TestConfigPaths:
    """Tests for config file discovery."""

    def test_get_default_config_path(self, tmp_path: Path) -> None:
        """Default path should live in the user dutctl directory."""
        assert get_default_config_path() == tmp_path / "fake_home" / ".dutctl" / "config.yaml"

    def test_get_config_paths_empty(self) -> None:
        """No config files should yield no paths."""
        assert [p for p in get_config_paths() if p != Path("/etc/dutctl/config.yaml")] == []

    def test_project_config_found(self, tmp_path: Path) -> None:
        """A project config in cwd should be picked up."""
        project_config = tmp_path / ".dutctl.yaml"
        project_config.write_text("log_level: INFO")
        assert project_config in get_config_paths()

    def test_create_default_config(self, tmp_path: Path) -> None:
        """Should write a loadable default configuration."""
        config_path = tmp_path / "newconfig" / "config.yaml"
        create_default_config(config_path)

        assert config_path.read_text().startswith("# dutctl configuration")
        config = load_config(config_path, include_env=False)
        assert config.ssh.user == "root"
