"""Tests for the dutctl command line."""

import json
from pathlib import Path

import pytest

from dutctl.__main__ import create_parser, main
from dutctl.fleet.descriptor import ConnectionDescriptor
from dutctl.fleet.registry import Registry

from conftest import FakeTransport, dut_attributes


@pytest.fixture
def cli_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> tuple[Path, FakeTransport]:
    """Config file pointing at a temp registry, with a fake transport wired in."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(Path, "home", lambda: tmp_path / "fake_home")

    transport = FakeTransport()
    transport.add_host("10.0.0.5:22", dut_attributes("kohaku", "A1"))
    transport.add_host("10.0.0.6:22", dut_attributes("nami", "D4"))
    monkeypatch.setattr("dutctl.context.SSHTransport", lambda **kwargs: transport)

    config_file = tmp_path / "config.yaml"
    config_file.write_text(
        f"registry:\n  path: {tmp_path / 'duts.yaml'}\n"
        "discovery:\n  probe_timeout: 2\n"
    )
    return config_file, transport


def run_cli(config_file: Path, *args: str) -> int:
    return main(["--config", str(config_file), *args])


class TestParser:
    """Tests for argument parsing."""

    def test_list_flags_exclusive(self):
        """List actions should be mutually exclusive."""
        with pytest.raises(SystemExit):
            create_parser().parse_args(["list", "--ids", "--clear"])

    def test_discover_sources_exclusive(self):
        """Only one discovery source may be given."""
        with pytest.raises(SystemExit):
            create_parser().parse_args(["discover", "--remote", "jump", "--target-list", "-"])

    def test_no_command(self, capsys):
        """Running without a command should print help and fail."""
        assert main([]) == 1


class TestListCommand:
    """Tests for dutctl list."""

    def test_add_then_list(self, cli_env, capsys):
        """Added DUTs should be listed with their descriptor."""
        config_file, _ = cli_env
        assert run_cli(config_file, "list", "--add", "10.0.0.5") == 0
        capsys.readouterr()

        assert run_cli(config_file, "list") == 0
        line = capsys.readouterr().out.strip()
        assert line.startswith("kohaku_A1")
        assert json.loads(line[32:])["host"] == "10.0.0.5"

    def test_ids(self, cli_env, tmp_path: Path, capsys):
        """--ids should print identities on one line."""
        config_file, _ = cli_env
        registry = Registry.open(tmp_path / "duts.yaml")
        registry.set("kohaku_A1", ConnectionDescriptor("10.0.0.5"))
        registry.set("eve_B2", ConnectionDescriptor("10.0.0.7"))

        assert run_cli(config_file, "list", "--ids") == 0
        assert capsys.readouterr().out == "kohaku_A1 eve_B2\n"

    def test_update_reports_removed(self, cli_env, tmp_path: Path, capsys):
        """--update should list kept entries and the removed ones."""
        config_file, _ = cli_env
        registry = Registry.open(tmp_path / "duts.yaml")
        registry.set("kohaku_A1", ConnectionDescriptor("10.0.0.5"))
        registry.set("atlas_C3", ConnectionDescriptor("10.0.0.6"))

        assert run_cli(config_file, "list", "--update") == 0
        out = capsys.readouterr().out
        kept, removed = out.split("Following DUTs are removed:")
        assert "kohaku_A1" in kept and "Online" in kept
        assert "atlas_C3" in removed and "AddressReused" in removed
        assert registry.ids() == ["kohaku_A1"]

    def test_remove_and_clear(self, cli_env, tmp_path: Path):
        """--remove and --clear should update the store."""
        config_file, _ = cli_env
        registry = Registry.open(tmp_path / "duts.yaml")
        registry.set("kohaku_A1", ConnectionDescriptor("10.0.0.5"))
        registry.set("eve_B2", ConnectionDescriptor("10.0.0.7"))

        assert run_cli(config_file, "list", "--remove", "eve_B2") == 0
        assert registry.ids() == ["kohaku_A1"]
        assert run_cli(config_file, "list", "--clear") == 0
        assert registry.ids() == []

    def test_add_unreachable_fails(self, cli_env, capsys):
        """An unreachable DUT should fail with an error on stderr."""
        config_file, _ = cli_env
        assert run_cli(config_file, "list", "--add", "10.0.0.9") == 1
        assert "10.0.0.9:22" in capsys.readouterr().err


class TestInfoCommand:
    """Tests for dutctl info."""

    def test_selected_keys(self, cli_env, capsys):
        """Should print only the requested attributes."""
        config_file, _ = cli_env
        assert run_cli(config_file, "info", "--dut", "10.0.0.5", "model,serial") == 0
        assert json.loads(capsys.readouterr().out) == {"model": "kohaku", "serial": "A1"}

    def test_list_keys(self, cli_env, capsys):
        """'?' should list attribute names."""
        config_file, _ = cli_env
        assert run_cli(config_file, "info", "--dut", "10.0.0.5", "?") == 0
        assert "dut_id" in capsys.readouterr().out.split()

    def test_unknown_identifier(self, cli_env, capsys):
        """Unknown DUT IDs should fail cleanly."""
        config_file, _ = cli_env
        assert run_cli(config_file, "info", "--dut", "nope_X") == 1
        assert "Unknown DUT identifier: nope_X" in capsys.readouterr().err


class TestDoCommand:
    """Tests for dutctl do."""

    def test_list_actions(self, cli_env, capsys):
        """Should print the action names."""
        config_file, _ = cli_env
        assert run_cli(config_file, "do", "--list-actions") == 0
        assert capsys.readouterr().out.split() == ["login", "reboot", "tail_messages"]

    def test_unknown_action(self, cli_env, capsys):
        """Unknown actions should fail before anything runs."""
        config_file, transport = cli_env
        assert run_cli(config_file, "do", "--dut", "10.0.0.5", "reboot", "explode") == 1
        assert "explode" in capsys.readouterr().err
        assert transport.calls == []

    def test_requires_dut(self, cli_env, capsys):
        """Valid actions without --dut should fail."""
        config_file, _ = cli_env
        assert run_cli(config_file, "do", "reboot") == 1
        assert "--dut" in capsys.readouterr().err

    def test_runs_actions(self, cli_env):
        """Should dispatch to the DUT."""
        config_file, transport = cli_env
        assert run_cli(config_file, "do", "--dut", "10.0.0.5", "reboot") == 0
        assert transport.calls_of("run")[0][1] == "10.0.0.5:22"


class TestDiscoverCommand:
    """Tests for dutctl discover."""

    def test_target_list(self, cli_env, tmp_path: Path, capsys):
        """Should print resolved DUTs as JSON."""
        config_file, _ = cli_env
        target_list = tmp_path / "duts.txt"
        target_list.write_text("10.0.0.5\n10.0.0.9\n")

        assert run_cli(config_file, "discover", "--target-list", str(target_list)) == 0
        captured = capsys.readouterr()
        results = json.loads(captured.out)
        assert [r["dut_id"] for r in results] == ["kohaku_A1"]
        assert results[0]["address"] == "10.0.0.5:22"
        assert "Discovery completed with 1 DUTs" in captured.err

    def test_remote_requires_executable(self, cli_env, capsys):
        """Remote discovery without a configured executable should fail cleanly."""
        config_file, transport = cli_env
        assert run_cli(config_file, "discover", "--remote", "10.0.0.5") == 1
        assert "discovery.remote_executable" in capsys.readouterr().err
        assert transport.calls == []

    def test_remote_delegates(self, cli_env, tmp_path: Path):
        """Remote discovery should ship the executable and run it there."""
        config_file, transport = cli_env
        executable = tmp_path / "dutctl.pyz"
        executable.write_text("")
        config_file.write_text(
            config_file.read_text() + f"  remote_executable: {executable}\n"
        )

        assert run_cli(config_file, "discover", "--remote", "10.0.0.5", "arch") == 0
        assert transport.calls_of("send") == [("send", "10.0.0.5:22", f"{executable} -> ~/")]
        assert transport.calls_of("piped") == [
            ("piped", "10.0.0.5:22", "~/dutctl.pyz discover arch")
        ]


class TestOtherCommands:
    """Tests for the remaining subcommands."""

    def test_shell_command(self, cli_env):
        """Shell with arguments should stream the command."""
        config_file, transport = cli_env
        assert run_cli(config_file, "shell", "--dut", "10.0.0.5", "uname", "-a") == 0
        assert transport.calls_of("piped") == [("piped", "10.0.0.5:22", "uname -a")]

    def test_push(self, cli_env, tmp_path: Path):
        """Push should send files to the DUT."""
        config_file, transport = cli_env
        assert run_cli(config_file, "push", "--dut", "10.0.0.5", "a.txt") == 0
        assert transport.calls_of("send") == [("send", "10.0.0.5:22", "a.txt -> None")]

    def test_monitor_port_range(self, cli_env, capsys):
        """A base port with no room for every DUT is a configuration error."""
        config_file, transport = cli_env
        config_file.write_text(config_file.read_text() + "monitor:\n  base_port: 65535\n")

        assert run_cli(config_file, "monitor", "10.0.0.5", "10.0.0.6") == 1
        assert "base_port" in capsys.readouterr().err
        assert transport.calls_of("forward") == []

    def test_config_show(self, cli_env, capsys):
        """config show should print the merged configuration."""
        config_file, _ = cli_env
        assert run_cli(config_file, "config", "show") == 0
        assert '"probe_timeout": 2.0' in capsys.readouterr().out
