"""
dutctl CLI entry point.

Usage:
    dutctl discover [--interface IF | --target-list FILE | --remote HOST] [ATTR...]
    dutctl list [--ids | --status | --update | --add TARGET | --remove ID | --clear]
    dutctl info [--dut DUT] [ATTR... | ?]
    dutctl shell --dut DUT [--autologin] [CMD...]
    dutctl do --dut DUT ACTION...
    dutctl monitor DUT...
    dutctl push --dut DUT [--dest DIR] FILE...
    dutctl pull --dut DUT [--dest DIR] FILE...
    dutctl vnc --dut DUT [--port PORT]
    dutctl kernel_config DUT
    dutctl arc_info DUT
    dutctl config show|init
"""

import argparse
import json
import sys
import time
from pathlib import Path
from typing import Optional

from dutctl import __version__
from dutctl.config.loader import load_config
from dutctl.config.schemas import DutctlConfig
from dutctl.context import FleetContext
from dutctl.fleet.actions import ActionDispatcher, run_autologin
from dutctl.fleet.discovery import DiscoveryMode
from dutctl.fleet.errors import ConfigurationError, DutError
from dutctl.fleet.monitor import ContinuousMonitor
from dutctl.fleet.reconcile import FleetEntryStatus, ReconcileMode
from dutctl.fleet.resolver import ARC_ATTRIBUTES, CANONICAL_ATTRIBUTES, known_attributes
from dutctl.telemetry.logger import bind_context, get_logger, setup_logging

VNC_POLL_INTERVAL = 5.0


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="dutctl",
        description="Manage a fleet of SSH-reachable devices under test",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  dutctl discover --target-list duts.txt    Probe the listed addresses
  dutctl list --add 192.168.0.42            Register a DUT
  dutctl list --update                      Check the fleet, drop reused addresses
  dutctl monitor kohaku_ABC123 192.168.0.7  Watch two DUTs
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--config",
        type=Path,
        metavar="PATH",
        help="Path to custom configuration file",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Override log level",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command")
    config_subparsers.add_parser("show", help="Show current configuration")
    config_subparsers.add_parser("init", help="Initialize default configuration")

    discover = subparsers.add_parser("discover", help="Discover DUTs on the network")
    source = discover.add_mutually_exclusive_group()
    source.add_argument(
        "--interface",
        help="Network interface to scan (default: the default-route interface)",
    )
    source.add_argument(
        "--target-list",
        metavar="FILE",
        help="File with one address or DUT ID per line ('-' for stdin)",
    )
    source.add_argument(
        "--remote",
        metavar="HOST",
        help="Run the discovery on this machine instead of locally",
    )
    discover.add_argument("extra_attr", nargs="*", help="Additional attributes to retrieve")

    do = subparsers.add_parser("do", help="Run named actions on a DUT")
    do.add_argument("--dut", help="DUT identifier (e.g. 127.0.0.1, localhost:2222)")
    do.add_argument("--list-actions", action="store_true", help="List available actions")
    do.add_argument("actions", nargs="*", help="Actions to run, in order")

    info = subparsers.add_parser("info", help="Show DUT attributes as JSON")
    info.add_argument("--dut", help="DUT identifier")
    info.add_argument(
        "keys",
        nargs="*",
        help="Attribute names (comma or space separated); '?' lists them",
    )

    kernel_config = subparsers.add_parser("kernel_config", help="Print the DUT kernel config")
    kernel_config.add_argument("dut", help="DUT identifier")

    arc_info = subparsers.add_parser("arc_info", help="Show ARC information")
    arc_info.add_argument("dut", help="DUT identifier")

    list_parser = subparsers.add_parser("list", help="List and maintain registered DUTs")
    list_action = list_parser.add_mutually_exclusive_group()
    list_action.add_argument("--clear", action="store_true", help="Remove all registered DUTs")
    list_action.add_argument(
        "--ids", action="store_true", help="Print space-separated DUT IDs on one line"
    )
    list_action.add_argument(
        "--status", action="store_true", help="Show current status of registered DUTs"
    )
    list_action.add_argument(
        "--update", action="store_true", help="Show status and drop DUTs whose address was reused"
    )
    list_action.add_argument("--add", metavar="TARGET", help="Register the DUT at TARGET")
    list_action.add_argument("--remove", metavar="ID", help="Unregister a DUT")

    shell = subparsers.add_parser("shell", help="Open a shell or run a command on a DUT")
    shell.add_argument("--dut", required=True, help="DUT identifier")
    shell.add_argument(
        "--autologin", action="store_true", help="Run autologin before the shell"
    )
    shell.add_argument("args", nargs=argparse.REMAINDER, help="Command to run")

    monitor = subparsers.add_parser("monitor", help="Continuously monitor DUTs")
    monitor.add_argument("duts", nargs="+", help="DUT identifiers to monitor")

    pull = subparsers.add_parser("pull", help="Copy files from a DUT")
    pull.add_argument("--dut", required=True, help="DUT to pull from")
    pull.add_argument("--dest", help="Local directory (default: current directory)")
    pull.add_argument("files", nargs="+", help="Remote files")

    push = subparsers.add_parser("push", help="Copy files to a DUT")
    push.add_argument("--dut", required=True, help="DUT to push to")
    push.add_argument("--dest", help="Remote directory (default: ~/)")
    push.add_argument("files", nargs="+", help="Local files")

    vnc = subparsers.add_parser("vnc", help="Forward the DUT VNC server")
    vnc.add_argument("--dut", required=True, help="DUT identifier")
    vnc.add_argument("--port", type=int, help="Local port (default: 5900)")

    return parser


def cmd_config_show(config_path: Optional[Path]) -> int:
    """Show current configuration."""
    config = load_config(config_path)
    print("Current dutctl Configuration:")
    print("=" * 50)
    print(config.model_dump_json(indent=2))
    return 0


def cmd_config_init(config_path: Optional[Path]) -> int:
    """Initialize default configuration file."""
    from dutctl.config.loader import create_default_config, get_default_config_path

    target_path = config_path or get_default_config_path()
    create_default_config(target_path)
    print(f"Created default configuration at: {target_path}")
    return 0


def cmd_discover(args: argparse.Namespace, ctx: FleetContext) -> int:
    """Discover DUTs and print their attributes as JSON."""
    engine = ctx.discovery_engine()

    if args.remote:
        remote = ctx.target(args.remote)
        executable = ctx.config.discovery.remote_executable
        if executable is None:
            raise ConfigurationError(
                "Remote discovery needs a self-contained dutctl executable; "
                "set discovery.remote_executable",
                field="remote_executable",
            )
        executable = executable.expanduser()
        print(f"Using remote machine: {remote.address}", file=sys.stderr)
        print(f"dutctl executable path: {executable}", file=sys.stderr)
        engine.delegate(remote, executable, args.extra_attr)
        return 0

    mode = DiscoveryMode.TARGET_LIST if args.target_list else DiscoveryMode.LOCAL_SCAN
    candidates = engine.candidates(mode, interface=args.interface, target_list=args.target_list)
    print(f"Found {len(candidates)} candidates. Checking...", file=sys.stderr)
    report = engine.probe(candidates, args.extra_attr)
    print(f"Discovery completed with {report.resolved} DUTs", file=sys.stderr)
    print(json.dumps([r.to_dict() for r in report.results], indent=2))
    return 0


def cmd_do(args: argparse.Namespace, ctx: FleetContext) -> int:
    """Run named actions on a DUT."""
    dispatcher = ActionDispatcher(ctx.transport)
    if args.list_actions:
        print(" ".join(dispatcher.list_actions()))
        return 0

    dispatcher.validate(args.actions)
    if not args.dut:
        raise ConfigurationError("Please specify --dut", field="dut")
    dispatcher.dispatch(ctx.target(args.dut), args.actions)
    return 0


def cmd_info(args: argparse.Namespace, ctx: FleetContext) -> int:
    """Print DUT attributes as JSON."""
    keys = [key for arg in args.keys for key in arg.split(",") if key]
    if keys == ["?"]:
        print(" ".join(known_attributes()))
        return 0

    if not args.dut:
        raise ConfigurationError("Please specify --dut", field="dut")
    info = ctx.resolver.resolve(ctx.target(args.dut), keys or CANONICAL_ATTRIBUTES)
    print(json.dumps(info))
    return 0


def cmd_kernel_config(args: argparse.Namespace, ctx: FleetContext) -> int:
    """Print the kernel configuration of a DUT."""
    print(ctx.resolver.fetch_kernel_config(ctx.target(args.dut)))
    return 0


def cmd_arc_info(args: argparse.Namespace, ctx: FleetContext) -> int:
    """Print ARC information of a DUT."""
    info = ctx.resolver.resolve(ctx.target(args.dut), ARC_ATTRIBUTES)
    print(f"arch: {info['arch']}")
    print(f"ARC version: {info['arc_version']}")
    print(f"ARC device: {info['arc_device']}")
    print(f"image type: {info['arc_image_type']}")
    return 0


def _status_row(entry: FleetEntryStatus) -> str:
    return f"{entry.identity:32} {entry.status.value:13} {entry.descriptor.address}"


def cmd_list(args: argparse.Namespace, ctx: FleetContext) -> int:
    """List and maintain registered DUTs."""
    registry = ctx.registry

    if args.clear:
        registry.clear()
        return 0

    if args.add:
        print(f"Checking DUT info of {args.add}...", file=sys.stderr)
        identity, descriptor = registry.add(args.add, ctx.resolver, ctx.config.ssh.identity_file)
        print(f"Added: {identity:32} {json.dumps(descriptor.to_dict())}")
        return 0

    if args.remove:
        if registry.remove(args.remove):
            print(f"Removed: {args.remove}", file=sys.stderr)
        else:
            print(f"Not registered: {args.remove}", file=sys.stderr)
        return 0

    duts = registry.list()

    if args.ids:
        print(" ".join(identity for identity, _ in duts))
        return 0

    if args.status or args.update:
        print(
            f"Checking status of {len(duts)} DUTs. It will take a minute...",
            file=sys.stderr,
        )
        mode = ReconcileMode.UPDATE if args.update else ReconcileMode.STATUS
        report = ctx.reconciler().reconcile(mode)
        for entry in report.kept:
            print(_status_row(entry))
        if report.removed:
            print("\nFollowing DUTs are removed:")
            for entry in report.removed:
                print(_status_row(entry))
        return 0

    for identity, descriptor in duts:
        print(f"{identity:32} {json.dumps(descriptor.to_dict())}")
    return 0


def cmd_shell(args: argparse.Namespace, ctx: FleetContext) -> int:
    """Open a shell, or run a command, on a DUT."""
    target = ctx.target(args.dut)
    if args.autologin:
        run_autologin(ctx.transport, target)
    if args.args:
        ctx.transport.run_piped(target, " ".join(args.args))
        return 0
    return ctx.transport.run_interactive(target)


def cmd_monitor(args: argparse.Namespace, ctx: FleetContext) -> int:
    """Monitor DUTs until interrupted."""
    duts = [(raw, ctx.target(raw)) for raw in args.duts]
    with ContinuousMonitor(
        ctx.transport,
        duts,
        base_port=ctx.config.monitor.base_port,
        interval=ctx.config.monitor.interval_seconds,
    ) as monitor:
        monitor.run()
    return 0


def cmd_pull(args: argparse.Namespace, ctx: FleetContext) -> int:
    """Copy files from a DUT."""
    ctx.transport.get_files(ctx.target(args.dut), args.files, args.dest)
    return 0


def cmd_push(args: argparse.Namespace, ctx: FleetContext) -> int:
    """Copy files to a DUT."""
    ctx.transport.send_files(ctx.target(args.dut), args.files, args.dest)
    return 0


def cmd_vnc(args: argparse.Namespace, ctx: FleetContext) -> int:
    """Forward the DUT VNC server until the tunnel exits."""
    target = ctx.target(args.dut)
    port = args.port or ctx.config.vnc.local_port
    with ctx.transport.start_port_forwarding(
        target, port, ctx.config.vnc.remote_port, command="kmsvnc"
    ) as session:
        shown = False
        while True:
            status = session.poll()
            if status is not None:
                print(f"Failed to connect to {args.dut}: exit status {status}", file=sys.stderr)
                return 1
            if not shown:
                print(
                    f"Connected. Please run `xtightvncviewer -encodings raw localhost:{port}`"
                )
                shown = True
            time.sleep(VNC_POLL_INTERVAL)


COMMANDS = {
    "discover": cmd_discover,
    "do": cmd_do,
    "info": cmd_info,
    "kernel_config": cmd_kernel_config,
    "arc_info": cmd_arc_info,
    "list": cmd_list,
    "shell": cmd_shell,
    "monitor": cmd_monitor,
    "pull": cmd_pull,
    "push": cmd_push,
    "vnc": cmd_vnc,
}


def run_command(args: argparse.Namespace, config: DutctlConfig) -> int:
    """Run a fleet command with a context built from config."""
    ctx = FleetContext.from_config(config)
    return COMMANDS[args.command](args, ctx)


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    try:
        if args.command == "config":
            if args.config_command == "show":
                return cmd_config_show(args.config)
            elif args.config_command == "init":
                return cmd_config_init(args.config)
            parser.parse_args(["config", "--help"])
            return 1

        if args.command not in COMMANDS:
            parser.print_help()
            return 1

        config = load_config(args.config)
        if args.log_level:
            config.log_level = args.log_level
        setup_logging(config.log_level, config.log_file, config.log_json)
        bind_context(command=args.command)
        get_logger(__name__).debug("Starting dutctl", version=__version__, command=args.command)

        return run_command(args, config)

    except DutError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
