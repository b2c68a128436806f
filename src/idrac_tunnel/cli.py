"""CLI interface for iDRAC SSH tunnel management."""

import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Dict, List, Optional

import click

from . import __version__
from .config import (
    DEFAULT_CONFIG_FILE,
    Settings,
    load_config,
    parse_port_range,
    save_config,
)
from .exceptions import (
    ConfigurationError,
    InvalidInputError,
    LedgerUnavailableError,
    TunnelError,
    TunnelNotFoundError,
)
from .ledger import Ledger
from .manager import (
    create_from_batch,
    create_from_specs,
    create_tunnels,
    format_create_summary,
    parse_target,
)
from .probe import IDRACProbe
from .registry import ActiveTunnel, TunnelRegistry, format_status_output


def info(message: str, quiet: bool = False) -> None:
    if not quiet:
        click.secho(f"INFO: {message}", fg="blue")


def success(message: str, quiet: bool = False) -> None:
    if not quiet:
        click.secho(f"SUCCESS: {message}", fg="green")


def warning(message: str) -> None:
    click.secho(f"WARNING: {message}", fg="yellow")


def error(message: str) -> None:
    click.secho(f"ERROR: {message}", fg="red", err=True)


def setup_logging(log_file: str, verbose: bool = False) -> None:
    """
    Configure the package logger.

    Every record at INFO and above is appended to ``log_file``; with
    ``verbose`` debug records are also written to stderr.
    """
    package_logger = logging.getLogger("idrac_tunnel")
    package_logger.handlers = []
    package_logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    try:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path)
        file_handler.setFormatter(logging.Formatter(
            "[%(asctime)s] %(levelname)s: %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
        ))
        package_logger.addHandler(file_handler)
    except OSError as e:
        click.echo(f"Warning: cannot write log file {log_file}: {e}", err=True)

    if verbose:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.DEBUG)
        console_handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        package_logger.addHandler(console_handler)


def _raise_interrupt(signum, frame) -> None:
    raise KeyboardInterrupt


class AliasedGroup(click.Group):
    """Group with command aliases that falls back to ``create``."""

    ALIASES = {
        "ls": "list",
        "status": "list",
        "kill-all": "close-all",
        "menu": "interactive",
    }

    def get_command(self, ctx: click.Context, cmd_name: str) -> Optional[click.Command]:
        return super().get_command(ctx, self.ALIASES.get(cmd_name, cmd_name))

    def resolve_command(self, ctx: click.Context, args: List[str]):
        # Bare targets mean "create"
        if args and super().get_command(ctx, self.ALIASES.get(args[0], args[0])) is None:
            return "create", self.get_command(ctx, "create"), args
        name, command, rest = super().resolve_command(ctx, args)
        return command.name if command else name, command, rest

    def invoke(self, ctx: click.Context):
        try:
            return super().invoke(ctx)
        except (KeyboardInterrupt, click.Abort):
            # click turns Ctrl+C inside prompts into Abort
            click.echo("")
            info("Script interrupted")
            ctx.exit(130)


def _fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


@click.group(
    cls=AliasedGroup,
    invoke_without_command=True,
    context_settings={"ignore_unknown_options": True},
)
@click.option(
    "--jumphost",
    "-j",
    envvar="IDRAC_TUNNEL_JUMPHOST",
    help="SSH jumphost to tunnel through",
)
@click.option(
    "--user",
    "-u",
    envvar="IDRAC_TUNNEL_USER",
    help="SSH username for jumphost",
)
@click.option(
    "--port",
    "-p",
    "base_port",
    type=int,
    envvar="IDRAC_TUNNEL_BASE_PORT",
    help="Base local port (default: 8443)",
)
@click.option(
    "--target-port",
    "-t",
    type=int,
    envvar="IDRAC_TUNNEL_TARGET_PORT",
    help="Target port on servers (default: 443)",
)
@click.option(
    "--port-range",
    metavar="START-END",
    envvar="IDRAC_TUNNEL_PORT_RANGE",
    help="Local port range to check for tunnels (default: 8443-8500)",
)
@click.option(
    "--config",
    "config_file",
    default=DEFAULT_CONFIG_FILE,
    envvar="IDRAC_TUNNEL_CONFIG",
    show_default=True,
    help="Configuration file",
)
@click.option(
    "--state-file",
    envvar="IDRAC_TUNNEL_STATE_FILE",
    help="Tunnel state file (default: ~/.ssh-tunnels-state)",
)
@click.option(
    "--log-file",
    envvar="IDRAC_TUNNEL_LOG_FILE",
    help="Log file (default: ~/.ssh-tunnel.log)",
)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.option("--quiet", "-q", is_flag=True, help="Quiet mode (minimal output)")
@click.version_option(version=__version__)
@click.pass_context
def main(
    ctx: click.Context,
    jumphost: Optional[str],
    user: Optional[str],
    base_port: Optional[int],
    target_port: Optional[int],
    port_range: Optional[str],
    config_file: str,
    state_file: Optional[str],
    log_file: Optional[str],
    verbose: bool,
    quiet: bool,
) -> None:
    """Create, list and close SSH tunnels to iDRAC web interfaces."""
    try:
        settings = load_config(config_file).merged(
            jump_host=jumphost,
            user=user,
            base_port=base_port,
            target_port=target_port,
            port_range=parse_port_range(port_range) if port_range else None,
            state_file=state_file,
            log_file=log_file,
        ).validate()
    except ConfigurationError as e:
        _fail(str(e))

    setup_logging(settings.log_file, verbose)
    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, _raise_interrupt)

    ctx.obj = {
        "settings": settings,
        "config_file": config_file,
        "ledger": Ledger(settings.state_file),
        "quiet": quiet,
    }

    if ctx.invoked_subcommand is None:
        ctx.invoke(create)


def _registry(obj: Dict) -> TunnelRegistry:
    settings = obj["settings"]
    return TunnelRegistry(obj["ledger"], settings.port_range, settings.ssh_binary)


def _report_created(results: List[Dict], quiet: bool) -> bool:
    if len(results) > 1:
        created = sum(1 for r in results if r["success"])
        failed = len(results) - created
        click.echo("")
        if created:
            success(f"Successfully created {created} tunnel(s)", quiet)
        if failed:
            error(f"Failed to create {failed} tunnel(s)")
        if not quiet:
            click.echo(format_create_summary(results))
    return all(r["success"] for r in results)


def prompt_targets(settings: Settings) -> List[Dict]:
    """Ask for targets until an empty hostname is entered."""
    targets = []
    while True:
        click.echo("")
        host = click.prompt(
            click.style("Enter target server FQDN (or press Enter if done)", fg="magenta"),
            default="",
            show_default=False,
        ).strip()
        if not host:
            break

        target_port = click.prompt("Target port", default=settings.target_port, type=int)
        try:
            target = parse_target(host, target_port)
        except InvalidInputError as e:
            error(str(e))
            continue

        targets.append(target)
        success(f"Added: {target['host']}:{target['target_port']}")

        if not click.confirm("Add another tunnel?", default=True):
            break
    return targets


@main.command()
@click.argument("targets", nargs=-1)
@click.option("--silent", "-s", is_flag=True, help="Silent mode (no interactive prompts)")
@click.option("--dry-run", is_flag=True, help="Show what would be executed without running")
@click.option(
    "--batch",
    "batch_file",
    type=click.Path(exists=True, dir_okay=False),
    metavar="FILE",
    help="Create tunnels from batch file",
)
@click.pass_obj
def create(
    obj: Dict,
    targets: tuple = (),
    silent: bool = False,
    dry_run: bool = False,
    batch_file: Optional[str] = None,
) -> None:
    """Create new SSH tunnel(s) to TARGETS (host or host:port)."""
    settings = obj["settings"]
    quiet = obj["quiet"]

    try:
        if batch_file:
            results = create_from_batch(batch_file, settings, obj["ledger"], silent, dry_run, quiet)
        elif targets:
            entries = [{"spec": spec, "local_port": None} for spec in targets]
            results = create_from_specs(entries, settings, obj["ledger"], silent, dry_run, quiet)
        elif silent:
            _fail("No targets specified in silent mode")
        else:
            parsed = prompt_targets(settings)
            if not parsed:
                warning("No targets specified")
                sys.exit(1)
            results = create_tunnels(parsed, settings, obj["ledger"], silent, dry_run, quiet)
    except TunnelError as e:
        _fail(str(e))

    if not _report_created(results, quiet):
        sys.exit(1)


def _print_probe_results(tunnels: List[ActiveTunnel]) -> None:
    click.echo("\nWeb interface check:")
    for tunnel in tunnels:
        host = tunnel.target_host if tunnel.target_host != "unknown" else None
        with IDRACProbe(tunnel.port, original_host=host) as probe:
            result = probe.check()
        if result["reachable"]:
            click.secho(f"  {tunnel.port}: reachable (HTTP {result['status_code']})", fg="green")
        else:
            click.secho(f"  {tunnel.port}: unreachable ({result['error']})", fg="red")


@main.command(name="list")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["text", "json"], case_sensitive=False),
    default="text",
    help="Output format",
)
@click.option("--check", is_flag=True, help="Probe each tunnel's iDRAC web interface")
@click.pass_obj
def list_tunnels(obj: Dict, output_format: str = "text", check: bool = False) -> None:
    """List all active tunnels (aliases: ls, status)."""
    try:
        show_status(obj, output_format, check)
    except TunnelError as e:
        _fail(str(e))


def show_status(obj: Dict, output_format: str = "text", check: bool = False) -> None:
    """Print the active tunnel table."""
    tunnels = _registry(obj).list_active()
    if output_format.lower() == "json":
        click.echo(format_status_output(tunnels, "json"))
        return

    click.secho("=== SSH Tunnel Status ===", fg="cyan")
    click.echo("")
    if not tunnels:
        info("No active SSH tunnels found")
        return

    click.echo(format_status_output(tunnels))
    if check:
        _print_probe_results(tunnels)
    click.echo("")
    success(f"{len(tunnels)} active tunnel(s) found")


def close_port(obj: Dict, port: int) -> bool:
    """Close one tunnel, reporting the outcome; returns success."""
    if not 1 <= port <= 65535:
        error(f"Invalid port number: {port}")
        return False

    quiet = obj["quiet"]
    try:
        info(f"Closing tunnel on port {port}...", quiet)
        pid = _registry(obj).close_one(port)
    except TunnelNotFoundError as e:
        warning(str(e))
        return False
    except LedgerUnavailableError:
        raise
    except TunnelError as e:
        error(str(e))
        return False

    success(f"Tunnel on port {port} closed (PID: {pid})", quiet)
    return True


@main.command()
@click.argument("port", type=int)
@click.pass_obj
def close(obj: Dict, port: int) -> None:
    """Close the tunnel on PORT."""
    try:
        ok = close_port(obj, port)
    except TunnelError as e:
        _fail(str(e))
    if not ok:
        sys.exit(1)


def _confirm_close_all(tunnels: List[ActiveTunnel]) -> bool:
    click.secho(f"Found {len(tunnels)} active tunnel(s):", fg="yellow")
    for tunnel in tunnels:
        click.echo(f"  - Port {tunnel.port} -> {tunnel.target_host} (PID: {tunnel.process_id})")
    click.echo("")
    return click.confirm("Close all tunnels?", default=False)


def close_all(obj: Dict, no_confirm: bool) -> bool:
    """Close every active tunnel, reporting the outcome; returns success."""
    quiet = obj["quiet"]
    summary = _registry(obj).close_all(None if no_confirm else _confirm_close_all)

    if not summary["tunnels"]:
        info("No active SSH tunnels to close", quiet)
        return True
    if summary["cancelled"]:
        info("Cancelled", quiet)
        return True

    for message in summary["errors"]:
        error(message)
    if summary["closed"]:
        success(f"Closed {summary['closed']} tunnel(s)", quiet)
    if summary["failed"]:
        error(f"Failed to close {summary['failed']} tunnel(s)")
    return summary["success"]


@main.command(name="close-all")
@click.option("--no-confirm", is_flag=True, help="Skip confirmation prompts")
@click.pass_obj
def close_all_command(obj: Dict, no_confirm: bool) -> None:
    """Close all active tunnels (alias: kill-all)."""
    try:
        ok = close_all(obj, no_confirm)
    except TunnelError as e:
        _fail(str(e))
    if not ok:
        sys.exit(1)


def clean_records(obj: Dict) -> None:
    """Remove stale ledger records, reporting the outcome."""
    quiet = obj["quiet"]
    ledger = obj["ledger"]
    if not ledger.path.exists():
        info("No state file found", quiet)
        return

    removed = _registry(obj).clean_stale()
    if removed:
        success(f"Cleaned {removed} stale record(s)", quiet)
    else:
        info("No stale records found", quiet)


@main.command()
@click.pass_obj
def clean(obj: Dict) -> None:
    """Clean up stale tunnel records."""
    try:
        clean_records(obj)
    except TunnelError as e:
        _fail(str(e))


def run_config_wizard(obj: Dict) -> None:
    """Prompt for settings, save them, optionally create a tunnel."""
    current = obj["settings"]
    config_file = obj["config_file"]
    info(f"Setting up configuration file at {config_file}")
    click.echo("")

    settings = current.merged(
        jump_host=click.prompt("Jump host hostname", default=current.jump_host),
        user=click.prompt("SSH username", default=current.user),
        base_port=click.prompt("Base local port", default=current.base_port, type=int),
        target_port=click.prompt("Target port", default=current.target_port, type=int),
    ).validate()

    path = save_config(settings, config_file)
    obj["settings"] = settings
    success(f"Configuration saved to {path}")

    if click.confirm("Would you like to create a tunnel now?", default=False):
        targets = prompt_targets(settings)
        if not targets:
            warning("No targets specified")
            return
        _report_created(create_tunnels(targets, settings, obj["ledger"]), obj["quiet"])


@main.command()
@click.pass_obj
def config(obj: Dict) -> None:
    """Create or edit the configuration file."""
    try:
        run_config_wizard(obj)
    except TunnelError as e:
        _fail(str(e))


MENU = """1) Create new tunnel(s)
2) Show tunnel status
3) Close specific tunnel
4) Close all tunnels
5) Clean stale records
6) Configuration
7) Exit"""


@main.command()
@click.pass_context
def interactive(ctx: click.Context) -> None:
    """Interactive menu mode (alias: menu)."""
    obj = ctx.obj
    while True:
        click.clear()
        click.secho("=== SSH Tunnel Manager ===", fg="cyan")
        click.echo("")
        click.echo(MENU)
        click.echo("")
        choice = click.prompt("Select option [1-7]", default="", show_default=False).strip()

        if choice == "7":
            info("Goodbye!")
            return
        if choice not in ("1", "2", "3", "4", "5", "6"):
            error(f"Invalid choice: {choice}")
            continue

        click.echo("")
        try:
            if choice == "1":
                targets = prompt_targets(obj["settings"])
                if targets:
                    _report_created(
                        create_tunnels(targets, obj["settings"], obj["ledger"], quiet=obj["quiet"]),
                        obj["quiet"],
                    )
                else:
                    warning("No targets specified")
            elif choice == "2":
                show_status(obj)
            elif choice == "3":
                show_status(obj)
                click.echo("")
                port = click.prompt("Enter port number to close", default="", show_default=False).strip()
                if port:
                    if port.isdigit():
                        close_port(obj, int(port))
                    else:
                        error(f"Invalid port number: {port}")
            elif choice == "4":
                close_all(obj, no_confirm=False)
            elif choice == "5":
                clean_records(obj)
            elif choice == "6":
                run_config_wizard(obj)
        except TunnelError as e:
            error(str(e))

        click.pause("Press Enter to continue...")


if __name__ == "__main__":
    main()
