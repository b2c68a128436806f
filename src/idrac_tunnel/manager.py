"""Tunnel creation for one or many iDRAC targets."""

import logging
import re
import time
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import click

from .config import Settings
from .exceptions import InvalidInputError, LedgerUnavailableError, TunnelError
from .ledger import Ledger, TunnelRecord
from .ports import find_available_port, is_port_available
from .tunnel import SSHTunnel, check_jumphost, jump_host_spec


logger = logging.getLogger(__name__)

HOSTNAME_PATTERN = re.compile(
    r"^[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?"
    r"(\.[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?)*$"
)
TARGET_PATTERN = re.compile(r"^(.+):(\d+)$")
PORT_TOKEN_PATTERN = re.compile(r"--port\s+(\d+)")
INTER_TUNNEL_DELAY = 0.5


def parse_target(
    spec: str,
    default_port: int = 443,
    local_port: Optional[int] = None,
) -> Dict:
    """
    Parse a ``host[:port]`` target.

    Args:
        spec: Target such as ``idrac1.example.com`` or ``idrac1.example.com:8443``
        default_port: Target port when none is given
        local_port: Requested local port, if any

    Returns:
        Target dict with ``host``, ``target_port`` and ``local_port``

    Raises:
        InvalidInputError: If the host or port is malformed
    """
    spec = spec.strip()
    match = TARGET_PATTERN.match(spec)
    if match:
        host, target_port = match.group(1), int(match.group(2))
    else:
        host, target_port = spec, default_port

    if not host:
        raise InvalidInputError("FQDN is required")
    if not HOSTNAME_PATTERN.match(host):
        raise InvalidInputError(f"Invalid FQDN format: {host}")
    if not 1 <= target_port <= 65535:
        raise InvalidInputError(
            f"Invalid target port: {target_port} (must be between 1-65535)"
        )
    if local_port is not None and not 1024 <= local_port <= 65535:
        raise InvalidInputError(
            f"Invalid local port: {local_port} (must be between 1024-65535)"
        )

    return {"host": host, "target_port": target_port, "local_port": local_port}


def load_targets_from_batch(batch_file: str) -> List[Dict]:
    """
    Read targets from a batch file.

    Blank lines and ``#`` comments are skipped, trailing comments are
    stripped, and a ``--port N`` token sets the local port for that line.

    Args:
        batch_file: Path to the batch file

    Returns:
        List of dicts with the raw ``spec`` and optional ``local_port``

    Example file:
        # Lines starting with # are comments
        idrac1.example.com
        idrac2.example.com:8444  # Custom target port
        idrac3.example.com --port 9000  # Custom local port
    """
    batch_path = Path(batch_file)
    if not batch_path.exists():
        raise FileNotFoundError(f"Batch file not found: {batch_file}")

    entries = []
    with open(batch_path, "r") as f:
        for line_num, line in enumerate(f, start=1):
            line = line.split("#", 1)[0].strip()
            if not line:
                continue

            local_port = None
            port_match = PORT_TOKEN_PATTERN.search(line)
            if port_match:
                local_port = int(port_match.group(1))
                line = PORT_TOKEN_PATTERN.sub("", line).strip()

            if not line:
                logger.warning(f"No target on line {line_num} of {batch_file}")
                continue
            entries.append({"spec": line, "local_port": local_port})

    return entries


def _resolve_local_port(requested: Optional[int], settings: Settings, quiet: bool) -> int:
    if requested is None:
        return find_available_port(settings.base_port)
    if is_port_available(requested):
        return requested
    if not quiet:
        click.secho(
            f"WARNING: Port {requested} is not available, finding alternative...",
            fg="yellow",
        )
    logger.warning(f"Port {requested} is not available")
    return find_available_port(requested)


def create_single_tunnel(
    target: Dict,
    settings: Settings,
    ledger: Ledger,
    dry_run: bool = False,
    quiet: bool = False,
) -> Dict:
    """
    Create one tunnel and record it.

    Args:
        target: Target dict from ``parse_target``
        settings: Effective settings (jumphost, user, ports)
        ledger: Ledger to record the tunnel in
        dry_run: Show the ssh command instead of running it
        quiet: Suppress progress messages

    Returns:
        Result dict with target, local port, pid and success/error
    """
    result = {
        "host": target["host"],
        "target_port": target["target_port"],
        "local_port": None,
        "pid": None,
        "url": None,
        "dry_run": dry_run,
        "success": False,
        "error": None,
    }

    try:
        local_port = _resolve_local_port(target.get("local_port"), settings, quiet)
        result["local_port"] = local_port
        result["url"] = f"https://localhost:{local_port}"

        tunnel = SSHTunnel(
            jumphost=settings.jump_host,
            idrac_host=target["host"],
            local_port=local_port,
            idrac_port=target["target_port"],
            jumphost_username=settings.user,
            ssh_binary=settings.ssh_binary,
        )

        if not quiet:
            click.secho(
                f"INFO: Creating SSH tunnel: localhost:{local_port} -> "
                f"{settings.jump_host} -> {target['host']}:{target['target_port']}",
                fg="blue",
            )

        pid = tunnel.start(dry_run=dry_run)
        if dry_run:
            if not quiet:
                click.secho(
                    f"INFO: DRY RUN: Would execute: {' '.join(tunnel.command)}",
                    fg="blue",
                )
            result["success"] = True
            return result

        ledger.append(TunnelRecord(
            local_port=local_port,
            target_host=target["host"],
            target_port=target["target_port"],
            process_id=pid,
            created_at=datetime.now().replace(microsecond=0),
            jump_host_spec=jump_host_spec(settings.jump_host, settings.user),
        ))

        result["pid"] = pid
        result["success"] = True
        if not quiet:
            click.secho(
                f"SUCCESS: Tunnel established: {result['url']} -> "
                f"{target['host']}:{target['target_port']} (PID: {pid})",
                fg="green",
            )

    except LedgerUnavailableError:
        raise
    except TunnelError as e:
        result["error"] = str(e)
        logger.error(f"[{target['host']}] {e}")
        click.secho(f"ERROR: {e}", fg="red", err=True)

    return result


def create_tunnels(
    targets: List[Dict],
    settings: Settings,
    ledger: Ledger,
    silent: bool = False,
    dry_run: bool = False,
    quiet: bool = False,
) -> List[Dict]:
    """
    Create tunnels one after another.

    A single target gets a jumphost connectivity check unless ``silent``;
    several targets always get one check up front.

    Args:
        targets: Target dicts from ``parse_target``
        settings: Effective settings
        ledger: Ledger to record tunnels in
        silent: Skip the connectivity check for a single target
        dry_run: Show ssh commands instead of running them
        quiet: Suppress progress messages

    Returns:
        List of per-target results
    """
    total = len(targets)
    if total > 1 and not quiet:
        click.secho(f"INFO: Creating {total} SSH tunnels...", fg="blue")

    if total > 1 or (total == 1 and not silent):
        _precheck(settings, quiet)

    results = []
    for index, target in enumerate(targets):
        results.append(create_single_tunnel(target, settings, ledger, dry_run, quiet))
        if index < total - 1:
            time.sleep(INTER_TUNNEL_DELAY)

    return results


def _precheck(settings: Settings, quiet: bool) -> bool:
    destination = jump_host_spec(settings.jump_host, settings.user)
    if not quiet:
        click.secho(f"INFO: Testing SSH connection to {destination}...", fg="blue")
    if check_jumphost(settings.jump_host, settings.user):
        if not quiet:
            click.secho("SUCCESS: SSH connection test successful", fg="green")
        return True
    click.secho(
        "WARNING: SSH connection test failed - you may need to enter "
        "password/key passphrase",
        fg="yellow",
    )
    return False


def create_from_batch(
    batch_file: str,
    settings: Settings,
    ledger: Ledger,
    silent: bool = False,
    dry_run: bool = False,
    quiet: bool = False,
) -> List[Dict]:
    """
    Create tunnels for every target listed in a batch file.

    Lines that fail to parse are reported as failed results; the rest
    are created.

    Raises:
        InvalidInputError: If the file holds no targets
    """
    entries = load_targets_from_batch(batch_file)
    if not entries:
        raise InvalidInputError("No valid targets found in batch file")

    if not quiet:
        click.secho(f"INFO: Found {len(entries)} target(s) in batch file", fg="blue")

    return create_from_specs(entries, settings, ledger, silent, dry_run, quiet)


def create_from_specs(
    entries: List[Dict],
    settings: Settings,
    ledger: Ledger,
    silent: bool = False,
    dry_run: bool = False,
    quiet: bool = False,
) -> List[Dict]:
    """
    Parse raw target strings and create tunnels for the valid ones.

    A target that fails to parse becomes a failed result; it never
    prevents the others from being created.

    Args:
        entries: Dicts with a raw ``spec`` and optional ``local_port``
        settings: Effective settings
        ledger: Ledger to record tunnels in
        silent: Skip the connectivity check for a single target
        dry_run: Show ssh commands instead of running them
        quiet: Suppress progress messages

    Returns:
        Failed results for unparseable targets followed by creation results
    """
    targets = []
    invalid = []
    for entry in entries:
        local_port = entry.get("local_port")
        try:
            targets.append(parse_target(entry["spec"], settings.target_port, local_port))
        except InvalidInputError as e:
            click.secho(f"ERROR: {e}", fg="red", err=True)
            invalid.append({
                "host": entry["spec"],
                "target_port": None,
                "local_port": local_port,
                "pid": None,
                "url": None,
                "dry_run": dry_run,
                "success": False,
                "error": str(e),
            })

    if not targets:
        return invalid
    return invalid + create_tunnels(targets, settings, ledger, silent, dry_run, quiet)


def format_create_summary(results: List[Dict]) -> str:
    """Summarize a multi-target creation run."""
    created = [r for r in results if r["success"]]
    failed = [r for r in results if not r["success"]]

    lines = [f"Total: {len(results)} | Created: {len(created)} | Failed: {len(failed)}"]
    if failed:
        lines.append("Failed Targets:")
        for r in failed:
            lines.append(f"  {r['host']}: {r['error']}")
    return "\n".join(lines)
