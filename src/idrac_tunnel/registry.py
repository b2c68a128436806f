"""Reconciliation of recorded tunnels against live OS state."""

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import psutil

from .exceptions import (
    LedgerUnavailableError,
    NotOwnedError,
    TunnelError,
    TunnelNotFoundError,
)
from .ledger import Ledger, TunnelRecord
from .ports import is_process_running, is_ssh_process, listening_ports


logger = logging.getLogger(__name__)

UNKNOWN = "unknown"


@dataclass
class ActiveTunnel:
    """A live SSH forward, described with whatever the ledger still knows."""

    port: int
    process_id: int
    target_host: str = UNKNOWN
    target_port: Optional[int] = None
    created_at: Optional[datetime] = None
    jump_host_spec: str = UNKNOWN

    @property
    def url(self) -> str:
        return f"https://localhost:{self.port}"

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat() if self.created_at else None
        data["url"] = self.url
        return data


def merge_active(
    live: Mapping[int, int],
    records: Sequence[TunnelRecord],
) -> List[ActiveTunnel]:
    """
    Left-join live SSH listeners with ledger metadata.

    The live mapping decides which tunnels exist; ledger records only add
    description. Later records for a port override earlier ones.

    Args:
        live: Port to pid of SSH processes listening right now
        records: Ledger records in file order

    Returns:
        Active tunnels ordered by port
    """
    latest: Dict[int, TunnelRecord] = {}
    for record in records:
        latest[record.local_port] = record

    tunnels = []
    for port in sorted(live):
        record = latest.get(port)
        if record is None:
            tunnels.append(ActiveTunnel(port=port, process_id=live[port]))
            continue
        tunnels.append(ActiveTunnel(
            port=port,
            process_id=live[port],
            target_host=record.target_host,
            target_port=record.target_port,
            created_at=record.created_at,
            jump_host_spec=record.jump_host_spec,
        ))
    return tunnels


class TunnelRegistry:
    """Lists, closes and cleans up tunnels on this host."""

    def __init__(
        self,
        ledger: Ledger,
        port_range: Tuple[int, int],
        ssh_binary: str = "ssh",
        kill_timeout: float = 1.0,
    ) -> None:
        """
        Initialize the registry.

        Args:
            ledger: Tunnel state ledger
            port_range: Inclusive (start, end) window of local ports to scan
            ssh_binary: SSH client executable that owns tunnels
            kill_timeout: Seconds to wait after SIGTERM before SIGKILL
        """
        self.ledger = ledger
        self.port_range = port_range
        self.ssh_binary = ssh_binary
        self.kill_timeout = kill_timeout

    def _live_ssh_ports(self, port_range: Tuple[int, int]) -> Dict[int, int]:
        start, end = port_range
        live = {}
        for port, pid in listening_ports().items():
            if not start <= port <= end or pid is None:
                continue
            if is_ssh_process(pid, self.ssh_binary):
                live[port] = pid
            else:
                logger.debug(f"Port {port} held by non-ssh process {pid}")
        return live

    def list_active(self, port_range: Optional[Tuple[int, int]] = None) -> List[ActiveTunnel]:
        """Return SSH tunnels currently listening in the port range."""
        live = self._live_ssh_ports(port_range or self.port_range)
        if not live:
            return []
        return merge_active(live, self.ledger.records())

    def close_one(self, port: int) -> int:
        """
        Close the tunnel listening on ``port``.

        Sends SIGTERM, then SIGKILL if the process outlives ``kill_timeout``.
        The port's ledger records are removed either way.

        Returns:
            Process id that was terminated

        Raises:
            TunnelNotFoundError: If nothing listens on the port
            NotOwnedError: If the listener is not an SSH client
        """
        owners = listening_ports()
        if port not in owners:
            raise TunnelNotFoundError(f"No active tunnel found on port {port}")

        pid = owners[port]
        if pid is None:
            raise NotOwnedError(
                f"Process on port {port} belongs to another user"
            )
        if not is_ssh_process(pid, self.ssh_binary):
            raise NotOwnedError(
                f"Process on port {port} (PID: {pid}) is not an SSH tunnel"
            )

        logger.info(f"Closing tunnel on port {port} (PID: {pid})")
        try:
            self._terminate(pid)
        finally:
            removed = self.ledger.remove(port)
            logger.debug(f"Removed {removed} ledger record(s) for port {port}")

        logger.info(f"Tunnel on port {port} closed")
        return pid

    def _terminate(self, pid: int) -> None:
        try:
            process = psutil.Process(pid)
            process.terminate()
            try:
                process.wait(timeout=self.kill_timeout)
            except psutil.TimeoutExpired:
                logger.warning(f"Process {pid} still running, sending SIGKILL")
                process.kill()
        except psutil.NoSuchProcess:
            logger.debug(f"Process {pid} already exited")
        except psutil.AccessDenied as e:
            raise TunnelError(f"Failed to close tunnel (PID: {pid}): {e}") from e

    def close_all(
        self,
        confirm: Optional[Callable[[List[ActiveTunnel]], bool]] = None,
        port_range: Optional[Tuple[int, int]] = None,
    ) -> Dict:
        """
        Close every active tunnel in the port range.

        Args:
            confirm: Called with the tunnels about to close; returning
                False cancels. None closes without asking.
            port_range: Overrides the registry's range

        Returns:
            Summary dict with ``tunnels``, ``closed``, ``failed``,
            ``errors``, ``cancelled`` and ``success`` keys
        """
        tunnels = self.list_active(port_range)
        summary = {
            "tunnels": tunnels,
            "closed": 0,
            "failed": 0,
            "errors": [],
            "cancelled": False,
            "success": True,
        }
        if not tunnels:
            logger.info("No active SSH tunnels to close")
            return summary

        if confirm is not None and not confirm(tunnels):
            logger.info("Close all cancelled")
            summary["cancelled"] = True
            return summary

        for tunnel in tunnels:
            try:
                self.close_one(tunnel.port)
                summary["closed"] += 1
            except LedgerUnavailableError:
                raise
            except TunnelError as e:
                summary["failed"] += 1
                summary["errors"].append(str(e))
                logger.error(f"Failed to close tunnel on port {tunnel.port}: {e}")

        summary["success"] = summary["failed"] == 0
        return summary

    def clean_stale(self) -> int:
        """
        Drop ledger records whose process is no longer running.

        Returns:
            Number of records removed
        """
        removed = self.ledger.compact(
            lambda record: is_process_running(record.process_id)
        )
        if removed:
            logger.info(f"Cleaned {removed} stale record(s)")
        else:
            logger.info("No stale records found")
        return removed


def format_status_output(tunnels: List[ActiveTunnel], output_format: str = "text") -> str:
    """
    Format active tunnels for display.

    Args:
        tunnels: Active tunnels from ``list_active``
        output_format: "text" or "json"

    Returns:
        Formatted string output
    """
    if output_format.lower() == "json":
        return json.dumps([tunnel.to_dict() for tunnel in tunnels], indent=2)

    row = "{:<6} {:<6} {:<25} {:<6} {:<15} {:<20} {}"
    lines = [
        row.format("PORT", "PID", "TARGET", "T-PORT", "CREATED", "JUMP HOST", "URL"),
        "=" * 110,
    ]
    for tunnel in tunnels:
        target = tunnel.target_host
        if len(target) > 24:
            target = target[:21] + "..."
        created = tunnel.created_at.strftime("%m/%d %H:%M") if tunnel.created_at else UNKNOWN
        target_port = tunnel.target_port if tunnel.target_port is not None else UNKNOWN
        lines.append(row.format(
            tunnel.port,
            tunnel.process_id,
            target,
            target_port,
            created,
            tunnel.jump_host_spec,
            tunnel.url,
        ))
    return "\n".join(lines)
