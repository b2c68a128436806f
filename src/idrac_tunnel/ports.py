"""Local port probing and process table queries."""

import logging
import os
from typing import Dict, List, Optional, Tuple

import psutil

from .exceptions import PortExhaustedError


logger = logging.getLogger(__name__)

MAX_PORT = 65535


def _socket_table(kind: str = "inet") -> List[Tuple[int, str, Optional[int]]]:
    """
    Return the host's sockets as (local port, status, pid) entries.

    Falls back to a per-process scan where the system-wide table is
    restricted.
    """
    try:
        return [
            (conn.laddr.port, conn.status, conn.pid)
            for conn in psutil.net_connections(kind=kind)
            if conn.laddr
        ]
    except psutil.AccessDenied:
        # macOS needs root for the system-wide table
        logger.debug("System socket table denied, scanning processes")

    entries = []
    for proc in psutil.process_iter(["pid"]):
        try:
            for conn in proc.net_connections(kind=kind):
                if conn.laddr:
                    entries.append((conn.laddr.port, conn.status, proc.pid))
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
    return entries


def is_port_available(port: int) -> bool:
    """
    Check whether a local port is free.

    Any socket using ``port`` as its local address counts as occupied.
    Query failures are treated as "available".

    Args:
        port: Local port number

    Returns:
        True if nothing on this host holds the port
    """
    try:
        entries = _socket_table()
    except Exception as e:
        logger.debug(f"Port query for {port} failed: {e}")
        return True

    return all(local_port != port for local_port, _, _ in entries)


def find_available_port(start_port: int, max_attempts: int = 100) -> int:
    """
    Find the first available port at or above ``start_port``.

    Args:
        start_port: First port to probe
        max_attempts: Maximum number of ports to probe

    Returns:
        The smallest available port found

    Raises:
        PortExhaustedError: If every probed port is occupied
    """
    port = start_port
    for _ in range(max_attempts):
        if port > MAX_PORT:
            break
        if is_port_available(port):
            return port
        port += 1

    raise PortExhaustedError(
        f"Could not find available port after {max_attempts} attempts "
        f"starting from {start_port}"
    )


def listening_ports() -> Dict[int, Optional[int]]:
    """
    Snapshot of TCP ports in LISTEN state.

    Returns:
        Mapping of local port to owning process id (None when the
        owner is not visible to the current user)
    """
    owners: Dict[int, Optional[int]] = {}
    for port, status, pid in _socket_table(kind="tcp"):
        if status != psutil.CONN_LISTEN:
            continue
        # IPv4 and IPv6 listeners of one process share the port
        if owners.get(port) is None:
            owners[port] = pid
    return owners


def port_owner(port: int) -> Optional[int]:
    """Return the pid listening on ``port``, or None."""
    return listening_ports().get(port)


def process_name(pid: int) -> Optional[str]:
    """Return the executable name of ``pid``, or None if it is gone."""
    try:
        return psutil.Process(pid).name()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return None


def is_ssh_process(pid: int, ssh_binary: str = "ssh") -> bool:
    """Check whether ``pid`` runs the SSH client binary."""
    return process_name(pid) == os.path.basename(ssh_binary)


def is_process_running(pid: Optional[int]) -> bool:
    """Check whether ``pid`` is alive and not a zombie."""
    if not pid:
        return False
    try:
        process = psutil.Process(pid)
        return process.is_running() and process.status() != psutil.STATUS_ZOMBIE
    except psutil.AccessDenied:
        # exists, owned by another user
        return True
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return False
