"""iDRAC Tunnel Manager - CLI tool for SSH tunnels to Dell iDRAC web interfaces."""

__version__ = "0.1.0"

from .ledger import Ledger, TunnelRecord
from .manager import create_from_batch, create_tunnels, parse_target
from .registry import ActiveTunnel, TunnelRegistry

__all__ = [
    "ActiveTunnel",
    "Ledger",
    "TunnelRecord",
    "TunnelRegistry",
    "create_from_batch",
    "create_tunnels",
    "parse_target",
]
