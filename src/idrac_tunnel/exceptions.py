"""Exceptions raised by the tunnel manager."""


class TunnelError(Exception):
    """Base exception for all tunnel manager errors."""


class InvalidInputError(TunnelError):
    """Raised for a malformed host specification or port."""


class PortExhaustedError(TunnelError):
    """Raised when no free local port is found within the attempt budget."""


class LaunchFailedError(TunnelError):
    """Raised when the SSH client fails or its process cannot be found."""


class TunnelNotFoundError(TunnelError):
    """Raised when no active tunnel is bound to the requested port."""


class NotOwnedError(TunnelError):
    """Raised when the process holding a port is not an SSH tunnel."""


class LedgerCorruptError(TunnelError):
    """Raised for an unreadable ledger line."""


class LedgerUnavailableError(TunnelError):
    """Raised when the ledger file cannot be read or written at all."""


class ConfigurationError(TunnelError):
    """Raised when configuration values are out of range."""
