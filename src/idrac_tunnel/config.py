"""Settings and the ~/.ssh-tunnel-config file."""

import logging
import re
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Optional, Tuple

from .exceptions import ConfigurationError


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "~/.ssh-tunnel-config"
DEFAULT_STATE_FILE = "~/.ssh-tunnels-state"
DEFAULT_LOG_FILE = "~/.ssh-tunnel.log"

# Config file key -> Settings attribute
CONFIG_KEYS = {
    "JUMP_HOST": "jump_host",
    "USER": "user",
    "BASE_PORT": "base_port",
    "TARGET_PORT": "target_port",
    "PORT_RANGE": "port_range",
}


@dataclass
class Settings:
    """Effective configuration for one invocation."""

    jump_host: str = "jumphost"
    user: str = "username"
    base_port: int = 8443
    target_port: int = 443
    port_range: Tuple[int, int] = (8443, 8500)
    state_file: str = DEFAULT_STATE_FILE
    log_file: str = DEFAULT_LOG_FILE
    ssh_binary: str = "ssh"

    def validate(self) -> "Settings":
        """
        Check port values.

        Raises:
            ConfigurationError: If any port is out of range
        """
        if not 1024 <= self.base_port <= 65535:
            raise ConfigurationError(
                f"Invalid base port: {self.base_port} (must be between 1024-65535)"
            )
        if not 1 <= self.target_port <= 65535:
            raise ConfigurationError(
                f"Invalid target port: {self.target_port} (must be between 1-65535)"
            )
        start, end = self.port_range
        if not 1024 <= start <= end <= 65535:
            raise ConfigurationError(
                f"Invalid port range: {start}-{end} "
                "(must be START-END within 1024-65535)"
            )
        return self

    def merged(self, **overrides: Optional[object]) -> "Settings":
        """Return a copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def parse_port_range(value: str) -> Tuple[int, int]:
    """
    Parse ``START-END``.

    Raises:
        ConfigurationError: If the format is wrong
    """
    match = re.match(r"^\s*(\d+)-(\d+)\s*$", str(value))
    if not match:
        raise ConfigurationError(f"Invalid port range format: {value}")
    return int(match.group(1)), int(match.group(2))


def _parse_config_lines(text: str) -> Dict[str, str]:
    values = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        values[key.strip()] = value.strip().strip('"').strip("'")
    return values


def load_config(path: str = DEFAULT_CONFIG_FILE, base: Optional[Settings] = None) -> Settings:
    """
    Load settings from a config file.

    Args:
        path: Config file path; a missing file yields the defaults
        base: Settings to start from (default: built-in defaults)

    Returns:
        Settings with file values applied

    Raises:
        ConfigurationError: If the file cannot be read or a numeric value
            cannot be parsed
    """
    settings = base or Settings()
    config_path = Path(path).expanduser()
    if not config_path.exists():
        return settings

    try:
        text = config_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigurationError(f"Cannot read config file {config_path}: {e}") from e

    values = _parse_config_lines(text)
    overrides = {}
    for key, value in values.items():
        attr = CONFIG_KEYS.get(key)
        if attr is None:
            logger.debug(f"Ignoring unknown config key {key} in {config_path}")
            continue
        if attr == "port_range":
            overrides[attr] = parse_port_range(value)
        elif attr in ("base_port", "target_port"):
            try:
                overrides[attr] = int(value)
            except ValueError as e:
                raise ConfigurationError(f"Invalid {key} in {config_path}: {value}") from e
        else:
            overrides[attr] = value

    logger.debug(f"Configuration loaded from {config_path}")
    return settings.merged(**overrides)


def save_config(settings: Settings, path: str = DEFAULT_CONFIG_FILE) -> Path:
    """Write the user-editable settings to the config file."""
    config_path = Path(path).expanduser()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    start, end = settings.port_range
    config_path.write_text(
        "# SSH Tunnel Configuration\n"
        f'JUMP_HOST="{settings.jump_host}"\n'
        f'USER="{settings.user}"\n'
        f"BASE_PORT={settings.base_port}\n"
        f"TARGET_PORT={settings.target_port}\n"
        f"PORT_RANGE={start}-{end}\n",
        encoding="utf-8",
    )
    logger.info(f"Configuration saved to {config_path}")
    return config_path
