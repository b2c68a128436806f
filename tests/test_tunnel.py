"""Tests for SSH tunnel launching."""

import paramiko
import pytest
from unittest.mock import MagicMock, Mock, patch

from idrac_tunnel.exceptions import LaunchFailedError
from idrac_tunnel.tunnel import SSHTunnel, check_jumphost, jump_host_spec


def make_tunnel(**kwargs):
    params = dict(
        jumphost="bastion.example.com",
        idrac_host="idrac1.example.com",
        local_port=8443,
        idrac_port=443,
        jumphost_username="admin",
        settle_delay=0,
    )
    params.update(kwargs)
    return SSHTunnel(**params)


def test_tunnel_initialization():
    """Test tunnel initializes with correct parameters."""
    tunnel = make_tunnel()

    assert tunnel.jumphost == "bastion.example.com"
    assert tunnel.idrac_host == "idrac1.example.com"
    assert tunnel.idrac_port == 443
    assert tunnel.destination == "admin@bastion.example.com"
    assert tunnel.pid is None


def test_jump_host_spec_without_user():
    """Test destination falls back to bare jumphost."""
    assert jump_host_spec("bastion") == "bastion"
    assert jump_host_spec("bastion", "admin") == "admin@bastion"


def test_tunnel_command():
    """Test ssh invocation backgrounds, forwards and runs no command."""
    assert make_tunnel().command == [
        "ssh",
        "-f",
        "-N",
        "-o", "ExitOnForwardFailure=yes",
        "-L", "8443:idrac1.example.com:443",
        "admin@bastion.example.com",
    ]


@patch("idrac_tunnel.tunnel.subprocess.run")
def test_dry_run_spawns_nothing(mock_run):
    """Test dry run returns no pid and never runs ssh."""
    assert make_tunnel().start(dry_run=True) is None
    mock_run.assert_not_called()


@patch("idrac_tunnel.tunnel.time.sleep")
@patch("idrac_tunnel.tunnel.is_ssh_process")
@patch("idrac_tunnel.tunnel.port_owner")
@patch("idrac_tunnel.tunnel.subprocess.run")
def test_start_uses_port_listener(mock_run, mock_owner, mock_is_ssh, mock_sleep):
    """Test pid comes from the ssh process listening on the local port."""
    mock_run.return_value = Mock(returncode=0)
    mock_owner.return_value = 5555
    mock_is_ssh.return_value = True

    tunnel = make_tunnel(settle_delay=1.0)
    pid = tunnel.start()

    assert pid == 5555
    assert tunnel.pid == 5555
    mock_sleep.assert_called_once_with(1.0)
    mock_owner.assert_called_once_with(8443)


@patch("idrac_tunnel.tunnel.psutil.process_iter")
@patch("idrac_tunnel.tunnel.port_owner")
@patch("idrac_tunnel.tunnel.subprocess.run")
def test_start_falls_back_to_process_table(mock_run, mock_owner, mock_process_iter):
    """Test command line scan finds the tunnel when no listener is visible."""
    mock_run.return_value = Mock(returncode=0)
    mock_owner.return_value = None

    other = MagicMock()
    other.info = {
        "pid": 100,
        "name": "ssh",
        "cmdline": ["ssh", "-f", "-N", "-L", "8444:idrac1.example.com:443", "bastion"],
    }
    match = MagicMock()
    match.info = {
        "pid": 200,
        "name": "ssh",
        "cmdline": ["ssh", "-f", "-N", "-L", "8443:idrac1.example.com:443", "bastion"],
    }
    unrelated = MagicMock()
    unrelated.info = {"pid": 300, "name": "bash", "cmdline": ["bash"]}
    mock_process_iter.return_value = [other, unrelated, match]

    assert make_tunnel().start() == 200


@patch("idrac_tunnel.tunnel.subprocess.run")
def test_start_ssh_failure(mock_run):
    """Test non-zero ssh exit raises LaunchFailedError."""
    mock_run.return_value = Mock(returncode=255)

    with pytest.raises(LaunchFailedError, match="exit status 255"):
        make_tunnel().start()


@patch("idrac_tunnel.tunnel.subprocess.run")
def test_start_missing_binary(mock_run):
    """Test a missing ssh binary raises LaunchFailedError."""
    mock_run.side_effect = FileNotFoundError("ssh")

    with pytest.raises(LaunchFailedError):
        make_tunnel().start()


@patch("idrac_tunnel.tunnel.psutil.process_iter")
@patch("idrac_tunnel.tunnel.port_owner")
@patch("idrac_tunnel.tunnel.subprocess.run")
def test_start_pid_not_found(mock_run, mock_owner, mock_process_iter):
    """Test success without a discoverable pid is treated as failure."""
    mock_run.return_value = Mock(returncode=0)
    mock_owner.return_value = None
    mock_process_iter.return_value = []

    with pytest.raises(LaunchFailedError, match="couldn't find PID"):
        make_tunnel().start()


@patch("idrac_tunnel.tunnel.paramiko.SSHClient")
def test_check_jumphost_success(mock_client_class, tmp_path):
    """Test connectivity check connects with keys only and closes."""
    mock_client = mock_client_class.return_value

    assert check_jumphost(
        "bastion.example.com", "admin", ssh_config_path=str(tmp_path / "none")
    ) is True

    kwargs = mock_client.connect.call_args[1]
    assert kwargs["hostname"] == "bastion.example.com"
    assert kwargs["username"] == "admin"
    assert kwargs["timeout"] == 10.0
    mock_client.close.assert_called_once()


@patch("idrac_tunnel.tunnel.paramiko.SSHClient")
def test_check_jumphost_resolves_ssh_config_alias(mock_client_class, tmp_path):
    """Test ~/.ssh/config aliases resolve to host, port and user."""
    config = tmp_path / "config"
    config.write_text(
        "Host jumphost\n"
        "    HostName bastion.internal\n"
        "    Port 2222\n"
        "    User ops\n"
    )

    check_jumphost("jumphost", ssh_config_path=str(config))

    kwargs = mock_client_class.return_value.connect.call_args[1]
    assert kwargs["hostname"] == "bastion.internal"
    assert kwargs["port"] == 2222
    assert kwargs["username"] == "ops"


@patch("idrac_tunnel.tunnel.paramiko.SSHClient")
def test_check_jumphost_failure(mock_client_class, tmp_path):
    """Test authentication failure reports False."""
    mock_client_class.return_value.connect.side_effect = paramiko.AuthenticationException("denied")

    assert check_jumphost("bastion", ssh_config_path=str(tmp_path / "none")) is False
    mock_client_class.return_value.close.assert_called_once()
