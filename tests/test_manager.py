"""Tests for tunnel creation orchestration."""

import pytest
from unittest.mock import patch

from idrac_tunnel.config import Settings
from idrac_tunnel.exceptions import (
    InvalidInputError,
    LaunchFailedError,
    LedgerUnavailableError,
)
from idrac_tunnel.ledger import Ledger
from idrac_tunnel.manager import (
    create_from_batch,
    create_from_specs,
    create_single_tunnel,
    create_tunnels,
    format_create_summary,
    load_targets_from_batch,
    parse_target,
)


@pytest.fixture
def settings(tmp_path):
    return Settings(jump_host="bastion.example.com", user="admin", state_file=str(tmp_path / "state"))


@pytest.fixture
def ledger(settings):
    return Ledger(settings.state_file)


@pytest.fixture(autouse=True)
def no_delay():
    with patch("idrac_tunnel.manager.time.sleep") as mock_sleep:
        yield mock_sleep


def test_parse_target_default_port():
    """Test a bare host uses the default target port."""
    assert parse_target("idrac1.example.com") == {
        "host": "idrac1.example.com",
        "target_port": 443,
        "local_port": None,
    }


def test_parse_target_with_port():
    """Test host:port notation."""
    target = parse_target("idrac2.example.com:8444", default_port=443, local_port=9000)

    assert target["host"] == "idrac2.example.com"
    assert target["target_port"] == 8444
    assert target["local_port"] == 9000


@pytest.mark.parametrize("spec", ["", "bad_host!", "-idrac.example.com", "idrac.example.com:70000"])
def test_parse_target_invalid(spec):
    """Test malformed targets raise InvalidInputError."""
    with pytest.raises(InvalidInputError):
        parse_target(spec)


def test_parse_target_invalid_local_port():
    """Test a privileged local port is rejected."""
    with pytest.raises(InvalidInputError):
        parse_target("idrac1.example.com", local_port=80)


def test_load_targets_from_batch(tmp_path):
    """Test comments, blank lines and --port tokens in batch files."""
    batch = tmp_path / "tunnels.txt"
    batch.write_text(
        "# Lines starting with # are comments\n"
        "\n"
        "idrac1.example.com\n"
        "   # indented comment\n"
        "idrac2.example.com:8444  # Custom target port\n"
        "idrac3.example.com --port 9000  # Custom local port\n"
    )

    assert load_targets_from_batch(str(batch)) == [
        {"spec": "idrac1.example.com", "local_port": None},
        {"spec": "idrac2.example.com:8444", "local_port": None},
        {"spec": "idrac3.example.com", "local_port": 9000},
    ]


def test_load_targets_missing_file(tmp_path):
    """Test a missing batch file raises FileNotFoundError."""
    with pytest.raises(FileNotFoundError):
        load_targets_from_batch(str(tmp_path / "missing.txt"))


@patch("idrac_tunnel.manager.SSHTunnel")
@patch("idrac_tunnel.manager.find_available_port")
def test_create_single_tunnel_records_ledger(mock_find, mock_tunnel_class, settings, ledger):
    """Test an auto-assigned tunnel is recorded and reported."""
    mock_find.return_value = 8444
    mock_tunnel_class.return_value.start.return_value = 4321

    result = create_single_tunnel(parse_target("idrac1.example.com"), settings, ledger, quiet=True)

    assert result["success"] is True
    assert result["local_port"] == 8444
    assert result["url"] == "https://localhost:8444"
    mock_find.assert_called_once_with(8443)

    line = ledger.path.read_text().strip()
    fields = line.split("|")
    assert fields[:4] == ["8444", "idrac1.example.com", "443", "4321"]
    assert fields[5] == "admin@bastion.example.com"


@patch("idrac_tunnel.manager.SSHTunnel")
@patch("idrac_tunnel.ports.is_port_available")
def test_auto_port_skips_occupied_base(mock_probe, mock_tunnel_class, settings, ledger, capsys):
    """Test 8443 occupied by another process yields 8444."""
    mock_probe.side_effect = lambda port: port != 8443
    mock_tunnel_class.return_value.start.return_value = 777

    result = create_single_tunnel(parse_target("idrac1.example.com"), settings, ledger)

    assert result["local_port"] == 8444
    assert ledger.lookup(8444).process_id == 777
    assert "https://localhost:8444" in capsys.readouterr().out


@patch("idrac_tunnel.manager.SSHTunnel")
@patch("idrac_tunnel.manager.find_available_port")
@patch("idrac_tunnel.manager.is_port_available")
def test_requested_port_fallback(mock_available, mock_find, mock_tunnel_class, settings, ledger):
    """Test a busy requested port falls back to probing from it."""
    mock_available.return_value = False
    mock_find.return_value = 9001
    mock_tunnel_class.return_value.start.return_value = 1

    result = create_single_tunnel(
        parse_target("idrac1.example.com", local_port=9000), settings, ledger, quiet=True
    )

    assert result["local_port"] == 9001
    mock_find.assert_called_once_with(9000)


@patch("idrac_tunnel.manager.SSHTunnel")
@patch("idrac_tunnel.manager.find_available_port")
def test_dry_run_records_nothing(mock_find, mock_tunnel_class, settings, ledger):
    """Test dry run succeeds without touching the ledger."""
    mock_find.return_value = 8443
    mock_tunnel_class.return_value.start.return_value = None
    mock_tunnel_class.return_value.command = ["ssh", "-f"]

    result = create_single_tunnel(
        parse_target("idrac1.example.com"), settings, ledger, dry_run=True, quiet=True
    )

    assert result["success"] is True
    mock_tunnel_class.return_value.start.assert_called_once_with(dry_run=True)
    assert not ledger.path.exists()


@patch("idrac_tunnel.manager.SSHTunnel")
@patch("idrac_tunnel.manager.find_available_port")
def test_launch_failure_is_captured(mock_find, mock_tunnel_class, settings, ledger):
    """Test launch failure becomes a failed result, not an exception."""
    mock_find.return_value = 8443
    mock_tunnel_class.return_value.start.side_effect = LaunchFailedError("auth failed")

    result = create_single_tunnel(parse_target("idrac1.example.com"), settings, ledger, quiet=True)

    assert result["success"] is False
    assert result["error"] == "auth failed"
    assert not ledger.path.exists()


@patch("idrac_tunnel.manager.SSHTunnel")
@patch("idrac_tunnel.manager.find_available_port")
def test_ledger_failure_is_fatal(mock_find, mock_tunnel_class, settings):
    """Test an unwritable ledger aborts the operation."""
    mock_find.return_value = 8443
    mock_tunnel_class.return_value.start.return_value = 1

    with patch.object(Ledger, "append", side_effect=LedgerUnavailableError("disk gone")):
        with pytest.raises(LedgerUnavailableError):
            create_single_tunnel(
                parse_target("idrac1.example.com"), settings, Ledger(settings.state_file), quiet=True
            )


@patch("idrac_tunnel.manager.check_jumphost")
@patch("idrac_tunnel.manager.create_single_tunnel")
def test_create_tunnels_continues_after_failure(mock_create, mock_check, settings, ledger, no_delay):
    """Test every target is attempted and delays separate them."""
    mock_check.return_value = True
    mock_create.side_effect = [
        {"host": "a", "success": True, "error": None},
        {"host": "b", "success": False, "error": "boom"},
        {"host": "c", "success": True, "error": None},
    ]
    targets = [parse_target(h) for h in ("a.example.com", "b.example.com", "c.example.com")]

    results = create_tunnels(targets, settings, ledger, quiet=True)

    assert [r["success"] for r in results] == [True, False, True]
    mock_check.assert_called_once_with("bastion.example.com", "admin")
    assert no_delay.call_count == 2


@patch("idrac_tunnel.manager.check_jumphost")
@patch("idrac_tunnel.manager.create_single_tunnel")
def test_precheck_rules(mock_create, mock_check, settings, ledger):
    """Test single silent target skips the check, multiple targets always check."""
    mock_create.return_value = {"host": "a", "success": True, "error": None}
    one = [parse_target("a.example.com")]
    two = one + [parse_target("b.example.com")]

    create_tunnels(one, settings, ledger, silent=True, quiet=True)
    mock_check.assert_not_called()

    create_tunnels(two, settings, ledger, silent=True, quiet=True)
    assert mock_check.call_count == 1

    create_tunnels(one, settings, ledger, quiet=True)
    assert mock_check.call_count == 2


@patch("idrac_tunnel.manager.check_jumphost")
@patch("idrac_tunnel.manager.SSHTunnel")
@patch("idrac_tunnel.manager.find_available_port")
def test_create_from_batch_single_target(mock_find, mock_tunnel_class, mock_check, settings, ledger, tmp_path):
    """Test a batch with one target and a comment creates exactly one tunnel."""
    mock_find.return_value = 8443
    mock_tunnel_class.return_value.start.return_value = 99
    batch = tmp_path / "batch.txt"
    batch.write_text("idrac2.example.com:8444 # custom\n# only a comment\n")

    results = create_from_batch(str(batch), settings, ledger, quiet=True)

    assert len(results) == 1
    kwargs = mock_tunnel_class.call_args[1]
    assert kwargs["idrac_host"] == "idrac2.example.com"
    assert kwargs["idrac_port"] == 8444
    assert ledger.lookup(8443).target_port == 8444


@patch("idrac_tunnel.manager.create_tunnels")
def test_create_from_specs_reports_invalid(mock_create, settings, ledger):
    """Test malformed targets become failed results and the rest are created."""
    mock_create.return_value = [{"host": "idrac1.example.com", "success": True, "error": None}]
    entries = [
        {"spec": "bad_host!", "local_port": None},
        {"spec": "idrac1.example.com", "local_port": 9000},
    ]

    results = create_from_specs(entries, settings, ledger, quiet=True)

    assert [r["success"] for r in results] == [False, True]
    assert results[0]["error"] == "Invalid FQDN format: bad_host!"
    targets = mock_create.call_args[0][0]
    assert targets == [{"host": "idrac1.example.com", "target_port": 443, "local_port": 9000}]


@patch("idrac_tunnel.manager.create_tunnels")
def test_create_from_specs_all_invalid(mock_create, settings, ledger):
    """Test nothing is launched when every target is malformed."""
    results = create_from_specs([{"spec": "bad_host!"}], settings, ledger, quiet=True)

    assert len(results) == 1 and results[0]["success"] is False
    mock_create.assert_not_called()


def test_create_from_batch_empty(settings, ledger, tmp_path):
    """Test a batch without targets is an error."""
    batch = tmp_path / "batch.txt"
    batch.write_text("# nothing here\n\n")

    with pytest.raises(InvalidInputError):
        create_from_batch(str(batch), settings, ledger, quiet=True)


def test_format_create_summary():
    """Test summary lists failed targets."""
    results = [
        {"host": "a.example.com", "success": True, "error": None},
        {"host": "b.example.com", "success": False, "error": "auth failed"},
    ]

    summary = format_create_summary(results)

    assert "Total: 2 | Created: 1 | Failed: 1" in summary
    assert "b.example.com: auth failed" in summary
