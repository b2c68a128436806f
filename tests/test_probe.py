"""Tests for the iDRAC web interface probe."""

import requests
from unittest.mock import Mock, patch

from idrac_tunnel.probe import IDRACProbe


def test_probe_initialization():
    """Test probe targets the tunnel's local Redfish root."""
    probe = IDRACProbe(8443, original_host="idrac1.example.com")

    assert probe.base_url == "https://127.0.0.1:8443/redfish/v1"
    assert probe.session.verify is False
    assert probe.session.headers["Host"] == "idrac1.example.com"


@patch("idrac_tunnel.probe.requests.Session")
def test_probe_reachable(mock_session_class):
    """Test any HTTP answer counts as reachable."""
    mock_session = Mock()
    mock_session.headers = {}
    mock_session.get.return_value = Mock(status_code=401)
    mock_session_class.return_value = mock_session

    with IDRACProbe(8443) as probe:
        result = probe.check()

    assert result == {"reachable": True, "status_code": 401, "error": None}
    mock_session.get.assert_called_once_with(
        "https://127.0.0.1:8443/redfish/v1/", timeout=5.0
    )
    mock_session.close.assert_called_once()


@patch("idrac_tunnel.probe.requests.Session")
def test_probe_unreachable(mock_session_class):
    """Test connection errors are reported, not raised."""
    mock_session = Mock()
    mock_session.headers = {}
    mock_session.get.side_effect = requests.ConnectionError("refused")
    mock_session_class.return_value = mock_session

    result = IDRACProbe(8443).check()

    assert result["reachable"] is False
    assert "refused" in result["error"]
