"""HTTPS reachability check of an iDRAC web interface through a tunnel."""

from typing import Any, Dict, Optional

import requests
from urllib3.exceptions import InsecureRequestWarning


class IDRACProbe:
    """Checks that the iDRAC Redfish root answers on a tunnel's local port."""

    def __init__(
        self,
        port: int,
        original_host: Optional[str] = None,
        host: str = "127.0.0.1",
        timeout: float = 5.0,
    ) -> None:
        """
        Initialize the probe.

        Args:
            port: Local tunnel port
            original_host: iDRAC hostname sent as the Host header
            host: Local address the tunnel listens on
            timeout: Request timeout in seconds
        """
        self.port = port
        self.timeout = timeout
        self.base_url = f"https://{host}:{port}/redfish/v1"
        self.session = requests.Session()
        # Certificate is issued for the iDRAC name, not localhost
        self.session.verify = False
        requests.packages.urllib3.disable_warnings(InsecureRequestWarning)

        if original_host:
            self.session.headers.update({"Host": original_host})

    def check(self) -> Dict[str, Any]:
        """
        Request the Redfish service root.

        Any HTTP response, including 401, means the tunnel reaches the iDRAC.

        Returns:
            Dict with ``reachable``, ``status_code`` and ``error``
        """
        try:
            response = self.session.get(f"{self.base_url}/", timeout=self.timeout)
            return {"reachable": True, "status_code": response.status_code, "error": None}
        except requests.RequestException as e:
            return {"reachable": False, "status_code": None, "error": str(e)}

    def close(self) -> None:
        """Close the HTTP session."""
        self.session.close()

    def __enter__(self) -> "IDRACProbe":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
