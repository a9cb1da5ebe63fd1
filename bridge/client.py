"""
Python client helper for the MPC bridge server.
Lets tools and test harnesses drive the controller over REST.
"""

import requests
from typing import Dict, Optional, Sequence


class ControllerBridgeClient:
    """Client for communicating with the MPC bridge server."""

    def __init__(self, base_url: str = "http://localhost:4567", timeout: float = 0.5):
        """
        Initialize bridge client.

        Args:
            base_url: Base URL of the bridge server
            timeout: Per-request timeout (seconds)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()

    def _build_telemetry(
        self,
        ptsx: Sequence[float],
        ptsy: Sequence[float],
        x: float,
        y: float,
        psi: float,
        speed: float,
    ) -> dict:
        return {
            "ptsx": [float(v) for v in ptsx],
            "ptsy": [float(v) for v in ptsy],
            "x": float(x),
            "y": float(y),
            "psi": float(psi),
            "speed": float(speed),
        }

    def send_telemetry(
        self,
        ptsx: Sequence[float],
        ptsy: Sequence[float],
        x: float,
        y: float,
        psi: float,
        speed: float,
    ) -> Optional[Dict]:
        """
        Send one telemetry message and get the resulting command.

        Returns:
            Steer command dictionary or None if the server could not be reached
        """
        payload = self._build_telemetry(ptsx, ptsy, x, y, psi, speed)
        try:
            response = self.session.post(
                f"{self.base_url}/api/telemetry", json=payload, timeout=self.timeout
            )
            response.raise_for_status()
            return response.json()
        except requests.exceptions.Timeout:
            # A solve that outlives the timeout is treated like a dropped cycle
            return None
        except requests.RequestException:
            return None

    def _get_json(self, path: str) -> Optional[Dict]:
        try:
            response = self.session.get(f"{self.base_url}{path}", timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.RequestException:
            # Connection errors, timeouts and HTTP errors all mean "nothing available"
            return None

    def get_control_command(self) -> Optional[Dict]:
        """Latest command issued by the controller."""
        return self._get_json("/api/vehicle/control")

    def get_trajectory(self) -> Optional[Dict]:
        """Latest predicted trajectory and reference waypoints."""
        return self._get_json("/api/trajectory")

    def health_check(self) -> bool:
        """True when the server answers and has a controller installed."""
        data = self._get_json("/api/health")
        return bool(data and data.get("status") == "healthy" and data.get("has_controller"))

    def close(self) -> None:
        self.session.close()
