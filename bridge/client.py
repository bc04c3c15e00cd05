"""
Python client helper for the MPC tracking bridge.
Used by offline tooling to push recorded telemetry through a running server.
"""

import requests
from typing import Optional, Dict

from data.formats.data_format import TelemetryFrame


class TrackingBridgeClient:
    """Client for the tracking bridge HTTP API."""

    def __init__(self, base_url: str = "http://localhost:4567", timeout: float = 2.0):
        """
        Initialize bridge client.

        Args:
            base_url: Base URL of the bridge server
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()

    def health_check(self) -> bool:
        """
        Check that the server is up.

        Returns:
            True if the server reports healthy
        """
        try:
            response = self.session.get(f"{self.base_url}/api/health", timeout=self.timeout)
            response.raise_for_status()
            return response.json().get("status") == "healthy"
        except requests.RequestException:
            return False

    def get_config(self) -> Optional[Dict]:
        """
        Get the server's active configuration.

        Returns:
            Configuration dictionary or None if not available
        """
        try:
            response = self.session.get(f"{self.base_url}/api/config", timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.RequestException:
            return None

    def _build_telemetry_payload(self, frame: TelemetryFrame) -> dict:
        return {
            "ptsx": [float(v) for v in frame.ptsx],
            "ptsy": [float(v) for v in frame.ptsy],
            "x": float(frame.x),
            "y": float(frame.y),
            "psi": float(frame.psi),
            "speed": float(frame.speed),
            "steering_angle": float(frame.steering_angle),
            "throttle": float(frame.throttle),
        }

    def send_telemetry(self, frame: TelemetryFrame) -> Optional[Dict]:
        """
        Run one stateless tick on the server.

        Args:
            frame: Telemetry to process

        Returns:
            Tick response (status, steer payload, errors) or None on failure
        """
        try:
            response = self.session.post(
                f"{self.base_url}/api/telemetry",
                json=self._build_telemetry_payload(frame),
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            print(f"Error sending telemetry: {e}")
            return None

    def close(self):
        self.session.close()
