"""
Python client helper for the MPC bridge server.
Lets a simulator harness (or the closed-loop tool) post telemetry over HTTP.
"""

import requests
from typing import Optional, Dict, Sequence


class MPCBridgeClient:
    """Client for communicating with the MPC bridge server."""

    def __init__(self, base_url: str = "http://localhost:4567", vehicle_id: str = "default",
                 timeout: float = 1.0):
        """
        Initialize MPC bridge client.

        Args:
            base_url: Base URL of the bridge server
            vehicle_id: Session key on the server (one warm start per vehicle)
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.vehicle_id = vehicle_id
        self.timeout = timeout
        self.session = requests.Session()

    def _build_telemetry_payload(
        self,
        waypoints_x: Sequence[float],
        waypoints_y: Sequence[float],
        x: float,
        y: float,
        psi: float,
        speed: float,
        steering_angle: float = 0.0,
        throttle: float = 0.0,
    ) -> dict:
        return {
            "ptsx": [float(v) for v in waypoints_x],
            "ptsy": [float(v) for v in waypoints_y],
            "x": float(x),
            "y": float(y),
            "psi": float(psi),
            "speed": float(speed),
            "steering_angle": float(steering_angle),
            "throttle": float(throttle),
        }

    def send_telemetry(
        self,
        waypoints_x: Sequence[float],
        waypoints_y: Sequence[float],
        x: float,
        y: float,
        psi: float,
        speed: float,
        steering_angle: float = 0.0,
        throttle: float = 0.0,
    ) -> Optional[Dict]:
        """
        Run one control cycle on the server.

        Args:
            waypoints_x, waypoints_y: Reference waypoints (world frame)
            x, y, psi: Vehicle pose (world frame, radians)
            speed: Vehicle speed
            steering_angle: Last applied steering
            throttle: Last applied throttle

        Returns:
            Steer command dictionary or None if the request failed
        """
        try:
            payload = self._build_telemetry_payload(
                waypoints_x, waypoints_y, x, y, psi, speed,
                steering_angle=steering_angle, throttle=throttle,
            )
            response = self.session.post(
                f"{self.base_url}/api/vehicles/{self.vehicle_id}/telemetry",
                json=payload,
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            print(f"Error sending telemetry: {e}")
            return None

    def get_session_stats(self) -> Optional[Dict]:
        """Cycle statistics for this vehicle, or None if the server has no session."""
        try:
            response = self.session.get(
                f"{self.base_url}/api/vehicles/{self.vehicle_id}", timeout=self.timeout
            )
            response.raise_for_status()
            return response.json()
        except requests.RequestException:
            return None

    def close_session(self) -> bool:
        """
        Drop this vehicle's session on the server.

        Returns:
            True if a session was closed, False otherwise
        """
        try:
            response = self.session.delete(
                f"{self.base_url}/api/vehicles/{self.vehicle_id}", timeout=self.timeout
            )
            response.raise_for_status()
            return True
        except requests.RequestException:
            return False

    def health_check(self) -> bool:
        """
        Check if bridge server is healthy.

        Returns:
            True if healthy, False otherwise
        """
        try:
            response = self.session.get(f"{self.base_url}/api/health", timeout=self.timeout)
            response.raise_for_status()
            return True
        except requests.RequestException:
            return False


if __name__ == "__main__":
    client = MPCBridgeClient()

    if client.health_check():
        print("Bridge server is healthy")
        command = client.send_telemetry(
            [-32.16, -43.49, -61.09, -78.29],
            [113.36, 105.94, 92.88, 78.73],
            -40.62, 108.73, 3.733651, 0.0,
        )
        print(f"Steer command: {command}")
    else:
        print("Bridge server is not available")
