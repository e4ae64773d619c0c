"""
Tests for the bridge HTTP client.
"""

import requests

from bridge.client import MPCBridgeClient


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)

    def json(self):
        return self._payload


def test_build_telemetry_payload_uses_simulator_keys():
    client = MPCBridgeClient("http://localhost:4567/")
    payload = client._build_telemetry_payload(
        [0, 25], [0, 5], x=10, y=2, psi=0.1, speed=20, steering_angle=-0.05, throttle=0.3,
    )
    assert payload == {
        "ptsx": [0.0, 25.0],
        "ptsy": [0.0, 5.0],
        "x": 10.0,
        "y": 2.0,
        "psi": 0.1,
        "speed": 20.0,
        "steering_angle": -0.05,
        "throttle": 0.3,
    }
    assert client.base_url == "http://localhost:4567"


def test_send_telemetry_posts_to_vehicle_route(monkeypatch):
    client = MPCBridgeClient("http://bridge:4567", vehicle_id="car-3")
    calls = {}

    def fake_post(url, json=None, timeout=None):
        calls["url"] = url
        calls["json"] = json
        return FakeResponse({"steering_angle": 0.1, "throttle": 0.4})

    monkeypatch.setattr(client.session, "post", fake_post)
    reply = client.send_telemetry([0.0], [0.0], 0.0, 0.0, 0.0, 5.0)
    assert reply == {"steering_angle": 0.1, "throttle": 0.4}
    assert calls["url"] == "http://bridge:4567/api/vehicles/car-3/telemetry"
    assert calls["json"]["speed"] == 5.0


def test_send_telemetry_returns_none_on_error(monkeypatch):
    client = MPCBridgeClient()

    def failing_post(url, json=None, timeout=None):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(client.session, "post", failing_post)
    assert client.send_telemetry([0.0], [0.0], 0.0, 0.0, 0.0, 5.0) is None


def test_close_session_reports_missing_session(monkeypatch):
    client = MPCBridgeClient()
    monkeypatch.setattr(client.session, "delete",
                        lambda url, timeout=None: FakeResponse({}, status_code=404))
    assert client.close_session() is False
