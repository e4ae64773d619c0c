"""
Tests for the bridge server: frame handling, HTTP handlers and configuration.

Handlers are called directly with asyncio.run against a registry of
stand-in pipelines.
"""

import asyncio
import json
import threading

import pytest
from fastapi import HTTPException

from bridge import server
from bridge.protocol import MANUAL_EVENT
from bridge.sessions import SessionRegistry
from control.mpc_controller import MPCConfig
from control.pipeline import MPCPipeline
from data.formats.data_format import ControlOutput

TELEMETRY = {
    "ptsx": [0.0, 25.0, 50.0, 75.0],
    "ptsy": [0.0, 5.0, 8.0, 9.0],
    "x": 10.0,
    "y": 2.0,
    "psi": 0.1,
    "speed": 20.0,
    "steering_angle": 0.0,
    "throttle": 0.0,
}


class FixedPipeline(MPCPipeline):
    """Returns a fixed command with a short predicted trajectory."""

    def run_cycle(self, telemetry, warm_start=None):
        return ControlOutput(
            steering_command=0.25,
            throttle_command=0.5,
            predicted_trajectory=[(1.0, 0.1), (2.0, 0.2)],
            reference_trajectory=[(0.0, 0.0), (5.0, 0.5)],
            solve_time=0.01,
        )


class ThreadCapturingRecorder:
    """Remembers which thread each cycle was written from."""

    def __init__(self):
        self.calls = []

    def record_cycle(self, session_id, output, timestamp):
        self.calls.append((session_id, output, threading.get_ident()))


@pytest.fixture
def registry(monkeypatch):
    reg = SessionRegistry(MPCConfig(), cycle_timeout=2.0,
                          pipeline_factory=FixedPipeline, warm_up=False)
    monkeypatch.setattr(server, "registry", reg)
    monkeypatch.setattr(server, "recorder", None)
    monkeypatch.setattr(server, "simulated_latency", 0.0)
    yield reg
    reg.close_all()


class TestHandleFrame:
    def test_telemetry_gets_steer_reply(self, registry):
        session = registry.get_or_create("ws-test")
        frame = "42" + json.dumps(["telemetry", TELEMETRY])
        reply = asyncio.run(server.handle_frame(session, frame))
        assert reply.startswith('42["steer"')
        name, body = json.loads(reply[2:])
        assert name == "steer"
        assert body["steering_angle"] == 0.25
        assert body["throttle"] == 0.5
        assert body["mpc_x"] == [1.0, 2.0]
        assert body["next_y"] == [0.0, 0.5]

    def test_manual_mode(self, registry):
        session = registry.get_or_create("ws-test")
        assert asyncio.run(server.handle_frame(session, '42["telemetry",null]')) == MANUAL_EVENT

    def test_non_event_frames_are_ignored(self, registry):
        session = registry.get_or_create("ws-test")
        assert asyncio.run(server.handle_frame(session, "2")) is None
        assert asyncio.run(server.handle_frame(session, '42["connect",{}]')) is None

    def test_malformed_frame_gets_fallback(self, registry):
        session = registry.get_or_create("ws-test")
        reply = asyncio.run(server.handle_frame(session, '42["telemetry",{"x":}]'))
        _, body = json.loads(reply[2:])
        assert body["status"] == "fallback"
        assert body["failure_reason"] == "input_error"
        assert body["throttle"] == pytest.approx(-0.2)

    def test_incomplete_telemetry_gets_fallback(self, registry):
        session = registry.get_or_create("ws-test")
        reply = asyncio.run(server.handle_frame(session, '42["telemetry",{"x":1.0}]'))
        _, body = json.loads(reply[2:])
        assert body["failure_reason"] == "input_error"

    def test_cycles_are_recorded_off_the_event_loop(self, registry, monkeypatch):
        recorder = ThreadCapturingRecorder()
        monkeypatch.setattr(server, "recorder", recorder)
        session = registry.get_or_create("ws-test")
        frame = "42" + json.dumps(["telemetry", TELEMETRY])

        async def answer():
            reply = await server.handle_frame(session, frame)
            return reply, threading.get_ident()

        reply, loop_thread = asyncio.run(answer())
        assert reply.startswith('42["steer"')
        assert len(recorder.calls) == 1
        session_id, output, thread_id = recorder.calls[0]
        assert session_id == session.session_id
        assert output.steering_command == 0.25
        assert thread_id != loop_thread


class TestHttpHandlers:
    def test_telemetry_endpoint(self, registry):
        message = server.TelemetryMessage(**TELEMETRY)
        command = asyncio.run(server.receive_telemetry("car-7", message))
        assert command.steering_angle == 0.25
        assert command.status == "ok"
        assert "car-7" in registry

    def test_session_stats_and_close(self, registry):
        asyncio.run(server.receive_telemetry("car-7", server.TelemetryMessage(**TELEMETRY)))
        stats = asyncio.run(server.get_vehicle_session("car-7"))
        assert stats["cycles"] == 1
        result = asyncio.run(server.close_vehicle_session("car-7"))
        assert result["status"] == "closed"
        assert "car-7" not in registry

    def test_unknown_session_is_404(self, registry):
        with pytest.raises(HTTPException) as excinfo:
            asyncio.run(server.close_vehicle_session("nobody"))
        assert excinfo.value.status_code == 404

    def test_health(self, registry):
        registry.get_or_create("a")
        health = asyncio.run(server.health_check())
        assert health["status"] == "healthy"
        assert health["active_sessions"] == 1


class TestConfigureBridge:
    def test_bridge_section_applied(self, monkeypatch, tmp_path):
        monkeypatch.setattr(server, "registry", None)
        monkeypatch.setattr(server, "recorder", None)
        monkeypatch.setattr(server, "simulated_latency", 0.0)
        config = {
            "mpc": {"horizon_steps": 8},
            "bridge": {"cycle_timeout": 0.5, "simulated_latency": 0.1, "warm_up": False},
            "recording": {"enabled": True, "output_dir": str(tmp_path)},
        }
        registry = server.configure_bridge(config)
        try:
            assert registry.cycle_timeout == pytest.approx(0.5)
            assert registry.config.horizon_steps == 8
            assert not registry.warm_up
            assert server.simulated_latency == pytest.approx(0.1)
            assert server.recorder is not None
            assert server.recorder.output_file.parent == tmp_path
        finally:
            registry.close_all()
            server.recorder.close()
