"""
FastAPI server bridging the driving simulator and the MPC controller.
Receives telemetry, answers with steer commands.
"""

import asyncio
import time
import uuid
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel
import uvicorn

from bridge.protocol import MANUAL_EVENT, format_event, is_event_frame, parse_event
from bridge.sessions import DEFAULT_CYCLE_TIMEOUT, ConnectionSession, SessionRegistry
from control.errors import InputError
from control.mpc_controller import build_mpc_config
from data.formats.data_format import ControlOutput
from data.recorder import CycleRecorder

# Log cycles slower than this to spot solver stalls.
SLOW_CYCLE_SECONDS = 0.1


def _get_bridge_logger() -> logging.Logger:
    log_path = Path(__file__).resolve().parents[1] / "tmp" / "logs" / "mpc_bridge.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)

    bridge_logger = logging.getLogger("mpc_bridge")
    bridge_logger.setLevel(logging.INFO)

    if not any(isinstance(h, logging.FileHandler) and h.baseFilename == str(log_path)
               for h in bridge_logger.handlers):
        handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
        formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
        handler.setFormatter(formatter)
        bridge_logger.addHandler(handler)
        bridge_logger.propagate = False

    return bridge_logger


logger = _get_bridge_logger()

# Global state
registry: Optional[SessionRegistry] = None
recorder: Optional[CycleRecorder] = None
simulated_latency: float = 0.0  # delay before replying, mimics actuation lag


def configure_bridge(config: Optional[dict] = None) -> SessionRegistry:
    """
    (Re)build the session registry from the loaded YAML config.

    Args:
        config: Full config dict (sections: mpc, bridge, recording)
    """
    global registry, recorder, simulated_latency
    config = config or {}
    bridge_cfg = config.get("bridge", {}) or {}
    recording_cfg = config.get("recording", {}) or {}

    if registry is not None:
        registry.close_all()
    if recorder is not None:
        recorder.close()
        recorder = None

    mpc_config = build_mpc_config(config.get("mpc", {}))
    registry = SessionRegistry(
        mpc_config,
        cycle_timeout=float(bridge_cfg.get("cycle_timeout", DEFAULT_CYCLE_TIMEOUT)),
        warm_up=bool(bridge_cfg.get("warm_up", True)),
    )
    simulated_latency = float(bridge_cfg.get("simulated_latency", 0.0))

    if recording_cfg.get("enabled", False):
        recorder = CycleRecorder(recording_cfg.get("output_dir", "data/recordings"),
                                 horizon_steps=mpc_config.horizon_steps)
        logger.info("Cycle recording enabled: %s", recorder.output_file)

    logger.info(
        "Bridge configured: N=%d dt=%.3f latency=%.3f cycle_timeout=%.3f",
        mpc_config.horizon_steps, mpc_config.dt, mpc_config.latency, registry.cycle_timeout,
    )
    return registry


def get_registry() -> SessionRegistry:
    if registry is None:
        configure_bridge({})
    return registry


@asynccontextmanager
async def lifespan(_app: FastAPI):
    get_registry()
    yield
    if registry is not None:
        registry.close_all()
    if recorder is not None:
        recorder.close()


app = FastAPI(title="MPC Bridge Server", lifespan=lifespan)


class TelemetryMessage(BaseModel):
    """Telemetry from the simulator (world frame)."""
    ptsx: List[float]  # reference waypoints x
    ptsy: List[float]  # reference waypoints y
    x: float
    y: float
    psi: float  # heading (radians)
    speed: float
    steering_angle: float = 0.0  # last applied steering
    throttle: float = 0.0  # last applied throttle


class SteerCommand(BaseModel):
    """Steer command to the simulator."""
    steering_angle: float  # -1.0 to 1.0
    throttle: float
    mpc_x: List[float] = []  # predicted trajectory (vehicle frame)
    mpc_y: List[float] = []
    next_x: List[float] = []  # reference waypoints (vehicle frame)
    next_y: List[float] = []
    status: str = "ok"
    failure_reason: Optional[str] = None


async def _log_cycle(session: ConnectionSession, output: ControlOutput, duration: float) -> None:
    if duration > SLOW_CYCLE_SECONDS:
        logger.warning(
            "[SLOW] session=%s cycle duration=%.3fs solve=%s",
            session.session_id,
            duration,
            f"{output.solve_time:.3f}s" if output.solve_time is not None else "n/a",
        )
    if output.is_fallback:
        logger.warning(
            "[FALLBACK] session=%s status=%s reason=%s steering=%.3f throttle=%.3f",
            session.session_id,
            output.status,
            output.failure_reason,
            output.steering_command,
            output.throttle_command,
        )
    # HDF5 writes stay off the event loop.
    cycle_recorder = recorder
    if cycle_recorder is not None:
        await asyncio.to_thread(cycle_recorder.record_cycle, session.session_id, output, time.time())


async def handle_frame(session: ConnectionSession, frame: str) -> Optional[str]:
    """
    Answer one simulator frame.

    Returns:
        Reply frame, or None when the frame needs no reply
    """
    if not is_event_frame(frame):
        return None
    start_time = time.time()
    try:
        event = parse_event(frame)
    except InputError as e:
        output = session.pipeline.fallback(None, e.reason)
        await _log_cycle(session, output, time.time() - start_time)
        return format_event("steer", output.to_message())

    if event is None:
        return MANUAL_EVENT
    name, payload = event
    if name != "telemetry":
        return None

    output = await session.submit_message(payload, timestamp=start_time)
    await _log_cycle(session, output, time.time() - start_time)
    if simulated_latency > 0.0:
        await asyncio.sleep(simulated_latency)
    return format_event("steer", output.to_message())


@app.post("/api/vehicles/{vehicle_id}/telemetry", response_model=SteerCommand)
async def receive_telemetry(vehicle_id: str, message: TelemetryMessage):
    """
    Run one control cycle for a vehicle.

    Args:
        vehicle_id: Connection identifier (one worker per vehicle)
        message: Telemetry snapshot
    """
    session = get_registry().get_or_create(vehicle_id)
    start_time = time.time()
    output = await session.submit_message(message.model_dump(), timestamp=start_time)
    await _log_cycle(session, output, time.time() - start_time)
    return SteerCommand(**output.to_message())


@app.delete("/api/vehicles/{vehicle_id}")
async def close_vehicle_session(vehicle_id: str):
    """Drop a vehicle's session (worker and warm start)."""
    if not get_registry().close(vehicle_id):
        raise HTTPException(status_code=404, detail=f"No session for vehicle '{vehicle_id}'")
    return {"status": "closed", "vehicle_id": vehicle_id}


@app.get("/api/vehicles/{vehicle_id}")
async def get_vehicle_session(vehicle_id: str):
    """Cycle statistics of a vehicle's session."""
    session = get_registry().get(vehicle_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"No session for vehicle '{vehicle_id}'")
    return session.stats()


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "active_sessions": len(get_registry()),
    }


@app.websocket("/ws")
async def simulator_socket(websocket: WebSocket):
    """Simulator connection; each socket is its own session."""
    await websocket.accept()
    session_id = f"ws-{uuid.uuid4().hex[:8]}"
    current_registry = get_registry()
    session = current_registry.get_or_create(session_id)
    logger.info("Connected: %s", session_id)
    try:
        while True:
            frame = await websocket.receive_text()
            reply = await handle_frame(session, frame)
            if reply is not None:
                await websocket.send_text(reply)
    except WebSocketDisconnect:
        logger.info("Disconnected: %s", session_id)
    finally:
        current_registry.close(session_id)


def run_server(host: str = "0.0.0.0", port: int = 4567):
    """Run the bridge server."""
    print(f"Starting MPC Bridge Server on {host}:{port}")
    print("Endpoints:")
    print("  POST   /api/vehicles/{id}/telemetry - Run a control cycle, returns steer command")
    print("  GET    /api/vehicles/{id} - Session statistics")
    print("  DELETE /api/vehicles/{id} - Close a vehicle session")
    print("  GET    /api/health - Health check")
    print("  WS     /ws - Simulator event socket (telemetry -> steer)")

    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    run_server()
