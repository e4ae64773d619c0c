#!/usr/bin/env python3
"""
Closed-loop MPC simulation on a synthetic road.

Drives the kinematic bicycle model along a sinusoidal road, feeding it the
commands the MPC pipeline computes each cycle. Applied commands take effect
after the configured actuation latency, so the latency compensation is
exercised as it is in the simulator.

Usage:
    python tools/closed_loop_sim.py
    python tools/closed_loop_sim.py --steps 300 --plot tmp/closed_loop.png
    python tools/closed_loop_sim.py --bridge-url http://localhost:4567
"""

import argparse
import logging
import sys
import time
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np
import yaml

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from bridge.client import MPCBridgeClient
from control.actuators import ActuatorMapper
from control.mpc_controller import MPCConfig, WarmStart, build_mpc_config
from control.pipeline import MPCPipeline
from control.vehicle_model import KinematicBicycleModel
from data.formats.data_format import ControlOutput
from data.recorder import CycleRecorder

logger = logging.getLogger(__name__)


class SinusoidalRoad:
    """Road centerline y = amplitude * sin(2*pi*x / wavelength)."""

    def __init__(self, amplitude: float = 8.0, wavelength: float = 200.0,
                 spacing: float = 5.0, length: float = 2000.0):
        self.amplitude = amplitude
        self.wavelength = wavelength
        self.xs = np.arange(0.0, length, spacing)
        self.ys = self.center_y(self.xs)

    def center_y(self, x):
        return self.amplitude * np.sin(2.0 * np.pi * np.asarray(x) / self.wavelength)

    def heading(self, x: float) -> float:
        slope = self.amplitude * 2.0 * np.pi / self.wavelength * np.cos(2.0 * np.pi * x / self.wavelength)
        return float(np.arctan(slope))

    def waypoints_ahead(self, x: float, y: float, count: int = 6) -> Tuple[np.ndarray, np.ndarray]:
        """Nearest waypoint (one behind) plus the next ones along the road."""
        idx = int(np.argmin(np.hypot(self.xs - x, self.ys - y)))
        start = max(idx - 1, 0)
        end = min(start + count, len(self.xs))
        return self.xs[start:end], self.ys[start:end]

    def cross_track(self, x: float, y: float) -> float:
        """Signed lateral offset from the centerline (approximate, small slopes)."""
        return float((y - self.center_y(x)) * np.cos(self.heading(x)))


def load_mpc_config(config_path: Optional[str]) -> MPCConfig:
    if config_path is None:
        config_path = project_root / "config" / "mpc_config.yaml"
    config_path = Path(config_path)
    if not config_path.exists():
        logger.warning(f"Config file not found at {config_path}, using defaults")
        return build_mpc_config({})
    with open(config_path, 'r') as f:
        config = yaml.safe_load(f) or {}
    return build_mpc_config(config.get("mpc", {}))


def run_simulation(config: MPCConfig, steps: int = 200, initial_offset: float = 2.0,
                   initial_speed: float = 10.0, road: Optional[SinusoidalRoad] = None,
                   client: Optional[MPCBridgeClient] = None,
                   recorder: Optional[CycleRecorder] = None) -> dict:
    """
    Run the closed loop.

    Args:
        config: Horizon configuration (dt is also the control period)
        steps: Number of control cycles
        initial_offset: Starting lateral offset from the centerline
        initial_speed: Starting speed
        road: Road to follow (default: SinusoidalRoad())
        client: Send telemetry to a running bridge instead of solving in-process
        recorder: Optional cycle recorder

    Returns:
        Dictionary with the driven path, commands, statuses and cross-track RMS
    """
    road = road or SinusoidalRoad()
    model = KinematicBicycleModel(lf=config.lf)
    mapper = ActuatorMapper.from_config(config)
    pipeline = MPCPipeline(config) if client is None else None
    warm_start = WarmStart()

    x, y = 0.0, float(road.center_y(0.0)) + initial_offset
    psi, v = road.heading(0.0), float(initial_speed)
    # Commands in effect and the ones waiting out the latency.
    applied_steer, applied_throttle = 0.0, 0.0
    pending: List[Tuple[float, float, float]] = []

    path: List[Tuple[float, float]] = []
    cross_track: List[float] = []
    commands: List[Tuple[float, float]] = []
    statuses: List[str] = []

    sim_time = 0.0
    for _ in range(steps):
        ptsx, ptsy = road.waypoints_ahead(x, y)
        if client is not None:
            reply = client.send_telemetry(ptsx, ptsy, x, y, psi, v,
                                          steering_angle=applied_steer,
                                          throttle=applied_throttle)
            if reply is None:
                logger.error("Bridge did not answer, stopping")
                break
            output = ControlOutput(
                steering_command=float(reply["steering_angle"]),
                throttle_command=float(reply["throttle"]),
                status=reply.get("status", "ok"),
                failure_reason=reply.get("failure_reason"),
            )
        else:
            message = {
                "ptsx": ptsx.tolist(), "ptsy": ptsy.tolist(),
                "x": x, "y": y, "psi": psi, "speed": v,
                "steering_angle": applied_steer, "throttle": applied_throttle,
            }
            output = pipeline.run_message(message, timestamp=sim_time, warm_start=warm_start)
        if recorder is not None:
            recorder.record_cycle("closed_loop", output, sim_time)

        steering_rad = mapper.unmap_steering(output.steering_command)
        pending.append((sim_time + config.latency, steering_rad, output.throttle_command))

        # Integrate one control period in small substeps.
        substeps = 10
        h = config.dt / substeps
        for _ in range(substeps):
            while pending and pending[0][0] <= sim_time + 1e-9:
                _, applied_steer, applied_throttle = pending.pop(0)
            x, y, psi, v = model.advance_pose(x, y, psi, v, applied_steer, applied_throttle, h)
            sim_time += h

        path.append((x, y))
        cross_track.append(road.cross_track(x, y))
        commands.append((output.steering_command, output.throttle_command))
        statuses.append(output.status)

    cte = np.asarray(cross_track, dtype=float)
    return {
        "path": np.asarray(path, dtype=float),
        "cross_track": cte,
        "commands": np.asarray(commands, dtype=float),
        "statuses": statuses,
        "cte_rms": float(np.sqrt(np.mean(cte ** 2))) if cte.size else float("nan"),
        "final_speed": v,
    }


def plot_results(road: SinusoidalRoad, results: dict, output_path: str):
    import matplotlib
    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    fig, (ax_path, ax_cte) = plt.subplots(2, 1, figsize=(10, 8))
    driven = results["path"]
    ax_path.plot(road.xs, road.ys, "y--", label="centerline")
    if len(driven):
        ax_path.plot(driven[:, 0], driven[:, 1], "g-", label="vehicle")
        ax_path.set_xlim(0.0, driven[-1, 0] + 20.0)
    ax_path.set_title("Closed-loop path")
    ax_path.legend()

    ax_cte.plot(results["cross_track"], "r-")
    ax_cte.set_title(f"Cross-track error (RMS {results['cte_rms']:.3f})")
    ax_cte.set_xlabel("cycle")

    Path(output_path).parent.mkdir(parents=True, exist_ok=True)
    fig.tight_layout()
    fig.savefig(output_path)
    plt.close(fig)
    print(f"Plot saved to {output_path}")


def main():
    parser = argparse.ArgumentParser(description="Closed-loop MPC simulation")
    parser.add_argument("--config", type=str, default=None,
                        help="Path to configuration YAML file (default: config/mpc_config.yaml)")
    parser.add_argument("--steps", type=int, default=200, help="Control cycles to run")
    parser.add_argument("--offset", type=float, default=2.0, help="Initial lateral offset")
    parser.add_argument("--speed", type=float, default=10.0, help="Initial speed")
    parser.add_argument("--bridge-url", type=str, default=None,
                        help="Use a running bridge server instead of the in-process pipeline")
    parser.add_argument("--record", type=str, default=None,
                        help="Directory to record cycles to (HDF5)")
    parser.add_argument("--plot", type=str, default=None, help="Save a plot to this path")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO,
                        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    config = load_mpc_config(args.config)
    road = SinusoidalRoad()
    client = MPCBridgeClient(args.bridge_url, vehicle_id="closed_loop") if args.bridge_url else None
    recorder = CycleRecorder(args.record, horizon_steps=config.horizon_steps) if args.record else None

    start = time.time()
    try:
        results = run_simulation(config, steps=args.steps, initial_offset=args.offset,
                                 initial_speed=args.speed, road=road,
                                 client=client, recorder=recorder)
    finally:
        if recorder is not None:
            recorder.close()
        if client is not None:
            client.close_session()
    elapsed = time.time() - start

    fallbacks = sum(1 for s in results["statuses"] if s != "ok")
    print(f"Cycles: {len(results['statuses'])} ({fallbacks} fallbacks) in {elapsed:.1f}s")
    print(f"Cross-track RMS: {results['cte_rms']:.3f}")
    print(f"Final speed: {results['final_speed']:.2f}")

    if args.plot:
        plot_results(road, results, args.plot)


if __name__ == "__main__":
    main()
