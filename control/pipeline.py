"""
Per-cycle MPC pipeline.

telemetry -> vehicle frame -> polynomial fit -> latency compensation ->
trajectory optimization -> actuator mapping.

Every cycle-local failure is turned into a bounded fallback command here;
nothing escapes to the transport layer.
"""

import logging
import math
from typing import Any, List, Mapping, Optional, Tuple

import numpy as np

from control.actuators import ActuatorMapper
from control.errors import InputError, MPCError, NumericAnomaly
from control.latency import compensate_latency, initial_state
from control.mpc_controller import MPCConfig, TrajectoryOptimizer, WarmStart
from data.formats.data_format import ControlOutput, Telemetry
from trajectory.polynomial import fit_polynomial
from trajectory.transforms import to_vehicle_frame

logger = logging.getLogger(__name__)


class MPCPipeline:
    """Runs one control cycle against an immutable MPCConfig."""

    def __init__(self, config: MPCConfig, optimizer: Optional[TrajectoryOptimizer] = None):
        """
        Args:
            config: Horizon configuration shared read-only across cycles
            optimizer: Pre-built optimizer (built on first use if omitted)
        """
        self.config = config
        self._optimizer = optimizer
        self.mapper = ActuatorMapper.from_config(config)

    @property
    def optimizer(self) -> TrajectoryOptimizer:
        """Optimizer, built on first use (building the NLP takes a while)."""
        if self._optimizer is None:
            self._optimizer = TrajectoryOptimizer(self.config)
        return self._optimizer

    def model_steering(self, last_steering: float) -> float:
        """Telemetry steering -> model steering in radians."""
        if self.config.steering_input == "normalized":
            return self.mapper.unmap_steering(last_steering)
        return float(last_steering)

    def run_message(self, message: Mapping[str, Any], timestamp: float = 0.0,
                    warm_start: Optional[WarmStart] = None) -> ControlOutput:
        """Parse a raw telemetry payload and run the cycle."""
        try:
            telemetry = Telemetry.from_message(message, timestamp=timestamp)
        except InputError as e:
            logger.warning("[FALLBACK] %s: %s", e.reason, e)
            return self.fallback(None, e.reason)
        return self.run_cycle(telemetry, warm_start=warm_start)

    def run_cycle(self, telemetry: Telemetry,
                  warm_start: Optional[WarmStart] = None) -> ControlOutput:
        """
        Compute the command for one telemetry snapshot.

        Args:
            telemetry: World-frame snapshot
            warm_start: Per-connection warm-start slot (updated on success)

        Returns:
            ControlOutput; status "fallback" when any stage failed
        """
        reference: List[Tuple[float, float]] = []
        try:
            xs, ys = to_vehicle_frame(
                telemetry.waypoints_x, telemetry.waypoints_y,
                telemetry.x, telemetry.y, telemetry.heading,
            )
            reference = [(float(x), float(y)) for x, y in zip(xs, ys)]

            path = fit_polynomial(xs, ys, order=self.config.poly_order)

            steering = self.model_steering(telemetry.last_steering)
            state = initial_state(path, telemetry.speed)
            state = compensate_latency(path, state, steering, telemetry.last_throttle, self.config)

            result = self.optimizer.solve(state, path, warm_start=warm_start)

            steering_command, throttle_command = self.mapper.map(result.steering, result.throttle)
            predicted = result.predicted_trajectory
            if not np.all(np.isfinite(np.asarray(predicted, dtype=float))):
                raise NumericAnomaly("Predicted trajectory contains non-finite points")
        except MPCError as e:
            logger.warning("[FALLBACK] %s: %s", e.reason, e)
            return self.fallback(telemetry, e.reason, reference)

        return ControlOutput(
            steering_command=steering_command,
            throttle_command=throttle_command,
            predicted_trajectory=predicted,
            reference_trajectory=reference,
            status="ok",
            solve_time=result.solve_time,
        )

    def fallback(self, telemetry: Optional[Telemetry], reason: str,
                 reference: Optional[List[Tuple[float, float]]] = None,
                 status: str = "fallback") -> ControlOutput:
        """
        Safe command when a cycle cannot produce a validated result.

        decelerate: hold the last steering, apply decel_throttle.
        hold: hold the last steering and the last throttle.
        Unknown or non-finite last values fall back to 0 steering and
        decel_throttle.
        """
        policy = self.config.fallback
        steering_command = 0.0
        throttle = policy.decel_throttle
        if telemetry is not None:
            try:
                steering_command = self.mapper.map_steering(
                    self.model_steering(telemetry.last_steering)
                )
            except NumericAnomaly:
                steering_command = 0.0
            if policy.mode == "hold" and math.isfinite(telemetry.last_throttle):
                throttle = telemetry.last_throttle

        return ControlOutput(
            steering_command=steering_command,
            throttle_command=self.mapper.map_throttle(throttle),
            predicted_trajectory=[],
            reference_trajectory=list(reference or []),
            status=status,
            failure_reason=reason,
        )
