"""
Mapping between optimizer outputs and the simulator's actuator commands.

The model turns left for negative steering (psi_dot = -v/Lf * delta) while
the actuator interface expects a normalized command in [-1, 1]; the mapping
divides by the steering limit and flips the sign.
"""

import math

import numpy as np

from control.errors import NumericAnomaly
from control.mpc_controller import MPCConfig


class ActuatorMapper:
    """Normalize and clamp optimizer outputs for the actuation interface."""

    def __init__(self, max_steer: float, min_throttle: float = -1.0, max_throttle: float = 1.0):
        """
        Args:
            max_steer: Steering limit (radians) mapped to |command| = 1
            min_throttle: Lower throttle/brake bound
            max_throttle: Upper throttle bound
        """
        self.max_steer = float(max_steer)
        self.min_throttle = float(min_throttle)
        self.max_throttle = float(max_throttle)

    @classmethod
    def from_config(cls, config: MPCConfig) -> "ActuatorMapper":
        b = config.bounds
        return cls(b.max_steer, b.min_throttle, b.max_throttle)

    def map_steering(self, steering_rad: float) -> float:
        """Model steering (radians) -> normalized command in [-1, 1]."""
        if not math.isfinite(steering_rad):
            raise NumericAnomaly(f"Non-finite steering output: {steering_rad}")
        return float(np.clip(-steering_rad / self.max_steer, -1.0, 1.0))

    def unmap_steering(self, command: float) -> float:
        """Normalized command -> model steering (radians)."""
        if not math.isfinite(command):
            raise NumericAnomaly(f"Non-finite steering command: {command}")
        return float(-np.clip(command, -1.0, 1.0) * self.max_steer)

    def map_throttle(self, throttle: float) -> float:
        """Clamp throttle to the actuator bounds (guards against solver overshoot)."""
        if not math.isfinite(throttle):
            raise NumericAnomaly(f"Non-finite throttle output: {throttle}")
        return float(np.clip(throttle, self.min_throttle, self.max_throttle))

    def map(self, steering_rad: float, throttle: float):
        """Return (steering_command, throttle_command)."""
        return self.map_steering(steering_rad), self.map_throttle(throttle)
