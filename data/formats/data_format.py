"""
Data format definitions for one MPC control cycle.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

import numpy as np

from control.errors import InputError


def _require_float(message: Mapping[str, Any], key: str) -> float:
    if key not in message or message[key] is None:
        raise InputError(f"Telemetry field '{key}' is missing")
    try:
        value = float(message[key])
    except (TypeError, ValueError):
        raise InputError(f"Telemetry field '{key}' is not numeric: {message[key]!r}")
    if not math.isfinite(value):
        raise InputError(f"Telemetry field '{key}' is not finite: {value}")
    return value


def _require_float_list(message: Mapping[str, Any], key: str) -> List[float]:
    values = message.get(key)
    if values is None:
        raise InputError(f"Telemetry field '{key}' is missing")
    if isinstance(values, (str, bytes)) or not hasattr(values, "__iter__"):
        raise InputError(f"Telemetry field '{key}' must be a list of numbers")
    try:
        return [float(v) for v in values]
    except (TypeError, ValueError):
        raise InputError(f"Telemetry field '{key}' contains non-numeric values")


@dataclass
class Telemetry:
    """Telemetry snapshot from the simulator (world frame)."""
    waypoints_x: List[float]
    waypoints_y: List[float]
    x: float
    y: float
    heading: float  # radians
    speed: float
    last_steering: float  # convention set by MPCConfig.steering_input
    last_throttle: float
    timestamp: float = 0.0

    @classmethod
    def from_message(cls, message: Mapping[str, Any], timestamp: float = 0.0) -> "Telemetry":
        """
        Build telemetry from the simulator's telemetry event payload.

        Args:
            message: Dict with ptsx, ptsy, x, y, psi, speed, steering_angle, throttle
            timestamp: Arrival time of the snapshot

        Raises:
            InputError: On missing, non-numeric or inconsistent fields
        """
        if not isinstance(message, Mapping):
            raise InputError("Telemetry payload must be an object")
        ptsx = _require_float_list(message, "ptsx")
        ptsy = _require_float_list(message, "ptsy")
        if len(ptsx) != len(ptsy):
            raise InputError(
                f"Waypoint lists differ in length: ptsx={len(ptsx)} ptsy={len(ptsy)}"
            )
        if not ptsx:
            raise InputError("Telemetry contains no waypoints")
        return cls(
            waypoints_x=ptsx,
            waypoints_y=ptsy,
            x=_require_float(message, "x"),
            y=_require_float(message, "y"),
            heading=_require_float(message, "psi"),
            speed=_require_float(message, "speed"),
            last_steering=_require_float(message, "steering_angle"),
            last_throttle=_require_float(message, "throttle"),
            timestamp=float(timestamp),
        )


@dataclass
class VehicleState:
    """Vehicle state in the vehicle frame at the planning instant."""
    x: float = 0.0
    y: float = 0.0
    psi: float = 0.0
    v: float = 0.0
    cte: float = 0.0
    epsi: float = 0.0

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.psi, self.v, self.cte, self.epsi], dtype=float)

    def is_finite(self) -> bool:
        return bool(np.all(np.isfinite(self.as_array())))


@dataclass
class SolveResult:
    """Optimizer output for one cycle."""
    steering: float  # radians, model sign convention
    throttle: float
    predicted_x: np.ndarray  # [N] vehicle frame
    predicted_y: np.ndarray  # [N] vehicle frame
    cost: float = 0.0
    iterations: int = 0
    solve_time: float = 0.0
    status: str = ""

    @property
    def predicted_trajectory(self) -> List[Tuple[float, float]]:
        return [(float(px), float(py)) for px, py in zip(self.predicted_x, self.predicted_y)]


@dataclass
class ControlOutput:
    """Command delivered to the actuation side after one cycle."""
    steering_command: float  # -1.0 to 1.0
    throttle_command: float  # within actuator bounds
    predicted_trajectory: List[Tuple[float, float]] = field(default_factory=list)
    reference_trajectory: List[Tuple[float, float]] = field(default_factory=list)
    status: str = "ok"  # "ok", "fallback" or "superseded"
    failure_reason: Optional[str] = None
    solve_time: Optional[float] = None

    @property
    def is_fallback(self) -> bool:
        return self.status != "ok"

    def to_message(self) -> Dict[str, Any]:
        """Steer event payload; mpc_* is drawn green and next_* yellow by the simulator."""
        return {
            "steering_angle": float(self.steering_command),
            "throttle": float(self.throttle_command),
            "mpc_x": [float(p[0]) for p in self.predicted_trajectory],
            "mpc_y": [float(p[1]) for p in self.predicted_trajectory],
            "next_x": [float(p[0]) for p in self.reference_trajectory],
            "next_y": [float(p[1]) for p in self.reference_trajectory],
            "status": self.status,
            "failure_reason": self.failure_reason,
        }
