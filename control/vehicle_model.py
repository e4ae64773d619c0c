"""
Vehicle dynamics model (kinematic bicycle model).
Used for latency compensation, solver initial guesses and simulation.
"""

import numpy as np
from typing import Sequence, Tuple

from data.formats.data_format import VehicleState
from trajectory.polynomial import PathModel


class KinematicBicycleModel:
    """
    Kinematic bicycle model in the vehicle frame.

    Sign convention: psi decreases for positive steering
    (psi_dot = -v / Lf * delta).
    """

    def __init__(self, lf: float = 2.67):
        """
        Initialize bicycle model.

        Args:
            lf: Distance from center of gravity to front axle (meters)
        """
        self.lf = lf

    def yaw_rate(self, velocity: float, steering_angle: float) -> float:
        """Heading rate of change (rad/s) for a steering angle in radians."""
        return -velocity / self.lf * steering_angle

    def compute_curvature(self, steering_angle: float) -> float:
        """
        Path curvature (1/m) implied by a steering angle.

        Args:
            steering_angle: Steering angle (radians)
        """
        return -steering_angle / self.lf

    def advance_pose(self, x: float, y: float, psi: float, v: float,
                     steering_angle: float, throttle: float,
                     dt: float) -> Tuple[float, float, float, float]:
        """
        Forward-Euler update of pose and speed only.

        Returns:
            New (x, y, psi, v)
        """
        new_x = x + v * np.cos(psi) * dt
        new_y = y + v * np.sin(psi) * dt
        new_psi = psi + self.yaw_rate(v, steering_angle) * dt
        new_v = v + throttle * dt
        return float(new_x), float(new_y), float(new_psi), float(new_v)

    def step(self, state: VehicleState, steering_angle: float, throttle: float,
             path: PathModel, dt: float) -> VehicleState:
        """
        One forward-Euler step of the full tracking state.

        cte and epsi are re-derived from the reference path at the previous
        position, matching the optimizer's equality constraints.
        """
        x, y, psi, v = self.advance_pose(state.x, state.y, state.psi, state.v,
                                         steering_angle, throttle, dt)
        cte = path.evaluate(state.x) - state.y + state.v * np.sin(state.epsi) * dt
        epsi = state.psi - path.heading(state.x) + self.yaw_rate(state.v, steering_angle) * dt
        return VehicleState(x=x, y=y, psi=psi, v=v, cte=float(cte), epsi=float(epsi))

    def rollout(self, state: VehicleState, steering: Sequence[float],
                throttle: Sequence[float], path: PathModel, dt: float) -> np.ndarray:
        """
        Roll the model forward over a control sequence.

        Returns:
            [len(steering) + 1, 6] array of states, starting with `state`
        """
        states = [state.as_array()]
        current = state
        for delta, accel in zip(steering, throttle):
            current = self.step(current, float(delta), float(accel), path, dt)
            states.append(current.as_array())
        return np.vstack(states)
