"""
Actuation latency compensation.

Commands issued now take effect `latency` seconds later, so the optimizer
plans from the state the vehicle will be in at that moment.
"""

import logging
from typing import Optional, Tuple

import numpy as np

from control.errors import NumericAnomaly
from control.mpc_controller import MPCConfig
from control.vehicle_model import KinematicBicycleModel
from data.formats.data_format import VehicleState
from trajectory.polynomial import PathModel

logger = logging.getLogger(__name__)


def initial_errors(path: PathModel, x: float = 0.0, y: float = 0.0,
                   psi: float = 0.0) -> Tuple[float, float]:
    """
    Cross-track and heading error against the current fit.

    At the vehicle origin this reduces to (f(0), -atan(f'(0))).
    """
    cte = path.evaluate(x) - y
    epsi = psi - path.heading(x)
    return float(cte), float(epsi)


def initial_state(path: PathModel, speed: float, x: float = 0.0, y: float = 0.0,
                  psi: float = 0.0) -> VehicleState:
    """Vehicle-frame state at the planning instant (before latency)."""
    cte, epsi = initial_errors(path, x, y, psi)
    return VehicleState(x=x, y=y, psi=psi, v=float(speed), cte=cte, epsi=epsi)


def compensate_latency(path: PathModel, state: VehicleState, steering: float,
                       throttle: float, config: MPCConfig, latency: Optional[float] = None) -> VehicleState:
    """
    Project the state through the actuation latency.

        x'    = x + v*cos(psi)*L
        y'    = y + v*sin(psi)*L
        psi'  = psi - v/Lf*delta*L
        v'    = v + a*L
        cte'  = cte + v*sin(epsi)*L
        epsi' = psi' - atan(f'(x')) - v/Lf*delta*L

    f' is evaluated at the projected x', where the command takes effect. The
    cross-track error drifts with the heading error, matching the optimizer's
    cte dynamics, so a longer latency moves it further for any nonzero epsi.

    Args:
        path: Reference path fit for this cycle
        state: State at the planning instant (vehicle frame)
        steering: Last applied steering (radians, model convention)
        throttle: Last applied throttle
        config: MPCConfig (uses lf and latency)
        latency: Override for config.latency (seconds)

    Raises:
        NumericAnomaly: Projected state is not finite
    """
    lat = config.latency if latency is None else float(latency)
    model = KinematicBicycleModel(lf=config.lf)
    v = state.v

    x, y, psi, new_v = model.advance_pose(state.x, state.y, state.psi, v, steering, throttle, lat)
    turn = model.yaw_rate(v, steering) * lat
    cte = state.cte + v * np.sin(state.epsi) * lat
    epsi = psi - path.heading(x) + turn

    projected = VehicleState(x=x, y=y, psi=psi, v=new_v, cte=float(cte), epsi=float(epsi))
    if not projected.is_finite():
        raise NumericAnomaly(f"Latency-compensated state is not finite: {projected}")
    logger.debug("Latency %.3fs projected state: %s", lat, projected)
    return projected
