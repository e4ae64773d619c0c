"""
World <-> vehicle frame conversion for reference waypoints.

Vehicle frame: origin at the vehicle position, x-axis along the heading,
y-axis to the left.
"""

from typing import Sequence, Tuple

import numpy as np

from control.errors import InputError


def _as_points(xs: Sequence[float], ys: Sequence[float]) -> Tuple[np.ndarray, np.ndarray]:
    xs = np.asarray(xs, dtype=float).reshape(-1)
    ys = np.asarray(ys, dtype=float).reshape(-1)
    if xs.size == 0:
        raise InputError("At least one waypoint is required")
    if xs.shape != ys.shape:
        raise InputError(f"Waypoint x/y length mismatch: {xs.size} vs {ys.size}")
    if not (np.all(np.isfinite(xs)) and np.all(np.isfinite(ys))):
        raise InputError("Waypoints contain non-finite values")
    return xs, ys


def to_vehicle_frame(waypoints_x: Sequence[float], waypoints_y: Sequence[float],
                     px: float, py: float, psi: float) -> Tuple[np.ndarray, np.ndarray]:
    """
    Express world-frame waypoints in the vehicle frame.

    Translate by (-px, -py), then rotate by -psi:
        x' = dx*cos(psi) + dy*sin(psi)
        y' = dy*cos(psi) - dx*sin(psi)

    Args:
        waypoints_x: World x of each waypoint (ordered along the path)
        waypoints_y: World y of each waypoint
        px, py: Vehicle position (world frame)
        psi: Vehicle heading (radians)

    Returns:
        (xs, ys) arrays in the vehicle frame

    Raises:
        InputError: No waypoints, mismatched lengths, or non-finite inputs
    """
    xs, ys = _as_points(waypoints_x, waypoints_y)
    if not np.all(np.isfinite([px, py, psi])):
        raise InputError(f"Non-finite vehicle pose: ({px}, {py}, {psi})")

    dx = xs - px
    dy = ys - py
    cos_psi = np.cos(psi)
    sin_psi = np.sin(psi)
    return dx * cos_psi + dy * sin_psi, dy * cos_psi - dx * sin_psi


def to_world_frame(local_x: Sequence[float], local_y: Sequence[float],
                   px: float, py: float, psi: float) -> Tuple[np.ndarray, np.ndarray]:
    """Inverse of to_vehicle_frame."""
    xs, ys = _as_points(local_x, local_y)
    cos_psi = np.cos(psi)
    sin_psi = np.sin(psi)
    return px + xs * cos_psi - ys * sin_psi, py + xs * sin_psi + ys * cos_psi
