"""
Tests for the kinematic bicycle model.
"""

import math

import numpy as np
import pytest

from control.vehicle_model import KinematicBicycleModel
from data.formats.data_format import VehicleState
from trajectory.polynomial import PathModel


class TestKinematicBicycleModel:
    def test_positive_steering_turns_right(self):
        """psi_dot = -v/Lf * delta: positive steering lowers the heading."""
        model = KinematicBicycleModel(lf=2.67)
        assert model.yaw_rate(10.0, 0.1) == pytest.approx(-10.0 / 2.67 * 0.1)
        assert model.compute_curvature(0.1) < 0.0
        assert model.compute_curvature(-0.1) > 0.0

    def test_straight_motion(self):
        model = KinematicBicycleModel()
        x, y, psi, v = model.advance_pose(0.0, 0.0, 0.0, 10.0, 0.0, 0.0, 0.1)
        assert (x, y, psi, v) == pytest.approx((1.0, 0.0, 0.0, 10.0))

    def test_throttle_changes_speed(self):
        model = KinematicBicycleModel()
        _, _, _, v = model.advance_pose(0.0, 0.0, 0.0, 10.0, 0.0, -1.0, 0.5)
        assert v == pytest.approx(9.5)

    def test_heading_moves_position(self):
        model = KinematicBicycleModel()
        x, y, _, _ = model.advance_pose(0.0, 0.0, math.pi / 2, 4.0, 0.0, 0.0, 0.5)
        assert x == pytest.approx(0.0, abs=1e-12)
        assert y == pytest.approx(2.0)

    def test_step_error_terms(self):
        """cte/epsi follow the reference path at the previous position."""
        model = KinematicBicycleModel(lf=2.0)
        path = PathModel((1.0, 0.0))
        state = VehicleState(x=0.0, y=0.0, psi=0.0, v=10.0, cte=1.0, epsi=0.0)
        nxt = model.step(state, 0.05, 0.0, path, 0.1)
        assert nxt.cte == pytest.approx(1.0)
        assert nxt.epsi == pytest.approx(-10.0 / 2.0 * 0.05 * 0.1)
        assert nxt.psi == pytest.approx(nxt.epsi)

    def test_rollout_shape(self):
        model = KinematicBicycleModel()
        path = PathModel((0.0, 0.0, 0.0, 0.0))
        states = model.rollout(VehicleState(v=5.0), np.zeros(8), np.zeros(8), path, 0.1)
        assert states.shape == (9, 6)
        np.testing.assert_allclose(states[:, 0], np.arange(9) * 0.5)
