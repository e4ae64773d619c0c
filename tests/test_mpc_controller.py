"""
Tests for the CasADi/IPOPT trajectory optimizer.

Solver budgets are relaxed so a loaded test machine does not trip the
real-time CPU limit.
"""

import math

import numpy as np
import pytest

from control.errors import FittingError, NumericAnomaly, SolveDivergence
from control.mpc_controller import (
    NU,
    NX,
    ActuatorBounds,
    MPCConfig,
    SolverOptions,
    TrajectoryOptimizer,
    WarmStart,
)
from data.formats.data_format import VehicleState
from trajectory.polynomial import PathModel


def _config(**overrides) -> MPCConfig:
    overrides.setdefault("solver", SolverOptions(max_cpu_time=5.0, max_iter=500))
    return MPCConfig(**overrides)


def _controls(config: MPCConfig, warm_start: WarmStart) -> np.ndarray:
    n_state = NX * (config.horizon_steps + 1)
    return warm_start.primal[n_state:].reshape(config.horizon_steps, NU)


@pytest.fixture(scope="module")
def optimizer():
    return TrajectoryOptimizer(_config())


class TestWarmStart:
    def test_empty_slot(self):
        assert not WarmStart().available

    def test_shift_advances_one_step(self):
        N = 4
        primal = np.arange(NX * (N + 1) + NU * N, dtype=float)
        warm = WarmStart()
        warm.update(primal)
        shifted = warm.shifted(N)

        states = primal[:NX * (N + 1)].reshape(N + 1, NX)
        controls = primal[NX * (N + 1):].reshape(N, NU)
        new_states = shifted[:NX * (N + 1)].reshape(N + 1, NX)
        new_controls = shifted[NX * (N + 1):].reshape(N, NU)

        np.testing.assert_array_equal(new_states[:-1], states[1:])
        np.testing.assert_array_equal(new_states[-1], states[-1])
        np.testing.assert_array_equal(new_controls[:-1], controls[1:])
        np.testing.assert_array_equal(new_controls[-1], controls[-1])

    def test_copy_is_independent(self):
        warm = WarmStart()
        warm.update(np.zeros(3))
        scratch = warm.copy()
        scratch.update(np.ones(3))
        np.testing.assert_array_equal(warm.primal, np.zeros(3))
        scratch.clear()
        assert warm.available and not scratch.available


class TestTrajectoryOptimizer:
    def test_zero_error_needs_no_correction(self, optimizer):
        """On the path, aligned and at reference speed: no steering, no throttle."""
        state = VehicleState(v=optimizer.config.ref_speed)
        path = PathModel((0.0, 0.0, 0.0, 0.0))
        result = optimizer.solve(state, path)
        assert result.steering == pytest.approx(0.0, abs=1e-3)
        assert result.throttle == pytest.approx(0.0, abs=1e-3)

    def test_returns_horizon_of_predictions(self, optimizer):
        state = VehicleState(v=20.0, cte=0.5, epsi=-0.05)
        path = PathModel((0.5, 0.05, 0.0, 0.0))
        result = optimizer.solve(state, path)
        assert len(result.predicted_trajectory) == optimizer.config.horizon_steps
        assert np.all(np.isfinite(result.predicted_x))
        # Moving forward along the horizon
        assert np.all(np.diff(result.predicted_x) > 0.0)

    def test_path_to_the_left_steers_left(self, optimizer):
        """cte > 0 (path left of the car) gives negative model steering."""
        state = VehicleState(v=20.0, cte=1.0, epsi=0.0)
        path = PathModel((1.0, 0.0, 0.0, 0.0))
        result = optimizer.solve(state, path)
        assert result.steering < 0.0

    def test_actuator_bounds_respected(self, optimizer):
        """A large offset saturates steering but never exceeds the bounds."""
        bounds = optimizer.config.bounds
        state = VehicleState(v=5.0, cte=10.0, epsi=-0.5)
        path = PathModel((10.0, 0.5, 0.0, 0.0))
        warm = WarmStart()
        optimizer.solve(state, path, warm_start=warm)
        controls = _controls(optimizer.config, warm)
        assert np.all(np.abs(controls[:, 0]) <= bounds.max_steer + 1e-6)
        assert np.all(controls[:, 1] >= bounds.min_throttle - 1e-6)
        assert np.all(controls[:, 1] <= bounds.max_throttle + 1e-6)

    def test_steer_rate_bound(self):
        max_rate = math.radians(1.0)
        config = _config(bounds=ActuatorBounds(max_steer_rate=max_rate))
        opt = TrajectoryOptimizer(config)
        warm = WarmStart()
        opt.solve(VehicleState(v=20.0, cte=3.0), PathModel((3.0, 0.0, 0.0, 0.0)), warm_start=warm)
        steering = _controls(config, warm)[:, 0]
        assert np.all(np.abs(np.diff(steering)) <= max_rate + 1e-6)

    def test_warm_start_updated_and_reused(self, optimizer):
        state = VehicleState(v=20.0, cte=0.5, epsi=-0.05)
        path = PathModel((0.5, 0.05, 0.0, 0.0))
        warm = WarmStart()
        cold = optimizer.solve(state, path, warm_start=warm)
        assert warm.available
        assert warm.primal.shape == (optimizer.n_vars,)

        warm_result = optimizer.solve(state, path, warm_start=warm)
        assert warm_result.steering == pytest.approx(cold.steering, abs=1e-2)

    def test_lower_order_path_is_padded(self, optimizer):
        result = optimizer.solve(VehicleState(v=10.0, cte=0.2), PathModel((0.2, 0.0)))
        assert math.isfinite(result.steering)

    def test_higher_order_path_rejected(self, optimizer):
        with pytest.raises(FittingError):
            optimizer.solve(VehicleState(v=10.0), PathModel((0.0,) * 6))

    def test_non_finite_state_rejected(self, optimizer):
        with pytest.raises(NumericAnomaly):
            optimizer.solve(VehicleState(v=float("nan")), PathModel((0.0, 0.0, 0.0, 0.0)))

    def test_exhausted_iteration_budget_raises(self):
        """IPOPT stopping on max_iter is reported with its status, not accepted."""
        strict = TrajectoryOptimizer(_config(solver=SolverOptions(max_iter=1, max_cpu_time=5.0)))
        state = VehicleState(v=20.0, cte=1.0, epsi=-0.3)
        path = PathModel((1.0, 0.3, -0.01, 0.0))
        warm = WarmStart()
        with pytest.raises(SolveDivergence) as excinfo:
            strict.solve(state, path, warm_start=warm)
        assert excinfo.value.status == "Maximum_Iterations_Exceeded"
        assert not warm.available
