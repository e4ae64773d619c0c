"""
Tests for MPC configuration building and validation.
"""

import math

import pytest

from control.errors import ConfigError
from control.mpc_controller import (
    ActuatorBounds,
    FallbackPolicy,
    MPCConfig,
    SolverOptions,
    build_mpc_config,
)


class TestBuildMPCConfig:
    def test_defaults(self):
        config = build_mpc_config({})
        assert config.horizon_steps == 10
        assert config.dt == pytest.approx(0.1)
        assert config.lf == pytest.approx(2.67)
        assert config.ref_speed == pytest.approx(40.0)
        assert config.latency == pytest.approx(0.1)
        assert config.poly_order == 3
        assert config.bounds.max_steer == pytest.approx(math.radians(25.0))
        assert config.fallback.mode == "decelerate"

    def test_none_section_uses_defaults(self):
        assert build_mpc_config(None) == MPCConfig()

    def test_degrees_are_converted(self):
        config = build_mpc_config({"bounds": {"max_steer_deg": 20.0, "max_steer_rate_deg": 5.0}})
        assert config.bounds.max_steer == pytest.approx(math.radians(20.0))
        assert config.bounds.max_steer_rate == pytest.approx(math.radians(5.0))

    def test_null_rate_bound_is_unbounded(self):
        config = build_mpc_config({"bounds": {"max_steer_rate_deg": None, "max_throttle_rate": None}})
        assert config.bounds.max_steer_rate is None
        assert config.bounds.max_throttle_rate is None

    def test_partial_weights_keep_other_defaults(self):
        config = build_mpc_config({"weights": {"cte": 500}})
        assert config.weights.cte == pytest.approx(500.0)
        assert config.weights.epsi == pytest.approx(2000.0)
        assert config.weights.steer_rate == pytest.approx(5000.0)

    def test_config_is_immutable(self):
        config = MPCConfig()
        with pytest.raises(AttributeError):
            config.horizon_steps = 20


class TestConfigValidation:
    @pytest.mark.parametrize("overrides", [
        {"horizon_steps": 1},
        {"dt": 0.0},
        {"lf": -1.0},
        {"latency": -0.1},
        {"poly_order": 0},
        {"steering_input": "degrees"},
    ])
    def test_invalid_scalars_rejected(self, overrides):
        with pytest.raises(ConfigError):
            MPCConfig(**overrides)

    def test_inverted_throttle_bounds_rejected(self):
        with pytest.raises(ConfigError):
            MPCConfig(bounds=ActuatorBounds(min_throttle=1.0, max_throttle=-1.0))

    def test_unknown_fallback_mode_rejected(self):
        with pytest.raises(ConfigError):
            MPCConfig(fallback=FallbackPolicy(mode="brake_hard"))

    def test_solver_budget_must_be_positive(self):
        with pytest.raises(ConfigError):
            MPCConfig(solver=SolverOptions(max_cpu_time=0.0))

    def test_config_error_is_value_error(self):
        with pytest.raises(ValueError):
            build_mpc_config({"dt": -0.1})
