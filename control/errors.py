"""
Error taxonomy for the MPC control cycle.

Every error below is local to one control cycle. The pipeline catches them
and emits a bounded fallback command; they never stop the process.
"""


class MPCError(Exception):
    """Base class for per-cycle controller failures."""

    reason = "mpc_error"


class InputError(MPCError):
    """Missing or malformed telemetry (e.g. no waypoints)."""

    reason = "input_error"


class FittingError(MPCError):
    """Reference path cannot be fit (too few points, coincident x-values)."""

    reason = "fitting_error"


class SolveDivergence(MPCError):
    """Optimizer did not reach a feasible optimum within its budget."""

    reason = "solve_divergence"

    def __init__(self, message: str, status: str = "unknown"):
        super().__init__(message)
        self.status = status


class NumericAnomaly(MPCError):
    """Non-finite value in the state or in the solver output."""

    reason = "numeric_anomaly"


class ConfigError(ValueError):
    """Invalid horizon configuration."""
