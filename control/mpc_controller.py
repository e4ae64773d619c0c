"""
Nonlinear MPC trajectory optimizer.

Solves a finite-horizon NLP over the kinematic bicycle model with CasADi +
IPOPT. The NLP is built once per configuration; the initial state and the
reference polynomial enter as parameters.

Decision vector z is stacked as:
[X_0, ..., X_N, U_0, ..., U_{N-1}] with X_k = (x, y, psi, v, cte, epsi)
and U_k = (delta, a).
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Optional

import casadi as ca
import numpy as np

from control.errors import ConfigError, FittingError, NumericAnomaly, SolveDivergence
from control.vehicle_model import KinematicBicycleModel
from data.formats.data_format import SolveResult, VehicleState
from trajectory.polynomial import PathModel

logger = logging.getLogger(__name__)

NX = 6  # x, y, psi, v, cte, epsi
NU = 2  # delta, a

ACCEPTED_STATUSES = ("Solve_Succeeded", "Solved_To_Acceptable_Level")


@dataclass(frozen=True)
class CostWeights:
    """Objective weights."""

    cte: float = 2000.0
    epsi: float = 2000.0
    speed: float = 1.0
    steer: float = 50.0
    throttle: float = 5.0
    steer_rate: float = 5000.0  # (delta_{k+1} - delta_k)^2
    throttle_rate: float = 10.0  # (a_{k+1} - a_k)^2


@dataclass(frozen=True)
class ActuatorBounds:
    """Actuator limits."""

    max_steer: float = math.radians(25.0)  # rad
    min_throttle: float = -1.0
    max_throttle: float = 1.0
    max_steer_rate: Optional[float] = None  # rad per step
    max_throttle_rate: Optional[float] = None  # per step


@dataclass(frozen=True)
class SolverOptions:
    """IPOPT budget and tolerances."""

    max_iter: int = 100
    max_cpu_time: float = 0.25  # s
    tol: float = 1e-6
    acceptable_tol: float = 1e-4
    print_level: int = 0
    warm_start: bool = True


@dataclass(frozen=True)
class FallbackPolicy:
    """What to command when a cycle fails."""

    mode: str = "decelerate"  # "decelerate" or "hold"
    decel_throttle: float = -0.2


@dataclass(frozen=True)
class MPCConfig:
    """Horizon configuration. Built once, shared read-only by all cycles."""

    horizon_steps: int = 10
    dt: float = 0.1  # s
    lf: float = 2.67  # m, center of gravity to front axle
    ref_speed: float = 40.0
    latency: float = 0.1  # s
    poly_order: int = 3
    steering_input: str = "radians"  # "radians" or "normalized"
    weights: CostWeights = field(default_factory=CostWeights)
    bounds: ActuatorBounds = field(default_factory=ActuatorBounds)
    solver: SolverOptions = field(default_factory=SolverOptions)
    fallback: FallbackPolicy = field(default_factory=FallbackPolicy)

    def __post_init__(self):
        if int(self.horizon_steps) < 2:
            raise ConfigError(f"horizon_steps must be >= 2, got {self.horizon_steps}")
        if self.dt <= 0.0:
            raise ConfigError(f"dt must be positive, got {self.dt}")
        if self.lf <= 0.0:
            raise ConfigError(f"lf must be positive, got {self.lf}")
        if self.latency < 0.0:
            raise ConfigError(f"latency must be >= 0, got {self.latency}")
        if self.poly_order < 1:
            raise ConfigError(f"poly_order must be >= 1, got {self.poly_order}")
        if self.steering_input not in ("radians", "normalized"):
            raise ConfigError(f"Unknown steering_input '{self.steering_input}'")
        if self.bounds.max_steer <= 0.0:
            raise ConfigError(f"max_steer must be positive, got {self.bounds.max_steer}")
        if self.bounds.min_throttle >= self.bounds.max_throttle:
            raise ConfigError(
                f"min_throttle ({self.bounds.min_throttle}) must be below "
                f"max_throttle ({self.bounds.max_throttle})"
            )
        if self.fallback.mode not in ("decelerate", "hold"):
            raise ConfigError(f"Unknown fallback mode '{self.fallback.mode}'")
        if self.solver.max_iter < 1 or self.solver.max_cpu_time <= 0.0:
            raise ConfigError("Solver budget (max_iter, max_cpu_time) must be positive")


def _optional_float(value) -> Optional[float]:
    if value is None:
        return None
    return float(value)


def build_mpc_config(mpc_cfg: Optional[dict] = None) -> MPCConfig:
    """Build an MPCConfig from the `mpc` section of the YAML config."""
    mpc_cfg = mpc_cfg or {}
    weights_cfg = mpc_cfg.get("weights", {}) or {}
    bounds_cfg = mpc_cfg.get("bounds", {}) or {}
    solver_cfg = mpc_cfg.get("solver", {}) or {}
    fallback_cfg = mpc_cfg.get("fallback", {}) or {}

    default_weights = CostWeights()
    weights = CostWeights(
        **{
            name: float(weights_cfg.get(name, getattr(default_weights, name)))
            for name in CostWeights.__dataclass_fields__
        }
    )

    if "max_steer_deg" in bounds_cfg:
        max_steer = math.radians(float(bounds_cfg["max_steer_deg"]))
    else:
        max_steer = float(bounds_cfg.get("max_steer", ActuatorBounds.max_steer))
    if "max_steer_rate_deg" in bounds_cfg:
        max_steer_rate = _optional_float(bounds_cfg["max_steer_rate_deg"])
        if max_steer_rate is not None:
            max_steer_rate = math.radians(max_steer_rate)
    else:
        max_steer_rate = _optional_float(bounds_cfg.get("max_steer_rate"))
    bounds = ActuatorBounds(
        max_steer=max_steer,
        min_throttle=float(bounds_cfg.get("min_throttle", -1.0)),
        max_throttle=float(bounds_cfg.get("max_throttle", 1.0)),
        max_steer_rate=max_steer_rate,
        max_throttle_rate=_optional_float(bounds_cfg.get("max_throttle_rate")),
    )

    solver = SolverOptions(
        max_iter=int(solver_cfg.get("max_iter", 100)),
        max_cpu_time=float(solver_cfg.get("max_cpu_time", 0.25)),
        tol=float(solver_cfg.get("tol", 1e-6)),
        acceptable_tol=float(solver_cfg.get("acceptable_tol", 1e-4)),
        print_level=int(solver_cfg.get("print_level", 0)),
        warm_start=bool(solver_cfg.get("warm_start", True)),
    )

    fallback = FallbackPolicy(
        mode=str(fallback_cfg.get("mode", "decelerate")),
        decel_throttle=float(fallback_cfg.get("decel_throttle", -0.2)),
    )

    return MPCConfig(
        horizon_steps=int(mpc_cfg.get("horizon_steps", 10)),
        dt=float(mpc_cfg.get("dt", 0.1)),
        lf=float(mpc_cfg.get("lf", 2.67)),
        ref_speed=float(mpc_cfg.get("ref_speed", 40.0)),
        latency=float(mpc_cfg.get("latency", 0.1)),
        poly_order=int(mpc_cfg.get("poly_order", 3)),
        steering_input=str(mpc_cfg.get("steering_input", "radians")),
        weights=weights,
        bounds=bounds,
        solver=solver,
        fallback=fallback,
    )


@dataclass
class WarmStart:
    """
    Previous primal solution, used to seed the next solve.

    One slot per connection, mutated only by that connection's cycle.
    """

    primal: Optional[np.ndarray] = None

    @property
    def available(self) -> bool:
        return self.primal is not None

    def update(self, primal: np.ndarray) -> None:
        self.primal = np.array(primal, dtype=float, copy=True)

    def clear(self) -> None:
        self.primal = None

    def copy(self) -> "WarmStart":
        return WarmStart(None if self.primal is None else self.primal.copy())

    def shifted(self, horizon_steps: int) -> np.ndarray:
        """Previous solution advanced one step (last step repeated)."""
        n_state = NX * (horizon_steps + 1)
        states = self.primal[:n_state].reshape(horizon_steps + 1, NX)
        controls = self.primal[n_state:].reshape(horizon_steps, NU)
        states = np.vstack([states[1:], states[-1:]])
        controls = np.vstack([controls[1:], controls[-1:]])
        return np.concatenate([states.reshape(-1), controls.reshape(-1)])


class TrajectoryOptimizer:
    """
    Receding-horizon NLP over the kinematic bicycle model.

    Stateless between calls apart from the compiled solver; warm-start data
    is owned by the caller and passed in explicitly.
    """

    def __init__(self, config: MPCConfig):
        self.config = config
        self.model = KinematicBicycleModel(lf=config.lf)
        self.n_coeffs = config.poly_order + 1
        self._build_solver()

    @property
    def n_vars(self) -> int:
        N = self.config.horizon_steps
        return NX * (N + 1) + NU * N

    def _build_solver(self) -> None:
        cfg = self.config
        N, dt, lf = cfg.horizon_steps, cfg.dt, cfg.lf
        w = cfg.weights

        X = ca.SX.sym("X", NX, N + 1)
        U = ca.SX.sym("U", NU, N)
        P = ca.SX.sym("P", NX + self.n_coeffs)
        x_init = P[:NX]
        coeffs = [P[NX + i] for i in range(self.n_coeffs)]

        def path_y(x):
            result = 0
            for c in reversed(coeffs):
                result = result * x + c
            return result

        def path_slope(x):
            result = 0
            for i in reversed(range(1, self.n_coeffs)):
                result = result * x + i * coeffs[i]
            return result

        cost = 0
        for k in range(N + 1):
            cost += w.cte * X[4, k] ** 2
            cost += w.epsi * X[5, k] ** 2
            cost += w.speed * (X[3, k] - cfg.ref_speed) ** 2
        for k in range(N):
            cost += w.steer * U[0, k] ** 2
            cost += w.throttle * U[1, k] ** 2
        for k in range(N - 1):
            cost += w.steer_rate * (U[0, k + 1] - U[0, k]) ** 2
            cost += w.throttle_rate * (U[1, k + 1] - U[1, k]) ** 2

        constraints = [X[:, 0] - x_init]
        for k in range(1, N + 1):
            x0, y0, psi0, v0, _, epsi0 = (X[i, k - 1] for i in range(NX))
            delta0, a0 = U[0, k - 1], U[1, k - 1]
            turn = -v0 / lf * delta0 * dt
            constraints.append(ca.vertcat(
                X[0, k] - (x0 + v0 * ca.cos(psi0) * dt),
                X[1, k] - (y0 + v0 * ca.sin(psi0) * dt),
                X[2, k] - (psi0 + turn),
                X[3, k] - (v0 + a0 * dt),
                X[4, k] - (path_y(x0) - y0 + v0 * ca.sin(epsi0) * dt),
                X[5, k] - (psi0 - ca.atan(path_slope(x0)) + turn),
            ))
        for k in range(N - 1):
            constraints.append(U[:, k + 1] - U[:, k])

        z = ca.vertcat(ca.reshape(X, -1, 1), ca.reshape(U, -1, 1))
        g = ca.vertcat(*constraints)
        nlp = {"x": z, "f": cost, "g": g, "p": P}

        opts = {
            "ipopt.print_level": cfg.solver.print_level,
            "print_time": 0,
            "ipopt.sb": "yes",
            "ipopt.max_iter": cfg.solver.max_iter,
            "ipopt.max_cpu_time": cfg.solver.max_cpu_time,
            "ipopt.tol": cfg.solver.tol,
            "ipopt.acceptable_tol": cfg.solver.acceptable_tol,
            "error_on_fail": False,
        }
        self._solver = ca.nlpsol("mpc_solver", "ipopt", nlp, opts)

        # bounds: states free, controls boxed
        n_state = NX * (N + 1)
        b = cfg.bounds
        self._lbx = np.full(self.n_vars, -np.inf)
        self._ubx = np.full(self.n_vars, np.inf)
        self._lbx[n_state::NU] = -b.max_steer
        self._ubx[n_state::NU] = b.max_steer
        self._lbx[n_state + 1::NU] = b.min_throttle
        self._ubx[n_state + 1::NU] = b.max_throttle

        # g: [initial (NX)] + [dynamics (NX) * N] + [rates (NU) * (N-1)], rates last
        n_eq = NX * (N + 1)
        steer_rate = np.inf if b.max_steer_rate is None else b.max_steer_rate
        throttle_rate = np.inf if b.max_throttle_rate is None else b.max_throttle_rate
        rate = np.tile([steer_rate, throttle_rate], N - 1)
        self._lbg = np.concatenate([np.zeros(n_eq), -rate])
        self._ubg = np.concatenate([np.zeros(n_eq), rate])

        logger.info(
            "MPC solver built (N=%d, dt=%.3f, Lf=%.2f, vars=%d, constraints=%d)",
            N, dt, lf, self.n_vars, g.shape[0],
        )

    def _coefficient_vector(self, path: PathModel) -> np.ndarray:
        coeffs = path.as_array()
        if coeffs.size > self.n_coeffs:
            raise FittingError(
                f"Path order {coeffs.size - 1} exceeds configured order {self.config.poly_order}"
            )
        return np.pad(coeffs, (0, self.n_coeffs - coeffs.size))

    def initial_guess(self, state: VehicleState, path: PathModel) -> np.ndarray:
        """Cold-start guess: roll the model forward with zero actuation."""
        N = self.config.horizon_steps
        zeros = np.zeros(N)
        states = self.model.rollout(state, zeros, zeros, path, self.config.dt)
        guess = np.concatenate([states.reshape(-1), np.zeros(NU * N)])
        if not np.all(np.isfinite(guess)):
            guess = np.concatenate([np.tile(state.as_array(), N + 1), np.zeros(NU * N)])
        return guess

    def solve(self, state: VehicleState, path: PathModel,
              warm_start: Optional[WarmStart] = None) -> SolveResult:
        """
        Solve one receding-horizon problem.

        Args:
            state: Latency-compensated state (vehicle frame)
            path: Reference path fit for this cycle
            warm_start: Per-connection slot; seeded from and updated on success

        Returns:
            SolveResult with the first actuator pair and N predicted points

        Raises:
            NumericAnomaly: Non-finite state or solver output
            SolveDivergence: IPOPT failed or exceeded its budget
        """
        if not state.is_finite():
            raise NumericAnomaly(f"Initial state is not finite: {state}")
        cfg = self.config
        N = cfg.horizon_steps

        params = np.concatenate([state.as_array(), self._coefficient_vector(path)])
        use_warm = cfg.solver.warm_start and warm_start is not None and warm_start.available
        if use_warm:
            guess = warm_start.shifted(N)
            guess[:NX] = state.as_array()
        else:
            guess = self.initial_guess(state, path)

        start_time = time.perf_counter()
        try:
            sol = self._solver(
                x0=guess, p=params,
                lbx=self._lbx, ubx=self._ubx,
                lbg=self._lbg, ubg=self._ubg,
            )
        except RuntimeError as e:
            raise SolveDivergence(f"IPOPT raised: {e}", status="exception") from e
        solve_time = time.perf_counter() - start_time

        stats = self._solver.stats()
        status = str(stats.get("return_status", "unknown"))
        iterations = int(stats.get("iter_count", 0))
        if not stats.get("success", False) and status not in ACCEPTED_STATUSES:
            raise SolveDivergence(
                f"IPOPT did not converge: status={status} iter={iterations} "
                f"time={solve_time:.3f}s",
                status=status,
            )

        z = np.asarray(sol["x"].full(), dtype=float).reshape(-1)
        cost = float(sol["f"])
        if not np.all(np.isfinite(z)) or not math.isfinite(cost):
            raise NumericAnomaly(f"Solver returned non-finite values (status={status})")

        n_state = NX * (N + 1)
        states = z[:n_state].reshape(N + 1, NX)
        controls = z[n_state:].reshape(N, NU)

        if warm_start is not None:
            warm_start.update(z)

        logger.debug(
            "MPC solve status=%s iter=%d time=%.4fs cost=%.3f delta0=%.4f a0=%.4f",
            status, iterations, solve_time, cost, controls[0, 0], controls[0, 1],
        )
        return SolveResult(
            steering=float(controls[0, 0]),
            throttle=float(controls[0, 1]),
            predicted_x=states[1:, 0].copy(),
            predicted_y=states[1:, 1].copy(),
            cost=cost,
            iterations=iterations,
            solve_time=solve_time,
            status=status,
        )
