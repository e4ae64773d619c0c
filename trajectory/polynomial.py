"""
Polynomial fit of the reference path in the vehicle frame.
"""

import logging
from dataclasses import dataclass
from typing import Sequence, Union

import numpy as np
from scipy.linalg import solve_triangular

from control.errors import FittingError

logger = logging.getLogger(__name__)

# Relative threshold on |diag(R)| below which the design matrix is rank-deficient.
RANK_TOLERANCE = 1e-10

ArrayLike = Union[float, Sequence[float], np.ndarray]


def polyeval(coeffs: Sequence[float], x: ArrayLike) -> Union[float, np.ndarray]:
    """
    Evaluate a polynomial with Horner's scheme.

    Args:
        coeffs: Coefficients, constant term first
        x: Scalar or array of abscissae

    Returns:
        f(x), same shape as x
    """
    result = np.zeros_like(np.asarray(x, dtype=float))
    for c in reversed(list(coeffs)):
        result = result * x + c
    if np.ndim(result) == 0:
        return float(result)
    return result


def polyder(coeffs: Sequence[float]) -> np.ndarray:
    """Coefficients of f' (constant term first)."""
    coeffs = np.asarray(coeffs, dtype=float)
    if coeffs.size <= 1:
        return np.zeros(1)
    return coeffs[1:] * np.arange(1, coeffs.size)


@dataclass(frozen=True)
class PathModel:
    """
    Reference path y = f(x) in the vehicle frame.

    Only valid for the control cycle it was fit in.
    """
    coeffs: tuple  # constant term first

    @property
    def order(self) -> int:
        return len(self.coeffs) - 1

    def evaluate(self, x: ArrayLike) -> Union[float, np.ndarray]:
        return polyeval(self.coeffs, x)

    def derivative(self) -> "PathModel":
        return PathModel(tuple(float(c) for c in polyder(self.coeffs)))

    def slope(self, x: ArrayLike) -> Union[float, np.ndarray]:
        return polyeval(polyder(self.coeffs), x)

    def heading(self, x: ArrayLike) -> Union[float, np.ndarray]:
        """Reference path tangent angle atan(f'(x))."""
        slope = self.slope(x)
        if np.ndim(slope) == 0:
            return float(np.arctan(slope))
        return np.arctan(slope)

    def as_array(self) -> np.ndarray:
        return np.asarray(self.coeffs, dtype=float)


def fit_polynomial(xs: Sequence[float], ys: Sequence[float], order: int = 3) -> PathModel:
    """
    Least-squares polynomial fit via Householder QR of the Vandermonde matrix.

    Args:
        xs: Vehicle-frame x of the waypoints
        ys: Vehicle-frame y of the waypoints
        order: Polynomial order

    Returns:
        PathModel with order+1 coefficients

    Raises:
        FittingError: Too few points, too few distinct x-values, or a
            rank-deficient design matrix
    """
    xs = np.asarray(xs, dtype=float).reshape(-1)
    ys = np.asarray(ys, dtype=float).reshape(-1)
    if order < 1:
        raise FittingError(f"Polynomial order must be >= 1, got {order}")
    if xs.shape != ys.shape:
        raise FittingError(f"x/y length mismatch: {xs.size} vs {ys.size}")
    n_terms = order + 1
    if xs.size < n_terms:
        raise FittingError(
            f"Order-{order} fit needs at least {n_terms} points, got {xs.size}"
        )
    if not (np.all(np.isfinite(xs)) and np.all(np.isfinite(ys))):
        raise FittingError("Waypoints contain non-finite values")
    distinct = np.unique(xs).size
    if distinct < n_terms:
        raise FittingError(
            f"Order-{order} fit needs {n_terms} distinct x-values, got {distinct}"
        )

    design = np.vander(xs, n_terms, increasing=True)
    q, r = np.linalg.qr(design, mode="reduced")
    diag = np.abs(np.diag(r))
    if diag.max() == 0.0 or diag.min() <= RANK_TOLERANCE * diag.max():
        raise FittingError(
            f"Design matrix is rank-deficient (|diag R| min={diag.min():.3e}, max={diag.max():.3e})"
        )

    coeffs = solve_triangular(r, q.T @ ys, lower=False)
    if not np.all(np.isfinite(coeffs)):
        raise FittingError("Fit produced non-finite coefficients")

    logger.debug("Fitted order-%d path: %s", order, np.array2string(coeffs, precision=5))
    return PathModel(tuple(float(c) for c in coeffs))
