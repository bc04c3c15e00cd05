"""
Reference curve fitting and tracking-error evaluation.
Fits a polynomial y = f(x) to the reference points in the vehicle frame.
"""

import math
import logging
from typing import Sequence, Tuple, Union

import numpy as np
from scipy.linalg import solve_triangular

logger = logging.getLogger(__name__)

# Relative threshold on |R_ii| / max|R_jj| below which the design matrix is
# treated as rank deficient.
RANK_TOLERANCE = 1e-10


class TrackingError(Exception):
    """Base class for recoverable per-tick pipeline failures."""


class FitError(TrackingError):
    """The reference curve could not be fitted for this tick."""


class InsufficientWaypointsError(FitError, ValueError):
    """Raised when fewer reference points arrive than the curve fit needs."""

    def __init__(self, count: int, min_points: int) -> None:
        super().__init__(f"need at least {min_points} waypoints, got {count}")
        self.count = count
        self.min_points = min_points


class WaypointMismatchError(FitError, ValueError):
    """Raised when the x and y waypoint sequences differ in length."""

    def __init__(self, x_count: int, y_count: int) -> None:
        super().__init__(f"waypoint x/y length mismatch: {x_count} != {y_count}")
        self.x_count = x_count
        self.y_count = y_count


class DegenerateFitError(FitError):
    """The least-squares problem is rank deficient or produced non-finite values."""


def vandermonde(xs: np.ndarray, degree: int) -> np.ndarray:
    """Design matrix with columns 1, x, x^2, ..., x^degree."""
    design = np.ones((len(xs), degree + 1), dtype=float)
    for i in range(degree):
        design[:, i + 1] = design[:, i] * xs
    return design


def fit_polynomial(xs: Sequence[float], ys: Sequence[float], degree: int = 3) -> np.ndarray:
    """
    Least-squares polynomial fit via Householder QR.

    Args:
        xs: x values (need not be sorted)
        ys: y values, same length as xs
        degree: Polynomial degree (>= 1)

    Returns:
        Coefficients, lowest order first (length degree + 1)

    Raises:
        InsufficientWaypointsError: fewer than degree + 1 points
        DegenerateFitError: rank-deficient design matrix or non-finite result
    """
    x_vals = np.asarray(xs, dtype=float)
    y_vals = np.asarray(ys, dtype=float)
    if x_vals.shape != y_vals.shape:
        raise WaypointMismatchError(x_vals.size, y_vals.size)
    if degree < 1:
        raise ValueError(f"degree must be >= 1, got {degree}")
    if len(x_vals) < degree + 1:
        raise InsufficientWaypointsError(len(x_vals), degree + 1)
    if not (np.all(np.isfinite(x_vals)) and np.all(np.isfinite(y_vals))):
        raise DegenerateFitError("non-finite input points")

    design = vandermonde(x_vals, degree)
    q, r = np.linalg.qr(design, mode="reduced")

    diag = np.abs(np.diag(r))
    scale = float(np.max(diag)) if diag.size else 0.0
    if scale == 0.0 or np.any(diag <= RANK_TOLERANCE * scale):
        distinct = len(np.unique(x_vals))
        raise DegenerateFitError(
            f"rank-deficient design matrix ({distinct} distinct x values for degree {degree})"
        )

    coeffs = solve_triangular(r, q.T @ y_vals, lower=False)
    if not np.all(np.isfinite(coeffs)):
        raise DegenerateFitError("fit produced non-finite coefficients")
    return coeffs


def polyeval(coeffs: Sequence[float], x: Union[float, np.ndarray]) -> Union[float, np.ndarray]:
    """Evaluate a polynomial with coefficients in increasing order."""
    result = np.zeros_like(np.asarray(x, dtype=float))
    for c in reversed(list(coeffs)):
        result = result * x + c
    if np.ndim(result) == 0:
        return float(result)
    return result


def polyderiv(coeffs: Sequence[float], x: Union[float, np.ndarray]) -> Union[float, np.ndarray]:
    """Evaluate the first derivative of the polynomial."""
    deriv = [i * c for i, c in enumerate(coeffs)][1:]
    return polyeval(deriv or [0.0], x)


def compute_tracking_errors(coeffs: Sequence[float]) -> Tuple[float, float]:
    """
    Cross-track and heading error of a vehicle sitting at the local origin.

    cte is the curve value at x = 0 (the constant coefficient); epsi is
    -atan of the slope there. First-order approximation: only accurate when
    the vehicle is close to and roughly aligned with the curve.
    """
    cte = float(polyeval(coeffs, 0.0))
    epsi = -math.atan(float(coeffs[1]))
    return cte, epsi
