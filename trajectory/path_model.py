"""
Polynomial path model fitted to vehicle-frame waypoints.

Coefficients are ordered from the constant term upward:
    f(x) = c[0] + c[1] x + c[2] x^2 + ...
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Union

import numpy as np
from scipy.linalg import solve_triangular

from control.errors import InsufficientPoints, NonFiniteState

DEFAULT_DEGREE = 3

ArrayLike = Union[float, Sequence[float], np.ndarray]


def fit_polynomial(xs: Sequence[float], ys: Sequence[float], degree: int = DEFAULT_DEGREE) -> np.ndarray:
    """
    Least-squares polynomial fit via QR of the Vandermonde matrix.

    Args:
        xs: Sample x coordinates
        ys: Sample y coordinates (same length as xs)
        degree: Polynomial degree

    Returns:
        degree + 1 coefficients, constant term first

    Raises:
        InsufficientPoints: fewer than degree + 1 samples, or xs/ys unpaired
        NonFiniteState: samples contain NaN or inf
    """
    x = np.asarray(xs, dtype=np.float64).ravel()
    y = np.asarray(ys, dtype=np.float64).ravel()
    required = degree + 1
    if x.size != y.size:
        raise InsufficientPoints(min(x.size, y.size), required, "x/y length mismatch")
    if x.size < required:
        raise InsufficientPoints(x.size, required)
    if not (np.all(np.isfinite(x)) and np.all(np.isfinite(y))):
        raise NonFiniteState("waypoints contain non-finite values")

    vander = np.vander(x, required, increasing=True)
    q, r = np.linalg.qr(vander, mode="reduced")
    # Rank-deficient input (e.g. all waypoints sharing one x) leaves a zero pivot in R.
    try:
        coeffs = solve_triangular(r, q.T @ y, lower=False)
    except np.linalg.LinAlgError as exc:
        raise NonFiniteState(f"degenerate waypoints: {exc}") from exc
    if not np.all(np.isfinite(coeffs)):
        raise NonFiniteState("polynomial fit produced non-finite coefficients")
    return coeffs


def polyeval(coeffs: Sequence[float], x: ArrayLike):
    """Evaluate sum(coeffs[i] * x**i). Returns a float for scalar x."""
    c = np.asarray(coeffs, dtype=np.float64)
    # Horner, highest order first.
    result = np.zeros_like(np.asarray(x, dtype=np.float64))
    for coeff in c[::-1]:
        result = result * x + coeff
    if np.ndim(result) == 0:
        return float(result)
    return result


def derivative_coefficients(coeffs: Sequence[float], order: int = 1) -> np.ndarray:
    """Coefficients of the order-th derivative, same ordering convention."""
    c = np.asarray(coeffs, dtype=np.float64)
    for _ in range(order):
        if c.size <= 1:
            return np.zeros(1)
        c = c[1:] * np.arange(1, c.size)
    return c


def polyderiv(coeffs: Sequence[float], x: ArrayLike, order: int = 1):
    """Evaluate the order-th derivative of the polynomial at x."""
    return polyeval(derivative_coefficients(coeffs, order), x)


@dataclass(frozen=True)
class PathModel:
    """Fitted reference path in the vehicle frame."""

    coeffs: np.ndarray

    def __post_init__(self):
        object.__setattr__(self, "coeffs", np.asarray(self.coeffs, dtype=np.float64).ravel())

    @classmethod
    def fit(cls, xs: Sequence[float], ys: Sequence[float], degree: int = DEFAULT_DEGREE) -> "PathModel":
        return cls(fit_polynomial(xs, ys, degree))

    @property
    def degree(self) -> int:
        return len(self.coeffs) - 1

    def value(self, x: ArrayLike):
        return polyeval(self.coeffs, x)

    def slope(self, x: ArrayLike):
        return polyderiv(self.coeffs, x, 1)

    def curvature_term(self, x: ArrayLike):
        """Second derivative f''(x)."""
        return polyderiv(self.coeffs, x, 2)

    def heading(self, x: ArrayLike):
        """Path heading atan(f'(x)) in radians. Returns a float for scalar x."""
        heading = np.arctan(self.slope(x))
        if np.ndim(heading) == 0:
            return float(heading)
        return heading
