"""
Tests for trajectory/path_model.py (QR polynomial fit and evaluation).
"""

import math

import numpy as np
import pytest

from control.errors import InsufficientPoints, NonFiniteState
from trajectory.path_model import (
    PathModel,
    derivative_coefficients,
    fit_polynomial,
    polyderiv,
    polyeval,
)


def test_fit_recovers_cubic():
    coeffs = np.array([0.5, -0.1, 0.02, -0.001])
    xs = np.linspace(0.0, 50.0, 6)
    ys = polyeval(coeffs, xs)

    fitted = fit_polynomial(xs, ys, 3)

    assert fitted == pytest.approx(coeffs, abs=1e-6)


def test_fit_recovers_lower_degree_with_zero_high_terms():
    xs = np.array([-3.0, 2.0, 8.0, 15.0, 27.0])
    ys = 1.5 - 0.25 * xs

    fitted = fit_polynomial(xs, ys, 3)

    assert fitted == pytest.approx([1.5, -0.25, 0.0, 0.0], abs=1e-6)


def test_fit_is_least_squares_for_noisy_points():
    rng = np.random.default_rng(0)
    xs = np.linspace(0.0, 40.0, 25)
    ys = 0.3 + 0.05 * xs + rng.normal(0.0, 0.01, xs.size)

    fitted = fit_polynomial(xs, ys, 1)

    assert fitted == pytest.approx(np.polyfit(xs, ys, 1)[::-1], abs=1e-9)


def test_fit_requires_degree_plus_one_points():
    with pytest.raises(InsufficientPoints) as exc_info:
        fit_polynomial([0.0, 1.0], [0.0, 1.0], 3)
    assert exc_info.value.available == 2
    assert exc_info.value.required == 4
    assert exc_info.value.kind == "insufficient_points"


def test_fit_rejects_unpaired_points():
    with pytest.raises(InsufficientPoints):
        fit_polynomial([0.0, 1.0, 2.0, 3.0, 4.0], [0.0, 1.0, 2.0, 3.0], 3)


def test_fit_rejects_non_finite_points():
    with pytest.raises(NonFiniteState):
        fit_polynomial([0.0, 1.0, float("nan"), 3.0], [0.0, 1.0, 2.0, 3.0], 3)


def test_polyeval_scalar_and_array():
    coeffs = [1.0, 2.0, 3.0]
    assert polyeval(coeffs, 2.0) == pytest.approx(17.0)
    assert isinstance(polyeval(coeffs, 2.0), float)
    assert polyeval(coeffs, np.array([0.0, 1.0])) == pytest.approx([1.0, 6.0])


def test_derivatives():
    coeffs = [1.0, 2.0, 3.0, 4.0]
    assert derivative_coefficients(coeffs, 1) == pytest.approx([2.0, 6.0, 12.0])
    assert derivative_coefficients(coeffs, 2) == pytest.approx([6.0, 24.0])
    assert polyderiv(coeffs, 1.0) == pytest.approx(2.0 + 6.0 + 12.0)
    assert polyderiv(coeffs, 1.0, order=2) == pytest.approx(30.0)
    assert polyderiv([5.0], 3.0) == pytest.approx(0.0)


def test_path_model_heading():
    xs = np.linspace(0.0, 30.0, 6)
    model = PathModel.fit(xs, 2.0 + xs)

    assert model.degree == 3
    assert model.value(0.0) == pytest.approx(2.0)
    assert model.slope(10.0) == pytest.approx(1.0)
    assert model.heading(5.0) == pytest.approx(math.pi / 4)
    assert model.curvature_term(5.0) == pytest.approx(0.0, abs=1e-8)
