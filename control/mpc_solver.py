"""
Nonlinear program container and solver backends for the MPC.

The horizon optimizer only talks to the NonlinearSolver protocol:
    minimize(program, timeout) -> SolverResult
so any backend that can minimize a smooth objective subject to equality
constraints and box bounds can be swapped in.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import numpy as np
from scipy.optimize import Bounds, minimize

logger = logging.getLogger(__name__)

# SLSQP exit modes that still leave a usable iterate behind
# (8: positive directional derivative in line search, 9: iteration limit).
_SLSQP_INEXACT_STATUSES = (8, 9)


@dataclass
class NonlinearProgram:
    """Smooth NLP: minimize f(z) s.t. g(z) = 0, lower <= z <= upper."""

    objective: Callable[[np.ndarray], float]
    gradient: Callable[[np.ndarray], np.ndarray]
    eq_constraints: Callable[[np.ndarray], np.ndarray]
    eq_jacobian: Callable[[np.ndarray], np.ndarray]
    lower: np.ndarray
    upper: np.ndarray
    initial_guess: np.ndarray

    @property
    def size(self) -> int:
        return int(self.initial_guess.size)

    def max_violation(self, z: np.ndarray) -> float:
        """Largest equality residual or bound excess at z."""
        residual = np.abs(self.eq_constraints(z))
        eq_viol = float(residual.max()) if residual.size else 0.0
        bound_viol = float(max(
            np.max(self.lower - z, initial=0.0),
            np.max(z - self.upper, initial=0.0),
        ))
        return max(eq_viol, bound_viol)


@dataclass
class SolverResult:
    """Outcome of a solve. x is None when the solver produced nothing usable."""

    success: bool
    x: Optional[np.ndarray]
    cost: float
    iterations: int
    status: str
    message: str
    solve_time: float
    max_violation: float = float("inf")


class NonlinearSolver(Protocol):
    def minimize(self, program: NonlinearProgram, timeout: Optional[float] = None) -> SolverResult:
        ...


class _DeadlineExceeded(Exception):
    """Raised from inside a callback to abort a solve that ran out of time."""


class SLSQPSolver:
    """
    Sequential least-squares programming backend (scipy.optimize).

    SLSQP has no wall-clock limit of its own; the deadline is checked every time
    the solver asks for the objective and the solve is aborted from there.
    """

    def __init__(self, max_iter: int = 100, ftol: float = 1e-4,
                 accept_inexact: bool = True, constraint_tolerance: float = 1e-4):
        """
        Args:
            max_iter: SLSQP iteration limit
            ftol: Absolute precision goal for the objective in the stopping criterion
            accept_inexact: Accept iteration-limit / line-search exits that are feasible
            constraint_tolerance: Max residual for an inexact iterate to be accepted
        """
        self.max_iter = max_iter
        self.ftol = ftol
        self.accept_inexact = accept_inexact
        self.constraint_tolerance = constraint_tolerance

    def minimize(self, program: NonlinearProgram, timeout: Optional[float] = None) -> SolverResult:
        start_time = time.monotonic()
        deadline = start_time + timeout if timeout is not None else None

        def objective(z):
            if deadline is not None and time.monotonic() >= deadline:
                raise _DeadlineExceeded()
            return program.objective(z)

        constraints = [{
            "type": "eq",
            "fun": program.eq_constraints,
            "jac": program.eq_jacobian,
        }]

        try:
            res = minimize(
                objective,
                program.initial_guess,
                jac=program.gradient,
                method="SLSQP",
                bounds=Bounds(program.lower, program.upper),
                constraints=constraints,
                options={"maxiter": self.max_iter, "ftol": self.ftol},
            )
        except _DeadlineExceeded:
            elapsed = time.monotonic() - start_time
            logger.warning("SLSQP aborted at deadline after %.3fs (timeout=%.3fs)", elapsed, timeout)
            return SolverResult(
                success=False, x=None, cost=float("inf"), iterations=0,
                status="deadline", message=f"deadline of {timeout:.3f}s exceeded",
                solve_time=elapsed,
            )

        elapsed = time.monotonic() - start_time
        x = np.asarray(res.x, dtype=np.float64)
        finite = bool(np.all(np.isfinite(x)))
        violation = program.max_violation(x) if finite else float("inf")

        if res.success and finite:
            status = "optimal"
            success = True
        elif (self.accept_inexact and finite and res.status in _SLSQP_INEXACT_STATUSES
              and violation <= self.constraint_tolerance):
            status = "inexact"
            success = True
            logger.debug("Accepting inexact SLSQP result: %s (violation=%.2e)", res.message, violation)
        else:
            status = "failed"
            success = False

        return SolverResult(
            success=success,
            x=x if finite else None,
            cost=float(res.fun) if np.isfinite(res.fun) else float("inf"),
            iterations=int(getattr(res, "nit", 0)),
            status=status,
            message=str(res.message),
            solve_time=elapsed,
            max_violation=violation,
        )
