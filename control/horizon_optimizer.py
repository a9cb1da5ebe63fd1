"""
Receding-horizon optimizer (MPC core).

Builds the nonlinear program over N steps:
    variables    N states [x, y, psi, v, cte, epsi] and N-1 actuations [delta, a]
    constraints  step-0 state == observed state,
                 state[t] == model.step(state[t-1], actuation[t-1]) for t = 1..N-1,
                 |delta| <= max_steer, throttle_min <= a <= throttle_max
    cost         cte^2, epsi^2, (v - v_ref)^2 every step,
                 delta^2, a^2 every actuation,
                 (delta[t+1] - delta[t])^2, (a[t+1] - a[t])^2 every actuation pair
and hands it to a NonlinearSolver.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Optional, Sequence, Tuple, Union

import numpy as np

from control.errors import SolveFailed
from control.mpc_solver import NonlinearProgram, NonlinearSolver, SLSQPSolver
from control.vehicle_model import (
    ACCEL,
    ACTUATION_FIELDS,
    ACTUATION_SIZE,
    CTE,
    DEFAULT_LF,
    DELTA,
    EPSI,
    STATE_FIELDS,
    STATE_SIZE,
    V,
    X,
    Y,
    KinematicBicycleModel,
    PathLike,
    as_path,
)
from data.formats.data_format import ActuationCommand

logger = logging.getLogger(__name__)

FieldRef = Union[int, str]


@dataclass
class CostWeights:
    """Weights of the MPC cost terms."""

    cte: float = 2000.0
    epsi: float = 2000.0
    speed: float = 1.0
    steer: float = 5.0
    accel: float = 5.0
    steer_rate: float = 2500.0  # abrupt steering is the least comfortable failure mode
    accel_rate: float = 10.0


@dataclass
class HorizonConfig:
    """Configuration for the horizon optimizer."""

    n_steps: int = 10
    dt: float = 0.1  # seconds
    ref_speed: float = 40.0  # same unit as telemetry speed
    lf: float = DEFAULT_LF
    max_steer_rad: float = math.radians(25.0)
    throttle_min: float = -1.0
    throttle_max: float = 1.0
    warm_start: bool = False
    solver_timeout_s: Optional[float] = None
    weights: CostWeights = field(default_factory=CostWeights)

    def __post_init__(self):
        if self.n_steps < 2:
            raise ValueError(f"n_steps must be >= 2, got {self.n_steps}")
        if self.dt <= 0.0:
            raise ValueError(f"dt must be positive, got {self.dt}")
        if self.max_steer_rad <= 0.0:
            raise ValueError(f"max_steer_rad must be positive, got {self.max_steer_rad}")
        if self.throttle_min >= self.throttle_max:
            raise ValueError("throttle_min must be below throttle_max")


class VariableLayout:
    """
    Index map between (step, field) and the flat solver vector.

    Each field occupies one contiguous block:
        x[0..N-1] y[..] psi[..] v[..] cte[..] epsi[..] delta[0..N-2] a[0..N-2]
    """

    def __init__(self, n_steps: int):
        self.n_steps = n_steps
        self.n_actuations = n_steps - 1
        self.actuation_start = STATE_SIZE * n_steps
        self.size = self.actuation_start + ACTUATION_SIZE * self.n_actuations

    @staticmethod
    def _field(fields: Tuple[str, ...], ref: FieldRef) -> int:
        return fields.index(ref) if isinstance(ref, str) else int(ref)

    def state_index(self, step: int, field_ref: FieldRef) -> int:
        if not 0 <= step < self.n_steps:
            raise IndexError(f"state step {step} out of range [0, {self.n_steps})")
        return self._field(STATE_FIELDS, field_ref) * self.n_steps + step

    def actuation_index(self, step: int, field_ref: FieldRef) -> int:
        if not 0 <= step < self.n_actuations:
            raise IndexError(f"actuation step {step} out of range [0, {self.n_actuations})")
        return self.actuation_start + self._field(ACTUATION_FIELDS, field_ref) * self.n_actuations + step

    def state_columns(self, step: int) -> np.ndarray:
        """Flat indices of all state fields at one step, in STATE_FIELDS order."""
        return np.arange(STATE_SIZE) * self.n_steps + step

    def actuation_columns(self, step: int) -> np.ndarray:
        return self.actuation_start + np.arange(ACTUATION_SIZE) * self.n_actuations + step

    def state_slice(self, field_ref: FieldRef) -> slice:
        """Block holding one state field across the horizon."""
        start = self._field(STATE_FIELDS, field_ref) * self.n_steps
        return slice(start, start + self.n_steps)

    def actuation_slice(self, field_ref: FieldRef) -> slice:
        start = self.actuation_start + self._field(ACTUATION_FIELDS, field_ref) * self.n_actuations
        return slice(start, start + self.n_actuations)

    def pack(self, states: np.ndarray, actuations: np.ndarray) -> np.ndarray:
        states = np.asarray(states, dtype=np.float64).reshape(self.n_steps, STATE_SIZE)
        actuations = np.asarray(actuations, dtype=np.float64).reshape(self.n_actuations, ACTUATION_SIZE)
        return np.concatenate([states.T.ravel(), actuations.T.ravel()])

    def unpack(self, z: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Returns (states [N, 6], actuations [N-1, 2])."""
        z = np.asarray(z, dtype=np.float64)
        states = z[:self.actuation_start].reshape(STATE_SIZE, self.n_steps).T
        actuations = z[self.actuation_start:].reshape(ACTUATION_SIZE, self.n_actuations).T
        return states, actuations


@dataclass
class HorizonTrajectory:
    """Solved horizon: N predicted states and the N-1 actuations between them."""

    states: np.ndarray  # [N, 6]
    actuations: np.ndarray  # [N-1, 2]
    cost: float = 0.0
    iterations: int = 0
    solver_status: str = ""
    solve_time: float = 0.0

    @property
    def n_steps(self) -> int:
        return len(self.states)

    @property
    def xs(self) -> np.ndarray:
        return self.states[:, X]

    @property
    def ys(self) -> np.ndarray:
        return self.states[:, Y]

    @property
    def steering(self) -> np.ndarray:
        return self.actuations[:, DELTA]

    @property
    def acceleration(self) -> np.ndarray:
        return self.actuations[:, ACCEL]


class HorizonOptimizer:
    """Builds and solves the MPC program for one control cycle."""

    def __init__(self, config: Optional[HorizonConfig] = None,
                 solver: Optional[NonlinearSolver] = None,
                 model: Optional[KinematicBicycleModel] = None):
        self.config = config or HorizonConfig()
        self.solver = solver or SLSQPSolver()
        self.model = model or KinematicBicycleModel(lf=self.config.lf)
        self.layout = VariableLayout(self.config.n_steps)
        self._last_actuations: Optional[np.ndarray] = None

    def reset(self) -> None:
        """Drop the warm-start guess."""
        self._last_actuations = None

    def bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        """Box bounds: states unbounded, actuators limited to their physical range."""
        cfg = self.config
        lower = np.full(self.layout.size, -np.inf)
        upper = np.full(self.layout.size, np.inf)
        lower[self.layout.actuation_slice(DELTA)] = -cfg.max_steer_rad
        upper[self.layout.actuation_slice(DELTA)] = cfg.max_steer_rad
        lower[self.layout.actuation_slice(ACCEL)] = cfg.throttle_min
        upper[self.layout.actuation_slice(ACCEL)] = cfg.throttle_max
        return lower, upper

    def initial_guess(self, state: np.ndarray, coeffs: PathLike) -> np.ndarray:
        """Dynamics rollout from the initial state, so the guess satisfies every equality."""
        cfg = self.config
        actuations = np.zeros((self.layout.n_actuations, ACTUATION_SIZE))
        if cfg.warm_start and self._last_actuations is not None:
            shifted = np.vstack([self._last_actuations[1:], self._last_actuations[-1:]])
            shifted[:, DELTA] = np.clip(shifted[:, DELTA], -cfg.max_steer_rad, cfg.max_steer_rad)
            shifted[:, ACCEL] = np.clip(shifted[:, ACCEL], cfg.throttle_min, cfg.throttle_max)
            actuations = shifted
        states = self.model.rollout(state, actuations, coeffs, cfg.dt)
        return self.layout.pack(states, actuations)

    def build_program(self, state: Sequence[float], coeffs: PathLike) -> NonlinearProgram:
        """Assemble objective, constraints and bounds for the given start state and path."""
        cfg = self.config
        w = cfg.weights
        layout = self.layout
        model = self.model
        init = np.asarray(state, dtype=np.float64)
        path = as_path(coeffs)
        n = layout.n_steps

        cte_idx = layout.state_slice(CTE)
        epsi_idx = layout.state_slice(EPSI)
        v_idx = layout.state_slice(V)
        delta_idx = layout.actuation_slice(DELTA)
        accel_idx = layout.actuation_slice(ACCEL)

        def objective(z: np.ndarray) -> float:
            delta = z[delta_idx]
            accel = z[accel_idx]
            cost = w.cte * np.sum(z[cte_idx] ** 2)
            cost += w.epsi * np.sum(z[epsi_idx] ** 2)
            cost += w.speed * np.sum((z[v_idx] - cfg.ref_speed) ** 2)
            cost += w.steer * np.sum(delta ** 2)
            cost += w.accel * np.sum(accel ** 2)
            cost += w.steer_rate * np.sum(np.diff(delta) ** 2)
            cost += w.accel_rate * np.sum(np.diff(accel) ** 2)
            return float(cost)

        def rate_gradient(u: np.ndarray, weight: float) -> np.ndarray:
            grad = np.zeros_like(u)
            d = np.diff(u)
            grad[:-1] -= 2.0 * weight * d
            grad[1:] += 2.0 * weight * d
            return grad

        def gradient(z: np.ndarray) -> np.ndarray:
            grad = np.zeros_like(z)
            delta = z[delta_idx]
            accel = z[accel_idx]
            grad[cte_idx] = 2.0 * w.cte * z[cte_idx]
            grad[epsi_idx] = 2.0 * w.epsi * z[epsi_idx]
            grad[v_idx] = 2.0 * w.speed * (z[v_idx] - cfg.ref_speed)
            grad[delta_idx] = 2.0 * w.steer * delta + rate_gradient(delta, w.steer_rate)
            grad[accel_idx] = 2.0 * w.accel * accel + rate_gradient(accel, w.accel_rate)
            return grad

        def eq_constraints(z: np.ndarray) -> np.ndarray:
            states, actuations = layout.unpack(z)
            residual = np.empty((n, STATE_SIZE))
            residual[0] = states[0] - init
            residual[1:] = states[1:] - model.step_batch(states[:-1], actuations, path, cfg.dt)
            return residual.ravel()

        # Row t*6+i is the constraint on field i at step t; step t depends on
        # the state and actuation columns of step t-1.
        steps = np.arange(1, n)[:, None]
        rows = steps * STATE_SIZE + np.arange(STATE_SIZE)
        prev_state_cols = layout.state_columns(steps - 1)
        prev_actuation_cols = layout.actuation_columns(steps - 1)

        jac_base = np.zeros((n * STATE_SIZE, layout.size))
        jac_base[np.arange(STATE_SIZE), layout.state_columns(0)] = 1.0
        jac_base[rows, layout.state_columns(steps)] = 1.0

        def eq_jacobian(z: np.ndarray) -> np.ndarray:
            states, actuations = layout.unpack(z)
            d_state, d_actuation = model.jacobian_batch(states[:-1], actuations, path, cfg.dt)
            jac = jac_base.copy()
            jac[rows[:, :, None], prev_state_cols[:, None, :]] = -d_state
            jac[rows[:, :, None], prev_actuation_cols[:, None, :]] = -d_actuation
            return jac

        lower, upper = self.bounds()
        return NonlinearProgram(
            objective=objective,
            gradient=gradient,
            eq_constraints=eq_constraints,
            eq_jacobian=eq_jacobian,
            lower=lower,
            upper=upper,
            initial_guess=self.initial_guess(init, path),
        )

    def solve(self, state: Sequence[float], coeffs: PathLike) -> HorizonTrajectory:
        """
        Solve the horizon problem from `state` along the path `coeffs`.

        Raises:
            SolveFailed: solver reported failure, hit its deadline or returned non-finite values
        """
        program = self.build_program(state, coeffs)
        result = self.solver.minimize(program, timeout=self.config.solver_timeout_s)
        if not result.success or result.x is None:
            raise SolveFailed(f"solver {result.status}: {result.message}", status=result.status)

        states, actuations = self.layout.unpack(result.x)
        if not (np.all(np.isfinite(states)) and np.all(np.isfinite(actuations))):
            raise SolveFailed("solver returned non-finite trajectory", status="non_finite")

        logger.debug(
            "MPC solve: status=%s cost=%.3f iters=%d time=%.4fs",
            result.status, result.cost, result.iterations, result.solve_time,
        )
        if self.config.warm_start:
            self._last_actuations = actuations.copy()

        return HorizonTrajectory(
            states=states.copy(),
            actuations=actuations.copy(),
            cost=result.cost,
            iterations=result.iterations,
            solver_status=result.status,
            solve_time=result.solve_time,
        )


def select_actuation(trajectory: HorizonTrajectory, max_steer_rad: float,
                     steering_sign: float = -1.0,
                     throttle_min: float = -1.0, throttle_max: float = 1.0) -> ActuationCommand:
    """
    First-step actuation of a solved horizon, converted for the actuator.

    Steering is divided by the physical max angle to land in [-1, 1]; the sign
    flip maps the model's counter-clockwise-positive angle to the simulator's
    right-positive steering input.
    """
    delta = float(trajectory.actuations[0, DELTA])
    accel = float(trajectory.actuations[0, ACCEL])
    steering = float(np.clip(steering_sign * delta / max_steer_rad, -1.0, 1.0))
    throttle = float(np.clip(accel, throttle_min, throttle_max))
    return ActuationCommand(
        steering=steering,
        throttle=throttle,
        steering_angle=delta,
        acceleration=accel,
    )


def predicted_path(trajectory: HorizonTrajectory) -> Tuple[list, list]:
    """All N predicted (x, y) points, for display."""
    return trajectory.xs.tolist(), trajectory.ys.tolist()
