"""
Vehicle dynamics model (kinematic bicycle model).
Used as the equality-constraint generator of the MPC and for latency compensation.
"""

import numpy as np
from typing import Sequence, Tuple, Union

from trajectory.path_model import PathModel

# State vector layout
STATE_FIELDS = ("x", "y", "psi", "v", "cte", "epsi")
X, Y, PSI, V, CTE, EPSI = range(len(STATE_FIELDS))
STATE_SIZE = len(STATE_FIELDS)

# Actuation vector layout
ACTUATION_FIELDS = ("delta", "a")
DELTA, ACCEL = range(len(ACTUATION_FIELDS))
ACTUATION_SIZE = len(ACTUATION_FIELDS)

# Distance between the front axle and the center of gravity, tuned for the
# simulator vehicle (turning radius at constant steering and speed).
DEFAULT_LF = 2.67

PathLike = Union[PathModel, Sequence[float], np.ndarray]


def make_state(x: float = 0.0, y: float = 0.0, psi: float = 0.0, v: float = 0.0,
               cte: float = 0.0, epsi: float = 0.0) -> np.ndarray:
    """Build a state vector from named fields."""
    return np.array([x, y, psi, v, cte, epsi], dtype=np.float64)


def as_path(path: PathLike) -> PathModel:
    """Accept either a PathModel or its raw coefficients."""
    return path if isinstance(path, PathModel) else PathModel(path)


class KinematicBicycleModel:
    """
    Discrete kinematic bicycle model with path-tracking error states.

    Positive steering (delta) turns the vehicle counter-clockwise (heading increases).
    The *_batch methods advance many independent (state, actuation) rows at once;
    the horizon optimizer uses them to evaluate every step of the horizon in one call.
    """

    def __init__(self, lf: float = DEFAULT_LF):
        """
        Initialize bicycle model.

        Args:
            lf: Distance from front axle to center of gravity (meters)
        """
        if lf <= 0.0:
            raise ValueError(f"lf must be positive, got {lf}")
        self.lf = lf

    def step_batch(self, states: np.ndarray, actuations: np.ndarray,
                   path: PathLike, dt: float) -> np.ndarray:
        """
        Advance every row of `states` by one timestep.

        Args:
            states: [M, 6] rows of [x, y, psi, v, cte, epsi]
            actuations: [M, 2] rows of [delta, a]
            path: Reference path (PathModel or coefficients, constant term first)
            dt: Time step (seconds)

        Returns:
            [M, 6] next states
        """
        path = as_path(path)
        states = np.asarray(states, dtype=np.float64).reshape(-1, STATE_SIZE)
        actuations = np.asarray(actuations, dtype=np.float64).reshape(-1, ACTUATION_SIZE)
        x, y, psi, v = states[:, X], states[:, Y], states[:, PSI], states[:, V]
        epsi = states[:, EPSI]
        delta, a = actuations[:, DELTA], actuations[:, ACCEL]

        yaw_step = v / self.lf * delta * dt

        nxt = np.empty_like(states)
        nxt[:, X] = x + v * np.cos(psi) * dt
        nxt[:, Y] = y + v * np.sin(psi) * dt
        nxt[:, PSI] = psi + yaw_step
        nxt[:, V] = v + a * dt
        nxt[:, CTE] = (path.value(x) - y) + v * np.sin(epsi) * dt
        nxt[:, EPSI] = (psi - path.heading(x)) + yaw_step
        return nxt

    def jacobian_batch(self, states: np.ndarray, actuations: np.ndarray,
                       path: PathLike, dt: float) -> Tuple[np.ndarray, np.ndarray]:
        """
        Partial derivatives of step_batch() for every row.

        Returns:
            (d_next/d_state [M, 6, 6], d_next/d_actuation [M, 6, 2])
        """
        path = as_path(path)
        states = np.asarray(states, dtype=np.float64).reshape(-1, STATE_SIZE)
        actuations = np.asarray(actuations, dtype=np.float64).reshape(-1, ACTUATION_SIZE)
        m = len(states)
        x, psi, v, epsi = states[:, X], states[:, PSI], states[:, V], states[:, EPSI]
        delta = actuations[:, DELTA]

        slope = path.slope(x)
        second = path.curvature_term(x)
        cos_psi, sin_psi = np.cos(psi), np.sin(psi)

        d_state = np.zeros((m, STATE_SIZE, STATE_SIZE))
        d_state[:, X, X] = 1.0
        d_state[:, X, PSI] = -v * sin_psi * dt
        d_state[:, X, V] = cos_psi * dt

        d_state[:, Y, Y] = 1.0
        d_state[:, Y, PSI] = v * cos_psi * dt
        d_state[:, Y, V] = sin_psi * dt

        d_state[:, PSI, PSI] = 1.0
        d_state[:, PSI, V] = delta * dt / self.lf

        d_state[:, V, V] = 1.0

        d_state[:, CTE, X] = slope
        d_state[:, CTE, Y] = -1.0
        d_state[:, CTE, V] = np.sin(epsi) * dt
        d_state[:, CTE, EPSI] = v * np.cos(epsi) * dt

        d_state[:, EPSI, X] = -second / (1.0 + slope * slope)
        d_state[:, EPSI, PSI] = 1.0
        d_state[:, EPSI, V] = delta * dt / self.lf

        d_actuation = np.zeros((m, STATE_SIZE, ACTUATION_SIZE))
        d_actuation[:, PSI, DELTA] = v * dt / self.lf
        d_actuation[:, V, ACCEL] = dt
        d_actuation[:, EPSI, DELTA] = v * dt / self.lf

        return d_state, d_actuation

    def step(self, state: Sequence[float], actuation: Sequence[float],
             path: PathLike, dt: float) -> np.ndarray:
        """
        Advance a single state by one timestep.

        Args:
            state: [x, y, psi, v, cte, epsi]
            actuation: [delta, a] (steering angle in radians, acceleration)
            path: Reference path (PathModel or coefficients, constant term first)
            dt: Time step (seconds)

        Returns:
            Next state vector
        """
        return self.step_batch(state, actuation, path, dt)[0]

    def jacobian(self, state: Sequence[float], actuation: Sequence[float],
                 path: PathLike, dt: float) -> Tuple[np.ndarray, np.ndarray]:
        """Single-state version of jacobian_batch(): ([6x6], [6x2])."""
        d_state, d_actuation = self.jacobian_batch(state, actuation, path, dt)
        return d_state[0], d_actuation[0]

    def rollout(self, state: Sequence[float], actuations: np.ndarray,
                path: PathLike, dt: float) -> np.ndarray:
        """
        Apply step() once per actuation row.

        Returns:
            States array of shape (len(actuations) + 1, 6), starting with `state`
        """
        path = as_path(path)
        actuations = np.asarray(actuations, dtype=np.float64).reshape(-1, ACTUATION_SIZE)
        states = np.empty((len(actuations) + 1, STATE_SIZE))
        states[0] = np.asarray(state, dtype=np.float64)
        for i, actuation in enumerate(actuations):
            states[i + 1] = self.step(states[i], actuation, path, dt)
        return states

    @staticmethod
    def error_state(path: PathLike, speed: float) -> np.ndarray:
        """
        Initial state in the vehicle frame.

        The frame transform already puts the vehicle at the origin with zero
        heading, so cte is the path offset at x=0 and epsi = -atan(f'(0)).
        """
        path = as_path(path)
        return make_state(0.0, 0.0, 0.0, speed, path.value(0.0), -path.heading(0.0))
