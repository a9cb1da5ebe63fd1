"""
MPC (Model Predictive Control) path-tracking controller.

One control cycle:
    telemetry -> vehicle-frame waypoints -> cubic path fit -> error state
    -> latency compensation -> horizon solve -> first actuation + predicted path
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np

from control.errors import ControlCycleError, InsufficientPoints, NonFiniteState
from control.horizon_optimizer import (
    CostWeights,
    HorizonConfig,
    HorizonOptimizer,
    HorizonTrajectory,
    predicted_path,
    select_actuation,
)
from control.mpc_solver import NonlinearSolver, SLSQPSolver
from control.vehicle_model import KinematicBicycleModel, PathLike
from data.formats.data_format import ActuationCommand, ControlOutput, Telemetry
from trajectory.path_model import DEFAULT_DEGREE, PathModel
from trajectory.utils import all_finite, transform_to_vehicle_frame

logger = logging.getLogger(__name__)

FALLBACK_MODES = ("hold", "stop")


@dataclass
class FallbackConfig:
    """What to send when a cycle fails."""

    mode: str = "hold"  # "hold": reuse last valid command, "stop": decelerate immediately
    max_hold_cycles: int = 5  # consecutive failed cycles before "hold" gives way to stop
    stop_throttle: float = -0.5

    def __post_init__(self):
        if self.mode not in FALLBACK_MODES:
            raise ValueError(f"fallback mode must be one of {FALLBACK_MODES}, got {self.mode!r}")
        if self.max_hold_cycles < 0:
            raise ValueError("max_hold_cycles must be >= 0")


@dataclass
class MPCConfig:
    """Controller-level configuration (horizon config is nested)."""

    horizon: HorizonConfig
    latency_s: float = 0.1  # command-to-actuation delay compensated for
    steering_sign: float = -1.0  # simulator steers right for positive input
    polynomial_degree: int = DEFAULT_DEGREE
    fallback: FallbackConfig = field(default_factory=FallbackConfig)

    def __post_init__(self):
        if self.latency_s < 0.0:
            raise ValueError(f"latency_s must be >= 0, got {self.latency_s}")


class ActuationSlot:
    """
    Single-slot store for the previously issued actuation [delta, a].

    Written once at the end of a cycle and read once at the start of the next.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._value = np.zeros(2)

    def read(self) -> np.ndarray:
        with self._lock:
            return self._value.copy()

    def write(self, actuation) -> None:
        value = np.asarray(actuation, dtype=np.float64).reshape(2)
        with self._lock:
            self._value = value.copy()

    def reset(self) -> None:
        self.write([0.0, 0.0])


def predict_initial_state(model: KinematicBicycleModel, state: np.ndarray, path: PathLike,
                          previous_actuation: np.ndarray, latency_s: float) -> np.ndarray:
    """
    Propagate the observed state through the actuation latency.

    The command computed now only takes effect latency_s from now, while the
    previous command is still being applied, so the optimizer starts from the
    state predicted at that moment.
    """
    if latency_s <= 0.0:
        return np.asarray(state, dtype=np.float64).copy()
    return model.step(state, previous_actuation, path, latency_s)


class MPCController:
    """
    Model Predictive Control for path tracking.

    Stateless across cycles except for the previously issued actuation (latency
    compensation) and the fallback bookkeeping. Cycles are serialized.
    """

    def __init__(self, config: Optional[MPCConfig] = None,
                 solver: Optional[NonlinearSolver] = None):
        """
        Initialize MPC controller.

        Args:
            config: Controller configuration (defaults if None)
            solver: NLP backend (SLSQP if None)
        """
        self.config = config or MPCConfig(horizon=HorizonConfig())
        self.model = KinematicBicycleModel(lf=self.config.horizon.lf)
        self.optimizer = HorizonOptimizer(self.config.horizon, solver=solver, model=self.model)
        self.previous_actuation = ActuationSlot()

        self._cycle_lock = threading.Lock()
        self._last_valid_command: Optional[ActuationCommand] = None
        self._consecutive_failures = 0
        self.cycle_count = 0
        self.failure_count = 0

    @property
    def horizon(self) -> int:
        return self.config.horizon.n_steps

    @property
    def dt(self) -> float:
        return self.config.horizon.dt

    def reset(self) -> None:
        """Forget previous actuation, last valid command and warm start."""
        with self._cycle_lock:
            self.previous_actuation.reset()
            self.optimizer.reset()
            self._last_valid_command = None
            self._consecutive_failures = 0

    def prepare(self, telemetry: Telemetry) -> Tuple[np.ndarray, np.ndarray, PathModel, np.ndarray]:
        """
        Frame transform, path fit and error state for one telemetry message.

        Returns:
            (xs, ys, path, observed_state) in the vehicle frame

        Raises:
            InsufficientPoints, NonFiniteState
        """
        pose = telemetry.pose
        degree = self.config.polynomial_degree
        if len(telemetry.ptsx) != len(telemetry.ptsy):
            raise InsufficientPoints(
                min(len(telemetry.ptsx), len(telemetry.ptsy)), degree + 1, "x/y length mismatch"
            )
        if len(telemetry.ptsx) < degree + 1:
            raise InsufficientPoints(len(telemetry.ptsx), degree + 1)
        if not all_finite(pose.x, pose.y, pose.psi, pose.speed):
            raise NonFiniteState(f"non-finite pose: {pose}")
        if not all_finite(telemetry.ptsx, telemetry.ptsy):
            raise NonFiniteState("non-finite waypoints")

        xs, ys = transform_to_vehicle_frame(telemetry.ptsx, telemetry.ptsy, pose.x, pose.y, pose.psi)
        path = PathModel.fit(xs, ys, degree)
        state = self.model.error_state(path, pose.speed)
        if not all_finite(state):
            raise NonFiniteState(f"non-finite error state cte={state[4]} epsi={state[5]}")
        return xs, ys, path, state

    def solve_cycle(self, telemetry: Telemetry) -> ControlOutput:
        """
        Run one cycle, raising per-cycle errors instead of falling back.

        Raises:
            InsufficientPoints, NonFiniteState, SolveFailed
        """
        with self._cycle_lock:
            return self._solve_locked(telemetry)

    def compute_control(self, telemetry: Telemetry) -> ControlOutput:
        """
        Run one cycle and always return a command.

        Per-cycle errors are logged and replaced by the fallback command.
        """
        with self._cycle_lock:
            self.cycle_count += 1
            try:
                return self._solve_locked(telemetry)
            except ControlCycleError as exc:
                return self._fallback_locked(exc)

    def _solve_locked(self, telemetry: Telemetry) -> ControlOutput:
        xs, ys, path, observed = self.prepare(telemetry)
        initial_state = predict_initial_state(
            self.model, observed, path, self.previous_actuation.read(), self.config.latency_s
        )
        if not all_finite(initial_state):
            raise NonFiniteState("latency compensation produced a non-finite state")

        trajectory: HorizonTrajectory = self.optimizer.solve(initial_state, path)
        horizon_cfg = self.config.horizon
        command = select_actuation(
            trajectory,
            max_steer_rad=horizon_cfg.max_steer_rad,
            steering_sign=self.config.steering_sign,
            throttle_min=horizon_cfg.throttle_min,
            throttle_max=horizon_cfg.throttle_max,
        )

        self.previous_actuation.write(command.as_actuation())
        self._last_valid_command = command
        self._consecutive_failures = 0

        mpc_x, mpc_y = predicted_path(trajectory)
        return ControlOutput(
            command=command,
            mpc_x=mpc_x,
            mpc_y=mpc_y,
            next_x=xs.tolist(),
            next_y=ys.tolist(),
            initial_state=initial_state,
            coeffs=path.coeffs,
            cost=trajectory.cost,
            solve_time=trajectory.solve_time,
            solver_status=trajectory.solver_status,
        )

    def _fallback_locked(self, exc: ControlCycleError) -> ControlOutput:
        fallback = self.config.fallback
        self._consecutive_failures += 1
        self.failure_count += 1

        hold = (
            fallback.mode == "hold"
            and self._last_valid_command is not None
            and self._consecutive_failures <= fallback.max_hold_cycles
        )
        if hold:
            command = self._last_valid_command
            action = "hold"
        else:
            command = self.stop_command()
            action = "stop"

        logger.warning(
            "Control cycle failed (%s: %s); issuing %s command steering=%.3f throttle=%.3f "
            "[consecutive_failures=%d]",
            exc.kind, exc, action, command.steering, command.throttle, self._consecutive_failures,
        )
        # Latency compensation must see what the actuator actually received.
        self.previous_actuation.write(command.as_actuation())

        return ControlOutput(
            command=command,
            status="fallback",
            error=exc.kind,
            error_message=str(exc),
            solver_status=getattr(exc, "status", None),
        )

    def stop_command(self) -> ActuationCommand:
        """Safe deceleration: wheels straight, configured brake throttle."""
        horizon_cfg = self.config.horizon
        throttle = float(np.clip(self.config.fallback.stop_throttle,
                                 horizon_cfg.throttle_min, horizon_cfg.throttle_max))
        return ActuationCommand(steering=0.0, throttle=throttle,
                                steering_angle=0.0, acceleration=throttle)


def build_mpc_controller(config: dict, solver: Optional[NonlinearSolver] = None) -> MPCController:
    """Build an MPCController from the full config dictionary (control.mpc section)."""
    mpc_cfg = config.get("control", {}).get("mpc", {}) or {}
    weights_cfg = mpc_cfg.get("weights", {}) or {}
    fallback_cfg = mpc_cfg.get("fallback", {}) or {}

    defaults = CostWeights()
    weights = CostWeights(
        cte=float(weights_cfg.get("cte", defaults.cte)),
        epsi=float(weights_cfg.get("epsi", defaults.epsi)),
        speed=float(weights_cfg.get("speed", defaults.speed)),
        steer=float(weights_cfg.get("steer", defaults.steer)),
        accel=float(weights_cfg.get("accel", defaults.accel)),
        steer_rate=float(weights_cfg.get("steer_rate", defaults.steer_rate)),
        accel_rate=float(weights_cfg.get("accel_rate", defaults.accel_rate)),
    )

    timeout = mpc_cfg.get("solver_timeout_s", 0.08)
    horizon = HorizonConfig(
        n_steps=int(mpc_cfg.get("n_steps", 10)),
        dt=float(mpc_cfg.get("dt", 0.1)),
        ref_speed=float(mpc_cfg.get("ref_speed", 40.0)),
        lf=float(mpc_cfg.get("lf", 2.67)),
        max_steer_rad=math.radians(float(mpc_cfg.get("max_steer_deg", 25.0))),
        throttle_min=float(mpc_cfg.get("throttle_min", -1.0)),
        throttle_max=float(mpc_cfg.get("throttle_max", 1.0)),
        warm_start=bool(mpc_cfg.get("warm_start", False)),
        solver_timeout_s=float(timeout) if timeout is not None else None,
        weights=weights,
    )

    fallback = FallbackConfig(
        mode=str(fallback_cfg.get("mode", "hold")),
        max_hold_cycles=int(fallback_cfg.get("max_hold_cycles", 5)),
        stop_throttle=float(fallback_cfg.get("stop_throttle", -0.5)),
    )

    if solver is None:
        solver = SLSQPSolver(
            max_iter=int(mpc_cfg.get("solver_max_iter", 100)),
            ftol=float(mpc_cfg.get("solver_ftol", 1e-4)),
            accept_inexact=bool(mpc_cfg.get("accept_inexact", True)),
            constraint_tolerance=float(mpc_cfg.get("constraint_tolerance", 1e-4)),
        )

    controller_config = MPCConfig(
        horizon=horizon,
        latency_s=float(mpc_cfg.get("latency_s", 0.1)),
        steering_sign=float(mpc_cfg.get("steering_sign", -1.0)),
        polynomial_degree=int(mpc_cfg.get("polynomial_degree", DEFAULT_DEGREE)),
        fallback=fallback,
    )
    return MPCController(controller_config, solver=solver)
