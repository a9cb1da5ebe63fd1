"""
Per-cycle control errors.

All of these are recoverable: the controller catches them, applies its
fallback policy and carries on with the next telemetry message.
"""


class ControlCycleError(Exception):
    """Base class for errors that abort a single control cycle."""

    kind = "control_cycle_error"


class InsufficientPoints(ControlCycleError):
    """Too few (or unpaired) waypoints for the configured polynomial degree."""

    kind = "insufficient_points"

    def __init__(self, available: int, required: int, detail: str = ""):
        self.available = available
        self.required = required
        message = f"need at least {required} waypoints, got {available}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class NonFiniteState(ControlCycleError):
    """Pose, speed, waypoints or derived cte/epsi contain NaN or infinity."""

    kind = "non_finite_state"


class SolveFailed(ControlCycleError):
    """Solver did not converge, hit its deadline or returned garbage."""

    kind = "solve_failed"

    def __init__(self, message: str, status: str = "failed"):
        self.status = status
        super().__init__(message)
