"""
Data format definitions for MPC control cycles.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import numpy as np


@dataclass(frozen=True)
class Pose:
    """Vehicle pose in the global frame."""
    x: float
    y: float
    psi: float  # heading (radians)
    speed: float


@dataclass
class Telemetry:
    """One telemetry message from the simulator."""
    ptsx: List[float]  # Reference waypoint x coordinates (global frame)
    ptsy: List[float]  # Reference waypoint y coordinates, paired with ptsx by index
    pose: Pose
    timestamp: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], timestamp: Optional[float] = None) -> "Telemetry":
        """Build from the simulator's telemetry payload (ptsx, ptsy, x, y, psi, speed)."""
        return cls(
            ptsx=[float(v) for v in data["ptsx"]],
            ptsy=[float(v) for v in data["ptsy"]],
            pose=Pose(
                x=float(data["x"]),
                y=float(data["y"]),
                psi=float(data["psi"]),
                speed=float(data["speed"]),
            ),
            timestamp=timestamp,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ptsx": list(self.ptsx),
            "ptsy": list(self.ptsy),
            "x": self.pose.x,
            "y": self.pose.y,
            "psi": self.pose.psi,
            "speed": self.pose.speed,
        }


@dataclass(frozen=True)
class ActuationCommand:
    """Command sent to the actuator."""
    steering: float  # normalized, -1.0 to 1.0 (simulator sign convention)
    throttle: float  # -1.0 (full brake) to 1.0 (full throttle)
    steering_angle: float = 0.0  # raw model steering angle (radians, +ve turns left)
    acceleration: float = 0.0  # raw model acceleration

    def as_actuation(self) -> np.ndarray:
        """[delta, a] in model units, as consumed by the dynamics model."""
        return np.array([self.steering_angle, self.acceleration], dtype=np.float64)


NEUTRAL_COMMAND = ActuationCommand(steering=0.0, throttle=0.0)


@dataclass
class ControlOutput:
    """Result of one control cycle."""
    command: ActuationCommand
    mpc_x: List[float] = field(default_factory=list)  # Predicted trajectory (vehicle frame)
    mpc_y: List[float] = field(default_factory=list)
    next_x: List[float] = field(default_factory=list)  # Reference waypoints (vehicle frame)
    next_y: List[float] = field(default_factory=list)
    status: str = "ok"  # "ok" or "fallback"
    error: Optional[str] = None  # Error kind when status == "fallback"
    error_message: Optional[str] = None
    initial_state: Optional[np.ndarray] = None  # State handed to the optimizer (after latency compensation)
    coeffs: Optional[np.ndarray] = None
    cost: Optional[float] = None
    solve_time: Optional[float] = None
    solver_status: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def to_message(self) -> Dict[str, Any]:
        """Steer payload in the simulator's field names."""
        return {
            "steering_angle": float(self.command.steering),
            "throttle": float(self.command.throttle),
            "mpc_x": [float(v) for v in self.mpc_x],
            "mpc_y": [float(v) for v in self.mpc_y],
            "next_x": [float(v) for v in self.next_x],
            "next_y": [float(v) for v in self.next_y],
        }
