"""
Replay utility for MPC cycle recordings.
Reads recorded telemetry back so it can be inspected or re-run through a controller.
"""

import h5py
import json
import numpy as np
from pathlib import Path
from typing import Iterator, Tuple

from .formats.data_format import Pose, Telemetry


class CycleReplay:
    """Replay recorded MPC control cycles."""

    def __init__(self, recording_file: str):
        """
        Initialize cycle replay.

        Args:
            recording_file: Path to HDF5 recording file
        """
        self.recording_file = Path(recording_file)
        if not self.recording_file.exists():
            raise FileNotFoundError(f"Recording file not found: {recording_file}")

        self.h5_file = h5py.File(self.recording_file, 'r')
        self._load_metadata()

    def _load_metadata(self):
        """Load recording metadata."""
        if "metadata" in self.h5_file.attrs:
            self.metadata = json.loads(self.h5_file.attrs["metadata"])
        else:
            self.metadata = {}

    def __len__(self) -> int:
        if "telemetry/x" not in self.h5_file:
            return 0
        return len(self.h5_file["telemetry/x"])

    def get_telemetry(self) -> Iterator[Telemetry]:
        """
        Get telemetry iterator.

        Yields:
            Telemetry records in recording order
        """
        if "telemetry/x" not in self.h5_file:
            return

        timestamps = self.h5_file["telemetry/timestamps"][:]
        xs = self.h5_file["telemetry/x"][:]
        ys = self.h5_file["telemetry/y"][:]
        psis = self.h5_file["telemetry/psi"][:]
        speeds = self.h5_file["telemetry/speed"][:]
        ptsx = self.h5_file["telemetry/ptsx"]
        ptsy = self.h5_file["telemetry/ptsy"]

        for i in range(len(xs)):
            timestamp = float(timestamps[i])
            yield Telemetry(
                ptsx=np.asarray(ptsx[i], dtype=np.float64).tolist(),
                ptsy=np.asarray(ptsy[i], dtype=np.float64).tolist(),
                pose=Pose(x=float(xs[i]), y=float(ys[i]), psi=float(psis[i]), speed=float(speeds[i])),
                timestamp=None if np.isnan(timestamp) else timestamp,
            )

    def get_control_commands(self) -> Iterator[dict]:
        """
        Get recorded control commands iterator.

        Yields:
            Dictionary with command, status and solver data
        """
        if "control/steering" not in self.h5_file:
            return

        steerings = self.h5_file["control/steering"][:]
        throttles = self.h5_file["control/throttle"][:]
        steering_angles = self.h5_file["control/steering_angle"][:]
        accelerations = self.h5_file["control/acceleration"][:]
        statuses = self.h5_file["control/status"][:]
        errors = self.h5_file["control/error"]
        costs = self.h5_file["mpc/cost"][:]
        mpc_x = self.h5_file["mpc/x"]
        mpc_y = self.h5_file["mpc/y"]

        for i in range(len(steerings)):
            error = errors[i]
            if isinstance(error, bytes):
                error = error.decode("utf-8")
            yield {
                "steering": float(steerings[i]),
                "throttle": float(throttles[i]),
                "steering_angle": float(steering_angles[i]),
                "acceleration": float(accelerations[i]),
                "status": "ok" if statuses[i] == 0 else "fallback",
                "error": error or None,
                "cost": None if np.isnan(costs[i]) else float(costs[i]),
                "mpc_x": np.asarray(mpc_x[i]).tolist(),
                "mpc_y": np.asarray(mpc_y[i]).tolist(),
            }

    def get_cycles(self) -> Iterator[Tuple[Telemetry, dict]]:
        """Telemetry paired with the command recorded for it."""
        return zip(self.get_telemetry(), self.get_control_commands())

    def get_statistics(self) -> dict:
        """Get statistics about the recording."""
        stats = {
            "file": str(self.recording_file),
            "metadata": self.metadata,
            "cycles": len(self),
        }

        if "control/status" in self.h5_file and len(self) > 0:
            statuses = self.h5_file["control/status"][:]
            stats["fallback_cycles"] = int(np.count_nonzero(statuses != 0))

        if "mpc/solve_time" in self.h5_file and len(self) > 0:
            solve_times = self.h5_file["mpc/solve_time"][:]
            solve_times = solve_times[np.isfinite(solve_times)]
            if len(solve_times):
                stats["mean_solve_time"] = float(np.mean(solve_times))
                stats["max_solve_time"] = float(np.max(solve_times))

        return stats

    def close(self):
        """Close the replay file."""
        self.h5_file.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


if __name__ == "__main__":
    import sys

    if len(sys.argv) < 2:
        print("Usage: python -m data.replay <recording_file.h5>")
        sys.exit(1)

    with CycleReplay(sys.argv[1]) as replay:
        print("Recording Statistics:")
        for key, value in replay.get_statistics().items():
            print(f"  {key}: {value}")
