"""
Data recorder for the MPC controller.
Records telemetry, issued commands and solver diagnostics, one row per cycle.
"""

import h5py
import numpy as np
import json
import threading
import logging
from pathlib import Path
from typing import List, Optional
from datetime import datetime

from .formats.data_format import ControlOutput, Telemetry

logger = logging.getLogger(__name__)

STATUS_CODES = {"ok": 0, "fallback": 1}

_SCALAR_DATASETS = {
    "telemetry/timestamps": np.float64,
    "telemetry/x": np.float64,
    "telemetry/y": np.float64,
    "telemetry/psi": np.float64,
    "telemetry/speed": np.float64,
    "control/steering": np.float32,
    "control/throttle": np.float32,
    "control/steering_angle": np.float32,
    "control/acceleration": np.float32,
    "control/status": np.int8,
    "mpc/cost": np.float64,
    "mpc/solve_time": np.float32,
}

_VLEN_DATASETS = (
    "telemetry/ptsx",
    "telemetry/ptsy",
    "mpc/x",
    "mpc/y",
    "mpc/coeffs",
    "mpc/initial_state",
)


class CycleRecorder:
    """Records control cycles to HDF5 format."""

    def __init__(self, output_dir: str, recording_name: Optional[str] = None,
                 flush_every: int = 30, metadata: Optional[dict] = None):
        """
        Initialize cycle recorder.

        Args:
            output_dir: Directory to save recordings
            recording_name: Name for this recording (default: timestamp)
            flush_every: Buffered cycles written per flush
            metadata: Extra metadata (e.g. the controller config) stored on close
        """
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

        if recording_name is None:
            recording_name = f"recording_{datetime.now().strftime('%Y%m%d_%H%M%S')}"

        self.recording_name = recording_name
        self.output_file = self.output_dir / f"{recording_name}.h5"

        self.h5_file = h5py.File(self.output_file, 'w')
        self._create_datasets()

        self.buffer: List[tuple] = []
        self.buffer_lock = threading.Lock()
        self.flush_every = max(1, int(flush_every))
        self.frame_count = 0
        self.closed = False

        self.metadata = {
            "recording_start_time": datetime.now().isoformat(),
            "recording_name": recording_name,
        }
        if metadata:
            self.metadata.update(metadata)

    def _create_datasets(self):
        """Create extensible HDF5 datasets."""
        for name, dtype in _SCALAR_DATASETS.items():
            self.h5_file.create_dataset(name, shape=(0,), maxshape=(None,), dtype=dtype)
        for name in _VLEN_DATASETS:
            self.h5_file.create_dataset(
                name, shape=(0,), maxshape=(None,), dtype=h5py.vlen_dtype(np.float64)
            )
        self.h5_file.create_dataset(
            "control/error", shape=(0,), maxshape=(None,), dtype=h5py.string_dtype()
        )

    def record(self, telemetry: Telemetry, output: ControlOutput):
        """
        Record one control cycle.

        Args:
            telemetry: Telemetry the cycle was computed from
            output: Controller output for that telemetry
        """
        if self.closed:
            logger.warning("Recorder %s is closed; dropping cycle", self.recording_name)
            return
        with self.buffer_lock:
            self.buffer.append((telemetry, output))
            should_flush = len(self.buffer) >= self.flush_every
        if should_flush:
            self.flush()

    def flush(self):
        """Write buffered cycles to disk."""
        with self.buffer_lock:
            if not self.buffer:
                return
            cycles = self.buffer
            self.buffer = []
            self._write_cycles(cycles)

    def _append(self, name: str, values):
        dataset = self.h5_file[name]
        start = dataset.shape[0]
        dataset.resize((start + len(values),))
        if dataset.dtype.kind == "O":
            for i, value in enumerate(values):
                dataset[start + i] = value
        else:
            dataset[start:] = np.asarray(values, dtype=dataset.dtype)

    def _write_cycles(self, cycles: List[tuple]):
        empty = np.zeros(0, dtype=np.float64)

        def as_array(value):
            return empty if value is None else np.asarray(value, dtype=np.float64).ravel()

        telemetry_list = [t for t, _ in cycles]
        outputs = [o for _, o in cycles]

        self._append("telemetry/timestamps",
                     [t.timestamp if t.timestamp is not None else np.nan for t in telemetry_list])
        self._append("telemetry/x", [t.pose.x for t in telemetry_list])
        self._append("telemetry/y", [t.pose.y for t in telemetry_list])
        self._append("telemetry/psi", [t.pose.psi for t in telemetry_list])
        self._append("telemetry/speed", [t.pose.speed for t in telemetry_list])
        self._append("telemetry/ptsx", [as_array(t.ptsx) for t in telemetry_list])
        self._append("telemetry/ptsy", [as_array(t.ptsy) for t in telemetry_list])

        self._append("control/steering", [o.command.steering for o in outputs])
        self._append("control/throttle", [o.command.throttle for o in outputs])
        self._append("control/steering_angle", [o.command.steering_angle for o in outputs])
        self._append("control/acceleration", [o.command.acceleration for o in outputs])
        self._append("control/status", [STATUS_CODES.get(o.status, -1) for o in outputs])
        self._append("control/error", [o.error or "" for o in outputs])

        self._append("mpc/cost", [o.cost if o.cost is not None else np.nan for o in outputs])
        self._append("mpc/solve_time",
                     [o.solve_time if o.solve_time is not None else np.nan for o in outputs])
        self._append("mpc/x", [as_array(o.mpc_x) for o in outputs])
        self._append("mpc/y", [as_array(o.mpc_y) for o in outputs])
        self._append("mpc/coeffs", [as_array(o.coeffs) for o in outputs])
        self._append("mpc/initial_state", [as_array(o.initial_state) for o in outputs])

        self.frame_count += len(cycles)
        self.h5_file.flush()

    def close(self):
        """Flush remaining cycles, store metadata and close the file."""
        if self.closed:
            return
        self.flush()
        self.metadata["recording_end_time"] = datetime.now().isoformat()
        self.metadata["num_cycles"] = self.frame_count
        self.h5_file.attrs["metadata"] = json.dumps(self.metadata)
        self.h5_file.close()
        self.closed = True
        logger.info("Recording saved: %s (%d cycles)", self.output_file, self.frame_count)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
