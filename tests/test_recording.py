"""
Tests for HDF5 cycle recording and replay.
"""

import json

import h5py
import numpy as np
import pytest

from data.formats.data_format import ActuationCommand, ControlOutput, Pose, Telemetry
from data.recorder import CycleRecorder
from data.replay import CycleReplay


def _telemetry(i):
    return Telemetry(
        ptsx=[float(i), i + 10.0, i + 20.0, i + 30.0],
        ptsy=[0.5, 0.6, 0.7, 0.8],
        pose=Pose(x=float(i), y=-1.0, psi=0.05 * i, speed=10.0 + i),
        timestamp=100.0 + i,
    )


def _ok_output(i):
    return ControlOutput(
        command=ActuationCommand(steering=-0.1 * i, throttle=0.5, steering_angle=0.04 * i, acceleration=0.5),
        mpc_x=[0.0, 1.0, 2.0],
        mpc_y=[0.0, 0.1, 0.2],
        next_x=[0.0, 10.0],
        next_y=[0.5, 0.6],
        initial_state=np.array([1.0, 0.0, 0.0, 10.0, 0.5, 0.0]),
        coeffs=np.array([0.5, 0.0, 0.0, 0.0]),
        cost=12.5,
        solve_time=0.01,
    )


def _fallback_output():
    return ControlOutput(
        command=ActuationCommand(steering=0.0, throttle=-0.5, acceleration=-0.5),
        status="fallback",
        error="solve_failed",
    )


def test_record_and_replay(tmp_path):
    with CycleRecorder(str(tmp_path), recording_name="run", flush_every=2,
                       metadata={"config": {"n_steps": 10}}) as recorder:
        recorder.record(_telemetry(0), _ok_output(0))
        recorder.record(_telemetry(1), _ok_output(1))
        recorder.record(_telemetry(2), _fallback_output())

    assert (tmp_path / "run.h5").exists()

    with CycleReplay(str(tmp_path / "run.h5")) as replay:
        assert len(replay) == 3
        assert replay.metadata["num_cycles"] == 3
        assert replay.metadata["config"] == {"n_steps": 10}

        cycles = list(replay.get_cycles())
        stats = replay.get_statistics()

    telemetry, command = cycles[1]
    assert telemetry.ptsx == pytest.approx([1.0, 11.0, 21.0, 31.0])
    assert telemetry.pose.speed == pytest.approx(11.0)
    assert telemetry.timestamp == pytest.approx(101.0)
    assert command["status"] == "ok"
    assert command["steering"] == pytest.approx(-0.1, abs=1e-6)
    assert command["mpc_x"] == pytest.approx([0.0, 1.0, 2.0])
    assert command["cost"] == pytest.approx(12.5)

    _, fallback = cycles[2]
    assert fallback["status"] == "fallback"
    assert fallback["error"] == "solve_failed"
    assert fallback["cost"] is None
    assert fallback["mpc_x"] == []

    assert stats["cycles"] == 3
    assert stats["fallback_cycles"] == 1


def test_recorder_writes_metadata_on_close(tmp_path):
    recorder = CycleRecorder(str(tmp_path), recording_name="meta")
    recorder.record(_telemetry(0), _ok_output(0))
    recorder.close()
    recorder.close()

    with h5py.File(tmp_path / "meta.h5", "r") as f:
        metadata = json.loads(f.attrs["metadata"])
        assert len(f["telemetry/x"]) == 1
        assert f["mpc/initial_state"][0] == pytest.approx([1.0, 0.0, 0.0, 10.0, 0.5, 0.0])
    assert metadata["num_cycles"] == 1
    assert "recording_end_time" in metadata


def test_record_after_close_is_dropped(tmp_path):
    recorder = CycleRecorder(str(tmp_path), recording_name="closed")
    recorder.close()
    recorder.record(_telemetry(0), _ok_output(0))
    assert recorder.frame_count == 0


def test_replay_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        CycleReplay(str(tmp_path / "missing.h5"))
