"""
Re-run a recording through the MPC controller.

Loads the telemetry of an existing recording, feeds every message through a
controller built from the given config (offline, no simulator needed) and
reports how far the new commands are from the recorded ones.

By default uses the latest recording in data/recordings.
"""

import sys
import argparse
from pathlib import Path

import numpy as np

sys.path.insert(0, str(Path(__file__).parent.parent))

from control.mpc_controller import build_mpc_controller
from data.replay import CycleReplay
from mpc_stack import load_config


def find_latest_recording(recordings_dir: str = "data/recordings") -> Path:
    recordings = sorted(Path(recordings_dir).glob("*.h5"), key=lambda p: p.stat().st_mtime)
    if not recordings:
        raise FileNotFoundError(f"No recordings found in {recordings_dir}")
    return recordings[-1]


def replay_recording(recording_file: str, config: dict) -> dict:
    """
    Re-run recorded telemetry through a freshly built controller.

    Args:
        recording_file: Path to HDF5 recording
        config: Configuration dictionary for the controller

    Returns:
        Summary with per-cycle command differences
    """
    controller = build_mpc_controller(config)
    steering_diff = []
    throttle_diff = []
    fallbacks = 0

    with CycleReplay(recording_file) as replay:
        for telemetry, recorded in replay.get_cycles():
            output = controller.compute_control(telemetry)
            if not output.ok:
                fallbacks += 1
            steering_diff.append(output.command.steering - recorded["steering"])
            throttle_diff.append(output.command.throttle - recorded["throttle"])

    steering_diff = np.asarray(steering_diff)
    throttle_diff = np.asarray(throttle_diff)
    summary = {"cycles": len(steering_diff), "fallbacks": fallbacks}
    if len(steering_diff):
        summary.update({
            "steering_mae": float(np.mean(np.abs(steering_diff))),
            "steering_max_abs": float(np.max(np.abs(steering_diff))),
            "throttle_mae": float(np.mean(np.abs(throttle_diff))),
            "throttle_max_abs": float(np.max(np.abs(throttle_diff))),
        })
    return summary


def main():
    parser = argparse.ArgumentParser(description="Re-run a recording through the MPC controller")
    parser.add_argument("recording", nargs="?", default=None,
                        help="HDF5 recording (default: latest in --recordings_dir)")
    parser.add_argument("--recordings_dir", type=str, default="data/recordings")
    parser.add_argument("--config", type=str, default=None,
                        help="Configuration YAML (default: config/mpc_config.yaml)")
    args = parser.parse_args()

    recording = Path(args.recording) if args.recording else find_latest_recording(args.recordings_dir)
    print(f"Replaying: {recording}")

    summary = replay_recording(str(recording), load_config(args.config))
    print("=" * 60)
    for key, value in summary.items():
        print(f"  {key}: {value}")
    print("=" * 60)


if __name__ == "__main__":
    main()
