"""
MPC stack entry point.
Loads the configuration, builds the controller and serves the simulator bridge.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Tuple

import yaml

sys.path.insert(0, str(Path(__file__).parent))

from control.mpc_controller import MPCController, build_mpc_controller
from data.recorder import CycleRecorder

# Setup logging
log_dir = Path(__file__).parent / 'tmp' / 'logs'
log_dir.mkdir(parents=True, exist_ok=True)
log_file = log_dir / 'mpc_stack.log'

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(),
        logging.FileHandler(str(log_file))
    ]
)
logger = logging.getLogger(__name__)

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 4567


def load_config(config_path: Optional[str] = None) -> dict:
    """Load configuration from YAML file or use defaults."""
    if config_path is None:
        config_path = Path(__file__).parent / "config" / "mpc_config.yaml"
    else:
        config_path = Path(config_path)

    if config_path.exists():
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f) or {}
        logger.info(f"Loaded configuration from {config_path}")
        return config
    else:
        logger.warning(f"Config file not found at {config_path}, using defaults")
        return {}


def build_stack(config: dict, record: Optional[bool] = None,
                recording_dir: Optional[str] = None) -> Tuple[MPCController, Optional[CycleRecorder]]:
    """
    Build the controller and, when recording is enabled, a cycle recorder.

    Args:
        config: Full configuration dictionary
        record: Overrides recording.enabled when not None
        recording_dir: Overrides recording.output_dir when not None
    """
    controller = build_mpc_controller(config)
    horizon = controller.config.horizon
    logger.info(
        "MPC controller: N=%d dt=%.3fs ref_speed=%.1f latency=%.3fs fallback=%s",
        horizon.n_steps, horizon.dt, horizon.ref_speed,
        controller.config.latency_s, controller.config.fallback.mode,
    )

    recording_cfg = config.get("recording", {}) or {}
    if record is None:
        record = bool(recording_cfg.get("enabled", False))
    recorder = None
    if record:
        output_dir = recording_dir or recording_cfg.get("output_dir", "data/recordings")
        recorder = CycleRecorder(output_dir, metadata={"config": config})
        logger.info("Recording control cycles to %s", recorder.output_file)
    return controller, recorder


def main():
    """Main entry point."""
    import argparse

    from bridge import server

    parser = argparse.ArgumentParser(description='Run MPC controller bridge')
    parser.add_argument('--config', type=str, default=None,
                        help='Path to configuration YAML file (default: config/mpc_config.yaml)')
    parser.add_argument('--host', type=str, default=None,
                        help='Bind address (default: bridge.host or 0.0.0.0)')
    parser.add_argument('--port', type=int, default=None,
                        help='Port the simulator connects to (default: bridge.port or 4567)')
    parser.add_argument('--record', dest='record', action='store_true', default=None,
                        help='Record control cycles (default: recording.enabled)')
    parser.add_argument('--no-record', dest='record', action='store_false',
                        help='Disable recording')
    parser.add_argument('--recording_dir', type=str, default=None,
                        help='Directory for recordings')

    args = parser.parse_args()

    config = load_config(args.config)
    bridge_cfg = config.get("bridge", {}) or {}
    controller, recorder = build_stack(config, record=args.record, recording_dir=args.recording_dir)

    server.configure(
        controller,
        cycle_recorder=recorder,
        latency_ms=float(bridge_cfg.get("simulated_latency_ms", server.DEFAULT_SIMULATED_LATENCY_MS)),
    )
    try:
        server.run_server(
            host=args.host or bridge_cfg.get("host", DEFAULT_HOST),
            port=args.port or int(bridge_cfg.get("port", DEFAULT_PORT)),
        )
    finally:
        if recorder is not None:
            recorder.close()


if __name__ == "__main__":
    main()
