"""
FastAPI server bridging the driving simulator and the MPC controller.
Receives telemetry (websocket or REST), runs one control cycle per message
and returns steering/throttle plus the predicted trajectory.
"""

import asyncio
import logging
import threading
import time
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
import uvicorn

from bridge.protocol import (
    MANUAL_MESSAGE,
    STEER_EVENT,
    TELEMETRY_EVENT,
    ProtocolError,
    encode_event,
    is_event_frame,
    parse_event,
)
from control.mpc_controller import MPCController
from data.formats.data_format import ControlOutput, NEUTRAL_COMMAND, Telemetry
from data.recorder import CycleRecorder

app = FastAPI(title="MPC Controller Bridge Server")

# Log control cycles that eat a large share of the 100ms control period.
SLOW_CYCLE_SECONDS = 0.05
DEFAULT_SIMULATED_LATENCY_MS = 100.0


def _get_bridge_logger() -> logging.Logger:
    log_path = Path(__file__).resolve().parents[1] / "tmp" / "logs" / "mpc_bridge.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)

    bridge_logger = logging.getLogger("mpc_bridge")
    bridge_logger.setLevel(logging.INFO)

    if not any(isinstance(h, logging.FileHandler) and h.baseFilename == str(log_path)
               for h in bridge_logger.handlers):
        handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
        formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
        handler.setFormatter(formatter)
        bridge_logger.addHandler(handler)
        bridge_logger.propagate = False

    return bridge_logger


logger = _get_bridge_logger()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Global state
controller: Optional[MPCController] = None
recorder: Optional[CycleRecorder] = None
simulated_latency_ms: float = DEFAULT_SIMULATED_LATENCY_MS
latest_control_output: Optional[dict] = None
latest_trajectory_data: Optional[dict] = None
cycle_count: int = 0
fallback_count: int = 0
cycle_lock = threading.Lock()


def configure(mpc_controller: Optional[MPCController],
              cycle_recorder: Optional[CycleRecorder] = None,
              latency_ms: float = DEFAULT_SIMULATED_LATENCY_MS) -> None:
    """Install the controller (and optional recorder) used by every endpoint."""
    global controller, recorder, simulated_latency_ms
    global latest_control_output, latest_trajectory_data, cycle_count, fallback_count
    controller = mpc_controller
    recorder = cycle_recorder
    simulated_latency_ms = max(0.0, float(latency_ms))
    latest_control_output = None
    latest_trajectory_data = None
    cycle_count = 0
    fallback_count = 0


class TelemetryMessage(BaseModel):
    """Telemetry from the simulator."""
    ptsx: List[float]  # reference waypoints x (global frame)
    ptsy: List[float]  # reference waypoints y (global frame)
    x: float
    y: float
    psi: float  # heading (radians)
    speed: float


class SteerCommand(BaseModel):
    """Command returned to the simulator."""
    steering_angle: float  # -1.0 to 1.0
    throttle: float  # -1.0 to 1.0
    mpc_x: List[float] = []
    mpc_y: List[float] = []
    next_x: List[float] = []
    next_y: List[float] = []
    status: str = "ok"
    error: Optional[str] = None


def run_control_cycle(telemetry: Telemetry) -> ControlOutput:
    """
    Run one blocking control cycle and publish its result.

    The solve and the publication of counters, latest output and recording
    happen under one lock, so published state always follows cycle order.
    """
    global latest_control_output, latest_trajectory_data, cycle_count, fallback_count

    if controller is None:
        raise RuntimeError("No controller configured; call bridge.server.configure() first")

    with cycle_lock:
        start_time = time.time()
        output = controller.compute_control(telemetry)
        duration = time.time() - start_time
        if duration > SLOW_CYCLE_SECONDS:
            logger.warning(
                "[SLOW] control cycle duration=%.3fs solve=%s status=%s",
                duration,
                f"{output.solve_time:.3f}s" if output.solve_time is not None else "n/a",
                output.status,
            )

        cycle_count += 1
        if not output.ok:
            fallback_count += 1
            logger.warning("[FALLBACK] cycle=%d error=%s %s", cycle_count, output.error, output.error_message)

        message = output.to_message()
        latest_control_output = {
            "steering_angle": message["steering_angle"],
            "throttle": message["throttle"],
            "status": output.status,
            "error": output.error,
            "cycle": cycle_count,
            "timestamp": time.time(),
        }
        latest_trajectory_data = {
            "mpc_x": message["mpc_x"],
            "mpc_y": message["mpc_y"],
            "next_x": message["next_x"],
            "next_y": message["next_y"],
            "cost": output.cost,
            "cycle": cycle_count,
            "timestamp": time.time(),
        }

        if recorder is not None:
            recorder.record(telemetry, output)

    return output


async def handle_simulator_message(message: str) -> Optional[str]:
    """
    Handle one websocket frame from the simulator.

    Returns:
        Reply frame, or None when nothing should be sent
    """
    if not is_event_frame(message):
        return None
    try:
        event, payload = parse_event(message)
    except ProtocolError as e:
        logger.warning("Dropping malformed frame: %s", e)
        return None

    if event is None:
        return MANUAL_MESSAGE
    if event != TELEMETRY_EVENT:
        return None
    if controller is None:
        logger.warning("Dropping telemetry: no controller configured")
        return None

    try:
        telemetry = Telemetry.from_dict(payload, timestamp=time.time())
    except (KeyError, TypeError, ValueError) as e:
        logger.warning("Dropping telemetry with bad payload: %r", e)
        return None

    output = await run_in_threadpool(run_control_cycle, telemetry)

    # Mimic the actuator delay the controller compensates for.
    if simulated_latency_ms > 0.0:
        await asyncio.sleep(simulated_latency_ms / 1000.0)

    return encode_event(STEER_EVENT, output.to_message())


async def _serve_simulator(websocket: WebSocket) -> None:
    await websocket.accept()
    logger.info("Simulator connected")
    try:
        while True:
            message = await websocket.receive_text()
            reply = await handle_simulator_message(message)
            if reply is not None:
                await websocket.send_text(reply)
    except WebSocketDisconnect:
        logger.info("Simulator disconnected")


@app.websocket("/ws")
async def simulator_socket(websocket: WebSocket):
    """Simulator event stream (telemetry in, steer out)."""
    await _serve_simulator(websocket)


@app.websocket("/socket.io/")
async def simulator_socket_io(websocket: WebSocket):
    """Same stream on the path the simulator's socket.io client connects to."""
    await _serve_simulator(websocket)


@app.post("/api/telemetry", response_model=SteerCommand)
def receive_telemetry(message: TelemetryMessage):
    """
    Run one control cycle for a telemetry message.

    Args:
        message: Waypoints and vehicle pose
    """
    if controller is None:
        raise HTTPException(status_code=503, detail="No controller configured")

    telemetry = Telemetry.from_dict(message.model_dump(), timestamp=time.time())
    output = run_control_cycle(telemetry)
    return SteerCommand(status=output.status, error=output.error, **output.to_message())


@app.get("/api/vehicle/control")
async def get_control_command():
    """
    Get latest control command.

    Returns:
        Steering and throttle (neutral before the first cycle)
    """
    if latest_control_output is None:
        return {
            "steering_angle": NEUTRAL_COMMAND.steering,
            "throttle": NEUTRAL_COMMAND.throttle,
            "status": "idle",
            "error": None,
            "timestamp": time.time(),
        }
    return latest_control_output


@app.get("/api/trajectory")
async def get_trajectory_data():
    """
    Get latest predicted trajectory and reference waypoints (vehicle frame).
    """
    if latest_trajectory_data is None:
        return {
            "mpc_x": [],
            "mpc_y": [],
            "next_x": [],
            "next_y": [],
            "cost": None,
            "timestamp": time.time(),
        }
    return latest_trajectory_data


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "has_controller": controller is not None,
        "cycles": cycle_count,
        "fallbacks": fallback_count,
        "recording": recorder is not None,
    }


def run_server(host: str = "0.0.0.0", port: int = 4567):
    """Run the bridge server."""
    print(f"Starting MPC Controller Bridge Server on {host}:{port}")
    print("Endpoints:")
    print("  WS   /ws, /socket.io/ - Simulator telemetry/steer event stream")
    print("  POST /api/telemetry - Run one control cycle")
    print("  GET  /api/vehicle/control - Latest control command")
    print("  GET  /api/trajectory - Latest predicted trajectory")
    print("  GET  /api/health - Health check")

    uvicorn.run(app, host=host, port=port)
