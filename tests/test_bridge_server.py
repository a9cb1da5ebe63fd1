"""
Tests for the FastAPI bridge (REST endpoints and simulator websocket).
"""

import asyncio
import json
import time
from concurrent.futures import ThreadPoolExecutor

import pytest
from fastapi.testclient import TestClient

from bridge import server
from bridge.protocol import MANUAL_MESSAGE
from control.horizon_optimizer import HorizonConfig
from control.mpc_controller import MPCConfig, MPCController
from data.formats.data_format import Telemetry

TELEMETRY = {
    "ptsx": [0.0, 10.0, 20.0, 30.0, 40.0, 50.0],
    "ptsy": [1.0, 1.0, 1.0, 1.0, 1.0, 1.0],
    "x": 0.0,
    "y": 0.0,
    "psi": 0.0,
    "speed": 10.0,
}


class RecorderStub:
    def __init__(self):
        self.cycles = []

    def record(self, telemetry, output):
        self.cycles.append((telemetry, output))


@pytest.fixture
def client():
    server.configure(MPCController(MPCConfig(horizon=HorizonConfig(n_steps=8))), latency_ms=0.0)
    with TestClient(server.app) as test_client:
        yield test_client
    server.configure(None)


def test_control_is_neutral_before_first_cycle(client):
    data = client.get("/api/vehicle/control").json()
    assert data["status"] == "idle"
    assert data["steering_angle"] == 0.0
    assert data["throttle"] == 0.0


def test_post_telemetry_runs_cycle(client):
    response = client.post("/api/telemetry", json=TELEMETRY)
    assert response.status_code == 200

    data = response.json()
    assert data["status"] == "ok"
    assert -1.0 <= data["steering_angle"] <= 1.0
    assert len(data["mpc_x"]) == len(data["mpc_y"]) == 8
    assert len(data["next_x"]) == 6

    control = client.get("/api/vehicle/control").json()
    assert control["steering_angle"] == pytest.approx(data["steering_angle"])
    trajectory = client.get("/api/trajectory").json()
    assert trajectory["mpc_x"] == pytest.approx(data["mpc_x"])

    health = client.get("/api/health").json()
    assert health["cycles"] == 1
    assert health["fallbacks"] == 0


def test_post_telemetry_with_too_few_points_falls_back(client):
    payload = dict(TELEMETRY, ptsx=[0.0, 10.0], ptsy=[1.0, 1.0])
    data = client.post("/api/telemetry", json=payload).json()

    assert data["status"] == "fallback"
    assert data["error"] == "insufficient_points"
    assert data["mpc_x"] == []
    assert client.get("/api/health").json()["fallbacks"] == 1


def test_post_telemetry_missing_field_is_rejected(client):
    payload = {k: v for k, v in TELEMETRY.items() if k != "speed"}
    assert client.post("/api/telemetry", json=payload).status_code == 422


def test_post_telemetry_without_controller():
    server.configure(None)
    with TestClient(server.app) as test_client:
        assert test_client.post("/api/telemetry", json=TELEMETRY).status_code == 503
        assert test_client.get("/api/health").json()["has_controller"] is False


def test_websocket_telemetry_gets_steer_reply(client):
    with client.websocket_connect("/ws") as websocket:
        websocket.send_text("42" + json.dumps(["telemetry", TELEMETRY]))
        reply = websocket.receive_text()

    assert reply.startswith('42["steer",')
    event, payload = json.loads(reply[2:])
    assert event == "steer"
    assert set(payload) == {"steering_angle", "throttle", "mpc_x", "mpc_y", "next_x", "next_y"}
    assert len(payload["mpc_x"]) == 8


def test_websocket_manual_mode(client):
    with client.websocket_connect("/socket.io/") as websocket:
        websocket.send_text('42["telemetry",null]')
        assert websocket.receive_text() == MANUAL_MESSAGE


def test_non_event_frames_get_no_reply():
    assert asyncio.run(server.handle_simulator_message("2")) is None
    assert asyncio.run(server.handle_simulator_message('42["other",{}]')) is None
    assert asyncio.run(server.handle_simulator_message("42[garbage")) is None


def test_recorder_sees_every_cycle():
    recorder = RecorderStub()
    server.configure(MPCController(MPCConfig(horizon=HorizonConfig(n_steps=6))),
                     cycle_recorder=recorder, latency_ms=0.0)
    try:
        with TestClient(server.app) as test_client:
            test_client.post("/api/telemetry", json=TELEMETRY)
            test_client.post("/api/telemetry", json=dict(TELEMETRY, ptsx=[0.0], ptsy=[0.0]))
    finally:
        server.configure(None)

    assert len(recorder.cycles) == 2
    assert recorder.cycles[0][1].ok
    assert recorder.cycles[1][1].status == "fallback"


def test_websocket_without_controller_stays_open():
    server.configure(None)
    telemetry_frame = "42" + json.dumps(["telemetry", TELEMETRY])
    assert asyncio.run(server.handle_simulator_message(telemetry_frame)) is None

    with TestClient(server.app) as test_client:
        with test_client.websocket_connect("/ws") as websocket:
            websocket.send_text(telemetry_frame)
            # No reply to the dropped telemetry; the next frame is still served.
            websocket.send_text('42["telemetry",null]')
            assert websocket.receive_text() == MANUAL_MESSAGE


class SlowRecorder(RecorderStub):
    """Recorder that yields mid-write, so unordered publication would interleave."""

    def __init__(self):
        super().__init__()
        self.cycle_ids = []

    def record(self, telemetry, output):
        cycle_id = server.cycle_count
        time.sleep(0.002)
        self.cycle_ids.append(cycle_id)
        super().record(telemetry, output)


def test_concurrent_cycles_publish_in_order():
    recorder = SlowRecorder()
    server.configure(MPCController(MPCConfig(horizon=HorizonConfig(n_steps=6))),
                     cycle_recorder=recorder, latency_ms=0.0)
    telemetry = Telemetry.from_dict(TELEMETRY)
    try:
        with ThreadPoolExecutor(max_workers=4) as pool:
            outputs = list(pool.map(lambda _: server.run_control_cycle(telemetry), range(12)))

        assert len(outputs) == 12
        assert server.cycle_count == 12
        assert len(recorder.cycles) == 12
        assert server.latest_control_output["cycle"] == 12
        assert server.latest_trajectory_data["cycle"] == 12
        last_output = recorder.cycles[-1][1]
        assert server.latest_control_output["steering_angle"] == pytest.approx(last_output.command.steering)
        assert all(output.ok for output in outputs)
        assert recorder.cycle_ids == list(range(1, 13))
    finally:
        server.configure(None)
