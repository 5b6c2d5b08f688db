"""Tests for FastAPI REST and WebSocket endpoints using fake channels (no hardware).

Tests verify:
- Service info and health
- Supervisor lifecycle (start, stop, double start)
- Authorization gesture handling
- Status and diagnostic log
- Error mapping (LinkError→503, ScaleError→500)
- WebSocket snapshot stream
"""

import time

import pytest
from fastapi.testclient import TestClient

from api import main as api_module
from fakes.fake_channel import FakeAuthorization, FakeScaleChannel, wait_until
from scale_lib import protocol
from scale_lib.controller import Supervisor
from scale_lib.errors import LinkError, ScaleError
from scale_lib.loopback import LoopbackTester
from scale_lib.models import LinkConfig
from scale_lib.probe import ParameterSpace, ProbeEngine
from scale_lib.status import StatusReporter

TELEMETRY = LinkConfig(baud_rate=9600, data_bits=8, parity="none", stop_bits=1, delimiter=protocol.CR)
SPACE = ParameterSpace(baud_rates=(1200, 9600), framings=((8, "none", 1),), delimiters=(protocol.CR,))


def _fast_supervisor(authorization, reporter: StatusReporter) -> Supervisor:
    return Supervisor(
        authorization,
        probe_engine=ProbeEngine(space=SPACE, window_s=0.15, reporter=reporter),
        loopback=LoopbackTester(window_s=0.05, pause_s=0.01, reporter=reporter),
        reporter=reporter,
    )


@pytest.fixture(autouse=True)
def reset_singletons(monkeypatch):
    """Reset global singletons before each test."""
    api_module._supervisor = None
    api_module._authorization = None
    api_module._watcher = None
    api_module._reporter = StatusReporter()
    monkeypatch.setattr(api_module, "HOTPLUG_POLL_S", 0.0)
    monkeypatch.setattr(api_module, "_build_supervisor", _fast_supervisor)
    yield
    if api_module._supervisor is not None:
        api_module._supervisor.shutdown()
    api_module._supervisor = None
    api_module._authorization = None


@pytest.fixture
def client():
    """FastAPI test client."""
    return TestClient(api_module.app)


@pytest.fixture
def scale():
    return FakeScaleChannel(name="/dev/ttyUSB0", telemetry_config=TELEMETRY, telegrams=("P 12345",))


# =============================================================================
# Health Check
# =============================================================================

def test_root_service_info(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["status"] == "online"


def test_health_reports_supervisor(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["supervisor"] == "stopped"


# =============================================================================
# Lifecycle
# =============================================================================

def test_status_before_start(client):
    response = client.get("/status")
    assert response.status_code == 200

    data = response.json()
    assert data["running"] is False
    assert data["state"] == "idle"
    assert data["active"] is False
    assert data["weight"] is None
    assert data["weight_text"] == "-"
    assert data["config_label"] == "-"


def test_start_detects_and_reads(client, scale):
    api_module._authorization = FakeAuthorization([scale])

    response = client.post("/start")
    assert response.status_code == 200
    assert response.json() == {"status": "started"}

    assert wait_until(lambda: client.get("/status").json()["state"] == "active", timeout=10.0)
    assert wait_until(lambda: client.get("/status").json()["weight_text"] == "12.345")

    data = client.get("/status").json()
    assert data["running"] is True
    assert data["mode"] == "telemetry"
    assert data["config_label"] == "9600 8N1 CR"
    assert data["raw_line"] == "P 12345"
    assert data["channel"] == "/dev/ttyUSB0"


def test_start_twice_fails(client):
    api_module._authorization = FakeAuthorization()
    assert client.post("/start").status_code == 200

    response = client.post("/start")
    assert response.status_code == 400
    assert "already running" in response.json()["detail"]


def test_stop(client, scale):
    api_module._authorization = FakeAuthorization([scale])
    client.post("/start")
    assert wait_until(lambda: client.get("/status").json()["state"] == "active", timeout=10.0)

    response = client.post("/stop")
    assert response.status_code == 200
    assert response.json() == {"status": "stopped"}
    assert not scale.is_open

    data = client.get("/status").json()
    assert data["running"] is False
    assert data["status"] == "Stopped"
    assert data["weight"] is None


def test_stop_while_probing_releases_port(client, monkeypatch):
    silent = FakeScaleChannel(name="/dev/ttyUSB0")
    api_module._authorization = FakeAuthorization([silent])
    monkeypatch.setattr(
        api_module,
        "_build_supervisor",
        lambda authorization, reporter: Supervisor(
            authorization, probe_engine=ProbeEngine(window_s=0.3, reporter=reporter), reporter=reporter
        ),
    )
    client.post("/start")
    assert wait_until(lambda: client.get("/status").json()["state"] == "probing", timeout=10.0)

    response = client.post("/stop")
    assert response.status_code == 200
    assert not silent.is_open
    assert client.get("/status").json()["running"] is False

    opens = silent.open_count
    time.sleep(0.5)
    assert silent.open_count == opens


def test_stop_timeout_keeps_supervisor(client, scale):
    api_module._authorization = FakeAuthorization([scale])
    client.post("/start")
    supervisor = api_module._supervisor
    supervisor.shutdown = lambda timeout=10.0: False

    response = client.post("/stop")
    assert response.status_code == 503
    assert api_module._supervisor is supervisor
    assert client.post("/start").status_code == 400

    del supervisor.shutdown
    supervisor.shutdown()


def test_stop_when_not_running_fails(client):
    response = client.post("/stop")
    assert response.status_code == 400


# =============================================================================
# Authorization
# =============================================================================

def test_authorize_requires_running_supervisor(client):
    response = client.post("/authorize")
    assert response.status_code == 503


def test_authorize_flow(client, scale):
    authorization = FakeAuthorization(grantable=[scale])
    api_module._authorization = authorization
    client.post("/start")
    assert wait_until(
        lambda: client.get("/status").json()["state"] == "awaiting_authorization", timeout=10.0
    )

    response = client.post("/authorize", params={"port": "/dev/ttyUSB0"})
    assert response.status_code == 200
    assert response.json() == {"status": "requested", "port": "/dev/ttyUSB0"}

    assert wait_until(lambda: client.get("/status").json()["state"] == "active", timeout=10.0)
    assert authorization.requests == ["/dev/ttyUSB0"]


def test_authorize_rejected_when_not_awaiting(client, scale):
    api_module._authorization = FakeAuthorization([scale])
    client.post("/start")
    assert wait_until(lambda: client.get("/status").json()["state"] == "active", timeout=10.0)

    response = client.post("/authorize")
    assert response.status_code == 400
    assert "Not awaiting authorization" in response.json()["detail"]


# =============================================================================
# Diagnostic Log
# =============================================================================

def test_log_newest_first(client):
    for i in range(5):
        api_module._reporter.log(f"entry {i}")

    response = client.get("/log?limit=3")
    assert response.status_code == 200

    data = response.json()
    assert data["entries"] == ["entry 4", "entry 3", "entry 2"]
    assert data["capacity"] == protocol.LOG_CAPACITY


def test_log_limit_bounds(client):
    assert client.get("/log?limit=0").status_code == 422
    assert client.get(f"/log?limit={protocol.LOG_CAPACITY + 1}").status_code == 422


# =============================================================================
# Error Mapping
# =============================================================================

def test_link_error_maps_to_503(client, monkeypatch):
    def refuse(authorization, reporter):
        raise LinkError("port busy")

    monkeypatch.setattr(api_module, "_build_supervisor", refuse)
    api_module._authorization = FakeAuthorization()

    response = client.post("/start")
    assert response.status_code == 503
    assert response.json()["detail"] == "port busy"


def test_scale_error_maps_to_500(client, monkeypatch):
    def broken(authorization, reporter):
        raise ScaleError("bad wiring")

    monkeypatch.setattr(api_module, "_build_supervisor", broken)
    api_module._authorization = FakeAuthorization()

    response = client.post("/start")
    assert response.status_code == 500
    assert response.json()["detail"] == "bad wiring"


# =============================================================================
# WebSocket
# =============================================================================

def test_websocket_sends_initial_snapshot(client):
    with client.websocket_connect("/stream") as websocket:
        data = websocket.receive_json()

    assert data["state"] == "idle"
    assert data["weight_text"] == "-"
    assert "updated_at" in data


def test_websocket_pushes_changes(client):
    with client.websocket_connect("/stream") as websocket:
        websocket.receive_json()
        api_module._reporter.set_raw_line("P 00100")
        api_module._reporter.set_weight(0.1)

        messages = [websocket.receive_json()]
        while messages[-1]["weight_text"] != "0.100":
            messages.append(websocket.receive_json())

    assert messages[-1]["raw_line"] == "P 00100"
