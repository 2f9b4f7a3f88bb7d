import pytest
from fastapi.testclient import TestClient

from campusflow.map.generator import CampusConfig
from campusflow.server.runtime import SimulationRuntime, create_app
from campusflow.simulation.core import SimulationConfig


pytestmark = pytest.mark.integration

LIGHT = "light:main-gate-junction:main-road-n"


@pytest.fixture
def runtime():
    runtime = SimulationRuntime(SimulationConfig(seed=4, campus=CampusConfig(seed=4)))
    yield runtime
    runtime.shutdown()


@pytest.fixture
def client(runtime):
    return TestClient(create_app(runtime))


def test_state_lists_campus_intersections(client):
    response = client.get("/api/state")

    assert response.status_code == 200
    body = response.json()
    assert [i["id"] for i in body["intersections"]] == ["main-gate-junction", "library-intersection"]
    assert body["running"] is False
    assert all(light["status"] == "RED" for i in body["intersections"] for light in i["lights"])


def test_cycle_trigger_grants_one_green_per_intersection(client):
    response = client.post("/api/traffic/cycle")

    assert response.status_code == 200
    assert response.json()["changed"] == 2
    assert response.json()["failures"] == {}

    status = client.get("/api/status").json()
    assert status["total_intersections"] == 2
    assert status["total_lights"] == 5
    assert status["status_distribution"] == {"RED": 3, "GREEN": 2}


def test_single_intersection_cycle(client):
    response = client.post("/api/traffic/cycle/library-intersection")

    assert response.status_code == 200
    assert response.json()["intersection_id"] == "library-intersection"
    assert client.post("/api/traffic/cycle/nowhere").status_code == 404


def test_flow_trigger_feeds_metrics(client):
    response = client.post("/api/vehicles/flow")

    assert response.status_code == 200
    assert set(response.json()) == {"generated", "moved", "exited", "purged"}

    metrics = client.get("/api/metrics").json()
    assert len(metrics["history"]) == 1
    assert metrics["latest"]["vehicles_generated"] == response.json()["generated"]


def test_override_maps_errors_to_status_codes(client):
    ok = client.post("/api/traffic/override", json={"light_id": LIGHT, "status": "green"})
    assert ok.status_code == 200
    assert ok.json()["applied"][-1]["new_status"] == "GREEN"

    yellow = client.post("/api/traffic/override", json={"light_id": LIGHT, "status": "RED"})
    assert yellow.json()["applied"][0]["new_status"] == "YELLOW"

    missing = client.post("/api/traffic/override", json={"light_id": "nope", "status": "RED"})
    assert missing.status_code == 404
    invalid = client.post("/api/traffic/override", json={"light_id": LIGHT, "status": "PURPLE"})
    assert invalid.status_code == 400


def test_intersection_operator_actions(client):
    emergency = client.post("/api/intersections/main-gate-junction/emergency")
    assert emergency.status_code == 200
    assert emergency.json()["algorithm"] == "EMERGENCY"

    algorithm = client.post(
        "/api/intersections/main-gate-junction/algorithm", json={"algorithm": "ai_optimized"}
    )
    assert algorithm.json() == {"intersection_id": "main-gate-junction", "algorithm": "AI_OPTIMIZED"}
    bogus = client.post("/api/intersections/main-gate-junction/algorithm", json={"algorithm": "bogus"})
    assert bogus.status_code == 400

    reset = client.post("/api/intersections/main-gate-junction/reset")
    assert reset.status_code == 200
    assert "GREEN" not in reset.json()["lights"].values()


def test_timing_update(client):
    response = client.post(f"/api/lights/{LIGHT}/timing", json={"red": 20, "yellow": 4, "green": 30})

    assert response.status_code == 200
    assert response.json()["timing"]["cycle"] == 54

    invalid = client.post(f"/api/lights/{LIGHT}/timing", json={"red": -1, "yellow": 4, "green": 30})
    assert invalid.status_code == 400


def test_store_outage_returns_503(client, runtime):
    runtime.store.available = False

    assert client.get("/api/status").status_code == 503
    assert client.post("/api/traffic/cycle").status_code == 503
