from datetime import datetime, timedelta

import pytest

from campusflow.common.exceptions import InvalidStateError, NotFoundError, StoreUnavailableError
from campusflow.domain.models import (
    Algorithm,
    Direction,
    Intersection,
    LogAction,
    Road,
    Status,
    Timing,
    TrafficLight,
    VehicleType,
)
from campusflow.simulation.service import TrafficService
from campusflow.store import InMemoryTrafficStore


pytestmark = pytest.mark.unit

NOW = datetime(2024, 1, 15, 10, 0, 0)


class FlakyStore(InMemoryTrafficStore):
    def __init__(self, broken: str) -> None:
        super().__init__()
        self.broken = broken

    def get_intersection(self, intersection_id):
        if intersection_id == self.broken:
            raise StoreUnavailableError("timed out reading intersection")
        return super().get_intersection(intersection_id)


def _add_junction(store, junction_id, counts):
    store.add_intersection(Intersection(id=junction_id, name=junction_id.title()))
    for index, count in enumerate(counts):
        road_id = f"{junction_id}-road-{index}"
        store.add_road(
            Road(
                id=road_id,
                intersection_id=junction_id,
                name=f"Road {index}",
                direction=list(Direction)[index],
            )
        )
        store.adjust_road_vehicle_count(road_id, count)
        store.add_light(
            TrafficLight(
                id=f"{junction_id}-light-{index}",
                road_id=road_id,
                intersection_id=junction_id,
                status=Status.RED,
                timing=Timing.build(30, 5, 25),
                last_changed=NOW,
            )
        )


def _service(counts=(5, 12, 3), store=None):
    store = store or InMemoryTrafficStore()
    _add_junction(store, "junction", counts)
    return TrafficService(store, clock=lambda: NOW), store


def _statuses(store, junction_id="junction"):
    snapshot = store.get_intersection(junction_id)
    return [light.status for light in snapshot.lights]


def test_cycle_grants_green_and_logs_the_change():
    service, store = _service()

    result = service.run_traffic_cycle("junction", NOW)

    assert [u.light_id for u in result.changed_lights] == ["junction-light-1"]
    assert _statuses(store) == [Status.RED, Status.GREEN, Status.RED]
    log = store.list_logs()[-1]
    assert log.action == LogAction.CYCLE_CHANGE
    assert (log.previous_state, log.new_state) == (Status.RED, Status.GREEN)
    assert log.vehicle_count == 12

    again = service.run_traffic_cycle("junction", NOW)
    assert again.changed_lights == []


def test_cycle_walks_green_through_yellow_to_the_next_road():
    service, store = _service()
    service.run_traffic_cycle("junction", NOW)

    service.run_traffic_cycle("junction", NOW + timedelta(seconds=40))
    assert _statuses(store) == [Status.RED, Status.YELLOW, Status.RED]

    service.run_traffic_cycle("junction", NOW + timedelta(seconds=46))
    assert _statuses(store) == [Status.GREEN, Status.RED, Status.RED]
    assert store.get_light("junction-light-1").total_cycles == 1


def test_failing_intersection_does_not_stop_the_others():
    store = FlakyStore(broken="broken")
    _add_junction(store, "broken", [1, 2])
    service, store = _service(store=store)

    cycle_pass = service.run_all_cycles(NOW)

    assert [result.intersection_id for result in cycle_pass.results] == ["junction"]
    assert "timed out" in cycle_pass.failures["broken"]
    assert Status.GREEN in _statuses(store)


def test_emergency_vehicle_gets_green_on_next_tick():
    service, store = _service()
    service.run_traffic_cycle("junction", NOW)
    service.flow_model.spawn_on("junction-road-2", NOW, VehicleType.EMERGENCY)

    result = service.run_traffic_cycle("junction", NOW + timedelta(seconds=1))

    assert result.algorithm == Algorithm.EMERGENCY
    assert _statuses(store) == [Status.RED, Status.YELLOW, Status.GREEN]


def test_override_from_green_to_red_passes_through_yellow():
    service, store = _service()
    service.run_traffic_cycle("junction", NOW)

    updates = service.override("junction-light-1", "RED", "Officer request")

    assert [u.new_status for u in updates] == [Status.YELLOW]
    assert "cleared through YELLOW" in updates[0].reason
    assert store.get_light("junction-light-1").status == Status.YELLOW
    assert store.list_logs()[-1].action == LogAction.MANUAL_OVERRIDE


def test_forcing_green_clears_the_running_green():
    service, store = _service()
    service.run_traffic_cycle("junction", NOW)

    updates = service.override("junction-light-0", Status.GREEN)

    assert {u.light_id: u.new_status for u in updates} == {
        "junction-light-1": Status.YELLOW,
        "junction-light-0": Status.GREEN,
    }
    assert _statuses(store).count(Status.GREEN) == 1


def test_override_rejects_unknown_status_and_light():
    service, _ = _service()

    with pytest.raises(InvalidStateError):
        service.override("junction-light-0", "PURPLE")
    with pytest.raises(NotFoundError):
        service.override("nowhere", "GREEN")
    assert service.override("junction-light-0", "RED") == []


def test_activate_emergency_switches_mode_and_cycles():
    service, store = _service()

    result = service.activate_emergency("junction", NOW)

    assert store.get_intersection("junction").intersection.algorithm == Algorithm.EMERGENCY
    assert result.algorithm == Algorithm.EMERGENCY
    assert [u.light_id for u in result.changed_lights] == ["junction-light-1"]
    assert result.changed_lights[0].timing.green == 45
    actions = [entry.action for entry in store.list_logs()]
    assert actions.count(LogAction.EMERGENCY) == 3


def test_change_algorithm_validates_and_logs():
    service, store = _service()

    intersection = service.change_algorithm("junction", "fixed")

    assert intersection.algorithm == Algorithm.FIXED
    assert store.list_logs()[-1].action == LogAction.ALGORITHM_CHANGE
    with pytest.raises(InvalidStateError):
        service.change_algorithm("junction", "warp-speed")


def test_update_timing_keeps_the_current_phase():
    service, store = _service()

    light = service.update_timing("junction-light-0", red=20, yellow=4, green=30)

    assert light.timing.cycle == 54
    assert light.last_changed == NOW
    assert store.list_logs()[-1].action == LogAction.TIMING_UPDATE
    with pytest.raises(InvalidStateError):
        service.update_timing("junction-light-0", red=0, yellow=5, green=25)


def test_shortened_green_ends_a_fixed_phase_sooner():
    service, store = _service()
    service.change_algorithm("junction", Algorithm.FIXED)
    service.run_traffic_cycle("junction", NOW)
    assert store.get_light("junction-light-1").status == Status.GREEN

    service.update_timing("junction-light-1", red=30, yellow=5, green=5)
    result = service.run_traffic_cycle("junction", NOW + timedelta(seconds=6))

    assert [u.new_status for u in result.changed_lights] == [Status.YELLOW]
    light = store.get_light("junction-light-1")
    assert light.status == Status.YELLOW
    assert light.timing == Timing.build(30, 5, 5)


def test_reset_returns_lights_to_red_profile():
    service, store = _service()
    service.run_traffic_cycle("junction", NOW)
    service.run_traffic_cycle("junction", NOW + timedelta(seconds=40))
    service.run_traffic_cycle("junction", NOW + timedelta(seconds=46))
    service.change_algorithm("junction", Algorithm.FIXED)
    assert store.get_light("junction-light-1").total_cycles == 1

    lights = service.reset_intersection("junction", NOW + timedelta(seconds=50))

    assert [light.status for light in lights] == [Status.YELLOW, Status.RED, Status.RED]
    assert all(light.timing == Timing.build(30, 5, 25) for light in lights)
    assert all(light.total_cycles == 0 for light in lights)
    assert store.get_intersection("junction").intersection.algorithm == Algorithm.ADAPTIVE
    assert [entry.action for entry in store.list_logs()[-3:]] == [LogAction.RESET] * 3


def test_system_status_summarizes_the_campus():
    service, _ = _service()

    status = service.system_status()

    assert status["total_intersections"] == 1
    assert status["total_lights"] == 3
    assert status["total_vehicles"] == 20
    assert status["total_capacity"] == 150
    assert status["average_congestion"] == 0.13
    assert status["system_efficiency"] == 87
    assert status["status_distribution"] == {"RED": 3}
    assert status["last_updated"] == NOW.isoformat()
