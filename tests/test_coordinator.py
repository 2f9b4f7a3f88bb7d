from datetime import datetime, timedelta

import pytest

from campusflow.domain.models import (
    Algorithm,
    Direction,
    Intersection,
    IntersectionSnapshot,
    Road,
    Status,
    Timing,
    TrafficLight,
    Vehicle,
    VehicleType,
)
from campusflow.signals.coordinator import IntersectionCoordinator
from campusflow.signals.policy import AdaptivePolicy, TimingPolicies


pytestmark = pytest.mark.unit

NOW = datetime(2024, 1, 15, 10, 0, 0)


def _snapshot(counts, statuses=None, elapsed=None, emergency_road=None, algorithm=Algorithm.ADAPTIVE):
    statuses = statuses or [Status.RED] * len(counts)
    elapsed = elapsed or [0] * len(counts)
    snapshot = IntersectionSnapshot(
        intersection=Intersection(id="junction", name="Junction", algorithm=algorithm)
    )
    for index, count in enumerate(counts):
        road = Road(
            id=f"road-{index}",
            intersection_id="junction",
            name=f"Road {index}",
            direction=list(Direction)[index],
            vehicle_count=count,
            created_order=index + 1,
        )
        snapshot.roads.append(road)
        snapshot.lights.append(
            TrafficLight(
                id=f"light-{index}",
                road_id=road.id,
                intersection_id="junction",
                status=statuses[index],
                timing=Timing.build(30, 5, 25),
                last_changed=NOW - timedelta(seconds=elapsed[index]),
            )
        )
        snapshot.vehicles_by_road[road.id] = []
        if index == emergency_road:
            snapshot.vehicles_by_road[road.id].append(
                Vehicle(
                    id="ambulance",
                    plate_number="AMB-911-EM",
                    type=VehicleType.EMERGENCY,
                    road_id=road.id,
                    speed=60.0,
                    entered_at=NOW,
                    priority=2,
                )
            )
    return snapshot


def _changes(plan):
    return {update.light_id: update.new_status for update in plan.updates}


def test_busiest_red_road_gets_the_first_green():
    plan = IntersectionCoordinator().run(_snapshot([5, 12, 3]), NOW)

    assert _changes(plan) == {"light-1": Status.GREEN}
    assert plan.updates[0].reason.startswith("Priority green - 12 vehicles")
    assert plan.remaining["light-1"] == 39


def test_ties_are_broken_by_road_creation_order():
    plan = IntersectionCoordinator().run(_snapshot([7, 7, 2]), NOW)

    assert _changes(plan) == {"light-0": Status.GREEN}


def test_finished_yellow_goes_red_and_frees_the_slot():
    snapshot = _snapshot([5, 12, 3], [Status.YELLOW, Status.RED, Status.RED], [6, 0, 0])

    plan = IntersectionCoordinator().run(snapshot, NOW)

    assert _changes(plan) == {"light-0": Status.RED, "light-1": Status.GREEN}
    red_update = next(u for u in plan.updates if u.light_id == "light-0")
    assert red_update.completes_cycle


def test_just_reddened_light_is_not_granted_green_again():
    snapshot = _snapshot([40, 1], [Status.YELLOW, Status.RED], [6, 0])

    plan = IntersectionCoordinator().run(snapshot, NOW)

    assert _changes(plan) == {"light-0": Status.RED, "light-1": Status.GREEN}


def test_expired_green_goes_yellow_and_blocks_new_greens():
    snapshot = _snapshot([5, 12, 3], [Status.GREEN, Status.RED, Status.RED], [100, 0, 0])

    plan = IntersectionCoordinator().run(snapshot, NOW)

    assert _changes(plan) == {"light-0": Status.YELLOW}


def test_running_green_is_left_alone_and_reports_remaining_time():
    snapshot = _snapshot([5, 12, 3], [Status.GREEN, Status.RED, Status.RED], [5, 0, 0])

    plan = IntersectionCoordinator().run(snapshot, NOW)

    assert not plan.has_changes
    assert plan.remaining == {"light-0": 20}


def test_green_cap_is_configurable():
    plan = IntersectionCoordinator(max_green=2).run(_snapshot([5, 12, 3]), NOW)

    assert _changes(plan) == {"light-1": Status.GREEN, "light-0": Status.GREEN}


def test_starved_road_is_promoted_over_busier_roads():
    snapshot = _snapshot([2, 40, 1], elapsed=[130, 10, 50])

    plan = IntersectionCoordinator(max_wait_seconds=120).run(snapshot, NOW)

    assert _changes(plan) == {"light-0": Status.GREEN}
    assert plan.updates[0].reason.startswith("Max wait exceeded")


def test_starvation_bound_can_be_disabled():
    snapshot = _snapshot([2, 40, 1], elapsed=[130, 10, 50])

    plan = IntersectionCoordinator(max_wait_seconds=None).run(snapshot, NOW)

    assert _changes(plan) == {"light-1": Status.GREEN}


def test_emergency_vehicle_preempts_running_green_through_yellow():
    snapshot = _snapshot(
        [5, 12, 3], [Status.GREEN, Status.RED, Status.RED], [3, 0, 0], emergency_road=2
    )

    plan = IntersectionCoordinator().run(snapshot, NOW)

    assert plan.algorithm == Algorithm.EMERGENCY
    assert _changes(plan) == {"light-0": Status.YELLOW, "light-2": Status.GREEN}
    assert sum(1 for u in plan.updates if u.new_status == Status.GREEN) == 1


def test_emergency_road_already_green_is_kept():
    snapshot = _snapshot([5, 12], [Status.GREEN, Status.RED], [200, 0], emergency_road=0)

    plan = IntersectionCoordinator().run(snapshot, NOW)

    assert not plan.has_changes


def test_lights_outside_the_rotation_are_untouched():
    snapshot = _snapshot([5, 12, 3], [Status.RED, Status.MAINTENANCE, Status.RED])

    plan = IntersectionCoordinator().run(snapshot, NOW)

    assert _changes(plan) == {"light-0": Status.GREEN}


def test_invalid_update_is_dropped_and_previous_state_kept():
    policies = TimingPolicies(adaptive=AdaptivePolicy(yellow=0))

    plan = IntersectionCoordinator(policies).run(_snapshot([5, 12, 3]), NOW)

    assert not plan.has_changes
    assert [update.light_id for update, _ in plan.rejected] == ["light-1"]
    assert "inconsistent timing" in plan.rejected[0][1]


def test_max_green_must_be_positive():
    with pytest.raises(ValueError):
        IntersectionCoordinator(max_green=0)
