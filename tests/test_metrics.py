from datetime import datetime, timedelta

import pytest

from campusflow.agents.vehicle import FlowResult
from campusflow.domain.models import Algorithm, Direction, Road, Status, Timing
from campusflow.metrics import MetricsCollector
from campusflow.signals.lights import LightUpdate
from campusflow.simulation.service import CyclePass, CycleResult


pytestmark = pytest.mark.unit

NOW = datetime(2024, 1, 15, 10, 0, 0)


def _road(road_id, count, speed=30.0):
    return Road(
        id=road_id,
        intersection_id="junction",
        name=road_id,
        direction=Direction.NORTH,
        max_capacity=50,
        vehicle_count=count,
        average_speed=speed,
    )


def test_snapshot_rolls_up_flow_and_cycles():
    collector = MetricsCollector()
    collector.on_flow(FlowResult(generated=4, moved=10, exited=3), NOW - timedelta(seconds=90))
    collector.on_flow(FlowResult(generated=2, moved=8, exited=5), NOW - timedelta(seconds=20))
    collector.on_cycle(
        CyclePass(
            results=[
                CycleResult(
                    intersection_id="junction",
                    algorithm=Algorithm.ADAPTIVE,
                    changed_lights=[
                        LightUpdate(
                            light_id="light-1",
                            previous_status=Status.RED,
                            new_status=Status.GREEN,
                            timing=Timing.build(24, 5, 39),
                            reason="Priority green",
                            efficiency=0.8,
                            wait_time=5,
                        )
                    ],
                )
            ],
            failures={"broken": "timed out"},
        )
    )
    roads = [_road("road-0", 10, 20.0), _road("road-1", 40, 40.0)]
    collector.record_queues(roads)
    collector.record_tick_duration(0.002)

    snapshot = collector.snapshot(now=NOW, roads=roads)

    assert snapshot.total_vehicles == 50
    assert snapshot.vehicles_generated == 6
    assert snapshot.vehicles_exited == 8
    assert snapshot.throughput_per_minute == 5.0
    assert snapshot.status_changes == 1
    assert snapshot.average_efficiency == pytest.approx(0.8)
    assert snapshot.cycle_failures == 1
    assert snapshot.average_speed == pytest.approx(30.0)
    assert snapshot.max_congestion == pytest.approx(0.8)
    assert snapshot.queue_lengths == {"road-1": 40, "road-0": 10}
    assert snapshot.tick_duration_ms == pytest.approx(2.0)


def test_empty_collector_reports_zeroes():
    snapshot = MetricsCollector().snapshot(now=NOW, roads=[])

    assert snapshot.as_dict()["total_vehicles"] == 0
    assert snapshot.average_congestion == 0.0
    assert snapshot.queue_lengths == {}
