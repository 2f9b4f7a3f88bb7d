"""Collects metrics about signal cycles, vehicle throughput and congestion."""
from __future__ import annotations

from collections import Counter, deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from statistics import mean
from typing import Deque, Dict, Iterable, List, Optional, Tuple

from campusflow.domain.models import IntersectionSnapshot, Road, TrafficLight, TrafficLog
from campusflow.signals.clock import remaining_seconds


@dataclass
class MetricSnapshot:
    """Roll-up of simulation metrics for charting and monitoring."""

    timestamp: str
    total_vehicles: int
    average_speed: float
    average_congestion: float
    max_congestion: float
    vehicles_generated: int
    vehicles_exited: int
    throughput_per_minute: float
    status_changes: int
    average_efficiency: float
    average_wait_time: float
    cycle_failures: int
    queue_lengths: Dict[str, int]
    tick_duration_ms: float

    def as_dict(self) -> Dict:
        return asdict(self)


@dataclass
class MetricsCollector:
    """Tracks flow and cycle outcomes across ticks."""

    window: int = 120
    generated_total: int = 0
    exited_total: int = 0
    exits: Deque[Tuple[datetime, int]] = field(default_factory=lambda: deque(maxlen=600))
    status_changes: Deque[int] = field(default_factory=lambda: deque(maxlen=240))
    efficiencies: Deque[float] = field(default_factory=lambda: deque(maxlen=240))
    wait_times: Deque[float] = field(default_factory=lambda: deque(maxlen=240))
    failures: int = 0
    queue_history: Deque[Dict[str, int]] = field(default_factory=lambda: deque(maxlen=240))
    tick_durations: Deque[float] = field(default_factory=lambda: deque(maxlen=240))

    def on_flow(self, result, now: datetime) -> None:
        self.generated_total += result.generated
        self.exited_total += result.exited
        self.exits.append((now, result.exited))

    def on_cycle(self, cycle_pass) -> None:
        changes = 0
        for result in cycle_pass.results:
            for update in result.changed_lights:
                changes += 1
                if update.efficiency is not None:
                    self.efficiencies.append(update.efficiency)
                if update.wait_time is not None:
                    self.wait_times.append(update.wait_time)
        self.status_changes.append(changes)
        self.failures += len(cycle_pass.failures)

    def record_queues(self, roads: Iterable[Road]) -> None:
        self.queue_history.append({road.id: road.vehicle_count for road in roads})

    def record_tick_duration(self, seconds: float) -> None:
        self.tick_durations.append(seconds)

    def _throughput_per_minute(self, now: datetime) -> float:
        cutoff = now - timedelta(minutes=1)
        return float(sum(count for stamp, count in self.exits if stamp > cutoff))

    def _queue_lengths(self) -> Dict[str, int]:
        if not self.queue_history:
            return {}
        latest = self.queue_history[-1]
        # Keep only the busiest roads for easier charting
        busiest = sorted(latest.items(), key=lambda kv: kv[1], reverse=True)
        return dict(busiest[:10])

    def snapshot(self, *, now: datetime, roads: List[Road]) -> MetricSnapshot:
        congestion = [road.congestion_level for road in roads]
        speeds = [road.average_speed for road in roads]
        recent_changes = list(self.status_changes)[-self.window:]
        tick_ms = (mean(self.tick_durations) if self.tick_durations else 0.0) * 1000

        return MetricSnapshot(
            timestamp=now.isoformat(),
            total_vehicles=sum(road.vehicle_count for road in roads),
            average_speed=mean(speeds) if speeds else 0.0,
            average_congestion=mean(congestion) if congestion else 0.0,
            max_congestion=max(congestion) if congestion else 0.0,
            vehicles_generated=self.generated_total,
            vehicles_exited=self.exited_total,
            throughput_per_minute=self._throughput_per_minute(now),
            status_changes=sum(recent_changes),
            average_efficiency=mean(self.efficiencies) if self.efficiencies else 0.0,
            average_wait_time=mean(self.wait_times) if self.wait_times else 0.0,
            cycle_failures=self.failures,
            queue_lengths=self._queue_lengths(),
            tick_duration_ms=tick_ms,
        )


def light_view(light: TrafficLight, road: Optional[Road], now: datetime) -> Dict:
    return {
        "id": light.id,
        "road_id": light.road_id,
        "road": road.name if road is not None else None,
        "status": light.status.value,
        "timing": light.timing.as_dict(),
        "remaining": remaining_seconds(light, now),
        "total_cycles": light.total_cycles,
        "is_active": light.is_active,
        "last_changed": light.last_changed.isoformat(),
    }


def road_view(road: Road) -> Dict:
    return {
        "id": road.id,
        "name": road.name,
        "direction": road.direction.value,
        "vehicle_count": road.vehicle_count,
        "max_capacity": road.max_capacity,
        "congestion_level": round(road.congestion_level, 3),
        "average_speed": round(road.average_speed, 1),
        "is_active": road.is_active,
    }


def log_view(entry: TrafficLog) -> Dict:
    return {
        "light_id": entry.light_id,
        "intersection_id": entry.intersection_id,
        "action": entry.action.value,
        "previous_state": entry.previous_state.value,
        "new_state": entry.new_state.value,
        "reason": entry.reason,
        "vehicle_count": entry.vehicle_count,
        "efficiency": entry.efficiency,
        "wait_time": entry.wait_time,
        "timestamp": entry.timestamp.isoformat(),
    }


def intersection_view(snapshot: IntersectionSnapshot, now: datetime) -> Dict:
    intersection = snapshot.intersection
    return {
        "id": intersection.id,
        "name": intersection.name,
        "location": intersection.location,
        "algorithm": intersection.algorithm.value,
        "priority": intersection.priority,
        "is_active": intersection.is_active,
        "roads": [road_view(road) for road in snapshot.roads],
        "lights": [
            light_view(light, snapshot.road_for_light(light), now) for light in snapshot.lights
        ],
        "emergency": snapshot.has_emergency_vehicle(),
    }


def summarize_status(
    snapshots: List[IntersectionSnapshot], logs: List[TrafficLog], now: datetime
) -> Dict:
    """System-wide status: totals, averages and the light status distribution."""

    lights = [light for snapshot in snapshots for light in snapshot.lights]
    roads = [road for snapshot in snapshots for road in snapshot.roads]
    average_congestion = mean(road.congestion_level for road in roads) if roads else 0.0
    average_speed = mean(road.average_speed for road in roads) if roads else 0.0

    return {
        "total_intersections": len(snapshots),
        "total_lights": len(lights),
        "active_lights": sum(1 for light in lights if light.is_active),
        "total_vehicles": sum(road.vehicle_count for road in roads),
        "total_capacity": sum(road.max_capacity for road in roads),
        "average_congestion": round(average_congestion, 2),
        "average_speed": round(average_speed, 1),
        "system_efficiency": round((1 - average_congestion) * 100),
        "status_distribution": dict(Counter(light.status.value for light in lights)),
        "emergency_intersections": [
            snapshot.intersection.id for snapshot in snapshots if snapshot.has_emergency_vehicle()
        ],
        "recent_logs": [log_view(entry) for entry in reversed(logs)],
        "last_updated": now.isoformat(),
    }
