"""Thread-safe in-memory implementation of :class:`TrafficStore`."""
from __future__ import annotations

from copy import deepcopy
from datetime import datetime
from threading import RLock
from typing import Dict, List, Optional
import logging

from campusflow.common.exceptions import InvalidStateError, NotFoundError, StoreUnavailableError
from campusflow.domain.models import (
    Algorithm,
    Intersection,
    IntersectionSnapshot,
    Road,
    RoadState,
    Status,
    Timing,
    TrafficLight,
    TrafficLog,
    Vehicle,
)
from campusflow.store.base import TrafficStore

logger = logging.getLogger(__name__)


class InMemoryTrafficStore(TrafficStore):
    """Dictionary-backed store; every read returns a copy and every write holds the lock.

    ``available`` can be switched off to simulate an outage: every call then
    raises :class:`StoreUnavailableError`.
    """

    def __init__(self, *, max_logs: int = 5000) -> None:
        self._lock = RLock()
        self.available = True
        self.max_logs = max_logs
        self._intersections: Dict[str, Intersection] = {}
        self._roads: Dict[str, Road] = {}
        self._lights: Dict[str, TrafficLight] = {}
        self._vehicles: Dict[str, Vehicle] = {}
        self._logs: List[TrafficLog] = []
        self._sequence = 0

    def _check(self) -> None:
        if not self.available:
            raise StoreUnavailableError("Traffic store is unavailable")

    def _next_order(self) -> int:
        self._sequence += 1
        return self._sequence

    def _require(self, table: Dict, key: str, kind: str):
        try:
            return table[key]
        except KeyError:
            raise NotFoundError(f"{kind} {key} not found") from None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_intersection(self, intersection_id: str) -> IntersectionSnapshot:
        with self._lock:
            self._check()
            intersection = self._require(self._intersections, intersection_id, "Intersection")
            roads = sorted(
                (r for r in self._roads.values() if r.intersection_id == intersection_id),
                key=lambda r: r.created_order,
            )
            road_ids = {r.id for r in roads}
            lights = [l for l in self._lights.values() if l.road_id in road_ids]
            lights.sort(key=lambda l: self._roads[l.road_id].created_order)
            vehicles: Dict[str, List[Vehicle]] = {road_id: [] for road_id in road_ids}
            for vehicle in self._vehicles.values():
                if vehicle.road_id in road_ids and vehicle.exited_at is None:
                    vehicles[vehicle.road_id].append(vehicle)
            return deepcopy(
                IntersectionSnapshot(
                    intersection=intersection,
                    roads=roads,
                    lights=lights,
                    vehicles_by_road=vehicles,
                )
            )

    def list_intersections(self, active_only: bool = True) -> List[Intersection]:
        with self._lock:
            self._check()
            items = sorted(self._intersections.values(), key=lambda i: i.created_order)
            return deepcopy([i for i in items if i.is_active or not active_only])

    def get_active_roads(self) -> List[RoadState]:
        with self._lock:
            self._check()
            lights_by_road = {light.road_id: light for light in self._lights.values()}
            states = [
                RoadState(road=road, light=lights_by_road.get(road.id))
                for road in sorted(self._roads.values(), key=lambda r: r.created_order)
                if road.is_active
            ]
            return deepcopy(states)

    def get_light(self, light_id: str) -> TrafficLight:
        with self._lock:
            self._check()
            return deepcopy(self._require(self._lights, light_id, "Traffic light"))

    def get_road(self, road_id: str) -> Road:
        with self._lock:
            self._check()
            return deepcopy(self._require(self._roads, road_id, "Road"))

    def get_moving_vehicles(self) -> List[Vehicle]:
        with self._lock:
            self._check()
            return deepcopy(
                [v for v in self._vehicles.values() if v.is_moving and v.exited_at is None]
            )

    def list_vehicles(self) -> List[Vehicle]:
        with self._lock:
            self._check()
            return deepcopy(list(self._vehicles.values()))

    def list_roads(self) -> List[Road]:
        with self._lock:
            self._check()
            return deepcopy(sorted(self._roads.values(), key=lambda r: r.created_order))

    def list_lights(self) -> List[TrafficLight]:
        with self._lock:
            self._check()
            return deepcopy(list(self._lights.values()))

    def list_logs(self, limit: Optional[int] = None) -> List[TrafficLog]:
        with self._lock:
            self._check()
            logs = list(self._logs)
        return logs[-limit:] if limit else logs

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def update_light(
        self,
        light_id: str,
        status: Status,
        timing: Timing,
        last_changed: datetime,
        *,
        completed_cycle: bool = False,
        reset_cycles: bool = False,
    ) -> TrafficLight:
        if not isinstance(status, Status):
            raise InvalidStateError(f"Light {light_id}: unknown status {status!r}")
        if not timing.is_consistent():
            raise InvalidStateError(f"Light {light_id}: inconsistent timing {timing.as_dict()}")
        with self._lock:
            self._check()
            light = self._require(self._lights, light_id, "Traffic light")
            light.status = status
            light.timing = timing
            light.last_changed = last_changed
            if reset_cycles:
                light.total_cycles = 0
            elif completed_cycle:
                light.total_cycles += 1
            return deepcopy(light)

    def adjust_road_vehicle_count(self, road_id: str, delta: int) -> int:
        with self._lock:
            self._check()
            road = self._require(self._roads, road_id, "Road")
            target = min(max(road.vehicle_count + int(delta), 0), road.max_capacity)
            applied = target - road.vehicle_count
            if applied != delta:
                logger.debug(
                    "Clamped vehicle count change on %s: requested %+d, applied %+d",
                    road_id,
                    delta,
                    applied,
                )
            road.vehicle_count = target
            return applied

    def update_road_speed(self, road_id: str, average_speed: float) -> None:
        with self._lock:
            self._check()
            self._require(self._roads, road_id, "Road").average_speed = max(float(average_speed), 0.0)

    def append_log(self, entry: TrafficLog) -> None:
        with self._lock:
            self._check()
            self._logs.append(entry)
            if len(self._logs) > self.max_logs:
                del self._logs[: len(self._logs) - self.max_logs]

    def create_vehicle(self, vehicle: Vehicle) -> Vehicle:
        with self._lock:
            self._check()
            self._require(self._roads, vehicle.road_id, "Road")
            if vehicle.id in self._vehicles:
                raise InvalidStateError(f"Vehicle {vehicle.id} already exists")
            self._vehicles[vehicle.id] = deepcopy(vehicle)
            return deepcopy(vehicle)

    def update_vehicle(
        self, vehicle_id: str, position: float, exited_at: Optional[datetime] = None
    ) -> bool:
        with self._lock:
            self._check()
            vehicle = self._require(self._vehicles, vehicle_id, "Vehicle")
            if vehicle.exited_at is not None:
                return False
            vehicle.position = min(max(float(position), 0.0), 1.0)
            if exited_at is None:
                return False
            vehicle.exited_at = exited_at
            vehicle.is_moving = False
            return True

    def purge_exited_vehicles(self, exited_before: datetime) -> int:
        with self._lock:
            self._check()
            stale = [
                vid
                for vid, v in self._vehicles.items()
                if v.exited_at is not None and v.exited_at < exited_before
            ]
            for vid in stale:
                del self._vehicles[vid]
            return len(stale)

    def set_intersection_algorithm(self, intersection_id: str, algorithm: Algorithm) -> Intersection:
        with self._lock:
            self._check()
            intersection = self._require(self._intersections, intersection_id, "Intersection")
            intersection.algorithm = algorithm
            return deepcopy(intersection)

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------
    def add_intersection(self, intersection: Intersection) -> Intersection:
        with self._lock:
            self._check()
            stored = deepcopy(intersection)
            stored.created_order = self._next_order()
            self._intersections[stored.id] = stored
            return deepcopy(stored)

    def add_road(self, road: Road) -> Road:
        if road.max_capacity <= 0:
            raise InvalidStateError(f"Road {road.id}: max_capacity must be positive")
        with self._lock:
            self._check()
            self._require(self._intersections, road.intersection_id, "Intersection")
            stored = deepcopy(road)
            stored.vehicle_count = min(max(stored.vehicle_count, 0), stored.max_capacity)
            stored.created_order = self._next_order()
            self._roads[stored.id] = stored
            return deepcopy(stored)

    def add_light(self, light: TrafficLight) -> TrafficLight:
        if not light.timing.is_consistent():
            raise InvalidStateError(f"Light {light.id}: inconsistent timing {light.timing.as_dict()}")
        with self._lock:
            self._check()
            road = self._require(self._roads, light.road_id, "Road")
            stored = deepcopy(light)
            stored.intersection_id = road.intersection_id
            self._lights[stored.id] = stored
            return deepcopy(stored)
