"""Store contract consumed by the simulation core.

The core never holds records between ticks. It fetches snapshots, computes
deltas and writes them back through these methods. Vehicle counters are only
ever changed with :meth:`TrafficStore.adjust_road_vehicle_count`, which must
apply the delta relative to the stored value and clamp it to
``[0, max_capacity]`` atomically.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

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


class TrafficStore(ABC):
    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    @abstractmethod
    def get_intersection(self, intersection_id: str) -> IntersectionSnapshot:
        """Return a snapshot of one intersection; raises ``NotFoundError``."""

    @abstractmethod
    def list_intersections(self, active_only: bool = True) -> List[Intersection]:
        pass

    @abstractmethod
    def get_active_roads(self) -> List[RoadState]:
        pass

    @abstractmethod
    def get_light(self, light_id: str) -> TrafficLight:
        pass

    @abstractmethod
    def get_moving_vehicles(self) -> List[Vehicle]:
        pass

    @abstractmethod
    def list_logs(self, limit: Optional[int] = None) -> List[TrafficLog]:
        """Most recent logs last."""

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    @abstractmethod
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
        pass

    @abstractmethod
    def adjust_road_vehicle_count(self, road_id: str, delta: int) -> int:
        """Atomically add ``delta`` clamped to capacity; return the applied delta."""

    @abstractmethod
    def update_road_speed(self, road_id: str, average_speed: float) -> None:
        pass

    @abstractmethod
    def append_log(self, entry: TrafficLog) -> None:
        pass

    @abstractmethod
    def create_vehicle(self, vehicle: Vehicle) -> Vehicle:
        pass

    @abstractmethod
    def update_vehicle(
        self, vehicle_id: str, position: float, exited_at: Optional[datetime] = None
    ) -> bool:
        """Move a vehicle; returns True only when this call marked it exited."""

    @abstractmethod
    def purge_exited_vehicles(self, exited_before: datetime) -> int:
        pass

    @abstractmethod
    def set_intersection_algorithm(self, intersection_id: str, algorithm: Algorithm) -> Intersection:
        pass

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------
    @abstractmethod
    def add_intersection(self, intersection: Intersection) -> Intersection:
        pass

    @abstractmethod
    def add_road(self, road: Road) -> Road:
        pass

    @abstractmethod
    def add_light(self, light: TrafficLight) -> TrafficLight:
        pass
