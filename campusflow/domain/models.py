"""Records shared by the signal, vehicle and store layers.

Assumptions
-----------
- Every record is owned by a store; the engine only sees copies fetched per
  tick and writes deltas back through the store contract.
- One traffic light controls exactly one road (the normalized campus model).
- Durations are seconds; timestamps are ``datetime`` values from the caller's
  clock so simulated time and wall time are interchangeable.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Sequence
import math


class Status(str, Enum):
    RED = "RED"
    YELLOW = "YELLOW"
    GREEN = "GREEN"
    FLASHING_RED = "FLASHING_RED"
    FLASHING_YELLOW = "FLASHING_YELLOW"
    MAINTENANCE = "MAINTENANCE"

    @property
    def cycles(self) -> bool:
        """Whether the status takes part in the RED/GREEN/YELLOW rotation."""

        return self in CYCLING_STATUSES


CYCLING_STATUSES = frozenset({Status.RED, Status.YELLOW, Status.GREEN})


class Direction(str, Enum):
    NORTH = "NORTH"
    SOUTH = "SOUTH"
    EAST = "EAST"
    WEST = "WEST"
    NORTHEAST = "NORTHEAST"
    NORTHWEST = "NORTHWEST"
    SOUTHEAST = "SOUTHEAST"
    SOUTHWEST = "SOUTHWEST"


class VehicleType(str, Enum):
    CAR = "CAR"
    BUS = "BUS"
    MOTORCYCLE = "MOTORCYCLE"
    TRUCK = "TRUCK"
    EMERGENCY = "EMERGENCY"
    BICYCLE = "BICYCLE"


class Algorithm(str, Enum):
    FIXED = "FIXED"
    ADAPTIVE = "ADAPTIVE"
    AI_OPTIMIZED = "AI_OPTIMIZED"
    EMERGENCY = "EMERGENCY"

    @classmethod
    def parse(cls, value: object) -> Optional["Algorithm"]:
        """Return the matching member or ``None`` for unknown values."""

        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            return None


class LogAction(str, Enum):
    CYCLE_CHANGE = "CYCLE_CHANGE"
    MANUAL_OVERRIDE = "MANUAL_OVERRIDE"
    EMERGENCY = "EMERGENCY"
    RESET = "RESET"
    ALGORITHM_CHANGE = "ALGORITHM_CHANGE"
    TIMING_UPDATE = "TIMING_UPDATE"


EMERGENCY_PRIORITY = 2
DEFAULT_PRIORITY = 1


@dataclass(frozen=True)
class Timing:
    """Phase durations of one light; ``cycle`` is the sum of the three phases."""

    red: float
    yellow: float
    green: float
    cycle: float

    @classmethod
    def build(cls, red: float, yellow: float, green: float) -> "Timing":
        red, yellow, green = float(red), float(yellow), float(green)
        return cls(red=red, yellow=yellow, green=green, cycle=red + yellow + green)

    def for_status(self, status: Status) -> float:
        """Dwell time of ``status``, or 0 for statuses outside the rotation."""

        return {
            Status.RED: self.red,
            Status.YELLOW: self.yellow,
            Status.GREEN: self.green,
        }.get(status, 0.0)

    def is_consistent(self) -> bool:
        phases = (self.red, self.yellow, self.green)
        if any(not math.isfinite(value) or value <= 0 for value in phases):
            return False
        return math.isclose(self.cycle, sum(phases), abs_tol=1e-6)

    def as_dict(self) -> Dict[str, float]:
        return {"red": self.red, "yellow": self.yellow, "green": self.green, "cycle": self.cycle}


@dataclass
class Intersection:
    id: str
    name: str
    location: str = ""
    is_active: bool = True
    algorithm: Algorithm = Algorithm.ADAPTIVE
    priority: int = 1
    created_order: int = 0


@dataclass
class Road:
    id: str
    intersection_id: str
    name: str
    direction: Direction
    max_capacity: int = 50
    vehicle_count: int = 0
    average_speed: float = 30.0
    is_active: bool = True
    created_order: int = 0

    @property
    def congestion_level(self) -> float:
        if self.max_capacity <= 0:
            return 0.0
        return min(max(self.vehicle_count / self.max_capacity, 0.0), 1.0)


@dataclass
class TrafficLight:
    id: str
    road_id: str
    intersection_id: str
    status: Status
    timing: Timing
    last_changed: datetime
    total_cycles: int = 0
    is_active: bool = True


@dataclass
class Vehicle:
    id: str
    plate_number: str
    type: VehicleType
    road_id: str
    speed: float
    entered_at: datetime
    position: float = 0.0
    is_moving: bool = True
    priority: int = DEFAULT_PRIORITY
    exited_at: Optional[datetime] = None

    @property
    def is_emergency(self) -> bool:
        return self.type == VehicleType.EMERGENCY and self.priority == EMERGENCY_PRIORITY


@dataclass(frozen=True)
class TrafficLog:
    """Append-only record of one light state change or operator action."""

    light_id: str
    intersection_id: str
    action: LogAction
    previous_state: Status
    new_state: Status
    reason: str
    vehicle_count: int
    timestamp: datetime
    efficiency: Optional[float] = None
    wait_time: Optional[float] = None


@dataclass(frozen=True)
class RoadMetrics:
    """Live road figures consumed by the timing algorithms."""

    vehicle_count: int = 0
    congestion_level: float = 0.0
    average_speed: float = 30.0
    has_emergency: bool = False

    @classmethod
    def from_road(cls, road: Optional[Road], vehicles: Sequence[Vehicle] = ()) -> "RoadMetrics":
        if road is None:
            return cls()
        return cls(
            vehicle_count=road.vehicle_count,
            congestion_level=road.congestion_level,
            average_speed=road.average_speed,
            has_emergency=any(v.is_emergency for v in vehicles if v.exited_at is None),
        )


@dataclass
class IntersectionSnapshot:
    """Point-in-time copy of one intersection with its roads, lights and vehicles."""

    intersection: Intersection
    roads: List[Road] = field(default_factory=list)
    lights: List[TrafficLight] = field(default_factory=list)
    vehicles_by_road: Dict[str, List[Vehicle]] = field(default_factory=dict)

    def road_for_light(self, light: TrafficLight) -> Optional[Road]:
        for road in self.roads:
            if road.id == light.road_id:
                return road
        return None

    def light_for_road(self, road_id: str) -> Optional[TrafficLight]:
        for light in self.lights:
            if light.road_id == road_id:
                return light
        return None

    def metrics_for(self, light: TrafficLight) -> RoadMetrics:
        return RoadMetrics.from_road(
            self.road_for_light(light), self.vehicles_by_road.get(light.road_id, [])
        )

    def has_emergency_vehicle(self) -> bool:
        return any(self.metrics_for(light).has_emergency for light in self.lights)


@dataclass
class RoadState:
    """A road paired with the light that controls it, as read by the flow model."""

    road: Road
    light: Optional[TrafficLight] = None

    @property
    def status(self) -> Status:
        return self.light.status if self.light is not None else Status.GREEN
