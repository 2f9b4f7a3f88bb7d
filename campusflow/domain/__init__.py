"""Domain records for intersections, roads, lights, vehicles and logs."""

from .models import (
    Algorithm,
    Direction,
    Intersection,
    IntersectionSnapshot,
    LogAction,
    Road,
    RoadMetrics,
    RoadState,
    Status,
    Timing,
    TrafficLight,
    TrafficLog,
    Vehicle,
    VehicleType,
)

__all__ = [
    "Algorithm",
    "Direction",
    "Intersection",
    "IntersectionSnapshot",
    "LogAction",
    "Road",
    "RoadMetrics",
    "RoadState",
    "Status",
    "Timing",
    "TrafficLight",
    "TrafficLog",
    "Vehicle",
    "VehicleType",
]
