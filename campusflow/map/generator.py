"""Provisioning of the campus junction layout into a store.

Assumptions
-----------
- Every named road gets exactly one traffic light; roads take compass
  directions in declaration order.
- Lights start RED on the fixed profile with ``last_changed`` set to the
  provisioning time, so the first coordinator tick grants the first green.
- Initial traffic is seeded through the vehicle flow model so every counted
  vehicle has a matching vehicle record that can later exit.

The default layout mirrors the campus deployment: a main gate junction with
three approaches and a two-way library crossing.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Tuple
import random
import re

from campusflow.agents.vehicle import VehicleFlowModel
from campusflow.common.exceptions import ConfigurationError
from campusflow.domain.models import Algorithm, Direction, Intersection, Road, Status, TrafficLight
from campusflow.signals.policy import FixedPolicy
from campusflow.store.base import TrafficStore


@dataclass
class IntersectionSpec:
    name: str
    roads: List[str]
    algorithm: Algorithm = Algorithm.ADAPTIVE
    priority: int = 1
    location: str = ""

    @classmethod
    def from_mapping(cls, mapping: Mapping) -> "IntersectionSpec":
        if not mapping.get("name") or not mapping.get("roads"):
            raise ConfigurationError("Each intersection needs a name and at least one road")
        algorithm = Algorithm.parse(mapping.get("algorithm", Algorithm.ADAPTIVE))
        if algorithm is None:
            raise ConfigurationError(f"Unknown algorithm {mapping.get('algorithm')!r}")
        return cls(
            name=str(mapping["name"]),
            roads=[str(road) for road in mapping["roads"]],
            algorithm=algorithm,
            priority=int(mapping.get("priority", 1)),
            location=str(mapping.get("location", mapping["name"])),
        )


def _default_intersections() -> List[IntersectionSpec]:
    return [
        IntersectionSpec("Main Gate Junction", ["Main Road N", "Main Road S", "Gate Road E"]),
        IntersectionSpec("Library Intersection", ["Library Ave N", "Library Ave S"]),
    ]


@dataclass
class CampusConfig:
    """Configuration for the provisioned campus layout.

    Parameters
    ----------
    intersections: list of IntersectionSpec
        Junctions to create, each with its named approach roads.
    road_capacity: int
        ``max_capacity`` of every road.
    initial_vehicles: tuple of int
        Inclusive range of vehicles seeded onto each road.
    initial_speed: tuple of float
        Range for each road's starting average speed (km/h).
    seed: int | None
        Random seed for reproducible seeding.
    """

    intersections: List[IntersectionSpec] = field(default_factory=_default_intersections)
    road_capacity: int = 50
    initial_vehicles: Tuple[int, int] = (0, 9)
    initial_speed: Tuple[float, float] = (25.0, 40.0)
    seed: int | None = None

    @classmethod
    def from_mapping(cls, mapping: Mapping) -> "CampusConfig":
        specs = mapping.get("intersections")
        return cls(
            intersections=(
                [IntersectionSpec.from_mapping(spec) for spec in specs]
                if specs
                else _default_intersections()
            ),
            road_capacity=int(mapping.get("road_capacity", cls.road_capacity)),
            initial_vehicles=tuple(mapping.get("initial_vehicles", cls.initial_vehicles)),
            initial_speed=tuple(mapping.get("initial_speed", cls.initial_speed)),
            seed=mapping.get("seed"),
        )


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


def _check_unique_ids(config: CampusConfig) -> None:
    """Reject layouts whose names collapse to the same intersection or road id."""

    intersections: Dict[str, str] = {}
    for spec in config.intersections:
        intersection_id = slugify(spec.name)
        if intersection_id in intersections:
            raise ConfigurationError(
                f"Intersections {intersections[intersection_id]!r} and {spec.name!r} "
                f"share id {intersection_id!r}"
            )
        intersections[intersection_id] = spec.name

        roads: Dict[str, str] = {}
        for road_name in spec.roads:
            road_id = slugify(road_name)
            if road_id in roads:
                raise ConfigurationError(
                    f"{spec.name}: roads {roads[road_id]!r} and {road_name!r} share id {road_id!r}"
                )
            roads[road_id] = road_name


def provision_campus(
    store: TrafficStore,
    config: CampusConfig,
    *,
    now: datetime,
    fixed: Optional[FixedPolicy] = None,
    flow: Optional[VehicleFlowModel] = None,
) -> Dict[str, List[str]]:
    """Create intersections, roads and lights in ``store``.

    Returns a mapping of intersection id to the ids of its lights. Raises
    :class:`ConfigurationError` before writing anything when two names map to
    the same id.
    """

    _check_unique_ids(config)
    rng = random.Random(config.seed)
    flow = flow or VehicleFlowModel(store, random_seed=config.seed)
    timing = (fixed or FixedPolicy()).timing()
    directions = list(Direction)
    layout: Dict[str, List[str]] = {}

    for spec in config.intersections:
        intersection = store.add_intersection(
            Intersection(
                id=slugify(spec.name),
                name=spec.name,
                location=spec.location or spec.name,
                algorithm=spec.algorithm,
                priority=spec.priority,
            )
        )
        layout[intersection.id] = []

        for index, road_name in enumerate(spec.roads):
            road = store.add_road(
                Road(
                    id=f"{intersection.id}:{slugify(road_name)}",
                    intersection_id=intersection.id,
                    name=road_name,
                    direction=directions[index % len(directions)],
                    max_capacity=config.road_capacity,
                    average_speed=rng.uniform(*config.initial_speed),
                )
            )
            light = store.add_light(
                TrafficLight(
                    id=f"light:{road.id}",
                    road_id=road.id,
                    intersection_id=intersection.id,
                    status=Status.RED,
                    timing=timing,
                    last_changed=now,
                )
            )
            layout[intersection.id].append(light.id)

            low, high = config.initial_vehicles
            for _ in range(rng.randint(int(low), int(high))):
                if flow.spawn_on(road.id, now) is None:
                    break

    return layout
