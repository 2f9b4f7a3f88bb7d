"""Synthetic vehicle generation and light-aware movement across campus roads."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple
import itertools
import logging
import random
import string

from campusflow.domain.models import (
    DEFAULT_PRIORITY,
    EMERGENCY_PRIORITY,
    RoadState,
    Status,
    Vehicle,
    VehicleType,
)
from campusflow.signals.clock import light_elapsed
from campusflow.signals.policy import FlowPolicy
from campusflow.store.base import TrafficStore

logger = logging.getLogger(__name__)

STATE_CODES = (
    "AB", "AD", "AK", "AN", "BA", "BY", "BN", "BO", "CR", "CB", "DE", "EB", "ED",
    "EK", "EN", "FC", "GO", "IM", "JI", "KD", "KN", "KO", "KT", "KB", "KW", "LA",
    "NA", "NG", "OG", "OY", "OS", "OD", "OT", "PL", "RV", "SO", "TR", "YB", "ZA",
)

CAUTION_STATUSES = (Status.YELLOW, Status.FLASHING_YELLOW, Status.FLASHING_RED)


@dataclass
class FlowResult:
    generated: int = 0
    moved: int = 0
    exited: int = 0
    purged: int = 0


@dataclass
class VehicleFlowModel:
    """Generate vehicles onto roads and advance or exit them each flow tick.

    Roads behind a RED light attract the most new vehicles; vehicles on a
    GREEN road leave with a probability that grows with the elapsed green
    time, YELLOW lets only vehicles near the stop line through, and RED only
    lets the queue creep forward. Road counters are changed exclusively with
    the store's atomic clamped adjustment.
    """

    store: TrafficStore
    policy: FlowPolicy = field(default_factory=FlowPolicy)
    random_seed: Optional[int] = None

    _rng: random.Random = field(init=False, repr=False)
    _serial: itertools.count = field(default_factory=lambda: itertools.count(1), init=False, repr=False)

    def __post_init__(self) -> None:
        self._rng = random.Random(self.random_seed)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------
    def random_plate(self) -> str:
        letters = "".join(self._rng.choice(string.ascii_uppercase) for _ in range(3))
        digits = "".join(self._rng.choice(string.digits) for _ in range(3))
        return f"{letters}-{digits}-{self._rng.choice(STATE_CODES)}"

    def random_type(self) -> VehicleType:
        types = list(self.policy.type_weights)
        weights = [self.policy.type_weights[t] for t in types]
        return self._rng.choices(types, weights=weights, k=1)[0]

    def random_speed(self, vehicle_type: VehicleType) -> float:
        base = self.policy.base_speeds.get(vehicle_type, 30.0)
        variation = self._rng.uniform(-self.policy.speed_variation, self.policy.speed_variation)
        return max(self.policy.min_speed, base + variation)

    def vehicles_due(self, now: datetime) -> int:
        expected = self.policy.vehicles_per_tick * self.policy.rate_for_hour(now.hour)
        due = int(expected)
        if self._rng.random() < expected - due:
            due += 1
        return due

    def _choose_road(self, roads: List[RoadState]) -> Optional[RoadState]:
        available = [s for s in roads if s.road.vehicle_count < s.road.max_capacity]
        if not available:
            return None
        weights = [self.policy.color_weight(s.status) for s in available]
        return self._rng.choices(available, weights=weights, k=1)[0]

    def spawn_on(self, road_id: str, now: datetime, vehicle_type: Optional[VehicleType] = None) -> Optional[Vehicle]:
        """Place one vehicle on ``road_id`` if the road still has room."""

        if self.store.adjust_road_vehicle_count(road_id, +1) != 1:
            return None
        vehicle_type = vehicle_type or self.random_type()
        vehicle = Vehicle(
            id=f"veh_{next(self._serial)}_{self._rng.getrandbits(32):08x}",
            plate_number=self.random_plate(),
            type=vehicle_type,
            road_id=road_id,
            speed=self.random_speed(vehicle_type),
            entered_at=now,
            priority=EMERGENCY_PRIORITY if vehicle_type == VehicleType.EMERGENCY else DEFAULT_PRIORITY,
        )
        return self.store.create_vehicle(vehicle)

    def generate(self, now: datetime, count: Optional[int] = None) -> List[Vehicle]:
        due = self.vehicles_due(now) if count is None else max(int(count), 0)
        if due == 0:
            return []
        roads = self.store.get_active_roads()
        generated: List[Vehicle] = []
        for _ in range(due):
            state = self._choose_road(roads)
            if state is None:
                logger.debug("All roads at capacity, generated %d of %d", len(generated), due)
                break
            vehicle = self.spawn_on(state.road.id, now)
            if vehicle is None:
                # filled up by a concurrent writer since the snapshot was taken
                state.road.vehicle_count = state.road.max_capacity
                continue
            state.road.vehicle_count += 1
            generated.append(vehicle)
        return generated

    # ------------------------------------------------------------------
    # Movement
    # ------------------------------------------------------------------
    def _step(self, vehicle: Vehicle, state: Optional[RoadState], now: datetime) -> Tuple[float, bool]:
        """Return the vehicle's new position and whether it leaves the road."""

        policy = self.policy
        advance = vehicle.speed / policy.position_scale
        status = state.status if state is not None else Status.GREEN

        if status == Status.GREEN:
            light = state.light if state is not None else None
            progress = 0.0
            if light is not None and light.timing.green > 0:
                progress = light_elapsed(light, now) / light.timing.green
            exit_chance = min(policy.green_exit_cap, policy.green_exit_base + progress * policy.green_exit_gain)
            position = min(1.0, vehicle.position + advance)
            return position, position >= 1.0 or self._rng.random() < exit_chance

        if status in CAUTION_STATUSES:
            near = vehicle.position > policy.yellow_near_position
            exit_chance = policy.yellow_near_exit if near else policy.yellow_far_exit
            position = max(vehicle.position, min(policy.stop_line, vehicle.position + advance * policy.yellow_step_factor))
            return position, self._rng.random() < exit_chance

        position = max(vehicle.position, min(policy.stop_line, vehicle.position + policy.red_creep))
        return position, False

    def move(self, now: datetime) -> FlowResult:
        result = FlowResult()
        states: Dict[str, RoadState] = {s.road.id: s for s in self.store.get_active_roads()}
        speeds: Dict[str, List[float]] = {}

        for vehicle in self.store.get_moving_vehicles():
            position, exits = self._step(vehicle, states.get(vehicle.road_id), now)
            if exits:
                if self.store.update_vehicle(vehicle.id, position=1.0, exited_at=now):
                    self.store.adjust_road_vehicle_count(vehicle.road_id, -1)
                    result.exited += 1
                continue
            self.store.update_vehicle(vehicle.id, position=position)
            speeds.setdefault(vehicle.road_id, []).append(vehicle.speed)
            result.moved += 1

        for road_id, road_speeds in speeds.items():
            self.store.update_road_speed(road_id, sum(road_speeds) / len(road_speeds))
        return result

    def purge(self, now: datetime) -> int:
        cutoff = now - timedelta(seconds=self.policy.retention_seconds)
        return self.store.purge_exited_vehicles(cutoff)

    def run(self, now: datetime) -> FlowResult:
        generated = self.generate(now)
        result = self.move(now)
        result.generated = len(generated)
        result.purged = self.purge(now)
        if result.generated or result.exited:
            logger.info(
                "Vehicle flow: %d generated, %d moved, %d exited, %d purged",
                result.generated,
                result.moved,
                result.exited,
                result.purged,
            )
        return result

    def register(self, engine, interval: int = 1) -> None:
        """Register the flow model as a simulation agent."""

        def _callback(state: Dict, tick: int) -> None:
            state["last_flow"] = self.run(engine.now)

        engine.register_agent("vehicle_flow", _callback, start_tick=0, interval=interval)
