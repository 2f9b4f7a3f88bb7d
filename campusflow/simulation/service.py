"""Tick triggers and operator actions on top of a :class:`TrafficStore`.

The service is the only writer of light state. Each intersection is read,
planned and written as one unit under its own lock, so cycles for different
junctions can run in parallel while two triggers for the same junction are
serialized.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock, RLock
from typing import Callable, Dict, List, Optional
import logging

from campusflow.agents.vehicle import FlowResult, VehicleFlowModel
from campusflow.common.exceptions import CampusFlowError, InvalidStateError
from campusflow.common.logging import log_execution_time
from campusflow.domain.models import (
    Algorithm,
    Intersection,
    IntersectionSnapshot,
    LogAction,
    Status,
    Timing,
    TrafficLight,
    TrafficLog,
)
from campusflow.metrics.collector import intersection_view, summarize_status
from campusflow.signals.coordinator import IntersectionCoordinator
from campusflow.signals.lights import LightUpdate, validate_update
from campusflow.store.base import TrafficStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


@dataclass
class CycleResult:
    intersection_id: str
    algorithm: Algorithm
    changed_lights: List[LightUpdate] = field(default_factory=list)
    remaining: Dict[str, int] = field(default_factory=dict)
    rejected: int = 0

    def as_dict(self) -> Dict:
        return {
            "intersection_id": self.intersection_id,
            "algorithm": self.algorithm.value,
            "changed_lights": [
                {
                    "light_id": update.light_id,
                    "previous_status": update.previous_status.value,
                    "new_status": update.new_status.value,
                    "reason": update.reason,
                    "timing": update.timing.as_dict(),
                }
                for update in self.changed_lights
            ],
            "remaining": dict(self.remaining),
            "rejected": self.rejected,
        }


@dataclass
class CyclePass:
    """Outcome of one cycle over every active intersection."""

    results: List[CycleResult] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def changed(self) -> int:
        return sum(len(result.changed_lights) for result in self.results)

    def as_dict(self) -> Dict:
        return {
            "results": [result.as_dict() for result in self.results],
            "failures": dict(self.failures),
            "changed": self.changed,
        }


class TrafficService:
    """Run traffic cycles and vehicle flow, and apply operator actions."""

    def __init__(
        self,
        store: TrafficStore,
        coordinator: Optional[IntersectionCoordinator] = None,
        flow_model: Optional[VehicleFlowModel] = None,
        *,
        clock: Optional[Clock] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        self.store = store
        self.coordinator = coordinator or IntersectionCoordinator()
        self.flow_model = flow_model or VehicleFlowModel(store)
        self.clock: Clock = clock or datetime.now
        self.max_workers = max_workers
        self._locks: Dict[str, RLock] = {}
        self._locks_guard = Lock()

    @classmethod
    def from_config(cls, config, store: TrafficStore, *, clock: Optional[Clock] = None) -> "TrafficService":
        """Wire coordinator and flow model from a ``SimulationConfig``."""

        coordinator = IntersectionCoordinator(
            config.policies,
            max_green=config.max_green,
            max_wait_seconds=config.max_wait_seconds,
        )
        flow_model = VehicleFlowModel(store, policy=config.flow, random_seed=config.seed)
        return cls(
            store,
            coordinator,
            flow_model,
            clock=clock,
            max_workers=config.max_workers,
        )

    def _lock_for(self, intersection_id: str) -> RLock:
        with self._locks_guard:
            return self._locks.setdefault(intersection_id, RLock())

    def _write(
        self,
        intersection_id: str,
        update: LightUpdate,
        now: datetime,
        action: LogAction,
        *,
        reset_cycles: bool = False,
    ) -> TrafficLight:
        light = self.store.update_light(
            update.light_id,
            update.new_status,
            update.timing,
            now,
            completed_cycle=update.completes_cycle,
            reset_cycles=reset_cycles,
        )
        self.store.append_log(
            TrafficLog(
                light_id=update.light_id,
                intersection_id=intersection_id,
                action=action,
                previous_state=update.previous_status,
                new_state=update.new_status,
                reason=update.reason,
                vehicle_count=update.vehicle_count,
                timestamp=now,
                efficiency=update.efficiency,
                wait_time=update.wait_time,
            )
        )
        logger.info(
            "Light %s: %s -> %s (%s)",
            update.light_id,
            update.previous_status.value,
            update.new_status.value,
            update.reason,
        )
        return light

    def _note(
        self, snapshot: IntersectionSnapshot, action: LogAction, reason: str, now: datetime
    ) -> None:
        """Append a log entry per light for an action that changes no status."""

        for light in snapshot.lights:
            self.store.append_log(
                TrafficLog(
                    light_id=light.id,
                    intersection_id=snapshot.intersection.id,
                    action=action,
                    previous_state=light.status,
                    new_state=light.status,
                    reason=reason,
                    vehicle_count=snapshot.metrics_for(light).vehicle_count,
                    timestamp=now,
                )
            )

    # ------------------------------------------------------------------
    # Tick triggers
    # ------------------------------------------------------------------
    def run_traffic_cycle(self, intersection_id: str, now: Optional[datetime] = None) -> CycleResult:
        """Evaluate and apply one coordinator pass for ``intersection_id``."""

        now = now or self.clock()
        with self._lock_for(intersection_id):
            snapshot = self.store.get_intersection(intersection_id)
            plan = self.coordinator.run(snapshot, now)
            for update in plan.updates:
                self._write(intersection_id, update, now, LogAction.CYCLE_CHANGE)
        return CycleResult(
            intersection_id=intersection_id,
            algorithm=plan.algorithm,
            changed_lights=list(plan.updates),
            remaining=dict(plan.remaining),
            rejected=len(plan.rejected),
        )

    @log_execution_time(logger, threshold=0.5)
    def run_all_cycles(self, now: Optional[datetime] = None) -> CyclePass:
        """Run one cycle for every active intersection; failures stay isolated."""

        now = now or self.clock()
        intersections = sorted(
            self.store.list_intersections(active_only=True),
            key=lambda intersection: (-intersection.priority, intersection.created_order),
        )
        cycle_pass = CyclePass()
        if not intersections:
            return cycle_pass

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = [
                (intersection.id, pool.submit(self.run_traffic_cycle, intersection.id, now))
                for intersection in intersections
            ]
            for intersection_id, future in futures:
                try:
                    cycle_pass.results.append(future.result())
                except CampusFlowError as exc:
                    logger.error(
                        "Traffic cycle failed for %s: %s", intersection_id, exc, exc_info=True
                    )
                    cycle_pass.failures[intersection_id] = str(exc)

        if cycle_pass.changed:
            logger.info(
                "Traffic cycle: %d light changes across %d intersections",
                cycle_pass.changed,
                len(cycle_pass.results),
            )
        return cycle_pass

    def run_vehicle_flow(self, now: Optional[datetime] = None) -> FlowResult:
        return self.flow_model.run(now or self.clock())

    def register(self, engine, *, cycle_interval: int = 10, flow_interval: int = 3) -> None:
        """Register the cycle and flow triggers as simulation agents."""

        def _cycle(state: Dict, tick: int) -> None:
            state["last_cycle"] = self.run_all_cycles(engine.now)

        engine.register_agent("traffic_cycle", _cycle, start_tick=0, interval=cycle_interval)
        self.flow_model.register(engine, interval=flow_interval)

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------
    def override(
        self,
        light_id: str,
        forced_status: object,
        reason: str = "Manual override",
        now: Optional[datetime] = None,
    ) -> List[LightUpdate]:
        """Force ``light_id`` into ``forced_status``.

        A GREEN light asked to go RED is sent to YELLOW instead, and forcing
        GREEN above the green cap sends the other greens to YELLOW.
        """

        try:
            target = Status(forced_status)
        except ValueError:
            raise InvalidStateError(f"Unknown light status {forced_status!r}") from None

        now = now or self.clock()
        light = self.store.get_light(light_id)
        with self._lock_for(light.intersection_id):
            snapshot = self.store.get_intersection(light.intersection_id)
            light = next(l for l in snapshot.lights if l.id == light_id)
            if light.status == Status.GREEN and target == Status.RED:
                target = Status.YELLOW
                reason = f"{reason} (cleared through YELLOW)"
            if target == light.status:
                return []

            updates: List[LightUpdate] = []
            if target == Status.GREEN:
                others = [
                    other
                    for other in snapshot.lights
                    if other.id != light_id and other.status == Status.GREEN
                ]
                excess = len(others) + 1 - self.coordinator.max_green
                for other in others[: max(excess, 0)]:
                    updates.append(
                        LightUpdate(
                            light_id=other.id,
                            previous_status=other.status,
                            new_status=Status.YELLOW,
                            timing=other.timing,
                            reason=f"Cleared for manual override of {light_id}",
                            vehicle_count=snapshot.metrics_for(other).vehicle_count,
                        )
                    )
            updates.append(
                LightUpdate(
                    light_id=light_id,
                    previous_status=light.status,
                    new_status=target,
                    timing=light.timing,
                    reason=reason,
                    vehicle_count=snapshot.metrics_for(light).vehicle_count,
                )
            )

            for update in updates:
                validate_update(update)
            for update in updates:
                self._write(light.intersection_id, update, now, LogAction.MANUAL_OVERRIDE)
        return updates

    def activate_emergency(self, intersection_id: str, now: Optional[datetime] = None) -> CycleResult:
        """Switch an intersection to emergency mode and run a cycle at once."""

        now = now or self.clock()
        with self._lock_for(intersection_id):
            self.store.set_intersection_algorithm(intersection_id, Algorithm.EMERGENCY)
            snapshot = self.store.get_intersection(intersection_id)
            self._note(snapshot, LogAction.EMERGENCY, "Emergency mode activated", now)
            logger.warning("Emergency mode activated at %s", intersection_id)
            return self.run_traffic_cycle(intersection_id, now)

    def change_algorithm(
        self, intersection_id: str, algorithm: object, now: Optional[datetime] = None
    ) -> Intersection:
        parsed = Algorithm.parse(algorithm)
        if parsed is None:
            raise InvalidStateError(f"Unknown algorithm {algorithm!r}")

        now = now or self.clock()
        with self._lock_for(intersection_id):
            previous = self.store.get_intersection(intersection_id)
            intersection = self.store.set_intersection_algorithm(intersection_id, parsed)
            self._note(
                previous,
                LogAction.ALGORITHM_CHANGE,
                f"Algorithm changed from {previous.intersection.algorithm.value} to {parsed.value}",
                now,
            )
        logger.info("Intersection %s now uses %s", intersection_id, parsed.value)
        return intersection

    def update_timing(
        self,
        light_id: str,
        red: float,
        yellow: float,
        green: float,
        now: Optional[datetime] = None,
    ) -> TrafficLight:
        """Replace a light's phase durations without restarting its phase."""

        timing = Timing.build(red=red, yellow=yellow, green=green)
        if not timing.is_consistent():
            raise InvalidStateError(f"Light {light_id}: invalid timing {timing.as_dict()}")

        now = now or self.clock()
        light = self.store.get_light(light_id)
        with self._lock_for(light.intersection_id):
            light = self.store.get_light(light_id)
            updated = self.store.update_light(light_id, light.status, timing, light.last_changed)
            self.store.append_log(
                TrafficLog(
                    light_id=light_id,
                    intersection_id=light.intersection_id,
                    action=LogAction.TIMING_UPDATE,
                    previous_state=light.status,
                    new_state=light.status,
                    reason=(
                        f"Timing updated to red {timing.red:.0f}s, yellow {timing.yellow:.0f}s, "
                        f"green {timing.green:.0f}s"
                    ),
                    vehicle_count=0,
                    timestamp=now,
                )
            )
        return updated

    def reset_intersection(self, intersection_id: str, now: Optional[datetime] = None) -> List[TrafficLight]:
        """Return every light to RED on the fixed profile and the algorithm to ADAPTIVE.

        GREEN lights are cleared through YELLOW; the next cycles bring them to
        RED. Cycle counters are zeroed.
        """

        now = now or self.clock()
        timing = self.coordinator.policies.fixed.timing()
        lights: List[TrafficLight] = []
        with self._lock_for(intersection_id):
            snapshot = self.store.get_intersection(intersection_id)
            for light in snapshot.lights:
                target = Status.YELLOW if light.status == Status.GREEN else Status.RED
                update = LightUpdate(
                    light_id=light.id,
                    previous_status=light.status,
                    new_status=target,
                    timing=timing,
                    reason="Intersection reset",
                    vehicle_count=snapshot.metrics_for(light).vehicle_count,
                )
                validate_update(update)
                lights.append(
                    self._write(intersection_id, update, now, LogAction.RESET, reset_cycles=True)
                )
            self.store.set_intersection_algorithm(intersection_id, Algorithm.ADAPTIVE)
        return lights

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def snapshots(self) -> List[IntersectionSnapshot]:
        return [
            self.store.get_intersection(intersection.id)
            for intersection in self.store.list_intersections(active_only=False)
        ]

    def intersections_view(self, now: Optional[datetime] = None) -> List[Dict]:
        now = now or self.clock()
        return [intersection_view(snapshot, now) for snapshot in self.snapshots()]

    def system_status(self, now: Optional[datetime] = None, *, log_limit: int = 10) -> Dict:
        return summarize_status(self.snapshots(), self.store.list_logs(limit=log_limit), now or self.clock())
