"""Per-intersection sequencing of traffic lights.

The coordinator runs one algorithm pass over every light of an intersection
and turns the per-light decisions into a consistent plan:

- at most ``max_green`` lights are GREEN at the same time (default 1);
- a light that finishes YELLOW goes RED and frees its slot, which is then
  granted to the busiest waiting road;
- a GREEN light whose time is up goes YELLOW, and no new green is granted
  until that YELLOW has finished;
- roads that have waited on RED longer than ``max_wait_seconds`` are
  promoted ahead of busier roads, bounding starvation;
- a road holding an emergency vehicle is forced GREEN at once, and any
  other GREEN light is cleared through YELLOW.

The coordinator never writes; it returns a :class:`CoordinationPlan` whose
updates have already been validated.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple
import logging

from campusflow.common.exceptions import InvalidStateError
from campusflow.domain.models import (
    Algorithm,
    IntersectionSnapshot,
    RoadMetrics,
    Status,
    TrafficLight,
)
from campusflow.signals.algorithms import AlgorithmResult, resolve_algorithm, select_algorithm
from campusflow.signals.clock import light_elapsed, remaining_seconds
from campusflow.signals.lights import LightUpdate, count_green, validate_update
from campusflow.signals.policy import TimingPolicies

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (Status.GREEN, Status.YELLOW)


@dataclass
class CoordinationPlan:
    """Validated light updates for one intersection and one tick."""

    intersection_id: str
    algorithm: Algorithm
    updates: List[LightUpdate] = field(default_factory=list)
    rejected: List[Tuple[LightUpdate, str]] = field(default_factory=list)
    remaining: Dict[str, int] = field(default_factory=dict)

    @property
    def has_changes(self) -> bool:
        return bool(self.updates)


class IntersectionCoordinator:
    """Apply the selected timing algorithm across one intersection's lights."""

    def __init__(
        self,
        policies: Optional[TimingPolicies] = None,
        *,
        max_green: int = 1,
        max_wait_seconds: Optional[float] = 120.0,
    ) -> None:
        if max_green < 1:
            raise ValueError("max_green must allow at least one green light")
        self.policies = policies or TimingPolicies()
        self.max_green = max_green
        self.max_wait_seconds = max_wait_seconds

    # ------------------------------------------------------------------
    # Candidate ordering
    # ------------------------------------------------------------------
    def _road_order(self, snapshot: IntersectionSnapshot, light: TrafficLight) -> int:
        road = snapshot.road_for_light(light)
        return road.created_order if road is not None else 0

    def _busiest_first(self, snapshot: IntersectionSnapshot, light: TrafficLight) -> Tuple[int, int]:
        metrics = snapshot.metrics_for(light)
        return (-metrics.vehicle_count, self._road_order(snapshot, light))

    def _is_starved(self, light: TrafficLight, now: datetime) -> bool:
        if self.max_wait_seconds is None:
            return False
        return light.status == Status.RED and light_elapsed(light, now) >= self.max_wait_seconds

    def next_green(
        self, snapshot: IntersectionSnapshot, candidates: List[TrafficLight], now: datetime
    ) -> Optional[TrafficLight]:
        """Pick the next light to turn GREEN.

        Starved lights (longest wait first) beat busier roads; otherwise the
        highest vehicle count wins with ties broken by road creation order.
        """

        if not candidates:
            return None
        starved = [light for light in candidates if self._is_starved(light, now)]
        if starved:
            return min(
                starved,
                key=lambda light: (-light_elapsed(light, now), self._road_order(snapshot, light)),
            )
        return min(candidates, key=lambda light: self._busiest_first(snapshot, light))

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------
    def run(self, snapshot: IntersectionSnapshot, now: datetime) -> CoordinationPlan:
        intersection = snapshot.intersection
        configured = intersection.algorithm
        algorithm = resolve_algorithm(
            configured, RoadMetrics(has_emergency=snapshot.has_emergency_vehicle())
        )
        plan = CoordinationPlan(intersection_id=intersection.id, algorithm=algorithm)

        lights = [light for light in snapshot.lights if light.is_active and light.status.cycles]
        if not lights:
            return plan

        decisions: Dict[str, AlgorithmResult] = {
            light.id: select_algorithm(
                light, snapshot.metrics_for(light), now, configured, self.policies
            )
            for light in lights
        }
        working: Dict[str, Status] = {light.id: light.status for light in lights}
        proposed: Dict[str, LightUpdate] = {}

        def propose(light: TrafficLight, status: Status, reason: Optional[str] = None) -> None:
            result = decisions[light.id]
            working[light.id] = status
            proposed[light.id] = LightUpdate(
                light_id=light.id,
                previous_status=light.status,
                new_status=status,
                timing=result.timing,
                reason=reason or result.reason,
                vehicle_count=snapshot.metrics_for(light).vehicle_count,
                efficiency=result.efficiency,
                wait_time=result.wait_time,
            )

        forced = self._preempt_for_emergency(snapshot, lights, working, propose)

        just_reddened = set()
        for light in lights:
            if light.id in forced:
                continue
            decision = decisions[light.id].new_status
            if working[light.id] == Status.YELLOW and decision == Status.RED:
                propose(light, Status.RED)
                just_reddened.add(light.id)
            elif working[light.id] == Status.GREEN and decision == Status.YELLOW:
                propose(light, Status.YELLOW)

        active = sum(1 for status in working.values() if status in ACTIVE_STATUSES)
        while active < self.max_green:
            candidates = [
                light
                for light in lights
                if working[light.id] == Status.RED and light.id not in just_reddened
            ]
            winner = self.next_green(snapshot, candidates, now)
            if winner is None:
                break
            propose(winner, Status.GREEN, self._grant_reason(snapshot, winner, decisions, now))
            active += 1

        self._accept(plan, lights, proposed, working)

        for light in lights:
            status = working[light.id]
            if status not in ACTIVE_STATUSES:
                continue
            update = next((u for u in plan.updates if u.light_id == light.id), None)
            if update is not None:
                plan.remaining[light.id] = int(round(update.timing.for_status(status)))
            else:
                plan.remaining[light.id] = remaining_seconds(light, now)
        return plan

    def _preempt_for_emergency(self, snapshot, lights, working, propose) -> set:
        emergency = sorted(
            (light for light in lights if snapshot.metrics_for(light).has_emergency),
            key=lambda light: self._busiest_first(snapshot, light),
        )[: self.max_green]
        if not emergency:
            return set()

        forced = {light.id for light in emergency}
        for light in emergency:
            if working[light.id] != Status.GREEN:
                propose(light, Status.GREEN)

        others_green = [
            light
            for light in sorted(lights, key=lambda light: self._road_order(snapshot, light))
            if light.id not in forced and working[light.id] == Status.GREEN
        ]
        for light in others_green[self.max_green - len(forced):]:
            propose(light, Status.YELLOW, "Preempted for emergency vehicle - clearing through YELLOW")
            forced.add(light.id)
        logger.info(
            "Emergency preemption at %s: %s forced GREEN",
            snapshot.intersection.id,
            ", ".join(light.id for light in emergency),
        )
        return forced

    def _grant_reason(self, snapshot, light, decisions, now) -> str:
        metrics = snapshot.metrics_for(light)
        green = decisions[light.id].timing.green
        if self._is_starved(light, now):
            return (
                f"Max wait exceeded - promoted after {light_elapsed(light, now):.0f}s on RED, "
                f"{green:.0f}s green time"
            )
        return f"Priority green - {metrics.vehicle_count} vehicles, {green:.0f}s green time"

    def _accept(self, plan, lights, proposed, working) -> None:
        by_id = {light.id: light for light in lights}
        accepted: List[LightUpdate] = []
        for update in proposed.values():
            try:
                validate_update(update)
            except InvalidStateError as exc:
                logger.warning("Data integrity: rejected update for %s: %s", update.light_id, exc)
                plan.rejected.append((update, str(exc)))
                working[update.light_id] = by_id[update.light_id].status
                continue
            accepted.append(update)

        if count_green(working.values()) > self.max_green:
            message = f"more than {self.max_green} GREEN lights"
            logger.warning(
                "Data integrity: %s at %s, dropping new greens", message, plan.intersection_id
            )
            kept = []
            for update in accepted:
                if update.new_status == Status.GREEN and update.previous_status != Status.GREEN:
                    plan.rejected.append((update, message))
                    working[update.light_id] = update.previous_status
                else:
                    kept.append(update)
            accepted = kept

        plan.updates = sorted(accepted, key=lambda update: list(by_id).index(update.light_id))
