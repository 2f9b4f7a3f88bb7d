"""Interchangeable signal timing algorithms.

Each algorithm is a pure function of a light, its road metrics and the
current time. All of them share the rotation in :mod:`campusflow.signals.lights`
and differ only in how they size the phases:

- Fixed: the light's stored profile, ignoring traffic. Operators change it
  through ``update_timing``; the fixed policy seeds it at provisioning and reset.
- Adaptive: green grows and red shrinks with the road's vehicle count.
- AI-optimized: the adaptive formula scaled by a peak-hour multiplier and a
  speed-based congestion proxy.
- Emergency: immediate green while an emergency vehicle is on the road,
  otherwise the normal rotation on an extended profile.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional
import logging

from campusflow.domain.models import Algorithm, RoadMetrics, Status, Timing, TrafficLight
from campusflow.signals.clock import light_elapsed
from campusflow.signals.lights import next_status
from campusflow.signals.policy import (
    AdaptivePolicy,
    AIPolicy,
    EmergencyPolicy,
    FixedPolicy,
    TimingPolicies,
    in_windows,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AlgorithmResult:
    new_status: Status
    timing: Timing
    reason: str
    efficiency: Optional[float] = None
    wait_time: Optional[float] = None


def _clamp(value: float, low: float, high: float) -> float:
    return min(max(value, low), high)


def fixed_timing(
    light: TrafficLight, metrics: RoadMetrics, now: datetime, policy: FixedPolicy
) -> AlgorithmResult:
    elapsed = light_elapsed(light, now)
    # the light's own timing is authoritative; the policy only seeds it
    timing = light.timing if light.timing.is_consistent() else policy.timing()
    return AlgorithmResult(
        new_status=next_status(light.status, elapsed, timing),
        timing=timing,
        reason=f"Fixed timing cycle - {elapsed:.0f}s elapsed in {light.status.value} phase",
    )


def adaptive_green(vehicle_count: int, policy: AdaptivePolicy) -> float:
    raw = policy.base_green + vehicle_count * policy.per_vehicle_bonus
    return _clamp(raw, policy.min_green, policy.max_green)


def adaptive_red(vehicle_count: int, policy: AdaptivePolicy) -> float:
    return max(policy.base_red - vehicle_count * policy.red_reduction_per_vehicle, policy.min_red)


def adaptive_timing(
    light: TrafficLight, metrics: RoadMetrics, now: datetime, policy: AdaptivePolicy
) -> AlgorithmResult:
    elapsed = light_elapsed(light, now)
    count = metrics.vehicle_count
    congestion = metrics.congestion_level
    timing = Timing.build(
        red=adaptive_red(count, policy),
        yellow=policy.yellow,
        green=adaptive_green(count, policy),
    )
    return AlgorithmResult(
        new_status=next_status(light.status, elapsed, timing),
        timing=timing,
        reason=f"Adaptive timing - {count} vehicles, {timing.green:.0f}s green time",
        efficiency=max(0.0, 1.0 - congestion),
        wait_time=round(timing.red * congestion) if count > 0 else 0,
    )


def peak_multiplier(now: datetime, policy: AIPolicy) -> float:
    multiplier = policy.peak_multiplier if in_windows(now.hour, policy.peak_hours) else 1.0
    if now.weekday() >= 5:
        multiplier *= policy.weekend_multiplier
    return multiplier


def speed_factor(average_speed: float, policy: AIPolicy) -> float:
    return max(0.5, average_speed / policy.reference_speed)


def ai_optimized_timing(
    light: TrafficLight, metrics: RoadMetrics, now: datetime, policy: AIPolicy
) -> AlgorithmResult:
    elapsed = light_elapsed(light, now)
    count = metrics.vehicle_count
    congestion = metrics.congestion_level
    speed = speed_factor(metrics.average_speed, policy)
    factor = _clamp(
        (count / policy.vehicles_per_factor) * peak_multiplier(now, policy) * (2 - speed),
        policy.min_factor,
        policy.max_factor,
    )

    green = _clamp(
        round(policy.base_green + count * policy.per_vehicle_bonus * factor),
        policy.min_green,
        policy.max_green,
    )
    red = max(round(policy.base_red / factor), policy.min_red)
    timing = Timing.build(red=red, yellow=policy.yellow, green=green)

    flow_rate = count * speed * (1 - congestion)
    efficiency = _clamp(flow_rate / max(count, 1), 0.0, 1.0)
    wait_time = max(round(timing.red * congestion * (2 - speed)), 0) if count > 0 else 0

    return AlgorithmResult(
        new_status=next_status(light.status, elapsed, timing),
        timing=timing,
        reason=(
            f"AI-optimized - {count} vehicles, {timing.green:.0f}s green time, "
            f"{round(congestion * 100)}% congestion"
        ),
        efficiency=efficiency,
        wait_time=wait_time,
    )


def emergency_timing(
    light: TrafficLight, metrics: RoadMetrics, now: datetime, policy: EmergencyPolicy
) -> AlgorithmResult:
    timing = Timing.build(red=policy.red, yellow=light.timing.yellow, green=policy.green)
    if metrics.has_emergency:
        return AlgorithmResult(
            new_status=Status.GREEN,
            timing=timing,
            reason="Emergency vehicle detected - priority clearance",
            efficiency=1.0,
            wait_time=0,
        )

    elapsed = light_elapsed(light, now)
    return AlgorithmResult(
        new_status=next_status(light.status, elapsed, timing),
        timing=timing,
        reason="Emergency mode - no emergency vehicles detected",
        efficiency=max(0.0, 1.0 - metrics.congestion_level),
        wait_time=round(timing.red * metrics.congestion_level),
    )


AlgorithmFn = Callable[[TrafficLight, RoadMetrics, datetime, TimingPolicies], AlgorithmResult]

ALGORITHMS: Dict[Algorithm, AlgorithmFn] = {
    Algorithm.FIXED: lambda light, metrics, now, p: fixed_timing(light, metrics, now, p.fixed),
    Algorithm.ADAPTIVE: lambda light, metrics, now, p: adaptive_timing(light, metrics, now, p.adaptive),
    Algorithm.AI_OPTIMIZED: lambda light, metrics, now, p: ai_optimized_timing(light, metrics, now, p.ai),
    Algorithm.EMERGENCY: lambda light, metrics, now, p: emergency_timing(light, metrics, now, p.emergency),
}


def resolve_algorithm(configured: object, metrics: RoadMetrics) -> Algorithm:
    """Pick the algorithm that actually runs for a light.

    Emergency wins whenever the road holds an emergency vehicle or the
    intersection is in emergency mode; unknown values fall back to Adaptive.
    """

    algorithm = Algorithm.parse(configured) if configured is not None else None
    if metrics.has_emergency or algorithm == Algorithm.EMERGENCY:
        return Algorithm.EMERGENCY
    if algorithm is None:
        logger.debug("No algorithm mapping for %r, falling back to ADAPTIVE", configured)
        return Algorithm.ADAPTIVE
    return algorithm


def select_algorithm(
    light: TrafficLight,
    metrics: RoadMetrics,
    now: datetime,
    algorithm: object = Algorithm.ADAPTIVE,
    policies: Optional[TimingPolicies] = None,
) -> AlgorithmResult:
    """Run the algorithm chosen by :func:`resolve_algorithm` for ``light``."""

    policies = policies or TimingPolicies()
    return ALGORITHMS[resolve_algorithm(algorithm, metrics)](light, metrics, now, policies)
