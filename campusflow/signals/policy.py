"""Tunable constants for the timing algorithms and the vehicle flow model.

Every number the algorithms use lives here so tuning is configuration rather
than code. Defaults reproduce the campus deployment's behaviour.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Dict, Mapping, Tuple, Type, TypeVar

from campusflow.common.exceptions import ConfigurationError
from campusflow.domain.models import Status, Timing, VehicleType

P = TypeVar("P")

HourWindow = Tuple[int, int]


def _from_mapping(cls: Type[P], mapping: Mapping) -> P:
    """Build a flat policy dataclass, ignoring unknown keys."""

    if not isinstance(mapping, Mapping):
        raise ConfigurationError(f"{cls.__name__} expects a mapping, got {type(mapping).__name__}")
    known = {f.name for f in fields(cls)}
    values = {key: value for key, value in mapping.items() if key in known}
    return cls(**values)


def in_windows(hour: int, windows) -> bool:
    return any(start <= hour <= end for start, end in windows)


@dataclass
class FixedPolicy:
    red: float = 30.0
    yellow: float = 5.0
    green: float = 25.0

    def timing(self) -> Timing:
        return Timing.build(self.red, self.yellow, self.green)

    @classmethod
    def from_mapping(cls, mapping: Mapping) -> "FixedPolicy":
        return _from_mapping(cls, mapping)


@dataclass
class AdaptivePolicy:
    """Vehicle-count driven green extension with a shrinking red."""

    base_green: float = 15.0
    per_vehicle_bonus: float = 2.0
    min_green: float = 15.0
    max_green: float = 60.0
    base_red: float = 30.0
    red_reduction_per_vehicle: float = 0.5
    min_red: float = 15.0
    yellow: float = 5.0

    @classmethod
    def from_mapping(cls, mapping: Mapping) -> "AdaptivePolicy":
        return _from_mapping(cls, mapping)


@dataclass
class AIPolicy:
    """Peak-hour and speed aware extension of the adaptive formula."""

    base_green: float = 15.0
    per_vehicle_bonus: float = 2.0
    min_green: float = 15.0
    max_green: float = 90.0
    base_red: float = 45.0
    min_red: float = 10.0
    yellow: float = 5.0
    reference_speed: float = 40.0
    vehicles_per_factor: float = 10.0
    min_factor: float = 0.5
    max_factor: float = 3.0
    peak_multiplier: float = 1.8
    weekend_multiplier: float = 0.6
    peak_hours: Tuple[HourWindow, ...] = ((8, 9), (12, 13), (16, 17))

    @classmethod
    def from_mapping(cls, mapping: Mapping) -> "AIPolicy":
        policy = _from_mapping(cls, mapping)
        policy.peak_hours = tuple(tuple(window) for window in policy.peak_hours)
        return policy


@dataclass
class EmergencyPolicy:
    """Extended green and shortened red used while in emergency mode."""

    green: float = 45.0
    red: float = 15.0

    @classmethod
    def from_mapping(cls, mapping: Mapping) -> "EmergencyPolicy":
        return _from_mapping(cls, mapping)


@dataclass
class TimingPolicies:
    """Bundle of the per-algorithm policies handed to ``select_algorithm``."""

    fixed: FixedPolicy = field(default_factory=FixedPolicy)
    adaptive: AdaptivePolicy = field(default_factory=AdaptivePolicy)
    ai: AIPolicy = field(default_factory=AIPolicy)
    emergency: EmergencyPolicy = field(default_factory=EmergencyPolicy)

    @classmethod
    def from_mapping(cls, mapping: Mapping) -> "TimingPolicies":
        return cls(
            fixed=FixedPolicy.from_mapping(mapping.get("fixed", {})),
            adaptive=AdaptivePolicy.from_mapping(mapping.get("adaptive", {})),
            ai=AIPolicy.from_mapping(mapping.get("ai_optimized", mapping.get("ai", {}))),
            emergency=EmergencyPolicy.from_mapping(mapping.get("emergency", {})),
        )


def _default_type_weights() -> Dict[VehicleType, float]:
    return {
        VehicleType.CAR: 0.7,
        VehicleType.BUS: 0.1,
        VehicleType.MOTORCYCLE: 0.15,
        VehicleType.TRUCK: 0.03,
        VehicleType.EMERGENCY: 0.015,
        VehicleType.BICYCLE: 0.005,
    }


def _default_base_speeds() -> Dict[VehicleType, float]:
    return {
        VehicleType.CAR: 40.0,
        VehicleType.BUS: 30.0,
        VehicleType.MOTORCYCLE: 50.0,
        VehicleType.TRUCK: 25.0,
        VehicleType.EMERGENCY: 60.0,
        VehicleType.BICYCLE: 15.0,
    }


def _default_color_weights() -> Dict[Status, float]:
    return {Status.RED: 3.0, Status.YELLOW: 2.0, Status.GREEN: 1.0}


@dataclass
class FlowPolicy:
    """Generation, movement and retention constants for the vehicle flow model."""

    vehicles_per_tick: float = 1.0
    type_weights: Dict[VehicleType, float] = field(default_factory=_default_type_weights)
    base_speeds: Dict[VehicleType, float] = field(default_factory=_default_base_speeds)
    speed_variation: float = 10.0
    min_speed: float = 5.0
    color_weights: Dict[Status, float] = field(default_factory=_default_color_weights)
    other_color_weight: float = 1.0

    # generation rate multipliers by hour of day
    peak_hours: Tuple[HourWindow, ...] = ((8, 9), (16, 17))
    peak_rate: float = 2.5
    lunch_hours: Tuple[HourWindow, ...] = ((12, 13),)
    lunch_rate: float = 2.0
    night_start: int = 22
    night_end: int = 6
    night_rate: float = 0.3

    # movement
    position_scale: float = 100.0
    green_exit_base: float = 0.5
    green_exit_gain: float = 0.4
    green_exit_cap: float = 0.9
    yellow_near_position: float = 0.75
    yellow_near_exit: float = 0.8
    yellow_far_exit: float = 0.1
    yellow_step_factor: float = 0.5
    red_creep: float = 0.01
    stop_line: float = 0.95

    retention_seconds: float = 60.0

    def rate_for_hour(self, hour: int) -> float:
        if in_windows(hour, self.peak_hours):
            return self.peak_rate
        if in_windows(hour, self.lunch_hours):
            return self.lunch_rate
        if hour >= self.night_start or hour <= self.night_end:
            return self.night_rate
        return 1.0

    def color_weight(self, status: Status) -> float:
        return self.color_weights.get(status, self.other_color_weight)

    @classmethod
    def from_mapping(cls, mapping: Mapping) -> "FlowPolicy":
        policy = _from_mapping(cls, mapping)
        try:
            policy.type_weights = {
                VehicleType(str(k).upper()): float(v) for k, v in dict(policy.type_weights).items()
            }
            policy.base_speeds = {
                VehicleType(str(k).upper()): float(v) for k, v in dict(policy.base_speeds).items()
            }
            policy.color_weights = {
                Status(str(k).upper()): float(v) for k, v in dict(policy.color_weights).items()
            }
            policy.other_color_weight = float(policy.other_color_weight)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid flow policy: {exc}") from exc
        policy.peak_hours = tuple(tuple(w) for w in policy.peak_hours)
        policy.lunch_hours = tuple(tuple(w) for w in policy.lunch_hours)
        if sum(policy.type_weights.values()) <= 0:
            raise ConfigurationError("Vehicle type weights must sum to a positive value")
        color_weights = list(policy.color_weights.values()) + [policy.other_color_weight]
        if any(weight <= 0 for weight in color_weights):
            raise ConfigurationError("Road colour weights must be positive")
        return policy
