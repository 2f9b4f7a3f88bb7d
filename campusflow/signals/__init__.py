"""Light state machine, timing algorithms and intersection coordination."""

from .algorithms import AlgorithmResult, resolve_algorithm, select_algorithm
from .coordinator import CoordinationPlan, IntersectionCoordinator
from .lights import LightUpdate, next_status
from .policy import TimingPolicies

__all__ = [
    "AlgorithmResult",
    "CoordinationPlan",
    "IntersectionCoordinator",
    "LightUpdate",
    "TimingPolicies",
    "next_status",
    "resolve_algorithm",
    "select_algorithm",
]
