"""Configuration, tick engine and traffic service."""

from .core import SimulationConfig, SimulationEngine, load_config
from .service import CyclePass, CycleResult, TrafficService

__all__ = [
    "CyclePass",
    "CycleResult",
    "SimulationConfig",
    "SimulationEngine",
    "TrafficService",
    "load_config",
]
