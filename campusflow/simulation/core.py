"""Configuration loading and the deterministic tick engine for campusflow.

Assumptions
-----------
- Time advances in discrete ticks of equal duration; the engine's simulated
  clock is ``start_time + tick * tick_duration`` so runs are reproducible.
- All scheduled agents for a tick run before the clock advances, in
  registration order.
- The traffic cycle runs every ``cycle_interval`` seconds and the vehicle
  flow every ``flow_interval`` seconds of simulated time, mirroring the two
  loops of the live runtime.

Defaults reproduce the campus deployment: a ten second signal cycle tick, a
three second flow tick, one green light per junction and a two minute
starvation bound. They can be overridden via configuration files or
constructor arguments.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, Optional
import json
import logging

import yaml

from campusflow.common.exceptions import ConfigurationError
from campusflow.map.generator import CampusConfig, provision_campus
from campusflow.signals.policy import FlowPolicy, TimingPolicies
from campusflow.simulation.service import TrafficService
from campusflow.store.base import TrafficStore
from campusflow.store.memory import InMemoryTrafficStore

AgentCallback = Callable[[Dict, int], None]

logger = logging.getLogger(__name__)

DEFAULT_START = datetime(2024, 1, 15, 10, 0, 0)


def _section(mapping: Mapping, key: str) -> Mapping:
    value = mapping.get(key) or {}
    if not isinstance(value, Mapping):
        raise ConfigurationError(f"Configuration section '{key}' must be a mapping")
    return value


def _parse_start(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError as exc:
        raise ConfigurationError(f"Invalid start_time {value!r}") from exc


@dataclass
class SimulationConfig:
    """Aggregate configuration for the engine, the service and provisioning."""

    tick_duration: float = 1.0
    max_ticks: int = 3600
    seed: Optional[int] = None
    start_time: Optional[datetime] = None
    cycle_interval: float = 10.0
    flow_interval: float = 3.0
    max_green: int = 1
    max_wait_seconds: Optional[float] = 120.0
    max_workers: Optional[int] = None
    log_level: str = "INFO"
    policies: TimingPolicies = field(default_factory=TimingPolicies)
    flow: FlowPolicy = field(default_factory=FlowPolicy)
    campus: CampusConfig = field(default_factory=CampusConfig)

    @classmethod
    def from_mapping(cls, mapping: Mapping) -> "SimulationConfig":
        """Build a configuration object from a dictionary-like source."""

        campus = CampusConfig.from_mapping(_section(mapping, "campus"))
        if campus.seed is None:
            campus.seed = mapping.get("seed")

        config = cls(
            tick_duration=float(mapping.get("tick_duration", cls.tick_duration)),
            max_ticks=int(mapping.get("max_ticks", cls.max_ticks)),
            seed=mapping.get("seed"),
            start_time=_parse_start(mapping.get("start_time")),
            cycle_interval=float(mapping.get("cycle_interval", cls.cycle_interval)),
            flow_interval=float(mapping.get("flow_interval", cls.flow_interval)),
            max_green=int(mapping.get("max_green", cls.max_green)),
            max_wait_seconds=mapping.get("max_wait_seconds", cls.max_wait_seconds),
            max_workers=mapping.get("max_workers"),
            log_level=str(mapping.get("log_level", cls.log_level)).upper(),
            policies=TimingPolicies.from_mapping(_section(mapping, "timing")),
            flow=FlowPolicy.from_mapping(_section(mapping, "flow")),
            campus=campus,
        )
        config.validate()
        return config

    def validate(self) -> None:
        if self.tick_duration <= 0:
            raise ConfigurationError("tick_duration must be positive")
        if self.cycle_interval <= 0 or self.flow_interval <= 0:
            raise ConfigurationError("cycle_interval and flow_interval must be positive")
        if self.max_green < 1:
            raise ConfigurationError("max_green must allow at least one green light")
        if self.max_wait_seconds is not None and self.max_wait_seconds <= 0:
            raise ConfigurationError("max_wait_seconds must be positive or null")
        if not self.policies.fixed.timing().is_consistent():
            raise ConfigurationError("Fixed timing profile must have positive phases")


def load_config(path: str | Path) -> SimulationConfig:
    """Load simulation configuration from a JSON or YAML file."""

    path = Path(path)
    try:
        content = path.read_text()
    except OSError as exc:
        raise ConfigurationError(f"Cannot read configuration file {path}: {exc}") from exc

    try:
        if path.suffix.lower() in {".yml", ".yaml"}:
            mapping = yaml.safe_load(content)
        else:
            mapping = json.loads(content)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Cannot parse configuration file {path}: {exc}") from exc

    if not isinstance(mapping, Mapping):
        raise ConfigurationError("Configuration file must contain a mapping at the top level.")

    return SimulationConfig.from_mapping(mapping)


def interval_ticks(seconds: float, tick_duration: float) -> int:
    return max(1, int(round(seconds / tick_duration)))


class SimulationEngine:
    """Tick-based scheduler driving the traffic service on a simulated clock."""

    def __init__(
        self,
        config: SimulationConfig,
        *,
        store: Optional[TrafficStore] = None,
        provision: Optional[bool] = None,
    ):
        self.config = config
        self.start_time = config.start_time or DEFAULT_START
        self.tick = 0
        self.store = store or InMemoryTrafficStore()
        self.service = TrafficService.from_config(config, self.store, clock=lambda: self.now)

        if provision is None:
            provision = store is None
        layout: Dict = {}
        if provision:
            layout = provision_campus(
                self.store,
                config.campus,
                now=self.start_time,
                fixed=config.policies.fixed,
                flow=self.service.flow_model,
            )
            logger.info("Provisioned %d campus intersections", len(layout))

        self.state: Dict = {
            "store": self.store,
            "layout": layout,
            "agents": {},
            "last_cycle": None,
            "last_flow": None,
        }
        self._schedule: Dict[int, list[str]] = {}

    @property
    def now(self) -> datetime:
        return self.start_time + timedelta(seconds=self.tick * self.config.tick_duration)

    def register_agent(
        self,
        name: str,
        callback: AgentCallback,
        *,
        start_tick: int = 0,
        interval: int = 1,
    ) -> None:
        """Register an agent callback and schedule its first update."""

        self.state["agents"][name] = {
            "callback": callback,
            "interval": max(1, interval),
        }
        self._schedule.setdefault(start_tick, []).append(name)

    def register_default_agents(self) -> None:
        """Schedule the traffic cycle and the vehicle flow at their configured rates."""

        self.service.register(
            self,
            cycle_interval=interval_ticks(self.config.cycle_interval, self.config.tick_duration),
            flow_interval=interval_ticks(self.config.flow_interval, self.config.tick_duration),
        )

    def _run_callbacks(self, agent_names: Iterable[str]) -> None:
        for name in agent_names:
            agent = self.state["agents"][name]
            agent["callback"](self.state, self.tick)
            next_tick = self.tick + agent["interval"]
            self._schedule.setdefault(next_tick, []).append(name)

    def advance_tick(self) -> None:
        """Run all scheduled callbacks for the current tick and advance time."""

        due_agents = list(self._schedule.pop(self.tick, []))
        self._run_callbacks(due_agents)
        self.tick += 1

    def run(self, max_ticks: Optional[int] = None) -> None:
        """Advance the simulation until the configured limit is reached."""

        limit = max_ticks if max_ticks is not None else self.config.max_ticks
        while self.tick < limit:
            self.advance_tick()
