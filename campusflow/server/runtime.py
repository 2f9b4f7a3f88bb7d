from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from threading import Event, Lock, Thread
from typing import Callable, Dict, List, Optional
import logging
import os
import time

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from campusflow.common.exceptions import (
    CampusFlowError,
    InvalidStateError,
    NotFoundError,
    StoreUnavailableError,
)
from campusflow.common.logging import setup_logger
from campusflow.map.generator import provision_campus
from campusflow.metrics import MetricSnapshot, MetricsCollector
from campusflow.simulation.core import SimulationConfig, load_config
from campusflow.simulation.service import TrafficService
from campusflow.store import InMemoryTrafficStore, TrafficStore

logger = logging.getLogger(__name__)

CONFIG_ENV = "CAMPUSFLOW_CONFIG"


@dataclass
class SimulationRuntime:
    """Owns the store, the service and the two wall-clock loops driving them.

    The cycle loop runs every ``cycle_interval`` seconds and the flow loop
    every ``flow_interval`` seconds. A tick that overruns its interval skips
    the missed slots instead of queueing them.
    """

    config: SimulationConfig = field(default_factory=SimulationConfig)
    store: Optional[TrafficStore] = None
    service: TrafficService = field(init=False)
    _cycle_lock: Lock = field(default_factory=Lock, init=False)
    _flow_lock: Lock = field(default_factory=Lock, init=False)
    _metrics_lock: Lock = field(default_factory=Lock, init=False)
    _stop_event: Event = field(default_factory=Event, init=False)
    _threads: List[Thread] = field(default_factory=list, init=False)
    metrics_history: List[MetricSnapshot] = field(default_factory=list, init=False)
    metrics_collector: MetricsCollector = field(default_factory=MetricsCollector, init=False)

    def __post_init__(self) -> None:
        setup_logger("campusflow", getattr(logging, self.config.log_level, logging.INFO))
        provision = self.store is None
        self.store = self.store or InMemoryTrafficStore()
        self.service = TrafficService.from_config(self.config, self.store)
        if provision:
            provision_campus(
                self.store,
                self.config.campus,
                now=self.service.clock(),
                fixed=self.config.policies.fixed,
                flow=self.service.flow_model,
            )

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._threads = [
            Thread(
                target=self._run_loop,
                args=("cycle", self.config.cycle_interval, self._cycle_lock, self.cycle_tick),
                name="campusflow-cycle",
                daemon=True,
            ),
            Thread(
                target=self._run_loop,
                args=("flow", self.config.flow_interval, self._flow_lock, self.flow_tick),
                name="campusflow-flow",
                daemon=True,
            ),
        ]
        for thread in self._threads:
            thread.start()
        logger.info(
            "Simulation loops started (cycle every %.1fs, flow every %.1fs)",
            self.config.cycle_interval,
            self.config.flow_interval,
        )

    def _run_loop(self, name: str, interval: float, guard: Lock, step: Callable[[], None]) -> None:
        next_run = time.monotonic()
        while not self._stop_event.is_set():
            next_run += interval
            if guard.acquire(blocking=False):
                try:
                    step()
                except CampusFlowError as exc:
                    logger.error("%s tick failed: %s", name, exc, exc_info=True)
                except Exception:
                    logger.exception("%s tick raised an unexpected error", name)
                finally:
                    guard.release()
            else:
                logger.warning("%s tick still running, skipping this slot", name)

            now = time.monotonic()
            if now > next_run:
                missed = int((now - next_run) // interval) + 1
                logger.warning("%s tick overran by %.2fs, skipping %d slot(s)", name, now - next_run, missed)
                next_run += missed * interval
            self._stop_event.wait(max(next_run - time.monotonic(), 0.001))

    def shutdown(self) -> None:
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=1.0)
        self._threads = []

    def cycle_tick(self, now: Optional[datetime] = None) -> Dict:
        start = time.perf_counter()
        cycle_pass = self.service.run_all_cycles(now)
        with self._metrics_lock:
            self.metrics_collector.on_cycle(cycle_pass)
            self.metrics_collector.record_tick_duration(time.perf_counter() - start)
        return cycle_pass.as_dict()

    def flow_tick(self, now: Optional[datetime] = None) -> Dict:
        now = now or self.service.clock()
        result = self.service.run_vehicle_flow(now)
        roads = [road for snapshot in self.service.snapshots() for road in snapshot.roads]
        with self._metrics_lock:
            self.metrics_collector.on_flow(result, now)
            self.metrics_collector.record_queues(roads)
            self.metrics_history.append(self.metrics_collector.snapshot(now=now, roads=roads))
            self.metrics_history = self.metrics_history[-200:]
        return {
            "generated": result.generated,
            "moved": result.moved,
            "exited": result.exited,
            "purged": result.purged,
        }

    def metrics(self) -> Dict:
        with self._metrics_lock:
            history = list(self.metrics_history)
        if history:
            latest = history[-1]
        else:
            roads = [road for snapshot in self.service.snapshots() for road in snapshot.roads]
            latest = self.metrics_collector.snapshot(now=self.service.clock(), roads=roads)
        return {
            "latest": latest.as_dict(),
            "history": [snapshot.as_dict() for snapshot in history[-60:]],
        }

    def snapshot(self) -> Dict:
        now = self.service.clock()
        return {
            "timestamp": now.isoformat(),
            "running": self.running,
            "intersections": self.service.intersections_view(now),
            "settings": {
                "cycle_interval": self.config.cycle_interval,
                "flow_interval": self.config.flow_interval,
                "max_green": self.config.max_green,
                "max_wait_seconds": self.config.max_wait_seconds,
            },
        }


class OverrideRequest(BaseModel):
    light_id: str
    status: str
    reason: str = "Manual override"


class AlgorithmUpdate(BaseModel):
    algorithm: str


class TimingUpdate(BaseModel):
    red: float
    yellow: float
    green: float


def _http_error(exc: CampusFlowError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InvalidStateError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, StoreUnavailableError):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def default_runtime() -> SimulationRuntime:
    path = os.environ.get(CONFIG_ENV)
    config = load_config(path) if path else SimulationConfig()
    return SimulationRuntime(config)


def create_app(runtime: SimulationRuntime | None = None) -> FastAPI:
    runtime = runtime or default_runtime()
    service = runtime.service
    app = FastAPI(title="CampusFlow")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def _startup() -> None:  # pragma: no cover - lifecycle hook
        runtime.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # pragma: no cover - lifecycle hook
        runtime.shutdown()

    def call(action: Callable, *args):
        try:
            return action(*args)
        except CampusFlowError as exc:
            raise _http_error(exc) from exc

    @app.get("/api/state")
    def get_state() -> Dict:
        return call(runtime.snapshot)

    @app.get("/api/status")
    def get_status() -> Dict:
        return call(service.system_status)

    @app.get("/api/metrics")
    def get_metrics() -> Dict:
        return call(runtime.metrics)

    @app.post("/api/traffic/cycle")
    def run_cycle() -> Dict:
        return call(runtime.cycle_tick)

    @app.post("/api/traffic/cycle/{intersection_id}")
    def run_intersection_cycle(intersection_id: str) -> Dict:
        return call(service.run_traffic_cycle, intersection_id).as_dict()

    @app.post("/api/vehicles/flow")
    def run_flow() -> Dict:
        return call(runtime.flow_tick)

    @app.post("/api/traffic/override")
    def override(request: OverrideRequest) -> Dict:
        updates = call(service.override, request.light_id, request.status.upper(), request.reason)
        return {
            "light_id": request.light_id,
            "applied": [
                {
                    "light_id": update.light_id,
                    "previous_status": update.previous_status.value,
                    "new_status": update.new_status.value,
                    "reason": update.reason,
                }
                for update in updates
            ],
        }

    @app.post("/api/intersections/{intersection_id}/emergency")
    def activate_emergency(intersection_id: str) -> Dict:
        return call(service.activate_emergency, intersection_id).as_dict()

    @app.post("/api/intersections/{intersection_id}/reset")
    def reset_intersection(intersection_id: str) -> Dict:
        lights = call(service.reset_intersection, intersection_id)
        return {
            "intersection_id": intersection_id,
            "lights": {light.id: light.status.value for light in lights},
        }

    @app.post("/api/intersections/{intersection_id}/algorithm")
    def change_algorithm(intersection_id: str, update: AlgorithmUpdate) -> Dict:
        intersection = call(service.change_algorithm, intersection_id, update.algorithm)
        return {"intersection_id": intersection.id, "algorithm": intersection.algorithm.value}

    @app.post("/api/lights/{light_id}/timing")
    def update_timing(light_id: str, update: TimingUpdate) -> Dict:
        light = call(service.update_timing, light_id, update.red, update.yellow, update.green)
        return {"light_id": light.id, "status": light.status.value, "timing": light.timing.as_dict()}

    return app


app = create_app()
