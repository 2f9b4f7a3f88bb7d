"""Elapsed-time helpers shared by the algorithms, coordinator and flow model."""
from __future__ import annotations

from datetime import datetime

from campusflow.domain.models import TrafficLight


def elapsed_seconds(now: datetime, since: datetime) -> float:
    """Seconds between ``since`` and ``now``; clock skew never goes negative."""

    return max((now - since).total_seconds(), 0.0)


def light_elapsed(light: TrafficLight, now: datetime) -> float:
    return elapsed_seconds(now, light.last_changed)


def remaining_seconds(light: TrafficLight, now: datetime) -> int:
    """Countdown of the current phase for display, rounded to whole seconds."""

    if not light.status.cycles:
        return 0
    remaining = light.timing.for_status(light.status) - light_elapsed(light, now)
    return int(round(max(remaining, 0.0)))
