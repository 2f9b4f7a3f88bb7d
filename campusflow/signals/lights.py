"""Traffic light state machine and pre-write validation.

Every timing algorithm moves a light through the same rotation
RED -> GREEN -> YELLOW -> RED. A phase ends once its dwell time has elapsed;
no phase may be skipped, so GREEN always reaches RED through YELLOW.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from campusflow.common.exceptions import InvalidStateError
from campusflow.domain.models import Status, Timing

NEXT_STATUS = {
    Status.RED: Status.GREEN,
    Status.GREEN: Status.YELLOW,
    Status.YELLOW: Status.RED,
}


def next_status(current: Status, elapsed: float, timing: Timing) -> Status:
    """Return the status after ``elapsed`` seconds in ``current``.

    Statuses outside the rotation (flashing, maintenance) are held until an
    operator changes them.
    """

    if not current.cycles:
        return current
    if elapsed >= timing.for_status(current):
        return NEXT_STATUS[current]
    return current


def is_allowed_transition(previous: Status, new: Status) -> bool:
    """GREEN may never go straight to RED; everything else is permitted."""

    return not (previous == Status.GREEN and new == Status.RED)


@dataclass(frozen=True)
class LightUpdate:
    """A pending write for one light, produced by the coordinator or an override."""

    light_id: str
    previous_status: Status
    new_status: Status
    timing: Timing
    reason: str
    vehicle_count: int = 0
    efficiency: Optional[float] = None
    wait_time: Optional[float] = None

    @property
    def completes_cycle(self) -> bool:
        return self.new_status == Status.RED and self.previous_status != Status.RED

    @property
    def changes_status(self) -> bool:
        return self.new_status != self.previous_status


def validate_update(update: LightUpdate) -> None:
    """Raise :class:`InvalidStateError` when ``update`` breaks a light invariant."""

    if not isinstance(update.new_status, Status):
        raise InvalidStateError(f"Light {update.light_id}: unknown status {update.new_status!r}")
    if not update.timing.is_consistent():
        raise InvalidStateError(
            f"Light {update.light_id}: inconsistent timing {update.timing.as_dict()}"
        )
    if not is_allowed_transition(update.previous_status, update.new_status):
        raise InvalidStateError(
            f"Light {update.light_id}: {update.previous_status.value} -> "
            f"{update.new_status.value} skips YELLOW"
        )


def count_green(statuses: Iterable[Status]) -> int:
    return sum(1 for status in statuses if status == Status.GREEN)
